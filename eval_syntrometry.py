#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Audit syntrometry run logs (logs.jsonl from --logdir, or outbench/logs/run_*.jsonl).

  python eval_syntrometry.py out_run
  python eval_syntrometry.py outbench/logs
"""
import sys
import json
from pathlib import Path
from typing import Any, Dict, List

import numpy as np

PARAM_MIN, PARAM_MAX = 0.05, 0.95
EPS = 1e-6


def load_rows(path: Path) -> List[Dict[str, Any]]:
    files = [path] if path.is_file() else sorted(path.glob("*.jsonl"))
    rows = []
    for fp in files:
        with fp.open("r", encoding="utf-8") as f:
            rows += [json.loads(x) for x in f if x.strip()]
    return rows


def _within(values, lo, hi) -> bool:
    arr = np.asarray(values, dtype=float)
    return bool(arr.size == 0 or ((arr >= lo - EPS) & (arr <= hi + EPS)).all())


def audit_rows(rows: List[Dict[str, Any]]) -> Dict[str, bool]:
    checks = {
        # 1) Clamping
        "parameters": _within([r["integration"] for r in rows] + [r["reflexivity"] for r in rows], PARAM_MIN, PARAM_MAX),
        "state_core": _within([r["core_min"] for r in rows] + [r["core_max"] for r in rows], -1.0, 1.0),
        "state_emotions": _within([r["emotion_min"] for r in rows] + [r["emotion_max"] for r in rows], 0.0, 1.0),
        "agent_emotions": _within([e for r in rows for e in r["emotions"]], 0.0, 1.0),
        "rih": _within([r["rih"] for r in rows], 0.0, 1.0),
        "trust": _within([r["trust"] for r in rows], 0.0, 1.0),
        "affinity": _within([r["avg_affinity"] for r in rows], -1.0, 1.0),
    }
    # 2) Event exclusivity: one counter drives context, event type iff active
    checks["event_exclusivity"] = all(
        not (r["event_timer"] > 0 and r["gap_timer"] > 0)
        and ((r["event_type"] is not None) == (r["event_timer"] > 0))
        for r in rows
    )
    # 3) Never terminal
    checks["responses"] = all(r["response_text"] for r in rows)
    return checks


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print(__doc__)
        return 2
    rows = load_rows(Path(argv[0]))
    if not rows:
        print(f"No rows found under {argv[0]}")
        return 2
    checks = audit_rows(rows)
    for name, ok in checks.items():
        print(f"{name.upper():<20}:", "PASS" if ok else "FAIL")
    not_ready = sum(1 for r in rows if not r.get("ready", True))
    print(f"NOT-READY TICKS: {not_ready} of {len(rows)}")
    return 0 if all(checks.values()) else 1


if __name__ == "__main__":
    raise SystemExit(main())
