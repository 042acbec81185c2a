#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
benchmark_syntrometry.py: Multi-seed runs & plots for the syntrometric agent.

Adds:
- --seed_range A B     (inclusive range; appends to --seeds if both given)
- --say TEXT           (user text applied before every run; repeatable)
- Plots:
  * coherence_trust_affinity.png : per-seed RIH / trust / affinity over ticks
  * parameters.png               : integration & reflexivity trajectories
  * event_timeline.png           : active event type per tick
  * moods.png                    : dominant emotion counts across seeds
Usage examples:
  python benchmark_syntrometry.py --seeds 41 42 43 --ticks 600 --out outbench
  python benchmark_syntrometry.py --seed_range 41 55 --ticks 400 --say "wow, interesting" --out outbench_big
"""

import csv
import json
import argparse
from collections import Counter
from pathlib import Path
from statistics import mean
from typing import Any, Dict, List

import numpy as np
import matplotlib.pyplot as plt

import syntrometry


def run_seed(seed: int, ticks: int, say: List[str]) -> List[Dict[str, Any]]:
    system = syntrometry.SyntrometrySystem(seed=seed)
    try:
        system.reset()
        for text in say:
            system.chat(text)
        rows = [system.step() for _ in range(ticks)]
    finally:
        system.close()
    for row in rows:
        row["seed"] = seed
    return rows


def summarize(seed: int, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    n = len(rows)
    event_ticks = sum(1 for r in rows if r["event_type"])
    moods = Counter(r["dominant_emotion"] for r in rows)
    return {
        "seed": seed,
        "ticks": n,
        "mean_rih": round(mean([r["rih"] for r in rows]), 4) if rows else 0.0,
        "mean_trust": round(mean([r["trust"] for r in rows]), 4) if rows else 0.0,
        "mean_affinity": round(mean([r["avg_affinity"] for r in rows]), 4) if rows else 0.0,
        "final_integration": round(rows[-1]["integration"], 4) if rows else 0.0,
        "final_reflexivity": round(rows[-1]["reflexivity"], 4) if rows else 0.0,
        "event_coverage": round(event_ticks / max(1, n), 4),
        "dysvariant": sum(1 for r in rows if "Dysvariant" in r["context"]),
        "not_ready": sum(1 for r in rows if not r["ready"]),
        "top_mood": moods.most_common(1)[0][0] if moods else "none",
    }


def save_jsonl(path: Path, rows: List[Dict[str, Any]]):
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for row in rows:
            f.write(json.dumps(row, ensure_ascii=False) + "\n")


def plot_coherence_trust_affinity(rows_by_seed: Dict[int, List[Dict[str, Any]]], outdir: Path):
    outdir.mkdir(parents=True, exist_ok=True)
    fig, axes = plt.subplots(3, 1, sharex=True, figsize=(8, 7))
    for seed, rows in rows_by_seed.items():
        ticks = [r["tick"] for r in rows]
        axes[0].plot(ticks, [r["rih"] for r in rows], label=f"s{seed}")
        axes[1].plot(ticks, [r["trust"] for r in rows], label=f"s{seed}")
        axes[2].plot(ticks, [r["avg_affinity"] for r in rows], label=f"s{seed}")
    axes[0].set_ylabel("RIH")
    axes[1].set_ylabel("Trust")
    axes[2].set_ylabel("Affinity")
    axes[2].set_xlabel("Tick")
    axes[0].legend(fontsize=7)
    fig.suptitle("Coherence, trust and affinity")
    fig.tight_layout()
    fig.savefig(outdir / "coherence_trust_affinity.png", dpi=160)
    plt.close(fig)


def plot_parameters(rows_by_seed: Dict[int, List[Dict[str, Any]]], outdir: Path):
    outdir.mkdir(parents=True, exist_ok=True)
    plt.figure()
    for seed, rows in rows_by_seed.items():
        ticks = [r["tick"] for r in rows]
        plt.plot(ticks, [r["integration"] for r in rows], label=f"I-s{seed}")
        plt.plot(ticks, [r["reflexivity"] for r in rows], linestyle="--", label=f"Ψ-s{seed}")
    plt.axhline(syntrometry.PARAM_MIN, color="grey", linewidth=0.5)
    plt.axhline(syntrometry.PARAM_MAX, color="grey", linewidth=0.5)
    plt.xlabel("Tick")
    plt.ylabel("Parameter value")
    plt.title("Integration / reflexivity walk")
    plt.legend(fontsize=7)
    plt.tight_layout()
    plt.savefig(outdir / "parameters.png", dpi=160)
    plt.close()


def plot_event_timeline(rows_by_seed: Dict[int, List[Dict[str, Any]]], outdir: Path):
    outdir.mkdir(parents=True, exist_ok=True)
    names = syntrometry.EMOTION_NAMES
    plt.figure(figsize=(8, 1 + 0.5 * len(rows_by_seed)))
    for lane, (seed, rows) in enumerate(rows_by_seed.items()):
        xs = [r["tick"] for r in rows if r["event_type"] in names]
        cs = [names.index(r["event_type"]) for r in rows if r["event_type"] in names]
        plt.scatter(xs, [lane] * len(xs), c=cs, cmap="tab10", vmin=0, vmax=9, s=4)
    plt.yticks(np.arange(len(rows_by_seed)), [f"s{s}" for s in rows_by_seed])
    plt.xlabel("Tick")
    plt.title("Active events")
    plt.tight_layout()
    plt.savefig(outdir / "event_timeline.png", dpi=160)
    plt.close()


def plot_moods(rows_by_seed: Dict[int, List[Dict[str, Any]]], outdir: Path):
    outdir.mkdir(parents=True, exist_ok=True)
    counts = Counter(r["dominant_emotion"] for rows in rows_by_seed.values() for r in rows)
    labels = list(counts.keys())
    x = np.arange(len(labels))
    plt.figure()
    plt.bar(x, [counts[k] for k in labels])
    plt.xticks(x, labels, rotation=45, ha="right")
    plt.ylabel("Ticks as dominant emotion")
    plt.title("Dominant emotion counts")
    plt.tight_layout()
    plt.savefig(outdir / "moods.png", dpi=160)
    plt.close()


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--seeds", nargs="+", type=int, default=[])
    ap.add_argument("--seed_range", nargs=2, type=int, default=None)
    ap.add_argument("--ticks", type=int, default=400)
    ap.add_argument("--say", action="append", default=[])
    ap.add_argument("--out", type=str, default="outbench")
    args = ap.parse_args()

    seeds = list(args.seeds)
    if args.seed_range and len(args.seed_range) == 2:
        a, b = args.seed_range
        seeds += list(range(min(a, b), max(a, b) + 1))
    if not seeds:
        seeds = [43]

    outdir = Path(args.out)
    logs_dir = outdir / "logs"
    plots_dir = outdir / "plots"
    outdir.mkdir(parents=True, exist_ok=True)
    syntrometry.setup_logging()

    all_rows = []
    rows_by_seed: Dict[int, List[Dict[str, Any]]] = {}
    for seed in seeds:
        rows = run_seed(seed, args.ticks, args.say)
        save_jsonl(logs_dir / f"run_{seed}.jsonl", rows)
        rows_by_seed[seed] = rows
        all_rows.append(summarize(seed, rows))

    csv_path = outdir / "summary.csv"
    with csv_path.open("w", newline="", encoding="utf-8") as f:
        fieldnames = list(all_rows[0].keys()) if all_rows else []
        w = csv.DictWriter(f, fieldnames=fieldnames)
        w.writeheader()
        for r in all_rows:
            w.writerow(r)

    plot_coherence_trust_affinity(rows_by_seed, plots_dir)
    plot_parameters(rows_by_seed, plots_dir)
    plot_event_timeline(rows_by_seed, plots_dir)
    plot_moods(rows_by_seed, plots_dir)

    print(f"\nWrote: {csv_path}")
    print(f"Logs:  {logs_dir}/*.jsonl")
    print(f"Plots: {plots_dir}/*.png")


if __name__ == "__main__":
    main()
