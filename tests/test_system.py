import json

import pytest

import syntrometry
from syntrometry import SESSION_VERSION, SyntrometrySystem
from eval_syntrometry import audit_rows, load_rows


@pytest.fixture
def system(tmp_path):
    s = SyntrometrySystem(seed=3, logdir=str(tmp_path / "run"))
    yield s
    s.close()


def test_cold_start_through_system(system):
    resp = system.reset()
    assert resp.trust_score == 1.0
    assert 0.0 <= resp.rih_score <= 1.0
    assert resp.response_text


def test_run_writes_logs_that_pass_audit(system, tmp_path):
    summary = system.run(30, chat_lines=["this is great fun"], print_every=0)
    assert summary["ticks"] == 30
    assert summary["chat_inputs"] == 1
    rows = load_rows(tmp_path / "run" / "logs.jsonl")
    assert len(rows) == 30
    assert all(audit_rows(rows).values())
    metrics = (tmp_path / "run" / "metrics.yaml").read_text(encoding="utf-8")
    assert "mean_rih:" in metrics


def test_save_and_load_session(system, tmp_path):
    system.reset()
    for _ in range(12):
        system.step()
    path = tmp_path / "session.json"
    assert system.save(str(path))
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["version"] == SESSION_VERSION
    assert set(payload) >= {"environment", "agent", "metrics", "timestamp"}

    restored = SyntrometrySystem(seed=77)
    assert restored.load(str(path))
    assert restored.tick == system.tick
    assert restored.agent.integration == system.agent.integration
    assert restored.environment.step_count == system.environment.step_count
    assert restored.state == system.state
    row = restored.step()
    assert row["tick"] == system.tick + 1
    restored.close()


def test_load_rejects_bad_sessions(system, tmp_path):
    assert not system.load(str(tmp_path / "missing.json"))
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    assert not system.load(str(bad))
    old = tmp_path / "old.json"
    old.write_text(json.dumps({"version": "1.0", "agent": {}, "environment": {}}), encoding="utf-8")
    assert not system.load(str(old))


def test_chat_returns_impact(system):
    system.reset()
    impact = system.chat("I am worried about this glitch")
    assert impact[1] == pytest.approx(0.9)
    assert impact[3] == pytest.approx(0.8)


def test_cli_main(tmp_path, capsys):
    session = tmp_path / "s.json"
    code = syntrometry.main(["--ticks", "4", "--print-every", "2", "--logdir", str(tmp_path / "cli"),
                             "--save", str(session), "--say", "hello, how are you"])
    assert code == 0
    assert session.exists()
    out = capsys.readouterr().out
    assert "[0002]" in out
    assert "SUMMARY:" in out


def test_audit_flags_violations():
    row = {
        "integration": 0.5, "reflexivity": 0.5, "core_min": -0.2, "core_max": 0.3,
        "emotion_min": 0.1, "emotion_max": 0.9, "emotions": [0.2] * 6, "rih": 0.4, "trust": 1.0,
        "avg_affinity": 0.9, "event_timer": 0, "gap_timer": 10, "event_type": None,
        "response_text": "R:0.40", "ready": True,
    }
    assert all(audit_rows([row]).values())
    broken = dict(row, integration=0.99, event_timer=3)
    checks = audit_rows([broken])
    assert not checks["parameters"]
    assert not checks["event_exclusivity"]
