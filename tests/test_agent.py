import json
import logging

import pytest
import torch
import torch.nn as nn

import syntrometry
from syntrometry import (
    EmotionalSpace,
    HEAD_MOVEMENT_LABELS,
    PARAM_MAX,
    PARAM_MIN,
    SyntrometricAgent,
    calculate_graph_features,
)


class BrokenNetwork(nn.Module):
    def forward(self, x):
        raise RuntimeError("backend fault")


def run_ticks(agent, env, n):
    responses = []
    emotions, rih, aff = None, 0.0, 0.0
    for _ in range(n):
        result = env.step(emotions, rih, aff)
        resp = agent.process(result.state, calculate_graph_features(result.state), result)
        emotions, rih, aff = resp.emotions, resp.rih_score, resp.avg_affinity
        responses.append(resp)
    return responses


def test_cold_start(agent, environment):
    state = environment.reset()
    resp = agent.process(state, calculate_graph_features(state))
    assert resp.ready
    assert resp.trust_score == 1.0
    assert 0.0 <= resp.rih_score <= 1.0
    assert resp.response_text
    assert "Mood:" in resp.response_text
    assert len(resp.cascade_history) == syntrometry.CONFIG["CASCADE_LEVELS"] + 1
    assert len(resp.emotions) == 6
    assert resp.head_movement_label in HEAD_MOVEMENT_LABELS


def test_clamping_invariants_over_ticks(agent, environment):
    environment.reset()
    for resp in run_ticks(agent, environment, 60):
        assert PARAM_MIN <= resp.integration <= PARAM_MAX
        assert PARAM_MIN <= resp.reflexivity <= PARAM_MAX
        assert 0.0 <= resp.rih_score <= 1.0
        assert 0.0 <= resp.trust_score <= 1.0
        assert -1.0 <= resp.avg_affinity <= 1.0
        assert all(-1.0 <= a <= 1.0 for a in resp.affinities)
        assert all(0.0 <= e <= 1.0 for e in resp.emotions)
        assert 0.0 <= resp.cascade_variance <= 10.0


def test_memory_fifo_eviction(config):
    config["Agent"]["HISTORY_SIZE"] = 10
    agent = SyntrometricAgent(config, seed=0)
    pushed = [torch.full((agent.hidden_dim,), float(i)) for i in range(15)]
    first = None
    for i, emb in enumerate(pushed):
        agent.update_memory(emb)
        if i == 0:
            first = agent.memory_buffer[0].belief_embedding
    assert len(agent.memory_buffer) == 10
    assert torch.equal(agent.memory_buffer[0].belief_embedding, pushed[5])
    assert torch.equal(agent.memory_buffer[-1].belief_embedding, pushed[14])
    # evicted entries are released
    assert first.numel() == 0
    agent.cleanup()


def test_memory_bound_after_ticks(config, environment):
    config["Agent"]["HISTORY_SIZE"] = 10
    agent = SyntrometricAgent(config, seed=1)
    environment.reset()
    run_ticks(agent, environment, 25)
    assert len(agent.memory_buffer) == 10
    assert agent.persistent_buffer_count() == len(agent.PERSISTENT_SLOTS) + 10
    agent.cleanup()


def test_trust_rules(agent):
    h = agent.hidden_dim
    current = torch.linspace(-1.0, 1.0, h)
    assert agent._compute_trust(current) == 1.0
    agent.update_memory(current)
    assert agent._compute_trust(current) == pytest.approx(1.0, abs=1e-5)
    assert agent._compute_trust(-current) == pytest.approx(0.0, abs=1e-5)
    assert agent._compute_trust(torch.zeros(h)) == 0.0
    assert agent._compute_trust(torch.zeros(2, 2)) == 0.5


def test_trust_skips_mismatched_entries(agent):
    agent.memory_buffer.append(syntrometry.MemoryEntry(0, torch.ones(3)))
    assert agent._compute_trust(torch.ones(agent.hidden_dim)) == 0.5


def test_self_state_is_replaced_and_old_released(agent, environment):
    state = environment.reset()
    old = agent.self_state
    agent.process(state, calculate_graph_features(state))
    assert agent.self_state is not old
    assert agent.self_state.numel() == agent.hidden_dim
    assert old.numel() == 0
    assert agent.last_scope_released > 0
    assert agent.get_latest_belief_embedding().numel() == agent.hidden_dim


def test_self_state_update_formula(agent):
    agent.self_state = torch.zeros(agent.hidden_dim)
    belief = torch.ones(agent.hidden_dim)
    agent._update_self_state(belief, trust=1.0, integration=0.5)
    # learn_rate = 0.05 * (0.5 + 0.5)
    assert agent.self_state[0].item() == pytest.approx(0.05, abs=1e-6)


def test_parameter_stabilization_through_agent(agent):
    values = []
    for _ in range(200):
        agent._learn_parameters(0.9, 0.9, 0.0)
        values.append((agent.integration, agent.reflexivity))
    integrations = [v[0] for v in values]
    reflexivities = [v[1] for v in values]
    assert all(b >= a - 1e-7 for a, b in zip(integrations, integrations[1:]))
    assert all(b <= a + 1e-7 for a, b in zip(reflexivities, reflexivities[1:]))
    assert integrations[-1] > 0.5
    assert reflexivities[-1] < 0.5
    assert PARAM_MIN - 1e-6 <= min(integrations + reflexivities)
    assert max(integrations + reflexivities) <= PARAM_MAX + 1e-6


def test_core_failure_returns_not_ready_with_stale_values(agent, environment):
    state = environment.reset()
    first = agent.process(state, calculate_graph_features(state))
    agent.model.belief_network = BrokenNetwork()
    resp = agent.process(state, calculate_graph_features(state))
    assert not resp.ready
    assert resp.response_text.startswith("Not ready:")
    assert resp.rih_score == first.rih_score
    assert resp.trust_score == first.trust_score
    assert resp.belief_norm == 0.0
    assert resp.feedback_norm == 0.0
    assert resp.cascade_history == []
    assert len(resp.emotions) == agent.emotion_dim


def test_belief_released_when_update_fails(agent, environment, monkeypatch):
    state = environment.reset()
    agent.process(state, calculate_graph_features(state))
    previous = agent.latest_belief
    seen = []
    original_update = agent.update_memory

    def recording_update(belief):
        seen.append(belief)
        original_update(belief)

    def failing_learn(*args, **kwargs):
        raise RuntimeError("adaptation fault")

    monkeypatch.setattr(agent, "update_memory", recording_update)
    monkeypatch.setattr(agent, "_learn_parameters", failing_learn)
    resp = agent.process(state, calculate_graph_features(state))
    assert not resp.ready
    assert len(seen) == 1
    assert seen[0].numel() == 0
    assert agent.latest_belief is previous
    assert previous.numel() == agent.hidden_dim


def test_backend_unavailable():
    agent = SyntrometricAgent(device="not-a-device")
    assert not agent.ready
    resp = agent.process([0.0] * 18, [0.0, 0.0])
    assert not resp.ready
    assert resp.response_text.startswith("Not ready")
    assert "error" in agent.get_state()


def test_heuristic_head_movement_when_classifier_disabled(config, environment):
    config["Agent"]["USE_HEAD_CLASSIFIER"] = False
    agent = SyntrometricAgent(config, seed=0)
    state = environment.reset()
    resp = agent.process(state, calculate_graph_features(state))
    assert resp.head_movement_label in HEAD_MOVEMENT_LABELS
    agent.cleanup()


def test_discrete_mode_and_short_state(config):
    config["Agent"]["PERTURBATION_MODE"] = "discrete"
    agent = SyntrometricAgent(config, seed=0)
    resp = agent.process([0.2] * 12, None, {"reward": 0.5, "event_type": "Joy"})
    assert resp.ready
    assert agent.enyphansyntrix.mode == "discrete"
    agent.cleanup()


def test_missing_config_uses_defaults(caplog):
    with caplog.at_level(logging.WARNING):
        agent = SyntrometricAgent(config={}, seed=0)
    assert agent.ready
    assert agent.hidden_dim == 64
    assert agent.history_size == 15
    assert "Agent.HIDDEN_DIM" in caplog.text
    agent.cleanup()


def test_state_round_trip(environment):
    source = SyntrometricAgent(seed=0)
    environment.reset()
    run_ticks(source, environment, 8)
    state = source.get_state()
    json.dumps(state)

    target = SyntrometricAgent(seed=99)
    assert target.load_state(state)
    assert target.integration == source.integration
    assert target.reflexivity == source.reflexivity
    assert torch.equal(target.self_state, source.self_state)
    assert torch.equal(target.prev_emotions, source.prev_emotions)
    assert len(target.memory_buffer) == len(source.memory_buffer)
    assert target.last_rih == source.last_rih
    for name in syntrometry.SyntrometricModel.NETWORKS:
        assert target.model.get_weights(name) == source.model.get_weights(name)
    source.cleanup()
    target.cleanup()


def test_load_resets_mismatched_fields(agent, caplog):
    state = agent.get_state()
    state["self_state"] = [1.0, 2.0, 3.0]
    state["integration_param"] = 0.7
    state["value_head_weights"] = [{"shape": [1, 3], "data": [0.0] * 3}, {"shape": [1], "data": [0.0]}]
    before = agent.model.get_weights("value_head")
    with caplog.at_level(logging.WARNING):
        assert agent.load_state(state)
    assert torch.equal(agent.self_state, torch.zeros(agent.hidden_dim))
    assert agent.integration == pytest.approx(0.7)
    assert agent.model.get_weights("value_head") == before
    assert "self_state" in caplog.text


def test_load_invalid_state_resets_agent(agent, environment):
    environment.reset()
    run_ticks(agent, environment, 3)
    assert agent.memory_buffer
    assert not agent.load_state("not a state")
    assert agent.ready
    assert len(agent.memory_buffer) == 0
    assert agent.latest_trust == 1.0


def test_cleanup_releases_everything():
    agent = SyntrometricAgent(seed=0)
    agent.process([0.1] * 18, [0.1, 0.1])
    self_state = agent.self_state
    agent.cleanup()
    assert agent.persistent_buffer_count() == 0
    assert self_state.numel() == 0
    assert not agent.process([0.1] * 18, [0.1, 0.1]).ready


def test_environment_feedback_shape(agent):
    env = EmotionalSpace(seed=5)
    env.reset()
    resp = run_ticks(agent, env, 2)[-1]
    as_dict = resp.as_dict()
    for key in ("cascade_history", "rih_score", "affinities", "emotions", "head_movement_label",
                "response_text", "integration", "reflexivity", "trust_score", "belief_norm", "feedback_norm"):
        assert key in as_dict
    env.cleanup()
