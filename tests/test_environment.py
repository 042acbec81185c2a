import logging

import numpy as np
import pytest

from syntrometry import EmotionalSpace, EnvPhase, INITIAL_BASE_EMOTIONS


def fast_event_config(config):
    config["Env"].update(EVENT_FREQ=0.9, EVENT_DURATION=5, EVENT_GAP=2)
    config["DYSVARIANT_PROB"] = 0.0
    return config


def test_reset_emits_full_state_vector(environment):
    state = environment.reset()
    assert isinstance(state, tuple)
    assert len(state) == 18
    assert all(-1.0 <= v <= 1.0 for v in state[:12])
    assert list(state[12:]) == pytest.approx(INITIAL_BASE_EMOTIONS, abs=1e-6)
    assert environment.phase == EnvPhase.GAP
    assert environment.gap_timer == 180
    assert environment.event_type is None


def test_step_is_never_terminal_and_emits_new_state(environment):
    previous = environment.reset()
    for _ in range(20):
        result = environment.step([0.5] * 6, 0.5, 0.5)
        assert result.done is False
        assert result.state is not previous
        assert len(result.state) == 18
        assert isinstance(result.context, str)
        previous = result.state


def test_event_exclusivity(config):
    env = EmotionalSpace(fast_event_config(config), seed=11)
    env.reset()
    rng = np.random.default_rng(0)
    saw_event = False
    for _ in range(400):
        result = env.step(rng.random(6).tolist(), float(rng.random()), float(rng.uniform(-1, 1)))
        assert not (env.event_timer > 0 and env.gap_timer > 0)
        assert (result.event_type is not None) == (env.event_timer > 0)
        assert all(-1.0 <= v <= 1.0 for v in result.state[:12])
        assert all(0.0 <= v <= 1.0 for v in result.state[12:])
        saw_event = saw_event or result.event_type is not None
    assert saw_event
    env.cleanup()


def test_event_reward_decays_then_concludes(config):
    env = EmotionalSpace(fast_event_config(config), seed=4)
    env.reset()
    for _ in range(100):
        result = env.step()
        if result.event_type is not None:
            break
    assert result.event_type is not None
    assert env.phase == EnvPhase.EVENT_ACTIVE
    base_reward = env.current_event.base_reward

    rewards = []
    for _ in range(5):
        result = env.step()
        rewards.append(result.reward)
    assert rewards == pytest.approx([base_reward * f for f in (0.8, 0.6, 0.4, 0.2, 0.0)])
    assert result.context == "Event concluded."
    assert result.event_type is None
    assert env.gap_timer == 2
    assert env.phase == EnvPhase.GAP
    env.cleanup()


def test_base_emotions_drift_toward_agent(environment):
    environment.reset()
    before = environment.base_emotion_values()
    environment.step([1.0] * 6, 0.5, 0.0)
    after = environment.base_emotion_values()
    assert all(a > b for a, b in zip(after, before))


def test_wrong_length_emotions_are_replaced(environment, caplog):
    environment.reset()
    with caplog.at_level(logging.WARNING):
        result = environment.step([0.3, 0.3], 0.5, 0.5)
    assert len(result.state) == 18
    assert "agent emotions" in caplog.text


def test_dysvariant_fluctuation(config):
    config["DYSVARIANT_PROB"] = 1.0
    env = EmotionalSpace(config, seed=2)
    env.reset()
    result = env.step([0.5] * 6, 0.0, -1.0)
    assert "(Dysvariant fluctuation)" in result.context
    assert env.dysvariant_count == 1
    env.cleanup()


def test_dysvariant_fluctuation_reaches_emitted_core(config):
    config["DIMENSIONS"] = 4
    states = {}
    for prob in (1.0, 0.0):
        cfg = dict(config, DYSVARIANT_PROB=prob)
        env = EmotionalSpace(cfg, seed=3)
        env.reset()
        states[prob] = env.step([0.5] * 6, 0.0, -1.0).state
        env.cleanup()
    with_fluct, without = states[1.0], states[0.0]
    changed = [i for i in range(4) if with_fluct[i] != without[i]]
    assert len(changed) == 1
    assert with_fluct[4:] == without[4:]


def test_event_sampling_follows_agent_emotions(config):
    config["Env"]["EVENT_FREQ"] = 0.9
    env = EmotionalSpace(config, seed=6)
    env.reset()
    emotions = [0.9, 0.1, 0.5, 0.5, 0.5, 0.5]
    counts = {}
    for _ in range(4000):
        triggered = env._maybe_trigger_event(emotions)
        if triggered is not None:
            counts[env.current_event.type] = counts.get(env.current_event.type, 0) + 1
    assert counts["Joy"] > 1.5 * counts["Fear"]
    env.cleanup()


def test_trigger_reward_scales_with_emotion_value(config):
    config["Env"]["EVENT_FREQ"] = 0.9
    env = EmotionalSpace(config, seed=2)
    env.reset()
    emotions = [1.0, 0.0, 0.0, 0.0, 0.0, 0.0]
    for _ in range(50):
        triggered = env._maybe_trigger_event(emotions)
        if triggered is not None:
            break
    index, reward = triggered
    assert reward == pytest.approx(env.current_event.base_reward * (emotions[index] * 0.7 + 0.3))
    env.cleanup()


def test_text_impact_and_base_change(environment):
    environment.reset()
    impact = environment.get_emotional_impact_from_text("Wow, that is interesting!")
    assert impact == pytest.approx([0.0, 0.0, 0.8, 0.0, 0.0, 0.85])
    base = environment.base_emotion_values()
    assert base[2] == pytest.approx(0.33, abs=1e-6)
    assert base[5] == pytest.approx(0.22, abs=1e-6)


def test_text_without_keywords(environment):
    environment.reset()
    before = environment.base_emotion_values()
    impact = environment.get_emotional_impact_from_text("zzz")
    assert impact == pytest.approx([0.0, 0.0, 0.3, 0.0, 0.2, 0.0])
    assert environment.base_emotion_values() == before


def test_state_round_trip(config):
    env = EmotionalSpace(fast_event_config(config), seed=8)
    env.reset()
    for _ in range(30):
        env.step([0.9, 0.1, 0.5, 0.5, 0.2, 0.7], 0.4, 0.1)
    saved = env.get_state()

    other = EmotionalSpace(fast_event_config(config), seed=1)
    assert other.load_state(saved)
    assert other.get_state() == saved
    env.cleanup()
    other.cleanup()


def test_load_state_validates_fields(environment, caplog):
    environment.reset()
    saved = environment.get_state()
    saved["base_emotions"] = [0.1, 0.2]
    saved["event_timer"] = 7
    saved["gap_timer"] = 0
    saved["current_event"] = {"type": "Boredom", "context": "?", "base_reward": 1.0}
    with caplog.at_level(logging.WARNING):
        assert environment.load_state(saved)
    assert environment.base_emotion_values() == pytest.approx(INITIAL_BASE_EMOTIONS, abs=1e-6)
    assert environment.current_event is None
    assert environment.event_timer == 0
    assert environment.gap_timer == 180
    assert "Boredom" in caplog.text


def test_step_errors_are_contained(environment, monkeypatch):
    environment.reset()

    def boom(*args, **kwargs):
        raise RuntimeError("state vector fault")

    monkeypatch.setattr(environment, "_update_state_vector", boom)
    result = environment.step([0.5] * 6, 0.5, 0.5)
    assert result.context == "Environment error."
    assert len(result.state) == 18
    assert result.done is False


def test_backend_unavailable_environment():
    env = EmotionalSpace(device="not-a-device")
    assert not env.ready
    result = env.step([0.5] * 6)
    assert result.context == "Environment not ready."
    assert result.state == tuple([0.0] * 18)
