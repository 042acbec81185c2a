import copy

import pytest

import syntrometry


@pytest.fixture
def config():
    return copy.deepcopy(syntrometry.CONFIG)


@pytest.fixture
def agent():
    a = syntrometry.SyntrometricAgent(seed=0)
    yield a
    a.cleanup()


@pytest.fixture
def environment():
    env = syntrometry.EmotionalSpace(seed=0)
    yield env
    env.cleanup()
