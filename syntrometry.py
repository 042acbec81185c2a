#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
SYNTROMETRY AGENT (stateful cognitive pipeline + emotional environment)

SyntrometricAgent = perturbation -> belief embedding -> structural cascade ->
                    coherence (RIH) / affinity / trust -> self-state + heuristic
                    parameter walk -> emotions + head movement
EmotionalSpace    = event/gap state machine producing the driving state vector,
                    reward and context, drifting with the agent's emotions

Design goals:
- Every scratch tensor of a tick lives in a TensorScope and is released on exit.
- Persistent slots (self-state, parameters, memory, previous emotions) are kept
  explicitly and released on replacement or cleanup().
- No error escapes SyntrometricAgent.process or EmotionalSpace.step; both degrade
  to a well-formed, possibly stale, result.
- Parameter adaptation is a bounded heuristic walk (pure function), not gradients.
- Telemetry: one line per tick, R/A/T/CV/I/Ψ | Mood | Act.

Requires: torch, numpy
"""

import os
import re
import json
import math
import time
import random
import logging
import argparse
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from statistics import mean
from typing import Any, Deque, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch
import torch.nn as nn

logger = logging.getLogger(__name__)

DTYPE = torch.float32

# -----------------------
# Configuration
# -----------------------

CONFIG: Dict[str, Any] = {
    "METRON_TAU": 0.1,
    "DIMENSIONS": 12,
    "CASCADE_LEVELS": 4,
    "CASCADE_STAGE": 2,
    "CASCADE_TYPE": "pyramidal",
    "RIH_SCALE": 0.5,
    "DYSVARIANT_PROB": 0.02,
    "Agent": {
        "EMOTION_DIM": 6,
        "HIDDEN_DIM": 64,
        "HISTORY_SIZE": 15,
        "SELF_STATE_LEARN_RATE": 0.05,
        "EMOTIONAL_DECAY_RATE": 0.97,
        "PERTURBATION_MODE": "continuous",
        "USE_HEAD_CLASSIFIER": True,
    },
    "Env": {
        "EVENT_FREQ": 0.015,
        "EVENT_DURATION": 120,
        "EVENT_GAP": 180,
        "BASE_EMOTION_DRIFT_RATE": 0.005,
        "BASE_EMOTION_REVERSION_RATE": 0.001,
    },
    "RL": {
        "PARAM_LEARN_RATE": 0.006,
        "PARAM_DECAY": 0.03,
        "HIGH_VARIANCE_THRESHOLD": 0.1,
    },
}

# (name, keywords, impact strength, base emotion change)
EMOTION_KEYWORDS: List[Tuple[str, List[str], float, float]] = [
    ("Joy", ["happy", "joy", "great", "wonderful", "love", "good", "nice", "yay", "fun",
             "excellent", "positive"], 0.9, 0.05),
    ("Fear", ["scary", "fear", "afraid", "nervous", "danger", "anxious", "worried", "threat",
              "panic"], 0.9, -0.05),
    ("Curiosity", ["interesting", "curious", "what", "how", "why", "explain", "learn",
                   "question", "investigate", "explore"], 0.8, 0.03),
    ("Frustration", ["ugh", "annoying", "frustrating", "bad", "hate", "stupid", "wrong",
                     "error", "glitch", "stuck", "fail"], 0.8, -0.05),
    ("Calm", ["calm", "peaceful", "relax", "quiet", "gentle", "serene", "okay", "fine",
              "stable", "neutral"], 0.7, 0.04),
    ("Surprise", ["wow", "whoa", "surprise", "really", "omg", "sudden", "unexpected",
                  "amazing", "incredible"], 0.85, 0.02),
]
EMOTION_NAMES = [name for name, _, _, _ in EMOTION_KEYWORDS]

HEAD_MOVEMENT_LABELS = ["nod", "shake", "tilt_left", "tilt_right", "idle"]

SESSION_VERSION = "2.3.1"
PARAM_MIN, PARAM_MAX = 0.05, 0.95
NUM_GRAPH_FEATURES = 2


def get_config_value(config: Optional[Dict[str, Any]], path: str, default: Any) -> Any:
    """Look up a dotted ``path`` in ``config``; missing or mistyped values fall back to ``default``."""
    node: Any = config if config is not None else CONFIG
    for key in path.split("."):
        if not isinstance(node, dict) or key not in node:
            logger.warning("Config value %s missing, using default %r", path, default)
            return default
        node = node[key]

    if default is None:
        return node
    if isinstance(default, bool):
        if isinstance(node, bool):
            return node
    elif isinstance(default, (int, float)):
        if isinstance(node, (int, float)) and not isinstance(node, bool) and math.isfinite(node):
            if isinstance(default, int) and not float(node).is_integer():
                logger.warning("Config value %s=%r is not integral, using default %r", path, node, default)
                return default
            return type(default)(node)
    elif isinstance(node, type(default)):
        return node
    logger.warning("Config value %s has unexpected type %s, using default %r",
                   path, type(node).__name__, default)
    return default


def _positive_int(config, path: str, default: int) -> int:
    value = get_config_value(config, path, default)
    if value < 1:
        logger.warning("Config value %s=%r must be positive, using default %r", path, value, default)
        return default
    return value


def emotion_names_for(emotion_dim: int) -> List[str]:
    return (EMOTION_NAMES + [f"Emotion{i}" for i in range(len(EMOTION_NAMES), emotion_dim)])[:emotion_dim]


# -----------------------
# Errors
# -----------------------

class SyntrometryError(Exception):
    pass


class BackendUnavailable(SyntrometryError):
    """The torch backend cannot allocate on the requested device."""


class DimensionMismatch(SyntrometryError, ValueError):
    """A persisted or injected vector has the wrong length."""


# -----------------------
# Shared utilities
# -----------------------

def set_seeds(seed: int):
    os.environ["PYTHONHASHSEED"] = str(seed)
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)
    torch.use_deterministic_algorithms(True, warn_only=True)
    torch.backends.cudnn.deterministic = True
    torch.backends.cudnn.benchmark = False


def clamp(x: float, lo: float, hi: float) -> float:
    return float(min(hi, max(lo, x)))


def _finite(x: Any, default: float = 0.0) -> float:
    try:
        value = float(x)
    except (TypeError, ValueError):
        return default
    return value if math.isfinite(value) else default


def coerce_vector(values: Any, length: int, name: str = "vector") -> List[float]:
    """Return ``values`` as ``length`` finite floats or raise DimensionMismatch."""
    if isinstance(values, torch.Tensor):
        values = values.detach().reshape(-1).tolist()
    try:
        arr = np.asarray(values, dtype=float).reshape(-1)
    except (TypeError, ValueError) as exc:
        raise DimensionMismatch(f"{name} is not numeric: {exc}") from exc
    if arr.size != length:
        raise DimensionMismatch(f"{name} has length {arr.size}, expected {length}")
    if not np.all(np.isfinite(arr)):
        raise DimensionMismatch(f"{name} contains non-finite values")
    return [float(v) for v in arr]


class SingleLineFormatter(logging.Formatter):
    """Indents continuation lines so multi-line messages stay aligned with the first."""

    def format(self, record):
        message = super().format(record)
        indent = " " * (len(self.formatTime(record)) + 3 + 15 + 3 + len(record.levelname) + 3)
        return message.replace("\n", f"\n{indent}")


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    formatter = SingleLineFormatter("%(asctime)s - %(module)-15s - %(levelname)s - %(message)s")

    for handler in list(root.handlers):
        if getattr(handler, "_syntrometry", False):
            root.removeHandler(handler)
            handler.close()

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console.setFormatter(formatter)
    console._syntrometry = True
    root.addHandler(console)

    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf8")
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(formatter)
        file_handler._syntrometry = True
        root.addHandler(file_handler)

    logging.getLogger("matplotlib").setLevel(logging.WARNING)


# -----------------------
# Tensor ownership
# -----------------------

def check_backend(device: Union[str, torch.device] = "cpu") -> torch.device:
    """Probe that torch can allocate and read back on ``device``."""
    try:
        dev = torch.device(device)
        probe = torch.zeros(1, dtype=DTYPE, device=dev)
        float(probe.sum().item())
    except Exception as exc:  # torch raises RuntimeError or AssertionError depending on the build
        raise BackendUnavailable(f"torch backend unusable on device {device!r}: {exc}") from exc
    release(probe)
    return dev


def release(tensor: Optional[torch.Tensor]):
    """Free the storage behind ``tensor``; other tensors sharing it keep their reference."""
    if tensor is None:
        return
    try:
        with torch.no_grad():
            tensor.set_()
    except RuntimeError as exc:
        # views and detached aliases refuse set_(); their storage goes with the last reference
        logger.debug("Could not release tensor of shape %s: %s", tuple(tensor.shape), exc)


class TensorScope:
    """
    Owns the scratch tensors of one unit of work and releases them on exit,
    whether the block finished or raised. ``keep`` promotes a tensor out of the
    scope; the caller then owns it and must ``release`` it exactly once.
    """

    def __init__(self, name: str = "scope"):
        self.name = name
        self._owned: List[torch.Tensor] = []
        self.released = 0
        self.closed = False

    def __enter__(self) -> "TensorScope":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def track(self, tensor: torch.Tensor) -> torch.Tensor:
        if self.closed:
            raise SyntrometryError(f"TensorScope {self.name!r} is closed")
        self._owned.append(tensor)
        return tensor

    def track_all(self, tensors: Iterable[torch.Tensor]) -> List[torch.Tensor]:
        return [self.track(t) for t in tensors]

    def keep(self, tensor: torch.Tensor) -> torch.Tensor:
        self._owned = [t for t in self._owned if t is not tensor]
        return tensor

    @property
    def owned(self) -> int:
        return len(self._owned)

    def close(self):
        while self._owned:
            release(self._owned.pop())
            self.released += 1
        self.closed = True


def _flat(x: Any) -> torch.Tensor:
    if isinstance(x, torch.Tensor):
        return x.detach().reshape(-1).to(DTYPE)
    return torch.as_tensor(x, dtype=DTYPE).reshape(-1)


# -----------------------
# Syntrometric operators
# -----------------------

class Enyphansyntrix:
    """Perturbation: Gaussian noise (continuous) or Metron quantization (discrete)."""

    MODES = ("continuous", "discrete")

    def __init__(self, mode: str = "continuous", tau: float = CONFIG["METRON_TAU"],
                 generator: Optional[torch.Generator] = None):
        if mode not in self.MODES:
            logger.warning("Unknown Enyphansyntrix mode %r, defaulting to continuous", mode)
            mode = "continuous"
        self.mode = mode
        self.tau = float(tau)
        self.generator = generator

    def apply(self, vector: torch.Tensor, scale: float = 0.01) -> torch.Tensor:
        if self.mode == "discrete":
            return torch.clamp(torch.round(vector / self.tau) * self.tau, -1.0, 1.0)
        noise = torch.randn(vector.shape, generator=self.generator, dtype=vector.dtype,
                            device=vector.device)
        return torch.clamp(vector + noise * float(scale), -1.0, 1.0)


class Affinitaetssyndrom:
    """Cosine affinity between two vectors, 0 for degenerate input."""

    def compute(self, a: Any, b: Any) -> float:
        try:
            va, vb = _flat(a), _flat(b)
            if va.numel() != vb.numel():
                raise DimensionMismatch(f"affinity over {va.numel()} vs {vb.numel()} elements")
            if va.numel() == 0:
                return 0.0
            norm_prod = va.norm().item() * vb.norm().item()
            if norm_prod < 1e-9:
                return 0.0
            return clamp(torch.dot(va, vb).item() / norm_prod, -1.0, 1.0)
        except Exception as exc:
            logger.warning("Affinity computation failed: %s", exc)
            return 0.0


class ReflexiveIntegration:
    """RIH: |mean| / std of the self-normalized vector, scaled into [0, 1]."""

    def __init__(self, rih_scale: float = CONFIG["RIH_SCALE"]):
        self.rih_scale = float(rih_scale)

    def compute(self, vector: Any) -> float:
        try:
            v = _flat(vector)
            if v.numel() == 0:
                return 0.0
            normalized = v / (v.norm() + 1e-8)
            variance = normalized.var(correction=0).item()
            if not math.isfinite(variance) or variance < 1e-9:
                return 0.0
            score = abs(normalized.mean().item()) / math.sqrt(variance) * self.rih_scale
            return clamp(score, 0.0, 1.0)
        except Exception as exc:
            logger.warning("RIH computation failed: %s", exc)
            return 0.0


class Synkolator:
    KINDS = ("pyramidal", "average")

    def __init__(self, kind: str = "pyramidal", stage: int = 2):
        if kind not in self.KINDS:
            logger.warning("Unknown Synkolator kind %r, defaulting to pyramidal", kind)
            kind = "pyramidal"
        self.kind = kind
        self.stage = max(2, int(stage))

    def apply(self, vector: torch.Tensor) -> torch.Tensor:
        if not isinstance(vector, torch.Tensor) or vector.dim() != 1 or vector.numel() == 0:
            shape = tuple(vector.shape) if isinstance(vector, torch.Tensor) else type(vector).__name__
            logger.warning("Synkolator(stage=%d) got invalid input %s", self.stage, shape)
            if isinstance(vector, torch.Tensor):
                return vector.new_empty(0)
            return torch.empty(0, dtype=DTYPE)
        if self.kind == "average":
            return vector.mean(dim=0, keepdim=True)
        # pyramidal: placeholder reduction, the stage passes the vector through unchanged
        return vector.clone()


class Strukturkondensation:
    """Cascade of Synkolator stages with arities stage, stage+1, ..."""

    def __init__(self, levels: int = CONFIG["CASCADE_LEVELS"], stage: int = CONFIG["CASCADE_STAGE"],
                 kind: Union[str, Sequence[str]] = "pyramidal"):
        levels = max(1, int(levels))
        kinds = [kind] * levels if isinstance(kind, str) else list(kind)
        if len(kinds) != levels:
            logger.warning("Cascade got %d stage kinds for %d levels, padding with pyramidal",
                           len(kinds), levels)
            kinds = (kinds + ["pyramidal"] * levels)[:levels]
        self.synkolators = [Synkolator(k, stage + i) for i, k in enumerate(kinds)]

    @property
    def levels(self) -> int:
        return len(self.synkolators)

    def apply(self, index: int, vector: torch.Tensor) -> torch.Tensor:
        return self.synkolators[index].apply(vector)

    def process(self, initial: torch.Tensor) -> List[torch.Tensor]:
        if not isinstance(initial, torch.Tensor) or initial.dim() != 1 or initial.numel() == 0:
            logger.warning("Strukturkondensation got invalid initial vector, returning empty history")
            if isinstance(initial, torch.Tensor):
                return [initial.new_empty(0)]
            return [torch.empty(0, dtype=DTYPE)]
        history = [initial.clone()]
        current = initial
        for synkolator in self.synkolators:
            current = synkolator.apply(current)
            history.append(current)
        return history


def adapt_parameters(trust: float, rih: float, cascade_variance: float,
                     integration: float, reflexivity: float,
                     learn_rate: float = CONFIG["RL"]["PARAM_LEARN_RATE"],
                     decay_rate: float = CONFIG["RL"]["PARAM_DECAY"],
                     variance_threshold: float = CONFIG["RL"]["HIGH_VARIANCE_THRESHOLD"]) -> Tuple[float, float]:
    """
    One step of the bounded heuristic walk over (integration, reflexivity).

    Coherent and trusted states push toward integration, incoherent or
    distrusted ones toward reflexivity; high cascade variance adds integration
    pressure, and both parameters revert toward 0.5.
    """
    d_integration = 0.0
    d_reflexivity = 0.0
    if rih > 0.7 and trust > 0.7:
        d_integration += 1.0
        d_reflexivity -= 1.0
    elif rih < 0.3 or trust < 0.4:
        d_integration -= 1.0
        d_reflexivity += 1.0
    if cascade_variance > variance_threshold:
        d_integration += 0.5 * clamp(cascade_variance, 0.0, 1.0)
    d_integration += (0.5 - integration) * decay_rate
    d_reflexivity += (0.5 - reflexivity) * decay_rate

    integration = clamp(integration + d_integration * learn_rate, PARAM_MIN, PARAM_MAX)
    reflexivity = clamp(reflexivity + d_reflexivity * learn_rate, PARAM_MIN, PARAM_MAX)
    return integration, reflexivity


def heuristic_head_movement(rih: float, avg_affinity: float, dominant_emotion: str) -> str:
    if rih > 0.7 and avg_affinity > 0.5:
        return "nod"
    if avg_affinity < -0.2 or (rih < 0.2 and dominant_emotion in ("Fear", "Frustration")):
        return "shake"
    if dominant_emotion in ("Curiosity", "Surprise"):
        return "tilt_right" if rih >= 0.5 else "tilt_left"
    return "idle"


# -----------------------
# Agent
# -----------------------

@dataclass
class MemoryEntry:
    timestamp: int
    belief_embedding: torch.Tensor


@dataclass
class AgentResponse:
    cascade_history: List[List[float]]
    rih_score: float
    affinities: List[float]
    avg_affinity: float
    emotions: List[float]
    dominant_emotion: str
    head_movement_label: str
    response_text: str
    integration: float
    reflexivity: float
    trust_score: float
    belief_norm: float
    feedback_norm: float
    self_state_norm: float
    cascade_variance: float
    cascade_features: List[float] = field(default_factory=lambda: [0.0, 0.0])
    value_estimate: float = 0.0
    ready: bool = True

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyntrometricModel(nn.Module):
    NETWORKS = ("belief_network", "cascade_input", "value_head", "feedback_head",
                "emotional_module", "head_movement_head")

    def __init__(self, dimensions=12, emotion_dim=6, hidden_dim=64,
                 num_graph_features=NUM_GRAPH_FEATURES, num_head_movements=len(HEAD_MOVEMENT_LABELS)):
        super().__init__()
        self.belief_input_dim = dimensions + num_graph_features + hidden_dim
        self.belief_network = nn.Sequential(
            nn.Linear(self.belief_input_dim, hidden_dim * 2), nn.ReLU(), nn.Dropout(0.1),
            nn.Linear(hidden_dim * 2, hidden_dim), nn.Tanh()
        )
        # belief -> cascade input space
        self.cascade_input = nn.Sequential(nn.Linear(hidden_dim, dimensions), nn.Tanh())
        self.value_head = nn.Linear(hidden_dim, 1)
        self.feedback_head = nn.Linear(hidden_dim, dimensions)
        # core state + previous emotions + reward + event flag
        self.emotional_module = nn.Sequential(
            nn.Linear(dimensions + emotion_dim + 2, 32), nn.ReLU(),
            nn.Linear(32, 16), nn.ReLU(),
            nn.Linear(16, emotion_dim), nn.Sigmoid()
        )
        # rih + affinity + dominant index + emotions
        self.head_movement_head = nn.Sequential(
            nn.Linear(3 + emotion_dim, 16), nn.ReLU(), nn.Linear(16, num_head_movements)
        )

        self.dimensions = dimensions
        self.emotion_dim = emotion_dim
        self.hidden_dim = hidden_dim

    def get_weights(self, name: str) -> List[Dict[str, Any]]:
        module = getattr(self, name)
        return [{"shape": list(t.shape), "data": t.detach().reshape(-1).tolist()}
                for t in module.state_dict().values()]

    def set_weights(self, name: str, weights: Any):
        module = getattr(self, name)
        current = module.state_dict()
        if not isinstance(weights, list) or len(weights) != len(current):
            raise DimensionMismatch(f"{name}: expected {len(current)} weight tensors")
        new_state = {}
        for (key, tensor), item in zip(current.items(), weights):
            if not isinstance(item, dict):
                raise DimensionMismatch(f"{name}.{key}: malformed weight entry")
            if list(item.get("shape", [])) != list(tensor.shape):
                raise DimensionMismatch(f"{name}.{key}: shape {item.get('shape')} != {list(tensor.shape)}")
            data = coerce_vector(item.get("data"), tensor.numel(), f"{name}.{key}")
            new_state[key] = torch.tensor(data, dtype=tensor.dtype, device=tensor.device).reshape(tensor.shape)
        module.load_state_dict(new_state)


class SyntrometricAgent:
    PERSISTENT_SLOTS = ("self_state", "integration_param", "reflexivity_param",
                        "prev_emotions", "latest_belief")

    def __init__(self, config: Optional[Dict[str, Any]] = None, seed: Optional[int] = None,
                 device: Union[str, torch.device] = "cpu"):
        cfg = CONFIG if config is None else config
        self.config = cfg
        self.seed = seed
        self.dimensions = _positive_int(cfg, "DIMENSIONS", 12)
        self.emotion_dim = _positive_int(cfg, "Agent.EMOTION_DIM", 6)
        self.hidden_dim = _positive_int(cfg, "Agent.HIDDEN_DIM", 64)
        self.history_size = _positive_int(cfg, "Agent.HISTORY_SIZE", 15)
        self.base_state_dim = self.dimensions + self.emotion_dim
        self.self_state_learn_rate = get_config_value(cfg, "Agent.SELF_STATE_LEARN_RATE", 0.05)
        self.emotional_decay_rate = get_config_value(cfg, "Agent.EMOTIONAL_DECAY_RATE", 0.97)
        self.use_head_classifier = get_config_value(cfg, "Agent.USE_HEAD_CLASSIFIER", True)
        self.param_learn_rate = get_config_value(cfg, "RL.PARAM_LEARN_RATE", 0.006)
        self.param_decay = get_config_value(cfg, "RL.PARAM_DECAY", 0.03)
        self.variance_threshold = get_config_value(cfg, "RL.HIGH_VARIANCE_THRESHOLD", 0.1)
        self.emotion_names = emotion_names_for(self.emotion_dim)

        # persistent slots, owned by the agent
        self.self_state: Optional[torch.Tensor] = None
        self.integration_param: Optional[torch.Tensor] = None
        self.reflexivity_param: Optional[torch.Tensor] = None
        self.prev_emotions: Optional[torch.Tensor] = None
        self.latest_belief: Optional[torch.Tensor] = None
        self.memory_buffer: Deque[MemoryEntry] = deque()

        self.last_rih = 0.0
        self.last_avg_affinity = 0.0
        self.last_cascade_variance = 0.0
        self.latest_trust = 1.0
        self.step_count = 0
        self.last_scope_released = 0
        self.model: Optional[SyntrometricModel] = None
        self.ready = False
        self.not_ready_reason: Optional[str] = None

        try:
            self.device = check_backend(device)
        except BackendUnavailable as exc:
            logger.error("SyntrometricAgent not initialized: %s", exc)
            self.device = None
            self.not_ready_reason = "numeric backend unavailable"
            return

        self.generator = torch.Generator(device=self.device)
        if seed is not None:
            self.generator.manual_seed(seed)
        else:
            self.generator.seed()
        self._build_model()
        self.enyphansyntrix = Enyphansyntrix(
            get_config_value(cfg, "Agent.PERTURBATION_MODE", "continuous"),
            tau=get_config_value(cfg, "METRON_TAU", 0.1),
            generator=self.generator,
        )
        self.strukturkondensation = Strukturkondensation(
            _positive_int(cfg, "CASCADE_LEVELS", 4),
            _positive_int(cfg, "CASCADE_STAGE", 2),
            get_config_value(cfg, "CASCADE_TYPE", "pyramidal"),
        )
        self.affinity = Affinitaetssyndrom()
        self.reflexive_integration = ReflexiveIntegration(get_config_value(cfg, "RIH_SCALE", 0.5))
        self._initialize_state()
        self.ready = True

    # ---- lifecycle ----

    def _build_model(self):
        with torch.random.fork_rng(devices=[], enabled=self.seed is not None):
            if self.seed is not None:
                torch.manual_seed(self.seed)
            self.model = SyntrometricModel(self.dimensions, self.emotion_dim, self.hidden_dim).to(self.device)
        self.model.eval()

    def _initialize_state(self):
        self._release_persistent()
        with torch.no_grad(), TensorScope("agent.init") as scope:
            init = scope.track(torch.rand(2, generator=self.generator, dtype=DTYPE, device=self.device))
            params = (init * 0.5 + 0.25).tolist()
            self.integration_param = self._scalar_slot(params[0])
            self.reflexivity_param = self._scalar_slot(params[1])
            self.self_state = torch.randn(self.hidden_dim, generator=self.generator, dtype=DTYPE,
                                          device=self.device) * 0.1
            self.prev_emotions = torch.zeros(1, self.emotion_dim, dtype=DTYPE, device=self.device)
        self.last_rih = 0.0
        self.last_avg_affinity = 0.0
        self.last_cascade_variance = 0.0
        self.latest_trust = 1.0
        self.step_count = 0

    def reset(self, reinitialize_networks: bool = False):
        if self.device is None:
            return
        if reinitialize_networks:
            self._build_model()
        self._initialize_state()
        self.ready = True
        self.not_ready_reason = None

    def cleanup(self):
        self._release_persistent()
        self.model = None
        self.ready = False
        self.not_ready_reason = "agent cleaned up"

    def _release_persistent(self):
        for name in self.PERSISTENT_SLOTS:
            release(getattr(self, name, None))
            setattr(self, name, None)
        while self.memory_buffer:
            release(self.memory_buffer.popleft().belief_embedding)

    def _replace_slot(self, name: str, tensor: Optional[torch.Tensor]):
        old = getattr(self, name)
        setattr(self, name, tensor)
        if old is not None and old is not tensor:
            release(old)

    def _scalar_slot(self, value: float) -> torch.Tensor:
        return torch.tensor([value], dtype=DTYPE, device=self.device)

    def persistent_buffer_count(self) -> int:
        slots = sum(1 for name in self.PERSISTENT_SLOTS if getattr(self, name) is not None)
        return slots + len(self.memory_buffer)

    @property
    def integration(self) -> float:
        return float(self.integration_param.item()) if self.integration_param is not None else 0.5

    @property
    def reflexivity(self) -> float:
        return float(self.reflexivity_param.item()) if self.reflexivity_param is not None else 0.5

    def get_latest_belief_embedding(self) -> Optional[torch.Tensor]:
        return self.latest_belief.clone() if self.latest_belief is not None else None

    # ---- per-tick pipeline ----

    def process(self, raw_state: Any, graph_features: Any = None,
                environment_context: Any = None) -> AgentResponse:
        if not self.ready:
            return self._not_ready_response(self.not_ready_reason or "agent not initialized")

        self.step_count += 1
        integration = self.integration
        reflexivity = self.reflexivity
        core_values = self._core_slice(raw_state)
        graph_values = self._graph_values(graph_features)

        failure: Optional[str] = None
        belief: Optional[torch.Tensor] = None
        try:
            outcome = self._core_step(core_values, graph_values, integration, reflexivity)
            belief = outcome.pop("belief")
            self.update_memory(belief)
            self._update_self_state(belief, outcome["trust"], integration)
            self._learn_parameters(outcome["trust"], outcome["rih"], outcome["cascade_variance"])
            self._replace_slot("latest_belief", belief)
            self.last_rih = outcome["rih"]
            self.last_avg_affinity = outcome["avg_affinity"]
            self.last_cascade_variance = outcome["cascade_variance"]
            self.latest_trust = outcome["trust"]
        except Exception as exc:
            logger.warning("Agent core step %d failed, reusing last known values: %s", self.step_count, exc)
            failure = f"core processing failed ({exc})"
            if belief is not None and belief is not self.latest_belief:
                release(belief)
            outcome = self._fallback_outcome()

        reward = _finite(_context_value(environment_context, "reward", 0.0))
        event_active = _context_value(environment_context, "event_type", None) is not None
        try:
            emotions = self._update_emotions(core_values, reward, event_active, self.integration)
        except Exception as exc:
            logger.warning("Emotion update failed, decaying previous emotions: %s", exc)
            emotions = self._decayed_emotions()

        head_movement, dominant_idx = self._predict_head_movement(outcome["rih"], outcome["avg_affinity"], emotions)
        dominant = self.emotion_names[dominant_idx]
        status = (f"R:{outcome['rih']:.2f} A:{outcome['avg_affinity']:.2f} T:{outcome['trust']:.2f} "
                  f"CV:{outcome['cascade_variance']:.2f} I:{self.integration:.2f} Ψ:{self.reflexivity:.2f} "
                  f"| Mood:{dominant} | Act:{head_movement}")
        if failure:
            status = f"Not ready: {failure} | {status}"

        return AgentResponse(
            cascade_history=outcome["history"],
            rih_score=outcome["rih"],
            affinities=outcome["affinities"],
            avg_affinity=outcome["avg_affinity"],
            emotions=emotions,
            dominant_emotion=dominant,
            head_movement_label=head_movement,
            response_text=status,
            integration=self.integration,
            reflexivity=self.reflexivity,
            trust_score=outcome["trust"],
            belief_norm=outcome["belief_norm"],
            feedback_norm=outcome["feedback_norm"],
            self_state_norm=float(self.self_state.norm().item()) if self.self_state is not None else 0.0,
            cascade_variance=outcome["cascade_variance"],
            cascade_features=outcome["cascade_features"],
            value_estimate=outcome["value"],
            ready=failure is None,
        )

    def _core_step(self, core_values: List[float], graph_values: List[float],
                   integration: float, reflexivity: float) -> Dict[str, Any]:
        with torch.no_grad(), TensorScope("agent.process") as scope:
            core = scope.track(torch.tensor([core_values], dtype=DTYPE, device=self.device))
            rih_modulation = self.last_rih * (2.0 * reflexivity - 1.0)
            modulated = scope.track(torch.clamp(core + rih_modulation * 0.1, -1.0, 1.0))
            # low coherence or high reflexivity -> more exploration noise
            scale = clamp(0.005 + (1.0 - self.last_rih) * 0.02 + reflexivity * 0.02, 0.001, 0.05)
            perturbed = scope.track(self.enyphansyntrix.apply(modulated, scale))

            graph = scope.track(torch.tensor([graph_values], dtype=DTYPE, device=self.device))
            self_state = self._checked_self_state()
            belief_input = scope.track(torch.cat([perturbed, graph, self_state.unsqueeze(0)], dim=1))
            if belief_input.shape[1] != self.model.belief_input_dim:
                raise DimensionMismatch(f"belief input has {belief_input.shape[1]} features, "
                                        f"expected {self.model.belief_input_dim}")
            belief = scope.track(self.model.belief_network(belief_input))
            belief_flat = belief[0]

            cascade_input = scope.track(self.model.cascade_input(belief))
            history = scope.track_all(self.strukturkondensation.process(cascade_input[0]))
            history_arrays = [h.tolist() for h in history]
            final = history[-1]
            rih = self.reflexive_integration.compute(final)
            affinities = [self.affinity.compute(history[i], history[i + 1]) for i in range(len(history) - 1)]
            avg_affinity = float(mean(affinities)) if affinities else 0.0

            trust = self._compute_trust(belief_flat)

            cascade_mean = float(final.mean().item()) if final.numel() > 0 else 0.0
            cascade_variance = 0.0
            if final.numel() > 1:
                cascade_variance = clamp(_finite(final.var(correction=0).item()), 0.0, 10.0)

            value = scope.track(self.model.value_head(belief))
            feedback = scope.track(self.model.feedback_head(belief))
            outcome = {
                "history": history_arrays,
                "rih": rih,
                "affinities": affinities,
                "avg_affinity": avg_affinity,
                "trust": trust,
                "cascade_variance": cascade_variance,
                "cascade_features": [cascade_mean, cascade_variance],
                "value": float(value.item()),
                "belief_norm": float(belief.norm().item()),
                "feedback_norm": float(feedback.norm().item()),
                "belief": scope.keep(belief_flat.clone()),
            }
        self.last_scope_released = scope.released
        return outcome

    def _fallback_outcome(self) -> Dict[str, Any]:
        return {
            "history": [],
            "rih": self.last_rih,
            "affinities": [],
            "avg_affinity": self.last_avg_affinity,
            "trust": self.latest_trust,
            "cascade_variance": self.last_cascade_variance,
            "cascade_features": [0.0, self.last_cascade_variance],
            "value": 0.0,
            "belief_norm": 0.0,
            "feedback_norm": 0.0,
        }

    def _not_ready_response(self, reason: str) -> AgentResponse:
        return AgentResponse(
            cascade_history=[], rih_score=self.last_rih, affinities=[], avg_affinity=0.0,
            emotions=[0.0] * self.emotion_dim, dominant_emotion=self.emotion_names[0],
            head_movement_label="idle", response_text=f"Not ready: {reason}",
            integration=self.integration, reflexivity=self.reflexivity, trust_score=self.latest_trust,
            belief_norm=0.0, feedback_norm=0.0, self_state_norm=0.0,
            cascade_variance=self.last_cascade_variance, ready=False,
        )

    def _core_slice(self, raw_state: Any) -> List[float]:
        try:
            if isinstance(raw_state, torch.Tensor):
                raw_state = raw_state.detach().reshape(-1).tolist()
            arr = np.nan_to_num(np.asarray(raw_state, dtype=float).reshape(-1))
        except (TypeError, ValueError) as exc:
            logger.warning("Agent received unusable state (%s), using zeros", exc)
            arr = np.zeros(self.base_state_dim)
        if arr.size != self.base_state_dim and arr.size != self.dimensions:
            logger.debug("State length %d padded/truncated to %d", arr.size, self.base_state_dim)
        padded = np.zeros(self.base_state_dim)
        n = min(arr.size, self.base_state_dim)
        padded[:n] = arr[:n]
        return [float(v) for v in np.clip(padded[:self.dimensions], -1.0, 1.0)]

    def _graph_values(self, graph_features: Any) -> List[float]:
        if graph_features is None:
            return [0.0] * NUM_GRAPH_FEATURES
        try:
            return coerce_vector(graph_features, NUM_GRAPH_FEATURES, "graph_features")
        except DimensionMismatch as exc:
            logger.warning("%s, using zeros", exc)
            return [0.0] * NUM_GRAPH_FEATURES

    def _checked_self_state(self) -> torch.Tensor:
        if self.self_state is None or self.self_state.numel() != self.hidden_dim:
            logger.warning("Self-state missing or wrong size, resetting to zeros")
            self._replace_slot("self_state", torch.zeros(self.hidden_dim, dtype=DTYPE, device=self.device))
        return self.self_state

    def _compute_trust(self, current: torch.Tensor) -> float:
        if not isinstance(current, torch.Tensor) or current.dim() != 1 or current.numel() == 0:
            logger.warning("Trust requested for an invalid embedding")
            return 0.5
        if not self.memory_buffer:
            return 1.0
        if current.norm().item() < 1e-9:
            return 0.0
        similarities = []
        for entry in self.memory_buffer:
            past = entry.belief_embedding
            if past.numel() != current.numel():
                logger.debug("Skipping memory entry %d with %d dims", entry.timestamp, past.numel())
                continue
            similarities.append(self.affinity.compute(current, past))
        if not similarities:
            return 0.5
        return clamp((mean(similarities) + 1.0) / 2.0, 0.0, 1.0)

    def update_memory(self, belief: torch.Tensor):
        """Push a clone of ``belief``; evicted entries are released oldest first."""
        self.memory_buffer.append(MemoryEntry(self.step_count, belief.detach().clone()))
        while len(self.memory_buffer) > self.history_size:
            release(self.memory_buffer.popleft().belief_embedding)

    def _update_self_state(self, belief: torch.Tensor, trust: float, integration: float):
        learn_rate = self.self_state_learn_rate * (0.5 + integration)
        decay = clamp(1.0 - learn_rate, 0.85, 0.99)
        current = self._checked_self_state()
        if belief.numel() != current.numel():
            logger.warning("Belief (%d) and self-state (%d) sizes differ, skipping update",
                           belief.numel(), current.numel())
            return
        with torch.no_grad():
            updated = current * decay + belief.reshape(-1) * (trust * learn_rate)
        self._replace_slot("self_state", updated)

    def _learn_parameters(self, trust: float, rih: float, cascade_variance: float):
        integration, reflexivity = adapt_parameters(
            trust, rih, cascade_variance, self.integration, self.reflexivity,
            learn_rate=self.param_learn_rate, decay_rate=self.param_decay,
            variance_threshold=self.variance_threshold,
        )
        self._replace_slot("integration_param", self._scalar_slot(integration))
        self._replace_slot("reflexivity_param", self._scalar_slot(reflexivity))

    def _checked_prev_emotions(self) -> torch.Tensor:
        if self.prev_emotions is None or tuple(self.prev_emotions.shape) != (1, self.emotion_dim):
            logger.warning("Previous emotions missing or wrong size, resetting to zeros")
            self._replace_slot("prev_emotions", torch.zeros(1, self.emotion_dim, dtype=DTYPE, device=self.device))
        return self.prev_emotions

    def _update_emotions(self, core_values: List[float], reward: float, event_active: bool,
                         integration: float) -> List[float]:
        with torch.no_grad(), TensorScope("agent.emotions") as scope:
            prev = self._checked_prev_emotions()
            state = scope.track(torch.tensor([core_values], dtype=DTYPE, device=self.device))
            extras = scope.track(torch.tensor([[reward, 1.0 if event_active else 0.0]], dtype=DTYPE,
                                              device=self.device))
            inputs = scope.track(torch.cat([state, prev, extras], dim=1))
            predicted = scope.track(self.model.emotional_module(inputs))
            uptake = clamp((1.0 - self.emotional_decay_rate) * (0.5 + integration), 0.0, 1.0)
            blended = scope.track(torch.clamp(prev * (1.0 - uptake) + predicted * uptake, 0.0, 1.0))
            new_prev = scope.keep(blended)
        self._replace_slot("prev_emotions", new_prev)
        return new_prev[0].tolist()

    def _decayed_emotions(self) -> List[float]:
        if self.prev_emotions is not None and tuple(self.prev_emotions.shape) == (1, self.emotion_dim):
            decayed = torch.clamp(self.prev_emotions * self.emotional_decay_rate, 0.0, 1.0)
        else:
            decayed = torch.zeros(1, self.emotion_dim, dtype=DTYPE, device=self.device)
        self._replace_slot("prev_emotions", decayed)
        return decayed[0].tolist()

    def _predict_head_movement(self, rih: float, avg_affinity: float,
                               emotions: List[float]) -> Tuple[str, int]:
        dominant_idx = int(np.argmax(emotions)) if len(emotions) else 0
        if self.use_head_classifier:
            try:
                with torch.no_grad(), TensorScope("agent.head") as scope:
                    inputs = scope.track(torch.tensor([[rih, avg_affinity, float(dominant_idx)] + list(emotions)],
                                                      dtype=DTYPE, device=self.device))
                    logits = scope.track(self.model.head_movement_head(inputs))
                    label_idx = int(torch.argmax(logits, dim=1).item())
                return HEAD_MOVEMENT_LABELS[label_idx], dominant_idx
            except Exception as exc:
                logger.warning("Head movement classifier failed, using heuristic: %s", exc)
        return heuristic_head_movement(rih, avg_affinity, self.emotion_names[dominant_idx]), dominant_idx

    # ---- persistence ----

    def get_state(self) -> Dict[str, Any]:
        if not self.ready:
            return {"version": SESSION_VERSION, "error": self.not_ready_reason or "agent not ready"}
        state = {
            "version": SESSION_VERSION,
            "prev_emotions": self._checked_prev_emotions()[0].tolist(),
            "memory_buffer": [{"timestamp": e.timestamp, "belief_embedding": e.belief_embedding.tolist()}
                              for e in self.memory_buffer],
            "last_rih": self.last_rih,
            "last_avg_affinity": self.last_avg_affinity,
            "last_cascade_variance": self.last_cascade_variance,
            "latest_trust_score": self.latest_trust,
            "integration_param": self.integration,
            "reflexivity_param": self.reflexivity,
            "self_state": self._checked_self_state().tolist(),
            "step_count": self.step_count,
        }
        for name in SyntrometricModel.NETWORKS:
            state[f"{name}_weights"] = self.model.get_weights(name)
        return state

    def load_state(self, state: Any) -> bool:
        if not self.ready:
            logger.error("Cannot load state into an agent that is not ready")
            return False
        if not isinstance(state, dict) or "error" in state:
            logger.error("Invalid agent state, resetting agent")
            self.reset(reinitialize_networks=True)
            return False
        try:
            if state.get("version") != SESSION_VERSION:
                logger.warning("Loading agent state version %r (expected %s)", state.get("version"), SESSION_VERSION)
            self._load_fields(state)
        except Exception as exc:
            logger.error("Failed to load agent state (%s), resetting agent", exc)
            self.reset(reinitialize_networks=True)
            return False
        logger.info("Agent state loaded (%d memory entries)", len(self.memory_buffer))
        return True

    def _load_fields(self, state: Dict[str, Any]):
        prev = self._vector_field(state, "prev_emotions", self.emotion_dim, [0.0] * self.emotion_dim)
        self._replace_slot("prev_emotions", torch.tensor([prev], dtype=DTYPE, device=self.device).clamp(0.0, 1.0))

        self_state = self._vector_field(state, "self_state", self.hidden_dim, [0.0] * self.hidden_dim)
        self._replace_slot("self_state", torch.tensor(self_state, dtype=DTYPE, device=self.device))

        entries = state.get("memory_buffer", [])
        if not isinstance(entries, list):
            logger.warning("memory_buffer is not a list, clearing memory")
            entries = []
        while self.memory_buffer:
            release(self.memory_buffer.popleft().belief_embedding)
        for i, entry in enumerate(entries[-self.history_size:]):
            try:
                values = coerce_vector(entry.get("belief_embedding"), self.hidden_dim, f"memory_buffer[{i}]")
            except (DimensionMismatch, AttributeError) as exc:
                logger.warning("Dropping memory entry %d: %s", i, exc)
                continue
            timestamp = int(_finite(entry.get("timestamp"), 0))
            self.memory_buffer.append(MemoryEntry(timestamp, torch.tensor(values, dtype=DTYPE, device=self.device)))

        self.last_rih = clamp(_finite(state.get("last_rih"), 0.0), 0.0, 1.0)
        self.last_avg_affinity = clamp(_finite(state.get("last_avg_affinity"), 0.0), -1.0, 1.0)
        self.last_cascade_variance = clamp(_finite(state.get("last_cascade_variance"), 0.0), 0.0, 10.0)
        self.latest_trust = clamp(_finite(state.get("latest_trust_score"), 1.0), 0.0, 1.0)
        integration = clamp(_finite(state.get("integration_param"), 0.5), PARAM_MIN, PARAM_MAX)
        reflexivity = clamp(_finite(state.get("reflexivity_param"), 0.5), PARAM_MIN, PARAM_MAX)
        self._replace_slot("integration_param", self._scalar_slot(integration))
        self._replace_slot("reflexivity_param", self._scalar_slot(reflexivity))
        self.step_count = max(0, int(_finite(state.get("step_count"), 0)))

        for name in SyntrometricModel.NETWORKS:
            weights = state.get(f"{name}_weights")
            if weights is None:
                logger.warning("No saved weights for %s, keeping current weights", name)
                continue
            try:
                self.model.set_weights(name, weights)
            except DimensionMismatch as exc:
                logger.warning("Weights for %s rejected (%s), keeping current weights", name, exc)

        self._replace_slot("latest_belief", None)

    def _vector_field(self, state: Dict[str, Any], key: str, length: int, default: List[float]) -> List[float]:
        try:
            return coerce_vector(state.get(key), length, key)
        except DimensionMismatch as exc:
            logger.warning("%s, resetting to default", exc)
            return default


def _context_value(context: Any, key: str, default: Any) -> Any:
    if context is None:
        return default
    if isinstance(context, dict):
        return context.get(key, default)
    return getattr(context, key, default)


# -----------------------
# Emotional environment
# -----------------------

class EnvPhase(str, Enum):
    STABLE = "stable"
    EVENT_ACTIVE = "event_active"
    GAP = "gap"


@dataclass
class EnvironmentEvent:
    type: str
    context: str
    base_reward: float


@dataclass
class StepResult:
    state: Tuple[float, ...]
    reward: float
    done: bool
    context: str
    event_type: Optional[str]


EVENT_TEMPLATES = [
    EnvironmentEvent("Joy", "A pleasant resonance occurs in the field.", 1.5),
    EnvironmentEvent("Fear", "A dissonant pattern is detected nearby.", -1.8),
    EnvironmentEvent("Curiosity", "An unexpected structural variation appears.", 1.2),
    EnvironmentEvent("Frustration", "System encounters processing resistance.", -1.0),
    EnvironmentEvent("Calm", "Patterns stabilize into local harmony.", 0.8),
    EnvironmentEvent("Surprise", "A sudden cascade shift happens.", 1.6),
]
INITIAL_BASE_EMOTIONS = [0.6, 0.1, 0.3, 0.1, 0.5, 0.2]


class EmotionalSpace:
    def __init__(self, config: Optional[Dict[str, Any]] = None, seed: Optional[int] = None,
                 device: Union[str, torch.device] = "cpu"):
        cfg = CONFIG if config is None else config
        self.config = cfg
        self.dimensions = _positive_int(cfg, "DIMENSIONS", 12)
        self.emotion_dim = _positive_int(cfg, "Agent.EMOTION_DIM", 6)
        self.state_dim = self.dimensions + self.emotion_dim
        self.event_freq = get_config_value(cfg, "Env.EVENT_FREQ", 0.015)
        self.event_duration = _positive_int(cfg, "Env.EVENT_DURATION", 120)
        self.event_gap = max(0, get_config_value(cfg, "Env.EVENT_GAP", 180))
        self.drift_rate = get_config_value(cfg, "Env.BASE_EMOTION_DRIFT_RATE", 0.005)
        self.reversion_rate = get_config_value(cfg, "Env.BASE_EMOTION_REVERSION_RATE", 0.001)
        self.dysvariant_prob = get_config_value(cfg, "DYSVARIANT_PROB", 0.02)
        self.emotion_names = emotion_names_for(self.emotion_dim)

        self.events = [e for e in EVENT_TEMPLATES if e.type in self.emotion_names]
        if len(self.events) < self.emotion_dim:
            logger.warning("Only %d event types for %d emotions; extra emotions never trigger events",
                           len(self.events), self.emotion_dim)

        self.rng = np.random.default_rng(seed)
        self.base_emotions: Optional[torch.Tensor] = None
        self.current_state_vector = np.zeros(self.state_dim)
        self.step_count = 0
        self.event_timer = 0
        self.gap_timer = 0
        self.current_event: Optional[EnvironmentEvent] = None
        self.dysvariant_count = 0
        self.ready = False
        self.not_ready_reason: Optional[str] = None

        try:
            self.device = check_backend(device)
        except BackendUnavailable as exc:
            logger.error("EmotionalSpace not initialized: %s", exc)
            self.device = None
            self.not_ready_reason = "numeric backend unavailable"
            return
        self.ready = True
        self.reset()

    @property
    def phase(self) -> EnvPhase:
        if self.event_timer > 0:
            return EnvPhase.EVENT_ACTIVE
        if self.gap_timer > 0:
            return EnvPhase.GAP
        return EnvPhase.STABLE

    @property
    def event_type(self) -> Optional[str]:
        return self.current_event.type if self.current_event is not None else None

    def base_emotion_values(self) -> List[float]:
        if self.base_emotions is None:
            return [0.5] * self.emotion_dim
        return self.base_emotions.tolist()

    def _default_base_emotions(self) -> List[float]:
        return (INITIAL_BASE_EMOTIONS + [0.5] * self.emotion_dim)[:self.emotion_dim]

    def _replace_base(self, tensor: torch.Tensor):
        old = self.base_emotions
        self.base_emotions = tensor
        if old is not None and old is not tensor:
            release(old)

    def _emit_state(self) -> Tuple[float, ...]:
        core = np.clip(self.current_state_vector[:self.dimensions], -1.0, 1.0)
        emotions = np.clip(self.current_state_vector[self.dimensions:self.state_dim], 0.0, 1.0)
        return tuple(float(v) for v in np.concatenate([core, emotions]))

    def reset(self) -> Tuple[float, ...]:
        if not self.ready:
            return tuple([0.0] * self.state_dim)
        self._replace_base(torch.tensor(self._default_base_emotions(), dtype=DTYPE, device=self.device))
        self.step_count = 0
        self.event_timer = 0
        self.gap_timer = self.event_gap
        self.current_event = None
        self.dysvariant_count = 0
        self.current_state_vector = np.zeros(self.state_dim)
        self._update_state_vector(None, 0.0)
        return self._emit_state()

    def cleanup(self):
        self._replace_base(None)
        self.ready = False
        self.not_ready_reason = "environment cleaned up"

    def step(self, agent_emotions: Any = None, rih: float = 0.0, avg_affinity: float = 0.0) -> StepResult:
        if not self.ready:
            return StepResult(tuple([0.0] * self.state_dim), 0.0, False, "Environment not ready.", None)
        try:
            return self._step(agent_emotions, _finite(rih), _finite(avg_affinity))
        except Exception as exc:
            logger.warning("Environment step %d failed: %s", self.step_count, exc)
            return StepResult(self._emit_state(), 0.0, False, "Environment error.", None)

    def _step(self, agent_emotions: Any, rih: float, avg_affinity: float) -> StepResult:
        self.step_count += 1
        emotions = self._agent_emotion_values(agent_emotions)
        self._drift_base_emotions(emotions)

        reward = 0.0
        context = "System stable."
        event_index: Optional[int] = None
        event_reward = 0.0

        if self.event_timer > 0 and self.current_event is not None:
            self.event_timer -= 1
            event = self.current_event
            event_index = self.emotion_names.index(event.type)
            event_reward = event.base_reward
            reward = event.base_reward * clamp(self.event_timer / self.event_duration, 0.0, 1.0)
            context = event.context
            if self.event_timer <= 0:
                logger.debug("Event %s concluded at step %d", event.type, self.step_count)
                self.current_event = None
                self.gap_timer = self.event_gap
                context = "Event concluded."
        elif self.gap_timer > 0:
            self.gap_timer -= 1
        else:
            triggered = self._maybe_trigger_event(emotions)
            if triggered is None:
                self.gap_timer = self.event_gap
            else:
                event_index, reward = triggered
                event_reward = self.current_event.base_reward
                context = self.current_event.context

        self._update_state_vector(event_index, event_reward)

        # applied after the rebuild so it survives into the emitted state
        dys_prob = self.dysvariant_prob * (1.0 + (1.0 - clamp(rih, 0.0, 1.0)) * 0.5)
        if self.rng.random() < dys_prob:
            dim = int(self.rng.integers(self.dimensions))
            amplitude = (self.rng.random() - 0.5) * 0.35 * (1.1 - clamp(avg_affinity, -1.0, 1.0))
            self.current_state_vector[dim] = clamp(self.current_state_vector[dim] + amplitude, -1.0, 1.0)
            self.dysvariant_count += 1
            context += " (Dysvariant fluctuation)"

        return StepResult(self._emit_state(), float(reward), False, context, self.event_type)

    def _agent_emotion_values(self, agent_emotions: Any) -> List[float]:
        if agent_emotions is None:
            return [0.0] * self.emotion_dim
        try:
            values = coerce_vector(agent_emotions, self.emotion_dim, "agent emotions")
        except DimensionMismatch as exc:
            logger.warning("%s, using zeros", exc)
            return [0.0] * self.emotion_dim
        return [clamp(v, 0.0, 1.0) for v in values]

    def _drift_base_emotions(self, agent_emotions: List[float]):
        with torch.no_grad(), TensorScope("env.drift") as scope:
            agent = scope.track(torch.tensor(agent_emotions, dtype=DTYPE, device=self.device))
            base = self.base_emotions
            drifted = scope.track(base + (agent - base) * self.drift_rate + (0.5 - base) * self.reversion_rate)
            new_base = scope.keep(scope.track(torch.clamp(drifted, 0.0, 1.0)))
        self._replace_base(new_base)

    def _maybe_trigger_event(self, emotions: List[float]) -> Optional[Tuple[int, float]]:
        """Sample an event biased toward the agent's stronger emotions."""
        intensity = float(np.mean(emotions)) if len(emotions) else 0.0
        probability = clamp(self.event_freq * (1.0 + intensity * 1.5), 0.0, 0.95)
        if not self.events or self.rng.random() >= probability:
            return None

        candidates = [self.emotion_names.index(e.type) for e in self.events]
        weights = np.array([emotions[i] * 0.5 + 0.5 for i in candidates])
        cumulative = np.cumsum(weights / weights.sum())
        draw = self.rng.random()
        pick = int(np.searchsorted(cumulative, draw, side="right"))
        pick = min(pick, len(candidates) - 1)
        emotion_index = candidates[pick]

        template = self.events[pick]
        self.current_event = EnvironmentEvent(template.type, template.context, template.base_reward)
        self.event_timer = self.event_duration
        self.gap_timer = 0
        reward = template.base_reward * (emotions[emotion_index] * 0.7 + 0.3)
        logger.info("Event %s triggered at step %d (p=%.3f)", template.type, self.step_count, probability)
        return emotion_index, reward

    def _update_state_vector(self, event_index: Optional[int], event_reward: float):
        D, E = self.dimensions, self.emotion_dim
        b = self.base_emotion_values()

        def base(i: int) -> float:
            return b[i] if i < E else 0.5

        core = np.array(self.current_state_vector[:D], dtype=float)
        if D > 0:
            core[0] = (base(0) - base(1)) * 0.8
        if D > 1:
            core[1] = (base(4) - base(3)) * 0.7
        if D > 2:
            core[2] = base(2) * 1.5 - 0.5
        if D > 3:
            core[3] = base(5) * 1.2 - 0.3
        for i in range(4, D):
            influence = ((b[i % E] - 0.5) - (b[(i + E // 2) % E] - 0.5)) * 0.1
            core[i] = core[i] * 0.97 + influence + (self.rng.random() - 0.5) * 0.04

        if event_index is not None and D > 0:
            sign = 1.0 if event_reward > 0 else -1.0
            primary = event_index % D
            secondary = (event_index + D // 3) % D
            core[primary] += 0.5 * sign
            if secondary != primary:
                core[secondary] += 0.2 * sign
            others = [i for i in range(D) if i not in (primary, secondary)]
            if others:
                for i in self.rng.choice(others, size=min(3, len(others)), replace=False):
                    core[int(i)] += (self.rng.random() - 0.5) * 0.15

        self.current_state_vector = np.concatenate([np.clip(core, -1.0, 1.0), np.clip(b, 0.0, 1.0)])

    def get_emotional_impact_from_text(self, text: str) -> List[float]:
        """Keyword impact of user text; matched emotions also nudge the base emotions."""
        impact = [0.0] * self.emotion_dim
        if not self.ready:
            return impact
        tokens = set(re.findall(r"[a-z']+", (text or "").lower()))
        deltas = [0.0] * self.emotion_dim
        hit = False
        for idx, (name, keywords, strength, base_change) in enumerate(EMOTION_KEYWORDS[:self.emotion_dim]):
            if any(keyword in tokens for keyword in keywords):
                impact[idx] = max(impact[idx], strength)
                deltas[idx] += base_change
                hit = True

        if hit:
            with torch.no_grad(), TensorScope("env.text") as scope:
                delta = scope.track(torch.tensor(deltas, dtype=DTYPE, device=self.device))
                new_base = scope.keep(scope.track(torch.clamp(self.base_emotions + delta, 0.0, 1.0)))
            self._replace_base(new_base)
        else:
            for name, value in (("Curiosity", 0.3), ("Calm", 0.2)):
                if name in self.emotion_names:
                    impact[self.emotion_names.index(name)] = value
        return [clamp(v, 0.0, 1.0) for v in impact]

    def get_state(self) -> Dict[str, Any]:
        return {
            "current_state_vector": [float(v) for v in self.current_state_vector],
            "base_emotions": self.base_emotion_values(),
            "step_count": self.step_count,
            "event_timer": self.event_timer,
            "gap_timer": self.gap_timer,
            "current_event": asdict(self.current_event) if self.current_event is not None else None,
        }

    def load_state(self, state: Any) -> bool:
        if not self.ready:
            logger.error("Cannot load state into an environment that is not ready")
            return False
        if not isinstance(state, dict):
            logger.error("Invalid environment state, resetting environment")
            self.reset()
            return False
        try:
            self._load_fields(state)
        except Exception as exc:
            logger.error("Failed to load environment state (%s), resetting environment", exc)
            self.reset()
            return False
        return True

    def _load_fields(self, state: Dict[str, Any]):
        try:
            vector = coerce_vector(state.get("current_state_vector"), self.state_dim, "current_state_vector")
        except DimensionMismatch as exc:
            logger.warning("%s, resetting to zeros", exc)
            vector = [0.0] * self.state_dim
        self.current_state_vector = np.array(vector, dtype=float)

        try:
            base = coerce_vector(state.get("base_emotions"), self.emotion_dim, "base_emotions")
        except DimensionMismatch as exc:
            logger.warning("%s, resetting to defaults", exc)
            base = self._default_base_emotions()
        self._replace_base(torch.tensor([clamp(v, 0.0, 1.0) for v in base], dtype=DTYPE, device=self.device))

        self.step_count = self._counter(state, "step_count", 0)
        self.event_timer = self._counter(state, "event_timer", 0)
        self.gap_timer = self._counter(state, "gap_timer", self.event_gap)

        self.current_event = None
        event = state.get("current_event")
        if isinstance(event, dict):
            template = next((e for e in self.events if e.type == event.get("type")), None)
            if template is None:
                logger.warning("Saved event type %r is not valid, clearing event", event.get("type"))
            else:
                base_reward = _finite(event.get("base_reward"), template.base_reward)
                self.current_event = EnvironmentEvent(template.type, str(event.get("context", template.context)),
                                                      base_reward)
        elif event is not None:
            logger.warning("Saved event is malformed, clearing event")

        if self.event_timer > 0 and self.current_event is None:
            logger.warning("Event timer set without an event, resetting event state")
            self.event_timer = 0
            self.gap_timer = self.gap_timer or self.event_gap
        if self.current_event is not None and self.event_timer <= 0:
            self.current_event = None
        if self.event_timer > 0:
            self.gap_timer = 0

    @staticmethod
    def _counter(state: Dict[str, Any], key: str, default: int) -> int:
        value = state.get(key, default)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0:
            logger.warning("Saved %s=%r invalid, using %r", key, value, default)
            return default
        return int(value)


def calculate_graph_features(state: Any, dimensions: int = CONFIG["DIMENSIONS"]) -> List[float]:
    """Two scalar features of the core state: mean activation magnitude and spread."""
    core = np.nan_to_num(np.asarray(state, dtype=float).reshape(-1)[:dimensions])
    if core.size == 0:
        return [0.0, 0.0]
    return [clamp(float(np.mean(np.abs(core))), 0.0, 1.0), clamp(float(np.std(core)), 0.0, 1.0)]


# -----------------------
# Orchestration (environment <-> agent loop + sessions)
# -----------------------

class SyntrometrySystem:
    def __init__(self, seed: int = 42, config: Optional[Dict[str, Any]] = None,
                 device: Union[str, torch.device] = "cpu", logdir: Optional[str] = None,
                 verbose: bool = False):
        set_seeds(seed)
        self.seed = seed
        self.environment = EmotionalSpace(config, seed=seed, device=device)
        self.agent = SyntrometricAgent(config, seed=seed, device=device)
        self.logdir = logdir
        self.verbose = verbose
        self.tick = 0
        self.started = False
        self.state: Tuple[float, ...] = self.environment._emit_state()
        self.last_response: Optional[AgentResponse] = None
        # agent output fed back into the environment next tick
        self.feedback: Dict[str, Any] = {"emotions": None, "rih": 0.0, "avg_affinity": 0.0}
        self.metrics = {
            "events": 0,
            "dysvariant": 0,
            "not_ready": 0,
            "chat_inputs": 0,
            "rih_list": [],
            "trust_list": [],
            "affinity_list": [],
            "head_movements": Counter(),
            "moods": Counter(),
        }

    @property
    def ready(self) -> bool:
        return self.environment.ready and self.agent.ready

    def _graph_features(self, state) -> List[float]:
        return calculate_graph_features(state, self.agent.dimensions)

    def reset(self) -> AgentResponse:
        self.state = self.environment.reset()
        self.tick = 0
        response = self.agent.process(self.state, self._graph_features(self.state),
                                      {"reward": 0.0, "event_type": None})
        self._absorb(response)
        self.started = True
        return response

    def _absorb(self, response: AgentResponse):
        self.last_response = response
        self.feedback = {"emotions": list(response.emotions), "rih": response.rih_score,
                         "avg_affinity": response.avg_affinity}

    def step(self) -> Dict[str, Any]:
        if not self.started:
            self.reset()
        result = self.environment.step(self.feedback["emotions"], self.feedback["rih"],
                                       self.feedback["avg_affinity"])
        self.tick += 1
        response = self.agent.process(result.state, self._graph_features(result.state), result)
        self.state = result.state
        self._absorb(response)

        core = result.state[:self.agent.dimensions]
        emotion_dims = result.state[self.agent.dimensions:]
        row = {
            "tick": self.tick,
            "reward": round(result.reward, 6),
            "context": result.context,
            "event_type": result.event_type,
            "phase": self.environment.phase.value,
            "event_timer": self.environment.event_timer,
            "gap_timer": self.environment.gap_timer,
            "core_min": min(core) if core else 0.0,
            "core_max": max(core) if core else 0.0,
            "emotion_min": min(emotion_dims) if emotion_dims else 0.0,
            "emotion_max": max(emotion_dims) if emotion_dims else 0.0,
            "rih": response.rih_score,
            "avg_affinity": response.avg_affinity,
            "trust": response.trust_score,
            "integration": response.integration,
            "reflexivity": response.reflexivity,
            "cascade_variance": response.cascade_variance,
            "belief_norm": response.belief_norm,
            "feedback_norm": response.feedback_norm,
            "self_state_norm": response.self_state_norm,
            "emotions": [round(e, 6) for e in response.emotions],
            "dominant_emotion": response.dominant_emotion,
            "head_movement": response.head_movement_label,
            "ready": response.ready,
            "response_text": response.response_text,
        }
        self._record(row, result, response)
        return row

    def _record(self, row: Dict[str, Any], result: StepResult, response: AgentResponse):
        m = self.metrics
        if result.event_type is not None and self.environment.event_timer == self.environment.event_duration:
            m["events"] += 1
        if "Dysvariant" in result.context:
            m["dysvariant"] += 1
        if not response.ready:
            m["not_ready"] += 1
        m["rih_list"].append(response.rih_score)
        m["trust_list"].append(response.trust_score)
        m["affinity_list"].append(response.avg_affinity)
        m["head_movements"][response.head_movement_label] += 1
        m["moods"][response.dominant_emotion] += 1

    def chat(self, text: str) -> List[float]:
        impact = self.environment.get_emotional_impact_from_text(text)
        self.metrics["chat_inputs"] += 1
        logger.info("Chat input %r -> impact %s", text, [round(v, 2) for v in impact])
        return impact

    def run(self, ticks: int, chat_lines: Optional[Sequence[str]] = None,
            print_every: int = 10) -> Dict[str, Any]:
        if not self.started:
            self.reset()
        for text in chat_lines or []:
            impact = self.chat(text)
            print(f"USER: {text!r} -> impact {[round(v, 2) for v in impact]}")

        rows = []
        for _ in range(ticks):
            row = self.step()
            rows.append(row)
            eventful = row["context"] != "System stable."
            if print_every and (row["tick"] % print_every == 0 or (self.verbose and eventful)):
                print(f"[{row['tick']:04d}] {row['response_text']} | {row['context']}")

        summary = self._finalize_and_write_logs(rows)
        print(f"SUMMARY: ticks={summary['ticks']} mean_rih={summary['mean_rih']:.3f} "
              f"mean_trust={summary['mean_trust']:.3f} I={summary['final_integration']:.3f} "
              f"Ψ={summary['final_reflexivity']:.3f} events={summary['events']} "
              f"dysvariant={summary['dysvariant']}")
        return summary

    def _finalize_and_write_logs(self, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
        m = self.metrics
        summary = {
            "ticks": len(rows),
            "mean_rih": round(mean(m["rih_list"]), 6) if m["rih_list"] else 0.0,
            "mean_trust": round(mean(m["trust_list"]), 6) if m["trust_list"] else 0.0,
            "mean_affinity": round(mean(m["affinity_list"]), 6) if m["affinity_list"] else 0.0,
            "final_integration": round(self.agent.integration, 6),
            "final_reflexivity": round(self.agent.reflexivity, 6),
            "events": m["events"],
            "dysvariant": m["dysvariant"],
            "not_ready_ticks": m["not_ready"],
            "chat_inputs": m["chat_inputs"],
            "top_mood": m["moods"].most_common(1)[0][0] if m["moods"] else "none",
            "top_head_movement": m["head_movements"].most_common(1)[0][0] if m["head_movements"] else "none",
        }
        if self.logdir:
            os.makedirs(self.logdir, exist_ok=True)
            with open(os.path.join(self.logdir, "logs.jsonl"), "w", encoding="utf-8") as f:
                for row in rows:
                    f.write(json.dumps(row, ensure_ascii=False) + "\n")
            # minimal YAML (no external dep)
            with open(os.path.join(self.logdir, "metrics.yaml"), "w", encoding="utf-8") as f:
                for k, v in summary.items():
                    f.write(f"{k}: {v}\n")
        return summary

    def save(self, path: str) -> bool:
        payload = {
            "version": SESSION_VERSION,
            "timestamp": time.time(),
            "environment": self.environment.get_state(),
            "agent": self.agent.get_state(),
            "metrics": {"tick": self.tick, "feedback": self.feedback},
        }
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(payload, f)
        logger.info("Session saved to %s at tick %d", path, self.tick)
        return True

    def load(self, path: str) -> bool:
        if not os.path.exists(path):
            logger.warning("No session file at %s", path)
            return False
        try:
            with open(path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Could not read session %s: %s", path, exc)
            return False
        if not isinstance(payload, dict) or payload.get("version") != SESSION_VERSION:
            version = payload.get("version") if isinstance(payload, dict) else None
            logger.error("Unsupported session version %r in %s", version, path)
            return False

        env_ok = self.environment.load_state(payload.get("environment"))
        agent_ok = self.agent.load_state(payload.get("agent"))
        metrics = payload.get("metrics") if isinstance(payload.get("metrics"), dict) else {}
        self.tick = max(0, int(_finite(metrics.get("tick"), 0)))
        feedback = metrics.get("feedback") if isinstance(metrics.get("feedback"), dict) else {}
        self.feedback = {
            "emotions": feedback.get("emotions"),
            "rih": clamp(_finite(feedback.get("rih"), 0.0), 0.0, 1.0),
            "avg_affinity": clamp(_finite(feedback.get("avg_affinity"), 0.0), -1.0, 1.0),
        }
        self.state = self.environment._emit_state()
        self.last_response = None
        self.started = True
        logger.info("Session loaded from %s (tick %d)", path, self.tick)
        return env_ok and agent_ok

    def close(self):
        self.agent.cleanup()
        self.environment.cleanup()


# -----------------------
# CLI
# -----------------------

def main(argv: Optional[Sequence[str]] = None) -> int:
    p = argparse.ArgumentParser(description="Run the syntrometric agent against its emotional environment")
    p.add_argument("--seed", type=int, default=42)
    p.add_argument("--ticks", type=int, default=200)
    p.add_argument("--say", action="append", default=[], help="User text fed to the environment before running (repeatable)")
    p.add_argument("--load", type=str, default=None, help="Session JSON to resume from")
    p.add_argument("--save", type=str, default=None, help="Where to write the session JSON after the run")
    p.add_argument("--logdir", type=str, default=None, help="Directory to write logs.jsonl and metrics.yaml")
    p.add_argument("--device", type=str, default="cpu")
    p.add_argument("--print-every", type=int, default=10, help="Print a telemetry line every N ticks (0 = quiet)")
    p.add_argument("--verbose", action="store_true")
    args = p.parse_args(argv)

    log_file = os.path.join(args.logdir, "syntrometry.log") if args.logdir else None
    setup_logging(verbose=args.verbose, log_file=log_file)

    system = SyntrometrySystem(seed=args.seed, device=args.device, logdir=args.logdir, verbose=args.verbose)
    try:
        if not system.ready:
            print(f"Not ready: {system.agent.not_ready_reason or system.environment.not_ready_reason}")
            return 1
        if args.load and not system.load(args.load):
            print(f"Could not fully restore {args.load}; continuing with reset fields.")
        system.run(args.ticks, chat_lines=args.say, print_every=args.print_every)
        if args.save:
            system.save(args.save)
            print(f"Saved session: {args.save}")
    finally:
        system.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
