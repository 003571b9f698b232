"""Adaptive reward normalization.

Rescales the raw discounted aggregate into (-1, 1) using exponentially
weighted running statistics followed by tanh squashing.

Per call:
    1. Update running mean/variance from raw (EMA form of Welford's update)
    2. z = (raw - mean) / sqrt(variance + epsilon)
    3. value = tanh(z)
    4. Clamp into clip_range if floating error pushed it outside

Cold start: while count < 2 or variance < variance_floor the standardization
is bypassed and tanh(raw) is returned directly. This is the stateless
tanh(discounted-sum) formula, used only as a fallback.

Thread Safety:
    RunningRewardNormalizer serializes the update-and-read sequence with a
    threading.Lock. The new statistics are computed into a fresh
    NormalizationState and committed with a single reference assignment, so
    an interrupted call leaves the state either fully updated or untouched.
    Retrying on contention would double-apply statistics; callers block
    instead.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Protocol

from tickreward.contracts import NormalizationState, RewardWarning

if TYPE_CHECKING:
    from tickreward.config import RewardConfig


DEFAULT_EPSILON = 1e-6
DEFAULT_VARIANCE_FLOOR = 1e-8


def decay_for_window(window_size: int) -> float:
    """EMA decay eta whose effective window is roughly window_size samples."""
    if window_size <= 0:
        raise ValueError(f"window_size must be > 0, got {window_size}")
    return 2.0 / (window_size + 1)


@dataclass(frozen=True, slots=True)
class NormalizationResult:
    """Outcome of one normalization call.

    `state` is the snapshot taken inside the critical section, so the
    statistics reported alongside `value` are the ones that produced it.
    """

    value: float
    state: NormalizationState
    warnings: tuple[RewardWarning, ...] = ()


# =============================================================================
# Pure helpers (no locking)
# =============================================================================

def updated_state(state: NormalizationState, raw: float, decay: float) -> NormalizationState:
    """Return the statistics after observing `raw`. `state` is not modified."""
    count = state.count + 1
    if state.count == 0:
        return NormalizationState(count=count, running_mean=raw, running_variance=0.0)

    # Cross term uses the pre-update mean
    delta = raw - state.running_mean
    mean = state.running_mean + decay * delta
    variance = (1.0 - decay) * (state.running_variance + decay * delta * delta)
    return NormalizationState(count=count, running_mean=mean, running_variance=variance)


def squash(
    raw: float,
    state: NormalizationState,
    epsilon: float = DEFAULT_EPSILON,
    variance_floor: float = DEFAULT_VARIANCE_FLOOR,
) -> tuple[float, tuple[RewardWarning, ...]]:
    """Standardize against `state` and squash with tanh.

    Returns the unclamped squashed value and any degenerate-variance warning.
    """
    if state.count < 2 or state.running_variance < variance_floor:
        return math.tanh(raw), (RewardWarning.NORMALIZATION_DEGENERATE,)
    z = (raw - state.running_mean) / math.sqrt(state.running_variance + epsilon)
    return math.tanh(z), ()


def clamp(
    value: float, clip_range: tuple[float, float] = (-1.0, 1.0)
) -> tuple[float, tuple[RewardWarning, ...]]:
    """Clamp `value` into clip_range, flagging OUT_OF_RANGE_OUTPUT if it moved."""
    lo, hi = clip_range
    if value < lo:
        return lo, (RewardWarning.OUT_OF_RANGE_OUTPUT,)
    if value > hi:
        return hi, (RewardWarning.OUT_OF_RANGE_OUTPUT,)
    return value, ()


def _non_finite_value(raw: float) -> float:
    # tanh(+-inf) is +-1; NaN carries no sign so it maps to the neutral reward
    return 0.0 if math.isnan(raw) else math.tanh(raw)


def _is_finite(state: NormalizationState) -> bool:
    return math.isfinite(state.running_mean) and math.isfinite(state.running_variance)


def normalize(
    raw: float,
    state: NormalizationState,
    *,
    decay: float = decay_for_window(100),
    epsilon: float = DEFAULT_EPSILON,
    variance_floor: float = DEFAULT_VARIANCE_FLOOR,
    clip_range: tuple[float, float] = (-1.0, 1.0),
) -> float:
    """Update `state` in place from `raw` and return the bounded value.

    Unsynchronized; shared state should go through RunningRewardNormalizer.
    """
    if not math.isfinite(raw):
        return clamp(_non_finite_value(raw), clip_range)[0]
    new_state = updated_state(state, raw, decay)
    if not _is_finite(new_state):
        return clamp(math.tanh(raw), clip_range)[0]
    value, _ = squash(raw, new_state, epsilon, variance_floor)
    state.count = new_state.count
    state.running_mean = new_state.running_mean
    state.running_variance = new_state.running_variance
    return clamp(value, clip_range)[0]


# =============================================================================
# Strategies
# =============================================================================

class Normalizer(Protocol):
    """Capability interface for normalization strategies."""

    name: str

    @property
    def state(self) -> NormalizationState:
        ...

    def normalize(self, raw: float) -> NormalizationResult:
        ...

    def peek(self, raw: float) -> float:
        ...

    def reset(self) -> None:
        ...

    def load_state(self, state: NormalizationState) -> None:
        ...


class RunningRewardNormalizer:
    """Exponentially weighted mean/variance normalizer with tanh squashing.

    Owns its NormalizationState exclusively. One instance per evaluation
    session; independent sessions never share statistics.

    Args:
        decay: EMA factor eta in (0, 1]. Use decay_for_window() to derive it.
        epsilon: Added to the variance before the square root.
        variance_floor: Variance below which standardization is bypassed.
        clip_range: Final output bounds within [-1, 1].
        state: Optional initial statistics (e.g. restored from a checkpoint).
    """

    name = "running"

    def __init__(
        self,
        decay: float = decay_for_window(100),
        epsilon: float = DEFAULT_EPSILON,
        variance_floor: float = DEFAULT_VARIANCE_FLOOR,
        clip_range: tuple[float, float] = (-1.0, 1.0),
        state: NormalizationState | None = None,
    ):
        if not 0.0 < decay <= 1.0:
            raise ValueError(f"decay must be in (0, 1], got {decay}")
        self.decay = decay
        self.epsilon = epsilon
        self.variance_floor = variance_floor
        self.clip_range = clip_range
        self._state = state.snapshot() if state is not None else NormalizationState()
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: RewardConfig) -> "RunningRewardNormalizer":
        return cls(
            decay=config.decay,
            epsilon=config.epsilon,
            variance_floor=config.variance_floor,
            clip_range=config.clip_range,
        )

    @property
    def state(self) -> NormalizationState:
        """Snapshot of the current statistics."""
        with self._lock:
            return self._state.snapshot()

    def normalize(self, raw: float) -> NormalizationResult:
        """Update statistics from `raw` and return the bounded value."""
        if not math.isfinite(raw):
            value, clamped = clamp(_non_finite_value(raw), self.clip_range)
            return NormalizationResult(
                value=value,
                state=self.state,
                warnings=(RewardWarning.NON_FINITE_RAW, *clamped),
            )

        with self._lock:
            new_state = updated_state(self._state, raw, self.decay)
            if _is_finite(new_state):
                squashed, warnings = squash(raw, new_state, self.epsilon, self.variance_floor)
                self._state = new_state
            else:
                # Statistics would overflow: keep the old state, fall back to tanh(raw)
                squashed, warnings = math.tanh(raw), (RewardWarning.NON_FINITE_RAW,)
            snapshot = self._state.snapshot()

        value, clamped = clamp(squashed, self.clip_range)
        return NormalizationResult(value=value, state=snapshot, warnings=warnings + clamped)

    def peek(self, raw: float) -> float:
        """Value the next normalize(raw) would return, without mutating state."""
        if not math.isfinite(raw):
            return clamp(_non_finite_value(raw), self.clip_range)[0]
        with self._lock:
            new_state = updated_state(self._state, raw, self.decay)
        if not _is_finite(new_state):
            return clamp(math.tanh(raw), self.clip_range)[0]
        squashed, _ = squash(raw, new_state, self.epsilon, self.variance_floor)
        return clamp(squashed, self.clip_range)[0]

    def reset(self) -> None:
        """Discard all statistics (session teardown)."""
        with self._lock:
            self._state = NormalizationState()

    def load_state(self, state: NormalizationState) -> None:
        """Replace the statistics with a copy of `state`."""
        with self._lock:
            self._state = state.snapshot()


class StatelessTanhNormalizer:
    """tanh(raw) with no running statistics.

    Shares the interface of RunningRewardNormalizer so sessions can swap it
    in via config; its state stays at the zero snapshot forever.
    """

    name = "stateless"

    def __init__(self, clip_range: tuple[float, float] = (-1.0, 1.0)):
        self.clip_range = clip_range
        self._state = NormalizationState()

    @classmethod
    def from_config(cls, config: RewardConfig) -> "StatelessTanhNormalizer":
        return cls(clip_range=config.clip_range)

    @property
    def state(self) -> NormalizationState:
        return self._state.snapshot()

    def normalize(self, raw: float) -> NormalizationResult:
        warnings: tuple[RewardWarning, ...] = ()
        if math.isfinite(raw):
            squashed = math.tanh(raw)
        else:
            squashed = _non_finite_value(raw)
            warnings = (RewardWarning.NON_FINITE_RAW,)
        value, clamped = clamp(squashed, self.clip_range)
        return NormalizationResult(value=value, state=self.state, warnings=warnings + clamped)

    def peek(self, raw: float) -> float:
        return self.normalize(raw).value

    def reset(self) -> None:
        pass

    def load_state(self, state: NormalizationState) -> None:
        pass


# =============================================================================
# Registry
# =============================================================================

_NORMALIZERS: dict[str, Callable[[RewardConfig], Normalizer]] = {
    RunningRewardNormalizer.name: RunningRewardNormalizer.from_config,
    StatelessTanhNormalizer.name: StatelessTanhNormalizer.from_config,
}


def register_normalizer(name: str, factory: Callable[[RewardConfig], Normalizer]) -> None:
    """Register a normalization strategy factory under `name`.

    Raises:
        ValueError: If the name is already taken.
    """
    if name in _NORMALIZERS:
        raise ValueError(f"Normalizer '{name}' is already registered")
    _NORMALIZERS[name] = factory


def build_normalizer(config: RewardConfig) -> Normalizer:
    """Construct the normalization strategy named by `config.normalizer`."""
    try:
        factory = _NORMALIZERS[config.normalizer]
    except KeyError:
        raise KeyError(
            f"Unknown normalizer: {config.normalizer}. Available: {available_normalizers()}"
        ) from None
    return factory(config)


def available_normalizers() -> list[str]:
    return sorted(_NORMALIZERS)


__all__ = [
    "DEFAULT_EPSILON",
    "DEFAULT_VARIANCE_FLOOR",
    "NormalizationResult",
    "Normalizer",
    "RunningRewardNormalizer",
    "StatelessTanhNormalizer",
    "available_normalizers",
    "build_normalizer",
    "clamp",
    "decay_for_window",
    "normalize",
    "register_normalizer",
    "squash",
    "updated_state",
]
