"""Reward core contracts - data types shared by every pipeline stage.

These are CONTRACTS only. Validation lives in `tickreward.validation`,
the statistics update in `tickreward.normalization`, and emission of
diagnostics in `tickreward.telemetry`.

Ownership:
- EventRecord: immutable, produced by the external event source
- ValidatedEventSequence: transient, created and discarded within one call
- ScalarReward: the externally visible result, one per tick
- NormalizationState: long-lived, owned by exactly one normalizer
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Mapping


# =============================================================================
# Events
# =============================================================================

@dataclass(frozen=True, slots=True)
class EventRecord:
    """One timestamped scalar observation from the environment."""

    timestamp: float
    value: float

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EventRecord":
        """Build a record from a decoded JSON object.

        Accepts either ``{"timestamp": .., "value": ..}`` or the short
        ``{"t": .., "v": ..}`` form used in compact replay files.

        Raises:
            KeyError: If either field is missing.
            TypeError, ValueError: If a field cannot be converted to float.
        """
        timestamp = data["timestamp"] if "timestamp" in data else data["t"]
        value = data["value"] if "value" in data else data["v"]
        return cls(timestamp=float(timestamp), value=float(value))

    def to_dict(self) -> dict[str, float]:
        return {"timestamp": self.timestamp, "value": self.value}


@dataclass(frozen=True, slots=True)
class ValidatedEventSequence:
    """Event records that passed validation.

    Guarantees: every value finite, every timestamp finite and non-negative,
    timestamps non-decreasing. Only `tickreward.validation.validate` should
    construct these.
    """

    records: tuple[EventRecord, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.records

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[EventRecord]:
        return iter(self.records)

    def __getitem__(self, index: int) -> EventRecord:
        return self.records[index]


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True, slots=True)
class ScalarReward:
    """Bounded reward handed to the evaluator.

    Attributes:
        value: Final reward, always within [-1, 1].
        raw: Discounted aggregate before normalization or clamping.
        normalized: True when the normalizer stage produced `value`
            (including its cold-start tanh fallback); False for the
            empty-input neutral reward and for clamped raw values.
    """

    value: float
    raw: float
    normalized: bool

    def __post_init__(self) -> None:
        # NaN fails both comparisons, so it is rejected here too
        if not -1.0 <= self.value <= 1.0:
            raise ValueError(f"ScalarReward.value must lie in [-1, 1], got {self.value!r}")


# =============================================================================
# Normalization State
# =============================================================================

@dataclass(slots=True)
class NormalizationState:
    """Running statistics for adaptive reward normalization.

    Mutated only by the owning normalizer while holding its lock. Callers
    that need to inspect the statistics should use `snapshot()` rather than
    holding a reference across ticks.
    """

    count: int = 0
    running_mean: float = 0.0
    running_variance: float = 0.0

    def __post_init__(self) -> None:
        if self.count < 0:
            raise ValueError(f"count must be >= 0, got {self.count}")
        if self.running_variance < 0:
            raise ValueError(f"running_variance must be >= 0, got {self.running_variance}")

    def snapshot(self) -> "NormalizationState":
        """Return an independent copy of the current statistics."""
        return NormalizationState(
            count=self.count,
            running_mean=self.running_mean,
            running_variance=self.running_variance,
        )

    def state_dict(self) -> dict[str, float | int]:
        """Return state dictionary for checkpointing."""
        return {
            "count": self.count,
            "running_mean": self.running_mean,
            "running_variance": self.running_variance,
        }

    @classmethod
    def from_state_dict(cls, state: Mapping[str, float | int]) -> "NormalizationState":
        """Rebuild state from a checkpoint dictionary."""
        return cls(
            count=int(state["count"]),
            running_mean=float(state["running_mean"]),
            running_variance=float(state["running_variance"]),
        )


# =============================================================================
# Warnings, Phases, Diagnostics
# =============================================================================

class RewardWarning(str, Enum):
    """Non-fatal conditions reported through the diagnostic channel."""

    EMPTY_INPUT = "empty_input"
    NORMALIZATION_DEGENERATE = "normalization_degenerate"
    OUT_OF_RANGE_OUTPUT = "out_of_range_output"
    LATENCY_EXCEEDED = "latency_exceeded"
    NON_FINITE_RAW = "non_finite_raw"


class CallPhase(str, Enum):
    """Per-call orchestration state.

    VALIDATING -> AGGREGATING -> NORMALIZING -> COMPLETED, with FAILED
    reachable only from VALIDATING.
    """

    VALIDATING = "validating"
    AGGREGATING = "aggregating"
    NORMALIZING = "normalizing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class DiagnosticRecord:
    """Structured per-tick record forwarded to the logging collaborator."""

    raw: float
    normalized_value: float
    running_mean: float
    running_variance: float
    config_fingerprint: str
    warnings: tuple[RewardWarning, ...] = ()

    # Context
    tick: int = 0
    phase: CallPhase = CallPhase.COMPLETED
    normalized: bool = False
    event_count: int = 0
    latency_ms: float = 0.0
    error: str | None = None

    def has_warning(self, warning: RewardWarning) -> bool:
        return warning in self.warnings

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe dictionary (enums by value, non-finite floats as strings)."""
        return {
            "raw": _json_float(self.raw),
            "normalized_value": _json_float(self.normalized_value),
            "running_mean": _json_float(self.running_mean),
            "running_variance": _json_float(self.running_variance),
            "config_fingerprint": self.config_fingerprint,
            "warnings": [w.value for w in self.warnings],
            "tick": self.tick,
            "phase": self.phase.value,
            "normalized": self.normalized,
            "event_count": self.event_count,
            "latency_ms": self.latency_ms,
            "error": self.error,
        }


def _json_float(value: float) -> float | str:
    # json.dumps would emit bare NaN/Infinity, which strict parsers reject
    return value if math.isfinite(value) else repr(value)


__all__ = [
    "CallPhase",
    "DiagnosticRecord",
    "EventRecord",
    "NormalizationState",
    "RewardWarning",
    "ScalarReward",
    "ValidatedEventSequence",
]
