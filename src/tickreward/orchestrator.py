"""Reward orchestration - one call per simulation tick.

Sequences validation, aggregation and normalization for a batch of events,
applies the fallback policy, and forwards a diagnostic record to the
logging collaborator.

Per-call state machine:
    VALIDATING -> AGGREGATING -> NORMALIZING -> COMPLETED
    VALIDATING -> FAILED            (SchemaViolation only)

Only SchemaViolation reaches the caller. Empty input, degenerate variance,
clamping, statistics overflow and latency overruns are absorbed and
reported as RewardWarning values on the diagnostic record.

Usage:
    from tickreward import RewardConfig, RewardSession, EventRecord

    session = RewardSession(RewardConfig())
    reward = session.compute_reward([EventRecord(0.1, 0.4), EventRecord(0.4, -0.2)])
    session.reset()  # explicit teardown between evaluation sessions
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Iterable
from typing import Any, Mapping
from uuid import uuid4

from tickreward.aggregation import Aggregator, get_aggregator
from tickreward.config import RewardConfig
from tickreward.contracts import (
    CallPhase,
    DiagnosticRecord,
    EventRecord,
    NormalizationState,
    RewardWarning,
    ScalarReward,
)
from tickreward.errors import SchemaViolation
from tickreward.normalization import Normalizer, build_normalizer, clamp
from tickreward.telemetry import DiagnosticEvent, DiagnosticEventType, DiagnosticHub, get_hub
from tickreward.validation import validate

_logger = logging.getLogger(__name__)

NEUTRAL_REWARD = 0.0


class RewardSession:
    """Owns the normalization state for one evaluation session.

    Independent sessions hold independent statistics; nothing is shared at
    module level. compute_reward may be called concurrently: validation and
    aggregation run unsynchronized, the normalizer serializes its own
    critical section.

    Args:
        config: Reward configuration (defaults to RewardConfig()).
        hub: Diagnostic hub; defaults to the process-default hub.
        session_id: Identifier stamped on every diagnostic event.
    """

    def __init__(
        self,
        config: RewardConfig | None = None,
        hub: DiagnosticHub | None = None,
        session_id: str | None = None,
    ):
        self.config = config if config is not None else RewardConfig()
        self.session_id = session_id or uuid4().hex[:8]
        self._hub = hub if hub is not None else get_hub()
        self._aggregator: Aggregator = get_aggregator(self.config.aggregator)
        self._normalizer: Normalizer = build_normalizer(self.config)
        self._fingerprint = self.config.fingerprint()
        self._tick = 0
        self._tick_lock = threading.Lock()
        self._last_diagnostic: DiagnosticRecord | None = None

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def state(self) -> NormalizationState:
        """Snapshot of the normalization statistics."""
        return self._normalizer.state

    @property
    def tick(self) -> int:
        """Number of compute_reward calls made since the last reset."""
        return self._tick

    @property
    def config_fingerprint(self) -> str:
        return self._fingerprint

    @property
    def last_diagnostic(self) -> DiagnosticRecord | None:
        """Diagnostic record of the highest tick finished so far."""
        return self._last_diagnostic

    # -------------------------------------------------------------------------
    # Reward computation
    # -------------------------------------------------------------------------

    def compute_reward(self, events: Iterable[EventRecord]) -> ScalarReward:
        """Compute the bounded reward for one tick's event batch.

        Raises:
            SchemaViolation: If the batch is malformed. Statistics are untouched.
        """
        start = time.perf_counter()
        tick = self._next_tick()
        warnings: list[RewardWarning] = []

        try:
            validated = validate(events)
        except SchemaViolation as exc:
            self._publish(
                self._record(
                    tick=tick,
                    phase=CallPhase.FAILED,
                    raw=NEUTRAL_REWARD,
                    value=NEUTRAL_REWARD,
                    normalized=False,
                    state=self._normalizer.state,
                    warnings=warnings,
                    event_count=0,
                    start=start,
                    error=str(exc),
                )
            )
            raise

        if validated.is_empty:
            warnings.append(RewardWarning.EMPTY_INPUT)
            reward = ScalarReward(value=NEUTRAL_REWARD, raw=NEUTRAL_REWARD, normalized=False)
            state = self._normalizer.state
        else:
            raw = self._aggregator.aggregate(validated, self.config.discount_rate)

            if self.config.normalize:
                result = self._normalizer.normalize(raw)
                warnings.extend(result.warnings)
                reward = ScalarReward(value=result.value, raw=raw, normalized=True)
                state = result.state
            else:
                value, clamped = clamp(raw, self.config.clip_range)
                if math.isnan(value):  # raw overflowed to NaN
                    value = NEUTRAL_REWARD
                    clamped = (RewardWarning.NON_FINITE_RAW,)
                warnings.extend(clamped)
                reward = ScalarReward(value=value, raw=raw, normalized=False)
                state = self._normalizer.state

        record = self._record(
            tick=tick,
            phase=CallPhase.COMPLETED,
            raw=reward.raw,
            value=reward.value,
            normalized=reward.normalized,
            state=state,
            warnings=warnings,
            event_count=len(validated),
            start=start,
        )
        self._publish(record)
        return reward

    def peek_reward(self, events: Iterable[EventRecord]) -> ScalarReward:
        """Reward the next compute_reward(events) would return, without side effects.

        No statistics update, no tick increment, no diagnostic emitted.

        Raises:
            SchemaViolation: If the batch is malformed.
        """
        validated = validate(events)
        if validated.is_empty:
            return ScalarReward(value=NEUTRAL_REWARD, raw=NEUTRAL_REWARD, normalized=False)
        raw = self._aggregator.aggregate(validated, self.config.discount_rate)
        if self.config.normalize:
            return ScalarReward(value=self._normalizer.peek(raw), raw=raw, normalized=True)
        value, _ = clamp(raw, self.config.clip_range)
        if math.isnan(value):
            value = NEUTRAL_REWARD
        return ScalarReward(value=value, raw=raw, normalized=False)

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    def reset(self) -> None:
        """Explicit session teardown: clear statistics and the tick counter."""
        self._normalizer.reset()
        with self._tick_lock:
            self._tick = 0
            self._last_diagnostic = None
        self._emit(
            DiagnosticEvent(
                event_type=DiagnosticEventType.SESSION_RESET,
                session_id=self.session_id,
                message="Normalization state reset",
            )
        )
        _logger.debug("Session %s reset", self.session_id)

    def state_dict(self) -> dict[str, Any]:
        """Return state dictionary for checkpointing."""
        return {
            "config_fingerprint": self._fingerprint,
            "tick": self._tick,
            "normalization": self._normalizer.state.state_dict(),
        }

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        """Restore statistics saved by state_dict().

        Raises:
            ValueError: If the checkpoint was written under a different config.
        """
        fingerprint = state.get("config_fingerprint")
        if fingerprint != self._fingerprint:
            raise ValueError(
                f"Checkpoint config fingerprint {fingerprint!r} does not match "
                f"session fingerprint {self._fingerprint!r}"
            )
        self._normalizer.load_state(NormalizationState.from_state_dict(state["normalization"]))
        with self._tick_lock:
            self._tick = int(state.get("tick", 0))
            self._last_diagnostic = None

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _next_tick(self) -> int:
        with self._tick_lock:
            self._tick += 1
            return self._tick

    def _record(
        self,
        *,
        tick: int,
        phase: CallPhase,
        raw: float,
        value: float,
        normalized: bool,
        state: NormalizationState,
        warnings: list[RewardWarning],
        event_count: int,
        start: float,
        error: str | None = None,
    ) -> DiagnosticRecord:
        latency_ms = (time.perf_counter() - start) * 1000.0
        if latency_ms > self.config.latency_budget_ms:
            warnings.append(RewardWarning.LATENCY_EXCEEDED)
            _logger.warning(
                "Reward tick %d took %.3fms (budget %.3fms)",
                tick,
                latency_ms,
                self.config.latency_budget_ms,
            )
        return DiagnosticRecord(
            raw=raw,
            normalized_value=value,
            running_mean=state.running_mean,
            running_variance=state.running_variance,
            config_fingerprint=self._fingerprint,
            warnings=tuple(warnings),
            tick=tick,
            phase=phase,
            normalized=normalized,
            event_count=event_count,
            latency_ms=latency_ms,
            error=error,
        )

    def _publish(self, record: DiagnosticRecord) -> None:
        with self._tick_lock:
            # Concurrent calls may finish out of order: keep the newest tick
            last = self._last_diagnostic
            if last is None or record.tick >= last.tick:
                self._last_diagnostic = record
        if record.phase is CallPhase.FAILED:
            event_type, severity = DiagnosticEventType.REWARD_FAILED, "error"
        elif record.warnings:
            event_type, severity = DiagnosticEventType.REWARD_COMPUTED, "warning"
        else:
            event_type, severity = DiagnosticEventType.REWARD_COMPUTED, "debug"
        self._emit(
            DiagnosticEvent(
                event_type=event_type,
                session_id=self.session_id,
                tick=record.tick,
                severity=severity,
                data=record,
            )
        )

    def _emit(self, event: DiagnosticEvent) -> None:
        # Diagnostics are best-effort: a broken hub must never fail a tick
        try:
            self._hub.emit(event)
        except Exception as e:
            _logger.error("Failed to emit diagnostic event: %s", e)


def compute_reward(
    events: Iterable[EventRecord],
    config: RewardConfig | None = None,
    *,
    session: RewardSession | None = None,
) -> ScalarReward:
    """Compute one tick's reward.

    With `session`, statistics accumulate in that session (its own config
    applies and `config` must be None or equal). Without, a fresh session
    is built from `config`, so the call sees cold-start statistics.

    Raises:
        SchemaViolation: If the batch is malformed.
        ValueError: If `config` conflicts with the session's config.
    """
    if session is None:
        session = RewardSession(config)
    elif config is not None and config != session.config:
        raise ValueError("config does not match the session's config")
    return session.compute_reward(events)


__all__ = ["NEUTRAL_REWARD", "RewardSession", "compute_reward"]
