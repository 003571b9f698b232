"""Shared helpers for tests.

Keep this module small and dependency-light. It exists to avoid duplicating
cross-suite test utilities between the unit and property suites.
"""

from __future__ import annotations

from tickreward import EventRecord, RewardConfig

# Generous budget so slow CI machines don't add LATENCY_EXCEEDED to
# warning assertions. Latency handling has its own tests.
RELAXED_LATENCY_MS = 10_000.0


def relaxed_config(**overrides) -> RewardConfig:
    """RewardConfig with the relaxed latency budget and `overrides` applied."""
    return RewardConfig(**{"latency_budget_ms": RELAXED_LATENCY_MS, **overrides})


def events(*pairs: tuple[float, float]) -> list[EventRecord]:
    """Build a batch from (timestamp, value) pairs."""
    return [EventRecord(timestamp=t, value=v) for t, v in pairs]
