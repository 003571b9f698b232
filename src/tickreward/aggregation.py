"""Discounted aggregation of validated event sequences.

Reduces one tick's events to a single raw scalar. Every strategy makes a
single streaming pass: O(N) time, O(1) extra space, no buffered weights.

Strategies are registered by name and selected from RewardConfig when a
session is constructed:
- discounted_sum: raw = sum(v_i * exp(-r * t_i))  (default)
- recency_discounted: raw = sum(v_i * exp(-r * (t_last - t_i)))
"""

from __future__ import annotations

import math
from typing import Callable, Protocol

from tickreward.contracts import ValidatedEventSequence


class Aggregator(Protocol):
    """Capability interface for aggregation strategies."""

    name: str

    def aggregate(self, events: ValidatedEventSequence, discount_rate: float) -> float:
        ...


def _check_rate(discount_rate: float) -> None:
    if not discount_rate >= 0.0:
        raise ValueError(f"discount_rate must be >= 0, got {discount_rate!r}")


class DiscountedSumAggregator:
    """Absolute-time exponential discounting.

    Weights decay with the event's own timestamp, so late events in a long
    episode contribute negligibly once exp(-r * t) underflows. That is
    defined behavior, not an error.
    """

    name = "discounted_sum"

    def aggregate(self, events: ValidatedEventSequence, discount_rate: float) -> float:
        _check_rate(discount_rate)
        raw = 0.0
        if discount_rate == 0.0:
            for event in events:
                raw += event.value
            return raw
        for event in events:
            raw += event.value * math.exp(-discount_rate * event.timestamp)
        return raw


class RecencyDiscountedAggregator:
    """Age-relative discounting: the newest event has weight 1.

    Evaluated as the recurrence acc = acc * exp(-r * dt) + v, which never
    forms exp(+r * t) and so cannot overflow on long episodes.
    """

    name = "recency_discounted"

    def aggregate(self, events: ValidatedEventSequence, discount_rate: float) -> float:
        _check_rate(discount_rate)
        acc = 0.0
        previous: float | None = None
        for event in events:
            if previous is not None and discount_rate > 0.0:
                acc *= math.exp(-discount_rate * (event.timestamp - previous))
            acc += event.value
            previous = event.timestamp
        return acc


# =============================================================================
# Registry
# =============================================================================

_AGGREGATORS: dict[str, Callable[[], Aggregator]] = {
    DiscountedSumAggregator.name: DiscountedSumAggregator,
    RecencyDiscountedAggregator.name: RecencyDiscountedAggregator,
}


def register_aggregator(name: str, factory: Callable[[], Aggregator]) -> None:
    """Register an aggregation strategy under `name`.

    Raises:
        ValueError: If the name is already taken.
    """
    if name in _AGGREGATORS:
        raise ValueError(f"Aggregator '{name}' is already registered")
    _AGGREGATORS[name] = factory


def get_aggregator(name: str) -> Aggregator:
    """Instantiate a registered aggregation strategy."""
    try:
        factory = _AGGREGATORS[name]
    except KeyError:
        raise KeyError(
            f"Unknown aggregator: {name}. Available: {available_aggregators()}"
        ) from None
    return factory()


def available_aggregators() -> list[str]:
    return sorted(_AGGREGATORS)


_DEFAULT = DiscountedSumAggregator()


def aggregate(events: ValidatedEventSequence, discount_rate: float) -> float:
    """Discounted weighted sum with the default strategy."""
    return _DEFAULT.aggregate(events, discount_rate)


__all__ = [
    "Aggregator",
    "DiscountedSumAggregator",
    "RecencyDiscountedAggregator",
    "aggregate",
    "available_aggregators",
    "get_aggregator",
    "register_aggregator",
]
