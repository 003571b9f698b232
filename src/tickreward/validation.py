"""Event batch validation.

Checks the shape of an incoming event batch before any arithmetic touches
it. Validation is all-or-nothing: the first bad record aborts the call with
SchemaViolation and nothing downstream runs.
"""

from __future__ import annotations

import math
import numbers
from collections.abc import Iterable
from typing import Any

from tickreward.contracts import EventRecord, ValidatedEventSequence
from tickreward.errors import SchemaViolation


def _is_real(x: Any) -> bool:
    # bool is an int subclass but never a meaningful event field
    return isinstance(x, numbers.Real) and not isinstance(x, bool)


def validate(events: Iterable[EventRecord]) -> ValidatedEventSequence:
    """Validate an event batch.

    Args:
        events: Chronological event records for one tick. A
            ValidatedEventSequence is re-checked and, if it passes, returned
            as the same object.

    Returns:
        ValidatedEventSequence holding the same records in the same order.
        Empty input yields an empty sequence rather than an error.

    Raises:
        SchemaViolation: On a non-numeric or non-finite field, a negative
            timestamp, or a timestamp smaller than its predecessor.
    """
    if isinstance(events, ValidatedEventSequence):
        _check_records(events.records)
        return events

    records = tuple(events)
    _check_records(records)
    return ValidatedEventSequence(records=records)


def _check_records(records: tuple[EventRecord, ...]) -> None:
    previous = 0.0
    for index, record in enumerate(records):
        if not isinstance(record, EventRecord):
            raise SchemaViolation(index, "record", "not_an_event", type(record).__name__)
        for name in ("value", "timestamp"):
            x = getattr(record, name)
            if not _is_real(x):
                raise SchemaViolation(index, name, "not_a_number", type(x).__name__)
            if not math.isfinite(x):
                raise SchemaViolation(index, name, "non_finite", repr(x))
        if record.timestamp < 0:
            raise SchemaViolation(index, "timestamp", "negative", repr(record.timestamp))
        if record.timestamp < previous:
            raise SchemaViolation(
                index,
                "timestamp",
                "out_of_order",
                f"{record.timestamp!r} < {previous!r}",
            )
        previous = record.timestamp


__all__ = ["validate"]
