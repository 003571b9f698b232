"""Reward core errors.

Malformed input fails loud: a caller either receives a valid ScalarReward
or one of these exceptions. Every other condition is absorbed and reported
as a RewardWarning on the diagnostic channel.
"""

from __future__ import annotations


class RewardCoreError(Exception):
    """Base class for errors raised by the reward core."""


class SchemaViolation(RewardCoreError, ValueError):
    """Raised when an event batch violates the event schema.

    Attributes:
        index: Position of the offending record in the batch.
        field: Offending field ("timestamp", "value", or "record" for a
            non-EventRecord entry).
        reason: Short machine-readable reason code.
        detail: Offending value or context, free text.
    """

    def __init__(self, index: int, field: str, reason: str, detail: str = "") -> None:
        message = f"event[{index}].{field}: {reason}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.index = index
        self.field = field
        self.reason = reason
        self.detail = detail


__all__ = ["RewardCoreError", "SchemaViolation"]
