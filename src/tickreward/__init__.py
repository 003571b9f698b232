"""tickreward - bounded per-tick reward computation for simulation loops.

Converts each tick's chronological event batch into a single reward in
[-1, 1]: validate -> discounted aggregation -> adaptive normalization.
"""

from tickreward.aggregation import aggregate, available_aggregators, get_aggregator
from tickreward.config import RewardConfig, RewardSettings
from tickreward.contracts import (
    CallPhase,
    DiagnosticRecord,
    EventRecord,
    NormalizationState,
    RewardWarning,
    ScalarReward,
    ValidatedEventSequence,
)
from tickreward.errors import RewardCoreError, SchemaViolation
from tickreward.normalization import (
    RunningRewardNormalizer,
    StatelessTanhNormalizer,
    normalize,
)
from tickreward.orchestrator import RewardSession, compute_reward
from tickreward.validation import validate

__version__ = "0.1.0"

__all__ = [
    # Contracts
    "CallPhase",
    "DiagnosticRecord",
    "EventRecord",
    "NormalizationState",
    "RewardWarning",
    "ScalarReward",
    "ValidatedEventSequence",
    # Errors
    "RewardCoreError",
    "SchemaViolation",
    # Config
    "RewardConfig",
    "RewardSettings",
    # Pipeline
    "validate",
    "aggregate",
    "available_aggregators",
    "get_aggregator",
    "normalize",
    "RunningRewardNormalizer",
    "StatelessTanhNormalizer",
    "RewardSession",
    "compute_reward",
]
