"""Reward core configuration.

Pydantic models for the knobs the reward core recognizes, plus optional
loaders (YAML files, built-in profiles, environment settings) used by
scripts. The core itself only ever receives a constructed RewardConfig.

Usage:
    # Defaults
    config = RewardConfig()

    # Built-in profile with overrides
    config = RewardConfig.from_profile("fast_adapt", {"discount_rate": 0.1})

    # Custom YAML file
    config = RewardConfig.from_yaml("reward.yaml")
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge override into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class RewardConfig(BaseModel):
    """Configuration for one reward session - validated at construction.

    Attributes:
        profile_name: Name of the profile this config was loaded from.
        discount_rate: Exponential decay rate applied to event timestamps.
        window_size: Effective window of the running statistics; sets the
            decay factor eta = 2 / (window_size + 1).
        clip_range: Output bounds, must lie within [-1, 1].
        normalize: When False the normalizer is skipped and raw is clamped
            directly into clip_range.
        latency_budget_ms: Soft per-call budget; overruns are flagged only.
        epsilon: Added to the variance before taking the square root.
        variance_floor: Below this variance standardization is bypassed.
        aggregator: Registered aggregation strategy name.
        normalizer: Registered normalization strategy name.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    profile_name: str = "custom"

    discount_rate: float = Field(default=0.05, ge=0.0, allow_inf_nan=False)
    window_size: int = Field(default=100, gt=0)
    clip_range: tuple[float, float] = (-1.0, 1.0)
    normalize: bool = True

    latency_budget_ms: float = Field(default=5.0, gt=0.0, allow_inf_nan=False)
    epsilon: float = Field(default=1e-6, gt=0.0, allow_inf_nan=False)
    variance_floor: float = Field(default=1e-8, ge=0.0, allow_inf_nan=False)

    aggregator: str = "discounted_sum"
    normalizer: str = "running"

    @field_validator("clip_range")
    @classmethod
    def validate_clip_range(cls, v: tuple[float, float]) -> tuple[float, float]:
        lo, hi = v
        if not -1.0 <= lo < hi <= 1.0:
            raise ValueError(f"clip_range must satisfy -1 <= lo < hi <= 1, got {v}")
        return v

    @model_validator(mode="after")
    def validate_strategies(self) -> "RewardConfig":
        # Imported lazily: the strategy modules import this one for typing
        from tickreward.aggregation import available_aggregators
        from tickreward.normalization import available_normalizers

        if self.aggregator not in available_aggregators():
            raise ValueError(
                f"Unknown aggregator: {self.aggregator}. Available: {available_aggregators()}"
            )
        if self.normalizer not in available_normalizers():
            raise ValueError(
                f"Unknown normalizer: {self.normalizer}. Available: {available_normalizers()}"
            )
        return self

    @property
    def decay(self) -> float:
        """EMA decay factor eta derived from window_size."""
        return 2.0 / (self.window_size + 1)

    def fingerprint(self) -> str:
        """Short stable digest of every knob that affects the reward.

        `profile_name` is excluded: two profiles with identical knobs produce
        identical rewards and therefore share a fingerprint.
        """
        payload = self.model_dump(mode="json", exclude={"profile_name"})
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]

    @classmethod
    def from_yaml(cls, path: Path | str, overrides: dict[str, Any] | None = None) -> RewardConfig:
        """Load configuration from a YAML file.

        Raises:
            ValueError: If the YAML file is empty, malformed, or not a mapping.
        """
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict):
            raise ValueError(
                f"Reward config YAML must be a mapping, got {type(data).__name__}: {path}"
            )

        if overrides:
            data = deep_merge(data, overrides)

        return cls(**data)

    @classmethod
    def from_profile(cls, name: str, overrides: dict[str, Any] | None = None) -> RewardConfig:
        """Load a built-in profile by name (see profiles.yaml).

        Raises:
            ValueError: If the profile is unknown or profiles.yaml is malformed.
            FileNotFoundError: If profiles.yaml does not exist.
        """
        profiles_path = Path(__file__).parent / "profiles.yaml"

        if not profiles_path.exists():
            raise FileNotFoundError(f"Profiles file not found: {profiles_path}")

        with open(profiles_path) as f:
            all_profiles = yaml.safe_load(f)

        if not isinstance(all_profiles, dict) or "profiles" not in all_profiles:
            raise ValueError("profiles.yaml must be a mapping with a 'profiles' key")

        profiles = all_profiles["profiles"]
        if not isinstance(profiles, dict):
            raise ValueError(
                f"'profiles' key must be a mapping, got {type(profiles).__name__}"
            )

        if name not in profiles:
            available = list(profiles.keys())
            raise ValueError(f"Unknown profile: {name}. Available: {available}")

        data = dict(profiles[name] or {})
        data["profile_name"] = name

        if overrides:
            data = deep_merge(data, overrides)

        return cls(**data)

    def to_yaml(self, path: Path | str) -> None:
        """Save configuration to YAML file."""
        path = Path(path)
        data = self.model_dump()
        data["clip_range"] = list(self.clip_range)
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def summary(self) -> str:
        """Human-readable summary of the configuration."""
        lo, hi = self.clip_range
        lines = [
            f"RewardConfig (profile: {self.profile_name}, fingerprint: {self.fingerprint()})",
            f"  Aggregator: {self.aggregator} (discount_rate={self.discount_rate})",
            f"  Normalizer: {self.normalizer if self.normalize else 'disabled'}"
            f" (window={self.window_size}, eta={self.decay:.4f})",
            f"  Clip range: [{lo}, {hi}]",
            f"  Latency budget: {self.latency_budget_ms}ms",
        ]
        return "\n".join(lines)


class RewardSettings(BaseSettings):
    """Process-level settings read from the environment (scripts only)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        frozen=True,
        extra="ignore",
    )

    log_level: str = Field(alias="TICKREWARD_LOG_LEVEL", default="INFO")
    profile: str = Field(alias="TICKREWARD_PROFILE", default="default")
    diagnostics_path: str | None = Field(alias="TICKREWARD_DIAGNOSTICS_PATH", default=None)


__all__ = [
    "RewardConfig",
    "RewardSettings",
    "deep_merge",
]
