"""Tests for RewardConfig validation, profiles and YAML round-trips."""

import pytest
import yaml
from pydantic import ValidationError

from tickreward.config import RewardConfig, RewardSettings, deep_merge


class TestDefaults:
    def test_documented_defaults(self):
        config = RewardConfig()

        assert config.discount_rate == 0.05
        assert config.window_size == 100
        assert config.clip_range == (-1.0, 1.0)
        assert config.normalize is True
        assert config.latency_budget_ms == 5.0
        assert config.aggregator == "discounted_sum"
        assert config.normalizer == "running"

    def test_decay_from_window(self):
        assert RewardConfig(window_size=1).decay == 1.0
        assert RewardConfig(window_size=99).decay == pytest.approx(0.02)


class TestValidation:
    """Invalid knobs are rejected at construction, never mid-run."""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"discount_rate": -0.01},
            {"discount_rate": float("nan")},
            {"window_size": 0},
            {"window_size": -5},
            {"latency_budget_ms": 0.0},
            {"epsilon": 0.0},
            {"clip_range": (0.5, 0.5)},
            {"clip_range": (0.5, -0.5)},
            {"clip_range": (-2.0, 1.0)},
            {"clip_range": (-1.0, 1.5)},
            {"aggregator": "median"},
            {"normalizer": "zscore"},
            {"unknown_knob": 1},
        ],
    )
    def test_rejected(self, kwargs):
        with pytest.raises(ValidationError):
            RewardConfig(**kwargs)

    def test_unknown_strategy_lists_available(self):
        with pytest.raises(ValidationError, match="discounted_sum"):
            RewardConfig(aggregator="median")

    def test_narrow_clip_range_accepted(self):
        assert RewardConfig(clip_range=(-0.5, 0.25)).clip_range == (-0.5, 0.25)

    def test_frozen(self):
        config = RewardConfig()
        with pytest.raises(ValidationError):
            config.window_size = 10


class TestFingerprint:
    def test_stable_across_instances(self):
        assert RewardConfig().fingerprint() == RewardConfig().fingerprint()
        assert len(RewardConfig().fingerprint()) == 16

    def test_changes_with_any_knob(self):
        base = RewardConfig().fingerprint()
        assert RewardConfig(discount_rate=0.06).fingerprint() != base
        assert RewardConfig(normalize=False).fingerprint() != base
        assert RewardConfig(aggregator="recency_discounted").fingerprint() != base

    def test_ignores_profile_name(self):
        assert RewardConfig(profile_name="a").fingerprint() == RewardConfig(profile_name="b").fingerprint()


class TestProfiles:
    def test_default_profile(self):
        config = RewardConfig.from_profile("default")

        assert config.profile_name == "default"
        assert config.fingerprint() == RewardConfig().fingerprint()

    def test_fast_adapt_profile(self):
        config = RewardConfig.from_profile("fast_adapt")
        assert config.window_size == 20
        assert config.discount_rate == 0.1

    def test_raw_clip_profile(self):
        assert RewardConfig.from_profile("raw_clip").normalize is False

    def test_overrides_applied(self):
        config = RewardConfig.from_profile("fast_adapt", {"window_size": 5})
        assert config.window_size == 5
        assert config.discount_rate == 0.1

    def test_unknown_profile(self):
        with pytest.raises(ValueError, match="Unknown profile"):
            RewardConfig.from_profile("nope")


class TestYaml:
    def test_round_trip(self, tmp_path):
        original = RewardConfig(discount_rate=0.2, clip_range=(-0.8, 0.9), normalizer="stateless")
        path = tmp_path / "reward.yaml"

        original.to_yaml(path)
        loaded = RewardConfig.from_yaml(path)

        assert loaded == original

    def test_partial_file_uses_defaults(self, tmp_path):
        path = tmp_path / "reward.yaml"
        path.write_text("window_size: 10\n")

        config = RewardConfig.from_yaml(path, overrides={"discount_rate": 0.0})

        assert config.window_size == 10
        assert config.discount_rate == 0.0
        assert config.normalize is True

    @pytest.mark.parametrize("content", ["", "- 1\n- 2\n"])
    def test_non_mapping_rejected(self, tmp_path, content):
        path = tmp_path / "reward.yaml"
        path.write_text(content)

        with pytest.raises(ValueError, match="mapping"):
            RewardConfig.from_yaml(path)

    def test_invalid_value_in_file(self, tmp_path):
        path = tmp_path / "reward.yaml"
        path.write_text(yaml.dump({"window_size": 0}))

        with pytest.raises(ValidationError):
            RewardConfig.from_yaml(path)


class TestDeepMerge:
    def test_nested_merge(self):
        merged = deep_merge({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}, "c": 4})
        assert merged == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}

    def test_base_not_modified(self):
        base = {"a": {"x": 1}}
        deep_merge(base, {"a": {"x": 2}})
        assert base == {"a": {"x": 1}}


class TestSettings:
    def test_defaults(self, monkeypatch):
        for var in ("TICKREWARD_LOG_LEVEL", "TICKREWARD_PROFILE", "TICKREWARD_DIAGNOSTICS_PATH"):
            monkeypatch.delenv(var, raising=False)

        settings = RewardSettings()

        assert settings.log_level == "INFO"
        assert settings.profile == "default"
        assert settings.diagnostics_path is None

    def test_reads_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TICKREWARD_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("TICKREWARD_PROFILE", "fast_adapt")
        monkeypatch.setenv("TICKREWARD_DIAGNOSTICS_PATH", str(tmp_path / "diag.jsonl"))

        settings = RewardSettings()

        assert settings.log_level == "DEBUG"
        assert settings.profile == "fast_adapt"
        assert settings.diagnostics_path.endswith("diag.jsonl")
