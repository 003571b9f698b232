"""Tests for per-tick reward orchestration."""

import math
import threading
import time

import pytest

from tickreward import (
    CallPhase,
    EventRecord,
    NormalizationState,
    RewardConfig,
    RewardSession,
    RewardWarning,
    ScalarReward,
    SchemaViolation,
    ValidatedEventSequence,
    compute_reward,
)
from tickreward import aggregation
from tickreward.telemetry import DiagnosticEventType, DiagnosticHub

from tests.helpers import RELAXED_LATENCY_MS

TWO_EVENTS = [EventRecord(0.1, 0.4), EventRecord(0.4, -0.2)]


class TestEndToEnd:
    """Full pipeline on hand-computed inputs."""

    def test_two_events_cold_start(self, session):
        reward = session.compute_reward(TWO_EVENTS)

        assert reward.raw == pytest.approx(0.201965, abs=1e-6)
        assert reward.value == pytest.approx(0.19924, abs=1e-4)
        assert reward.value == math.tanh(reward.raw)
        assert reward.normalized is True
        assert session.last_diagnostic.has_warning(RewardWarning.NORMALIZATION_DEGENERATE)

    def test_nan_value_is_fatal_and_state_untouched(self, session):
        session.compute_reward(TWO_EVENTS)
        before = session.state

        with pytest.raises(SchemaViolation):
            session.compute_reward([EventRecord(1.0, math.nan)])

        assert session.state == before
        assert session.last_diagnostic.phase is CallPhase.FAILED
        assert session.last_diagnostic.error is not None

    @pytest.mark.parametrize("bad", [EventRecord("1.0", 0.5), EventRecord(0.0, None)])
    def test_non_numeric_field_is_schema_violation(self, session, bad):
        with pytest.raises(SchemaViolation, match="not_a_number"):
            session.compute_reward([bad])

        assert session.state == NormalizationState()
        assert session.last_diagnostic.phase is CallPhase.FAILED

    def test_hand_built_sequence_cannot_skip_validation(self, session):
        forged = ValidatedEventSequence(records=(EventRecord(5.0, 1.0), EventRecord(1.0, math.nan)))

        with pytest.raises(SchemaViolation):
            session.compute_reward(forged)

        assert session.state == NormalizationState()

    def test_unnormalized_raw_clamped(self, hub):
        config = RewardConfig(
            normalize=False,
            clip_range=(-1.0, 1.0),
            discount_rate=0.0,
            latency_budget_ms=RELAXED_LATENCY_MS,
        )
        session = RewardSession(config, hub=hub)

        reward = session.compute_reward([EventRecord(0.0, 2.5)])

        assert reward == ScalarReward(value=1.0, raw=2.5, normalized=False)
        assert session.last_diagnostic.has_warning(RewardWarning.OUT_OF_RANGE_OUTPUT)
        assert session.state == NormalizationState()


class TestEmptyInput:
    """compute_reward([]) is neutral, warns, and never touches statistics."""

    def test_neutral_reward(self, session):
        reward = session.compute_reward([])

        assert reward == ScalarReward(value=0.0, raw=0.0, normalized=False)
        assert session.last_diagnostic.warnings == (RewardWarning.EMPTY_INPUT,)

    def test_state_not_mutated(self, session):
        session.compute_reward(TWO_EVENTS)
        session.compute_reward([EventRecord(0.0, 1.0)])
        before = session.state

        session.compute_reward([])

        assert session.state == before


class TestDeterminism:
    """Fixed state + fixed input -> bit-identical output."""

    def test_restored_state_reproduces_output(self, session):
        for t in range(5):
            session.compute_reward([EventRecord(float(t), float(t) - 2.0)])
        snapshot = session.state_dict()

        first = session.compute_reward(TWO_EVENTS)
        session.load_state_dict(snapshot)
        second = session.compute_reward(TWO_EVENTS)

        assert first == second

    def test_independent_sessions_agree(self, config, hub):
        a = RewardSession(config, hub=hub)
        b = RewardSession(config, hub=hub)
        batches = [[EventRecord(0.0, v)] for v in (0.5, -1.0, 3.0, 0.2)]

        assert [a.compute_reward(x) for x in batches] == [b.compute_reward(x) for x in batches]

    def test_sessions_are_isolated(self, config, hub):
        a = RewardSession(config, hub=hub)
        b = RewardSession(config, hub=hub)
        a.compute_reward(TWO_EVENTS)

        assert b.state == NormalizationState()


class TestDiagnostics:
    """Each call forwards a structured record to the hub."""

    def test_record_contents(self, session, hub, memory_output):
        reward = session.compute_reward(TWO_EVENTS)
        hub.flush()

        (event,) = memory_output.events
        record = event.data
        assert event.event_type is DiagnosticEventType.REWARD_COMPUTED
        assert event.session_id == "test"
        assert record.raw == reward.raw
        assert record.normalized_value == reward.value
        assert record.running_mean == session.state.running_mean
        assert record.running_variance == session.state.running_variance
        assert record.config_fingerprint == session.config.fingerprint()
        assert record.tick == 1
        assert record.event_count == 2
        assert record.phase is CallPhase.COMPLETED

    def test_failure_emits_failed_event(self, session, hub, memory_output):
        with pytest.raises(SchemaViolation):
            session.compute_reward([EventRecord(-1.0, 0.0)])
        hub.flush()

        (event,) = memory_output.events
        assert event.event_type is DiagnosticEventType.REWARD_FAILED
        assert event.severity == "error"

    def test_broken_hub_never_fails_the_tick(self, config):
        class ExplodingHub(DiagnosticHub):
            def emit(self, event):
                raise RuntimeError("logger down")

        session = RewardSession(config, hub=ExplodingHub())
        reward = session.compute_reward(TWO_EVENTS)

        assert -1.0 <= reward.value <= 1.0

    def test_closed_hub_drops_silently(self, config):
        hub = DiagnosticHub()
        hub.close()
        session = RewardSession(config, hub=hub)

        assert session.compute_reward(TWO_EVENTS).raw == pytest.approx(0.201965, abs=1e-6)


class TestLatencyBudget:
    """Overruns are flagged, never fatal."""

    def test_slow_aggregation_flagged(self, hub, monkeypatch):
        class SlowAggregator:
            name = "slow_test_sum"

            def aggregate(self, events, discount_rate):
                time.sleep(0.01)
                return sum(e.value for e in events)

        monkeypatch.setattr(aggregation, "_AGGREGATORS", dict(aggregation._AGGREGATORS))
        aggregation.register_aggregator("slow_test_sum", SlowAggregator)

        config = RewardConfig(aggregator="slow_test_sum", latency_budget_ms=1.0)
        session = RewardSession(config, hub=hub)
        reward = session.compute_reward([EventRecord(0.0, 0.3)])

        assert reward.raw == 0.3
        assert session.last_diagnostic.has_warning(RewardWarning.LATENCY_EXCEEDED)
        assert session.last_diagnostic.latency_ms >= 10.0


class TestSessionLifecycle:
    def test_tick_counter(self, session):
        session.compute_reward([])
        session.compute_reward(TWO_EVENTS)
        assert session.tick == 2
        assert session.last_diagnostic.tick == 2

    def test_concurrent_calls_keep_newest_diagnostic(self, session):
        n_threads, per_thread = 8, 50

        def worker():
            for _ in range(per_thread):
                session.compute_reward(TWO_EVENTS)

        threads = [threading.Thread(target=worker) for _ in range(n_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert session.tick == n_threads * per_thread
        assert session.state.count == n_threads * per_thread
        assert session.last_diagnostic.tick == session.tick

    def test_restore_clears_last_diagnostic(self, session):
        snapshot = session.state_dict()
        session.compute_reward(TWO_EVENTS)
        session.compute_reward(TWO_EVENTS)

        session.load_state_dict(snapshot)
        session.compute_reward(TWO_EVENTS)

        assert session.last_diagnostic.tick == 1

    def test_reset_is_teardown(self, session, hub, memory_output):
        session.compute_reward(TWO_EVENTS)
        session.reset()
        hub.flush()

        assert session.state == NormalizationState()
        assert session.tick == 0
        assert session.last_diagnostic is None
        assert memory_output.events[-1].event_type is DiagnosticEventType.SESSION_RESET

    def test_checkpoint_rejects_other_config(self, session, hub):
        snapshot = session.state_dict()
        other = RewardSession(RewardConfig(window_size=7), hub=hub)

        with pytest.raises(ValueError, match="fingerprint"):
            other.load_state_dict(snapshot)

    def test_peek_reward_has_no_side_effects(self, session, hub, memory_output):
        session.compute_reward([EventRecord(0.0, 1.0)])
        hub.flush()
        before_state, before_tick = session.state, session.tick
        n_events = len(memory_output.events)

        peeked = session.peek_reward(TWO_EVENTS)
        hub.flush()

        assert session.state == before_state
        assert session.tick == before_tick
        assert len(memory_output.events) == n_events
        assert session.compute_reward(TWO_EVENTS) == peeked


class TestStrategies:
    def test_stateless_normalizer_matches_tanh(self, hub):
        config = RewardConfig(normalizer="stateless", latency_budget_ms=RELAXED_LATENCY_MS)
        session = RewardSession(config, hub=hub)

        for _ in range(3):
            reward = session.compute_reward(TWO_EVENTS)
            assert reward.value == math.tanh(reward.raw)
        assert session.state == NormalizationState()

    def test_recency_aggregator_selected_from_config(self, hub):
        config = RewardConfig(aggregator="recency_discounted", discount_rate=1.0)
        session = RewardSession(config, hub=hub)

        reward = session.compute_reward([EventRecord(100.0, 0.5)])

        # Newest event carries full weight regardless of its absolute time
        assert reward.raw == 0.5


class TestModuleLevelComputeReward:
    def test_fresh_session_per_call(self, config):
        first = compute_reward(TWO_EVENTS, config)
        second = compute_reward(TWO_EVENTS, config)

        assert first == second
        assert first.value == math.tanh(first.raw)

    def test_uses_given_session(self, session):
        compute_reward(TWO_EVENTS, session=session)
        assert session.state.count == 1

    def test_conflicting_config_rejected(self, session):
        with pytest.raises(ValueError, match="config"):
            compute_reward(TWO_EVENTS, RewardConfig(window_size=3), session=session)
