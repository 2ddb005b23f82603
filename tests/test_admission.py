"""Tests for the admission and anomaly monitor."""

from collections import deque

import pytest

from syncserver.admission import (
    AdmissionDecision,
    AdmissionMonitor,
    Decision,
    ShardedMap,
    TokenBucket,
    actor_key,
    intervals_too_uniform,
    origin_key,
    stricter,
    too_many_outliers,
)
from syncserver.config import AdmissionConfig


@pytest.fixture
def admission_config():
    return AdmissionConfig(
        rate_per_minute=60,
        strict_rate_per_minute=10,
        suspicion_duration=3600.0,
        block_duration=600.0,
        inactivity_window=3600.0,
    )


@pytest.fixture
def monitor(admission_config, seconds_clock):
    return AdmissionMonitor(admission_config, clock=seconds_clock)


class TestTokenBucket:
    """Test bucket arithmetic."""

    def test_capacity_then_refusal(self):
        bucket = TokenBucket(60, now=0.0)
        for _ in range(60):
            assert bucket.try_consume(0.0)[0]

        consumed, retry_after = bucket.try_consume(0.0)

        assert not consumed
        assert retry_after == pytest.approx(1.0)

    def test_refill_over_time(self):
        bucket = TokenBucket(60, now=0.0)
        for _ in range(60):
            bucket.try_consume(0.0)

        assert bucket.try_consume(1.0)[0]


class TestDetectors:
    """Test the statistical detectors."""

    def test_uniform_intervals_flagged(self):
        assert intervals_too_uniform(deque([1.0, 1.0, 1.01, 0.99, 1.0]))

    def test_irregular_intervals_pass(self):
        assert not intervals_too_uniform(deque([0.2, 3.0, 1.1, 7.5, 0.4]))

    def test_too_few_intervals(self):
        assert not intervals_too_uniform(deque([1.0, 1.0]))

    def test_zero_mean_skipped(self):
        assert not intervals_too_uniform(deque([0.0] * 10))

    def test_outliers_flagged(self):
        samples = deque([0.1] * 14 + [10.0] * 4)
        assert too_many_outliers(samples)

    def test_stable_response_times_pass(self):
        samples = deque([0.1, 0.11, 0.09, 0.1, 0.12, 0.1, 0.095, 0.105, 0.1, 0.11])
        assert not too_many_outliers(samples)


class TestStricter:
    """Test decision combination."""

    def test_more_severe_wins(self):
        throttle = AdmissionDecision(Decision.THROTTLE, 5.0)
        block = AdmissionDecision(Decision.BLOCK, 1.0)
        assert stricter(throttle, block) == block

    def test_tie_keeps_longer_wait(self):
        short = AdmissionDecision(Decision.THROTTLE, 1.0)
        long = AdmissionDecision(Decision.THROTTLE, 9.0)
        assert stricter(short, long) == long


class TestShardedMap:
    """Test the sharded metrics map."""

    def test_update_read_remove(self, monitor, seconds_clock):
        metrics = ShardedMap(shard_count=4)
        factory = monitor._new_metrics(seconds_clock())

        metrics.update("a", factory, lambda m: setattr(m, "request_count", 3))
        metrics.update("b", factory, lambda m: None)

        assert metrics.read("a", lambda m: m.request_count) == 3
        assert metrics.read("missing", lambda m: m.request_count) is None
        assert len(metrics) == 2
        assert metrics.remove_if(lambda m: m.request_count == 3) == 1
        assert len(metrics) == 1


class TestAdmissionMonitor:
    """Test admission decisions."""

    def test_sixty_first_request_throttled(self, monitor):
        for _ in range(60):
            assert monitor.admit("alice").allowed

        decision = monitor.admit("alice")

        assert decision.decision == Decision.THROTTLE
        assert decision.retry_after > 0
        assert monitor.is_suspicious(actor_key("alice"))

    def test_actors_are_independent(self, monitor):
        for _ in range(61):
            monitor.admit("alice")

        assert monitor.admit("bob").allowed

    def test_throttled_key_does_not_gain_capacity(self, monitor, seconds_clock):
        for _ in range(61):
            monitor.admit("alice")

        seconds_clock.advance(0.5)
        decision = monitor.admit("alice")

        # strict bucket refills at 10/min from empty
        assert decision.decision == Decision.THROTTLE
        assert decision.retry_after == pytest.approx(5.5)
        assert not monitor.is_blocked(actor_key("alice"))

    def test_repeated_strict_violations_block(self, monitor, seconds_clock):
        for _ in range(61):
            monitor.admit("alice")

        seconds_clock.advance(7.0)
        assert monitor.admit("alice").allowed

        assert monitor.admit("alice").decision == Decision.THROTTLE
        assert monitor.admit("alice").decision == Decision.THROTTLE
        decision = monitor.admit("alice")
        assert decision.decision == Decision.BLOCK
        assert decision.retry_after == pytest.approx(600.0)
        assert monitor.is_blocked(actor_key("alice"))

        seconds_clock.advance(100.0)
        still_blocked = monitor.admit("alice")
        assert still_blocked.decision == Decision.BLOCK
        assert still_blocked.retry_after == pytest.approx(500.0)

    def test_flagged_burst_is_throttled_before_block(self, monitor, seconds_clock):
        for _ in range(6):
            monitor.admit("replica")
            seconds_clock.advance(3.0)
        assert monitor.is_suspicious(actor_key("replica"))

        decisions = []
        for _ in range(20):
            decisions.append(monitor.admit("replica").decision)
            seconds_clock.advance(0.5)

        denied = [decision for decision in decisions if decision != Decision.ALLOW]
        assert denied[:3] == [Decision.THROTTLE, Decision.THROTTLE, Decision.BLOCK]

    def test_block_threshold_configurable(self, admission_config, seconds_clock):
        admission_config.block_after_violations = 1
        monitor = AdmissionMonitor(admission_config, clock=seconds_clock)
        for _ in range(61):
            monitor.admit("alice")

        assert monitor.admit("alice").decision == Decision.BLOCK

    def test_block_expires(self, monitor, seconds_clock):
        for _ in range(64):
            monitor.admit("alice")
        assert monitor.is_blocked(actor_key("alice"))

        seconds_clock.advance(601.0)

        assert monitor.admit("alice").allowed

    def test_uniform_spacing_flags_suspicious(self, monitor, seconds_clock):
        for _ in range(7):
            monitor.admit("bot")
            seconds_clock.advance(2.0)

        assert monitor.is_suspicious(actor_key("bot"))

    def test_suspicion_expires(self, monitor, seconds_clock):
        for _ in range(61):
            monitor.admit("alice")
        seconds_clock.advance(3601.0)

        assert monitor.admit("alice").allowed
        assert not monitor.is_suspicious(actor_key("alice"))

    def test_origin_limit_applies_across_actors(self, monitor):
        for index in range(60):
            assert monitor.admit(f"actor-{index}", origin="10.0.0.1").allowed

        decision = monitor.admit("fresh-actor", origin="10.0.0.1")

        assert decision.decision == Decision.THROTTLE
        assert monitor.is_suspicious(origin_key("10.0.0.1"))
        assert not monitor.is_suspicious(actor_key("fresh-actor"))

    def test_response_time_outliers_flag(self, monitor):
        for sample in [0.1] * 14 + [10.0] * 4:
            monitor.record_response_time("slowpoke", None, sample)

        assert monitor.is_suspicious(actor_key("slowpoke"))

    def test_snapshot_counts(self, monitor):
        monitor.admit("alice")
        for _ in range(64):
            monitor.admit("mallory")

        snapshot = monitor.snapshot()

        assert snapshot == {"tracked": 2, "suspicious": 1, "blocked": 1}

    def test_cleanup_removes_idle_keys(self, monitor, seconds_clock):
        monitor.admit("alice")
        for _ in range(61):
            monitor.admit("mallory")

        seconds_clock.advance(3599.0)
        monitor.admit("mallory")
        seconds_clock.advance(2.0)

        assert monitor.cleanup() == 1
        assert monitor.snapshot()["tracked"] == 1

    @pytest.mark.asyncio
    async def test_start_stop(self, monitor):
        await monitor.start()
        await monitor.stop()
        assert monitor._task is None
