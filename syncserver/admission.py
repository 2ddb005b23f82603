"""
Admission and anomaly monitor.

Gates how much sync traffic each actor and each network origin may generate.
Every key gets a token bucket; keys flagged suspicious switch to a stricter
bucket, and keys that keep exceeding the strict bucket after being throttled
are blocked for a while.
Keys are flagged when their requests arrive with suspiciously uniform spacing
or when their response times contain too many statistical outliers.
"""

import asyncio
import logging
import statistics
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Tuple, TypeVar

from common.constants import (
    INTERVAL_WINDOW,
    MIN_INTERVAL_SAMPLES,
    MIN_RESPONSE_SAMPLES,
    OUTLIER_SHARE_THRESHOLD,
    RESPONSE_TIME_WINDOW,
    UNIFORM_INTERVAL_CV,
)
from syncserver.config import AdmissionConfig

logger = logging.getLogger(__name__)

SHARD_COUNT = 16

T = TypeVar("T")


class Decision(str, Enum):
    ALLOW = "allow"
    THROTTLE = "throttle"
    BLOCK = "block"


_SEVERITY = {Decision.ALLOW: 0, Decision.THROTTLE: 1, Decision.BLOCK: 2}


@dataclass(frozen=True)
class AdmissionDecision:
    decision: Decision
    retry_after: float = 0.0

    @property
    def allowed(self) -> bool:
        return self.decision == Decision.ALLOW


ALLOW = AdmissionDecision(Decision.ALLOW)


def stricter(first: AdmissionDecision, second: AdmissionDecision) -> AdmissionDecision:
    """Return the more restrictive decision; ties keep the longer wait."""
    if _SEVERITY[first.decision] != _SEVERITY[second.decision]:
        return first if _SEVERITY[first.decision] > _SEVERITY[second.decision] else second
    return first if first.retry_after >= second.retry_after else second


class TokenBucket:
    """Token bucket refilled continuously at `rate_per_minute / 60` tokens per second."""

    def __init__(self, rate_per_minute: int, now: float):
        self.capacity = float(rate_per_minute)
        self.refill_rate = rate_per_minute / 60.0
        self.tokens = self.capacity
        self.updated = now

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.updated)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.updated = now

    def try_consume(self, now: float) -> Tuple[bool, float]:
        """
        Take one token if available.

        Returns:
            (consumed, seconds until the next token is available)
        """
        self._refill(now)
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True, 0.0
        return False, (1.0 - self.tokens) / self.refill_rate


@dataclass
class ActorMetrics:
    """Sliding counters for one actor or origin key."""
    default_bucket: TokenBucket
    strict_bucket: TokenBucket
    last_seen: float
    request_count: int = 0
    last_request: Optional[float] = None
    intervals: Deque[float] = field(default_factory=lambda: deque(maxlen=INTERVAL_WINDOW))
    response_times: Deque[float] = field(default_factory=lambda: deque(maxlen=RESPONSE_TIME_WINDOW))
    suspicious_until: Optional[float] = None
    blocked_until: Optional[float] = None
    strict_violations: int = 0
    flag_reason: Optional[str] = None


class ShardedMap:
    """
    Dictionary split across lock-protected shards.

    Operations on keys in different shards never contend.
    """

    def __init__(self, shard_count: int = SHARD_COUNT):
        self._shards: List[Tuple[threading.Lock, Dict[str, ActorMetrics]]] = [
            (threading.Lock(), {}) for _ in range(shard_count)
        ]

    def _shard(self, key: str) -> Tuple[threading.Lock, Dict[str, ActorMetrics]]:
        return self._shards[hash(key) % len(self._shards)]

    def update(
        self,
        key: str,
        factory: Callable[[], ActorMetrics],
        fn: Callable[[ActorMetrics], T]
    ) -> T:
        """Run `fn` on the entry for `key` under its shard lock, creating it if absent."""
        lock, entries = self._shard(key)
        with lock:
            metrics = entries.get(key)
            if metrics is None:
                metrics = factory()
                entries[key] = metrics
            return fn(metrics)

    def read(self, key: str, fn: Callable[[ActorMetrics], T]) -> Optional[T]:
        lock, entries = self._shard(key)
        with lock:
            metrics = entries.get(key)
            return fn(metrics) if metrics is not None else None

    def remove_if(self, predicate: Callable[[ActorMetrics], bool]) -> int:
        removed = 0
        for lock, entries in self._shards:
            with lock:
                stale = [key for key, metrics in entries.items() if predicate(metrics)]
                for key in stale:
                    del entries[key]
                removed += len(stale)
        return removed

    def count_if(self, predicate: Callable[[ActorMetrics], bool]) -> int:
        total = 0
        for lock, entries in self._shards:
            with lock:
                total += sum(1 for metrics in entries.values() if predicate(metrics))
        return total

    def __len__(self) -> int:
        return self.count_if(lambda metrics: True)


def intervals_too_uniform(intervals: Deque[float]) -> bool:
    """Coefficient of variation of inter-arrival intervals below the threshold."""
    if len(intervals) < MIN_INTERVAL_SAMPLES:
        return False
    mean = statistics.fmean(intervals)
    if mean <= 0:
        return False
    return statistics.pstdev(intervals) / mean < UNIFORM_INTERVAL_CV


def too_many_outliers(samples: Deque[float]) -> bool:
    """Share of IQR outliers among response-time samples above the threshold."""
    if len(samples) < MIN_RESPONSE_SAMPLES:
        return False
    q1, _, q3 = statistics.quantiles(samples, n=4)
    iqr = q3 - q1
    lower = q1 - 1.5 * iqr
    upper = q3 + 1.5 * iqr
    outliers = sum(1 for sample in samples if sample < lower or sample > upper)
    return outliers / len(samples) > OUTLIER_SHARE_THRESHOLD


def actor_key(actor_id: str) -> str:
    return f"actor:{actor_id}"


def origin_key(origin: str) -> str:
    return f"origin:{origin}"


class AdmissionMonitor:
    """
    Per-actor and per-origin admission gate.

    Owned by the coordinator; its cleanup task is started and stopped with
    the coordinator's lifecycle.
    """

    def __init__(
        self,
        config: Optional[AdmissionConfig] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the monitor.

        Args:
            config: Rates and durations
            clock: Seconds clock used for buckets and windows
        """
        self.config = config or AdmissionConfig()
        self.clock = clock
        self.metrics = ShardedMap()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    def _new_metrics(self, now: float) -> Callable[[], ActorMetrics]:
        def factory() -> ActorMetrics:
            return ActorMetrics(
                default_bucket=TokenBucket(self.config.rate_per_minute, now),
                strict_bucket=TokenBucket(self.config.strict_rate_per_minute, now),
                last_seen=now,
            )
        return factory

    def admit(self, actor_id: str, origin: Optional[str] = None) -> AdmissionDecision:
        """
        Decide whether a request may proceed.

        Actor and origin are evaluated independently; the stricter decision wins.

        Args:
            actor_id: Authenticated actor
            origin: Network origin identifier (client address)

        Returns:
            AdmissionDecision
        """
        decision = self._admit_key(actor_key(actor_id))
        if origin:
            decision = stricter(decision, self._admit_key(origin_key(origin)))

        if not decision.allowed:
            logger.warning(
                f"Admission denied [actor={actor_id}, origin={origin}, "
                f"decision={decision.decision.value}, retry_after={decision.retry_after:.1f}s]"
            )
        return decision

    def _admit_key(self, key: str) -> AdmissionDecision:
        now = self.clock()
        return self.metrics.update(key, self._new_metrics(now), lambda m: self._evaluate(key, m, now))

    def _evaluate(self, key: str, metrics: ActorMetrics, now: float) -> AdmissionDecision:
        metrics.last_seen = now
        metrics.request_count += 1

        if metrics.blocked_until is not None:
            if now < metrics.blocked_until:
                return AdmissionDecision(Decision.BLOCK, metrics.blocked_until - now)
            metrics.blocked_until = None
            logger.info(f"Block expired [key={key}]")

        if metrics.last_request is not None:
            metrics.intervals.append(now - metrics.last_request)
        metrics.last_request = now

        if metrics.suspicious_until is not None and now >= metrics.suspicious_until:
            metrics.suspicious_until = None
            metrics.flag_reason = None
            metrics.strict_violations = 0
            logger.info(f"Suspicion expired [key={key}]")

        if metrics.suspicious_until is None and intervals_too_uniform(metrics.intervals):
            self._flag(key, metrics, now, "uniform request spacing")

        if metrics.suspicious_until is not None:
            consumed, retry_after = metrics.strict_bucket.try_consume(now)
            if consumed:
                return ALLOW
            metrics.strict_violations += 1
            if metrics.strict_violations < self.config.block_after_violations:
                return AdmissionDecision(Decision.THROTTLE, retry_after)
            metrics.strict_violations = 0
            metrics.blocked_until = now + self.config.block_duration
            logger.warning(
                f"Blocking key after repeatedly exceeding strict rate [key={key}, "
                f"duration={self.config.block_duration:.0f}s]"
            )
            return AdmissionDecision(Decision.BLOCK, self.config.block_duration)

        consumed, retry_after = metrics.default_bucket.try_consume(now)
        if consumed:
            return ALLOW
        self._flag(key, metrics, now, "rate limit exceeded")
        # the strict bucket now governs when the next request may pass
        strict_delay = (1.0 - metrics.strict_bucket.tokens) / metrics.strict_bucket.refill_rate
        return AdmissionDecision(Decision.THROTTLE, max(retry_after, strict_delay))

    def _flag(self, key: str, metrics: ActorMetrics, now: float, reason: str) -> None:
        if metrics.suspicious_until is None:
            strict = TokenBucket(self.config.strict_rate_per_minute, now)
            # carry over exhaustion so a throttled key does not gain fresh capacity
            strict.tokens = min(strict.capacity, metrics.default_bucket.tokens)
            metrics.strict_bucket = strict
        metrics.suspicious_until = now + self.config.suspicion_duration
        metrics.flag_reason = reason
        logger.warning(f"Flagged key as suspicious [key={key}, reason={reason}]")

    def record_response_time(self, actor_id: str, origin: Optional[str], seconds: float) -> None:
        """
        Feed one response-time sample for the actor and origin.

        Args:
            actor_id: Actor that issued the request
            origin: Network origin identifier
            seconds: Time taken to serve the request
        """
        keys = [actor_key(actor_id)]
        if origin:
            keys.append(origin_key(origin))

        now = self.clock()
        for key in keys:
            def record(metrics: ActorMetrics, key: str = key) -> None:
                metrics.response_times.append(seconds)
                metrics.last_seen = now
                if metrics.suspicious_until is None and too_many_outliers(metrics.response_times):
                    self._flag(key, metrics, now, "response time outliers")

            self.metrics.update(key, self._new_metrics(now), record)

    def is_suspicious(self, key: str) -> bool:
        now = self.clock()
        result = self.metrics.read(
            key, lambda m: m.suspicious_until is not None and now < m.suspicious_until
        )
        return bool(result)

    def is_blocked(self, key: str) -> bool:
        now = self.clock()
        result = self.metrics.read(
            key, lambda m: m.blocked_until is not None and now < m.blocked_until
        )
        return bool(result)

    def snapshot(self) -> Dict[str, int]:
        """Counts of tracked, suspicious and blocked keys."""
        now = self.clock()
        return {
            "tracked": len(self.metrics),
            "suspicious": self.metrics.count_if(
                lambda m: m.suspicious_until is not None and now < m.suspicious_until
            ),
            "blocked": self.metrics.count_if(
                lambda m: m.blocked_until is not None and now < m.blocked_until
            ),
        }

    def cleanup(self) -> int:
        """
        Drop metrics idle for longer than the inactivity window.

        Keys that are still blocked or suspicious are kept.

        Returns:
            Number of keys removed
        """
        now = self.clock()
        window = self.config.inactivity_window

        def stale(metrics: ActorMetrics) -> bool:
            if metrics.blocked_until is not None and now < metrics.blocked_until:
                return False
            if metrics.suspicious_until is not None and now < metrics.suspicious_until:
                return False
            return now - metrics.last_seen > window

        removed = self.metrics.remove_if(stale)
        if removed:
            logger.debug(f"Aged out metrics for {removed} idle keys")
        return removed

    async def start(self) -> None:
        """Start the background cleanup task."""
        if self._running:
            logger.warning("Admission cleanup task already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started admission cleanup task (interval: {self.config.cleanup_interval}s)")

    async def stop(self) -> None:
        """Stop the background cleanup task."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Stopped admission cleanup task")

    async def _run(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.config.cleanup_interval)

                if not self._running:
                    break

                self.cleanup()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in admission cleanup task: {e}", exc_info=True)
