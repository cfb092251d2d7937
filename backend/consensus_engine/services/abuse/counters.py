"""
Sliding-Window Counter Stores

RateWindowCounter backends behind one interface. Each call to
increment_and_count records an attempt and returns how many attempts fall
inside the trailing window, atomically, so concurrent requests can never
lose an update.

- LocalCounterStore: in-process, for single-instance deployments and tests
- RedisCounterStore: shared across instances (sorted set per key)

Both implement identical sliding-window semantics.
"""
import logging
import math
import threading
import time
import uuid
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional

import redis

from ...errors import CounterUnavailable


logger = logging.getLogger(__name__)


class CounterStore:
    """Interface for atomic sliding-window counters."""

    def increment_and_count(self, key: str, window_seconds: int) -> int:
        """Record one attempt under `key` and return the attempts in the window."""
        raise NotImplementedError

    def retry_after(self, key: str, window_seconds: int) -> int:
        """Seconds until the oldest attempt in the window ages out."""
        raise NotImplementedError


class LocalCounterStore(CounterStore):
    """
    In-memory sliding window. One deque of timestamps per key, guarded by a lock.

    Expired timestamps are pruned on every touch of the key. Every
    `sweep_every` increments, keys whose window has fully elapsed are dropped
    so idle actors do not accumulate; prune() does the same on demand.
    """

    SWEEP_EVERY = 1000

    def __init__(self, clock: Optional[Callable[[], float]] = None, sweep_every: Optional[int] = None):
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._events: Dict[str, Deque[float]] = defaultdict(deque)
        self._windows: Dict[str, int] = {}
        self._sweep_every = sweep_every or self.SWEEP_EVERY
        self._increments = 0

    def __len__(self) -> int:
        return len(self._events)

    def _trim(self, events: Deque[float], now: float, window_seconds: int) -> None:
        cutoff = now - window_seconds
        while events and events[0] <= cutoff:
            events.popleft()

    def _drop(self, key: str) -> None:
        self._events.pop(key, None)
        self._windows.pop(key, None)

    def _sweep(self, now: float, window_for: Callable[[str], int]) -> int:
        stale = []
        for key, events in self._events.items():
            self._trim(events, now, window_for(key))
            if not events:
                stale.append(key)
        for key in stale:
            self._drop(key)
        return len(stale)

    def increment_and_count(self, key: str, window_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            self._increments += 1
            if self._increments % self._sweep_every == 0:
                removed = self._sweep(now, lambda k: self._windows.get(k, window_seconds))
                if removed:
                    logger.debug(f"Swept {removed} idle rate-limit keys")
            events = self._events[key]
            self._windows[key] = window_seconds
            self._trim(events, now, window_seconds)
            events.append(now)
            return len(events)

    def retry_after(self, key: str, window_seconds: int) -> int:
        with self._lock:
            now = self._clock()
            events = self._events.get(key)
            if events is None:
                return 0
            self._trim(events, now, window_seconds)
            if not events:
                self._drop(key)
                return 0
            return max(1, math.ceil(events[0] + window_seconds - now))

    def prune(self, max_window_seconds: int) -> int:
        """Drop keys with no attempts inside `max_window_seconds`. Returns keys removed."""
        with self._lock:
            return self._sweep(self._clock(), lambda k: max_window_seconds)


class RedisCounterStore(CounterStore):
    """
    Distributed sliding window using one sorted set per key.

    A MULTI/EXEC pipeline trims expired members, adds the new attempt and
    reads the cardinality in one atomic step. Connection failures and
    timeouts surface as CounterUnavailable so callers can tell an outage
    apart from "limit exceeded".
    """

    KEY_PREFIX = "ratewindow:"

    def __init__(self, client: "redis.Redis", clock: Optional[Callable[[], float]] = None):
        self.client = client
        self._clock = clock or time.time

    @classmethod
    def from_url(cls, redis_url: str, timeout_seconds: float = 5.0) -> "RedisCounterStore":
        client = redis.Redis.from_url(
            redis_url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
            decode_responses=True,
        )
        return cls(client)

    def increment_and_count(self, key: str, window_seconds: int) -> int:
        now = self._clock()
        redis_key = self.KEY_PREFIX + key
        member = f"{now:.6f}:{uuid.uuid4().hex}"
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.zremrangebyscore(redis_key, "-inf", now - window_seconds)
            pipe.zadd(redis_key, {member: now})
            pipe.zcard(redis_key)
            pipe.expire(redis_key, int(window_seconds) + 1)
            results = pipe.execute()
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
            logger.error(f"Counter store unavailable for {key.split(':')[0]}: {e}")
            raise CounterUnavailable(str(e)) from e
        return int(results[2])

    def retry_after(self, key: str, window_seconds: int) -> int:
        now = self._clock()
        try:
            oldest = self.client.zrange(self.KEY_PREFIX + key, 0, 0, withscores=True)
        except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as e:
            raise CounterUnavailable(str(e)) from e
        if not oldest:
            return 0
        _, oldest_score = oldest[0]
        return max(1, math.ceil(float(oldest_score) + window_seconds - now))


def build_counter_store(redis_url: Optional[str], timeout_seconds: float = 5.0) -> CounterStore:
    """Distributed store when REDIS_URL is configured, local store otherwise."""
    if redis_url:
        logger.info("Using Redis sliding-window counter store")
        return RedisCounterStore.from_url(redis_url, timeout_seconds=timeout_seconds)
    logger.info("REDIS_URL not configured - using in-memory counter store")
    return LocalCounterStore()
