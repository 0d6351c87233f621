import secrets
import time
from collections import defaultdict, deque
from threading import Lock

import structlog

from .cache import get_cache

logger = structlog.get_logger("slotwise.ratelimit")


class SlidingWindowLimiter:
    """Counts events per key over a sliding window.

    Events live in a redis sorted set when the cache runs on redis, otherwise
    (or whenever redis fails) in process memory.
    """

    def __init__(self, scope: str):
        self.scope = scope
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def _redis_key(self, key: str) -> str:
        return f"slotwise:ratelimit:{self.scope}:{key}"

    def _prune(self, now: float, window_seconds: int) -> None:
        cutoff = now - window_seconds
        empty = []
        for key, events in self._events.items():
            while events and events[0] <= cutoff:
                events.popleft()
            if not events:
                empty.append(key)
        for key in empty:
            self._events.pop(key, None)

    def count(self, key: str, window_seconds: int) -> int:
        window = max(1, int(window_seconds))
        now = time.time()
        client = get_cache().redis_client
        if client is not None:
            redis_key = self._redis_key(key)
            try:
                pipe = client.pipeline()
                pipe.zremrangebyscore(redis_key, 0, now - window)
                pipe.zcount(redis_key, now - window, "+inf")
                result = pipe.execute()
                return int(result[1] or 0)
            except Exception as exc:
                logger.warning("ratelimit_redis_failed", scope=self.scope, error=str(exc))

        with self._lock:
            self._prune(now, window)
            return len(self._events.get(key) or ())

    def record(self, key: str, window_seconds: int) -> None:
        window = max(1, int(window_seconds))
        now = time.time()
        client = get_cache().redis_client
        if client is not None:
            redis_key = self._redis_key(key)
            try:
                pipe = client.pipeline()
                pipe.zadd(redis_key, {f"{now}:{secrets.token_hex(8)}": now})
                pipe.zremrangebyscore(redis_key, 0, now - window)
                pipe.expire(redis_key, window + 60)
                pipe.execute()
                return
            except Exception as exc:
                logger.warning("ratelimit_redis_failed", scope=self.scope, error=str(exc))

        with self._lock:
            self._prune(now, window)
            self._events[key].append(now)

    def is_limited(self, key: str, limit: int, window_seconds: int) -> bool:
        return self.count(key, window_seconds) >= max(1, int(limit))

    def hit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Record one event unless the key is already over its limit. Returns True when limited."""
        if self.is_limited(key, limit, window_seconds):
            return True
        self.record(key, window_seconds)
        return False

    def clear(self, key: str) -> None:
        client = get_cache().redis_client
        if client is not None:
            try:
                client.delete(self._redis_key(key))
            except Exception as exc:
                logger.warning("ratelimit_redis_failed", scope=self.scope, error=str(exc))
        with self._lock:
            self._events.pop(key, None)

    def reset(self) -> None:
        with self._lock:
            self._events.clear()
