import fnmatch
import json
from typing import Any

import redis
import structlog
from diskcache import Cache

from ..config import settings

logger = structlog.get_logger("slotwise.cache")


class JsonCache:
    """JSON key/value store with TTL over redis or diskcache.

    Every backend failure is logged and reported as a miss, so callers always
    fall back to the database.
    """

    def __init__(self, backend: str = "none", *, redis_url: str | None = None, directory: str | None = None):
        self.backend = (backend or "none").strip().lower()
        self._redis: redis.Redis | None = None
        self._disk: Cache | None = None
        if self.backend == "redis":
            self._redis = redis.from_url(redis_url or settings.REDIS_URL, decode_responses=True)
        elif self.backend == "disk":
            self._disk = Cache(directory or settings.CACHE_DIR)
        elif self.backend != "none":
            raise ValueError(f"Unknown cache backend: {backend}")

    @property
    def enabled(self) -> bool:
        return self.backend != "none"

    @property
    def redis_client(self) -> redis.Redis | None:
        return self._redis

    def get(self, key: str) -> Any | None:
        if not self.enabled:
            return None
        try:
            if self._redis is not None:
                raw = self._redis.get(key)
            else:
                raw = self._disk.get(key)
            if raw is None:
                return None
            return json.loads(raw)
        except Exception as exc:
            logger.warning("cache_get_failed", key=key, backend=self.backend, error=str(exc))
            return None

    def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        if not self.enabled:
            return False
        try:
            raw = json.dumps(value, default=str)
            ttl = max(1, int(ttl_seconds))
            if self._redis is not None:
                self._redis.set(key, raw, ex=ttl)
            else:
                self._disk.set(key, raw, expire=ttl)
            return True
        except Exception as exc:
            logger.warning("cache_set_failed", key=key, backend=self.backend, error=str(exc))
            return False

    def delete(self, key: str) -> bool:
        if not self.enabled:
            return False
        try:
            if self._redis is not None:
                self._redis.delete(key)
            else:
                self._disk.delete(key)
            return True
        except Exception as exc:
            logger.warning("cache_delete_failed", key=key, backend=self.backend, error=str(exc))
            return False

    def delete_pattern(self, pattern: str) -> int:
        if not self.enabled:
            return 0
        removed = 0
        try:
            if self._redis is not None:
                for key in self._redis.scan_iter(match=pattern, count=500):
                    removed += int(self._redis.delete(key) or 0)
            else:
                for key in list(self._disk.iterkeys()):
                    if isinstance(key, str) and fnmatch.fnmatchcase(key, pattern):
                        if self._disk.delete(key):
                            removed += 1
        except Exception as exc:
            logger.warning("cache_delete_pattern_failed", pattern=pattern, backend=self.backend, error=str(exc))
        return removed

    def clear(self) -> None:
        if self._disk is not None:
            self._disk.clear()
        elif self._redis is not None:
            self.delete_pattern("slotwise:*")

    def close(self) -> None:
        if self._disk is not None:
            self._disk.close()


_cache: JsonCache | None = None


def build_cache() -> JsonCache:
    try:
        return JsonCache(
            settings.CACHE_BACKEND,
            redis_url=settings.REDIS_URL,
            directory=settings.CACHE_DIR,
        )
    except Exception as exc:
        logger.warning("cache_unavailable", backend=settings.CACHE_BACKEND, error=str(exc))
        return JsonCache("none")


def get_cache() -> JsonCache:
    global _cache
    if _cache is None:
        _cache = build_cache()
    return _cache


def set_cache(cache: JsonCache | None) -> None:
    global _cache
    _cache = cache
