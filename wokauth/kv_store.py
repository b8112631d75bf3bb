"""
TTL key-value store used for OAuth state nonces.
In-memory backend for development/tests; Redis backend when REDIS_URL is set.
pop() is the single-key atomic read-and-delete both backends guarantee.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

import redis

from wokauth.config import REDIS_URL

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def get(self, key: str) -> str | None: ...

    def delete(self, key: str) -> None: ...

    def pop(self, key: str) -> str | None: ...


@dataclass
class _Entry:
    value: str
    expires_at: float


class MemoryKeyValueStore:
    """Process-local store. Expiry uses a monotonic clock; expired entries read as absent."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._clean_expired()
            self._data[key] = _Entry(value=value, expires_at=self._clock() + ttl_seconds)

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._data[key]
                return None
            return entry.value

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def pop(self, key: str) -> str | None:
        with self._lock:
            entry = self._data.pop(key, None)
            if entry is None or entry.expires_at <= self._clock():
                return None
            return entry.value

    def __len__(self) -> int:
        with self._lock:
            self._clean_expired()
            return len(self._data)

    def _clean_expired(self) -> None:
        now = self._clock()
        expired = [k for k, e in self._data.items() if e.expires_at <= now]
        for k in expired:
            del self._data[k]


class RedisKeyValueStore:
    """Redis-backed store. Expiry is Redis EX; pop is GETDEL (Redis >= 6.2)."""

    def __init__(self, client: redis.Redis):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        return cls(redis.Redis.from_url(url, encoding="utf-8", decode_responses=True))

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._redis.set(key, value, ex=ttl_seconds)

    def get(self, key: str) -> str | None:
        return self._redis.get(key)

    def delete(self, key: str) -> None:
        self._redis.delete(key)

    def pop(self, key: str) -> str | None:
        return self._redis.getdel(key)


_store: KeyValueStore | None = None


def get_kv_store() -> KeyValueStore:
    """Dependency: process-wide store, chosen by REDIS_URL on first use."""
    global _store
    if _store is None:
        if REDIS_URL:
            _store = RedisKeyValueStore.from_url(REDIS_URL)
            logger.info("Using Redis key-value store for OAuth state")
        else:
            _store = MemoryKeyValueStore()
            logger.info("Using in-memory key-value store for OAuth state")
    return _store
