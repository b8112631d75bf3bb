"""
Per-IP request limits for login start and the OAuth callback.
Counts live in process memory; each bucket is a sliding one-minute window.
"""
import math
import threading
import time
from collections import deque
from typing import Callable

from fastapi import Request

from wokauth import config
from wokauth.audit import get_client_ip
from wokauth.errors import RATE_LIMITED, ApiError

WINDOW_SECONDS = 60


class SlidingWindow:
    """Request timestamps per key, kept only while they fall inside the window."""

    def __init__(self, window_seconds: float = WINDOW_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._hits)

    def hit(self, key: str, limit: int) -> int | None:
        """
        Record a request for key unless it is over limit. Returns None when allowed,
        otherwise the Retry-After value in seconds (>= 1). limit <= 0 allows everything.
        """
        if limit <= 0:
            return None
        now = self._clock()
        with self._lock:
            self._sweep(now)
            hits = self._hits.get(key)
            if hits is not None:
                self._expire(hits, now)
            if hits and len(hits) >= limit:
                return max(1, math.ceil(hits[0] + self.window_seconds - now))
            if hits is None:
                hits = self._hits[key] = deque()
            hits.append(now)
            return None

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()

    def _expire(self, hits: deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()

    def _sweep(self, now: float) -> None:
        # at most once per window: drop keys that have gone quiet
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for key in list(self._hits):
            hits = self._hits[key]
            self._expire(hits, now)
            if not hits:
                del self._hits[key]


limiter = SlidingWindow()


def reset() -> None:
    """Forget all recorded requests."""
    limiter.clear()


def rate_limit(bucket: str, setting: str):
    """
    Dependency factory: 429 when the client IP exceeds the per-minute limit named by
    `setting` in wokauth.config. The limit is read per request so it can be changed at runtime.
    """

    def _check(request: Request) -> None:
        key = f"{bucket}:{get_client_ip(request) or 'unknown'}"
        retry_after = limiter.hit(key, getattr(config, setting))
        if retry_after is not None:
            raise ApiError(
                RATE_LIMITED,
                "Too many requests",
                429,
                headers={"Retry-After": str(retry_after)},
            )

    return _check
