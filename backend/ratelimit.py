"""Fixed-window request limits keyed by client IP.

Counters live in process memory (``cachetools.TTLCache``), so limits are per
instance. Behind several workers or hosts they are advisory only; a shared
store would be needed for a hard ceiling.
"""
import logging
import threading
import time

from cachetools import TTLCache
from fastapi import Request

import config
from errors import RateLimited

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(self, name: str, window_seconds: int, max_production: int, max_default: int,
                 maxsize: int = 10000, timer=time.monotonic):
        self.name = name
        self.window_seconds = window_seconds
        self.max_production = max_production
        self.max_default = max_default
        self._timer = timer
        self._hits = TTLCache(maxsize=maxsize, ttl=window_seconds, timer=timer)
        self._lock = threading.Lock()

    @property
    def max_requests(self) -> int:
        return self.max_production if config.is_production() else self.max_default

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()

    def hit(self, key: str) -> int:
        """Count one request for ``key``; return seconds to wait if over the limit, else 0."""
        now = self._timer()
        with self._lock:
            window = self._hits.get(key)
            if window is None or now - window[0] >= self.window_seconds:
                # new window; the entry expires from the cache with it
                window = [now, 0]
                self._hits[key] = window
            window[1] += 1
            if window[1] > self.max_requests:
                return max(1, int(self.window_seconds - (now - window[0])))
        return 0

    def __call__(self, request: Request) -> None:
        if not config.RATE_LIMIT_ENABLED:
            return
        key = request.client.host if request.client else "unknown"
        retry_after = self.hit(key)
        if retry_after:
            logger.warning("Rate limit %s exceeded for %s", self.name, key)
            raise RateLimited(retry_after)


auth_limiter = RateLimiter("auth", window_seconds=15 * 60, max_production=10, max_default=100)
public_limiter = RateLimiter("public", window_seconds=15 * 60, max_production=100, max_default=1000)
submission_limiter = RateLimiter("submission", window_seconds=60 * 60, max_production=10, max_default=50)
