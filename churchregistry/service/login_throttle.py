"""Per-username login throttling.

Attempts are counted in fixed windows. When Redis is configured it holds the
counts so every worker sees the same totals; without it, or while it is
failing, each process counts on its own.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from redis.exceptions import RedisError

from churchregistry.logging import get_logger
from churchregistry.storage.redis_throttle import RedisAttemptCounter

logger = get_logger(__name__)

# Closed windows are dropped once this many usernames are tracked
_PRUNE_THRESHOLD = 10_000


@dataclass(frozen=True)
class ThrottleDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


class LocalAttemptCounter:
    """In-process fixed-window attempt counts."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        # username -> (window closes at, attempts)
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def record_attempt(self, username: str, window_seconds: int) -> Tuple[int, int]:
        now = self._clock()
        with self._lock:
            closes_at, attempts = self._windows.get(username, (0.0, 0))
            if now >= closes_at:
                closes_at, attempts = now + window_seconds, 0
            attempts += 1
            self._windows[username] = (closes_at, attempts)
            if len(self._windows) > _PRUNE_THRESHOLD:
                self._windows = {
                    name: window for name, window in self._windows.items() if window[0] > now
                }
        return attempts, max(1, math.ceil(closes_at - now))

    def __len__(self) -> int:
        return len(self._windows)


class LoginThrottle:
    """Allow at most ``limit`` login attempts per username in each window.

    A non-positive limit turns throttling off.
    """

    def __init__(
        self,
        limit: int,
        *,
        window_seconds: int = 60,
        redis: Optional[RedisAttemptCounter] = None,
        local: Optional[LocalAttemptCounter] = None,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self.redis = redis
        self.local = local or LocalAttemptCounter()

    async def hit(self, username: str) -> ThrottleDecision:
        """Count one attempt for ``username`` and say whether it may proceed."""
        if self.limit <= 0:
            return ThrottleDecision(True, self.limit, 0, 0)
        attempts, reset_seconds = await self._record(username.lower())
        return ThrottleDecision(
            allowed=attempts <= self.limit,
            limit=self.limit,
            remaining=max(0, self.limit - attempts),
            reset_seconds=reset_seconds,
        )

    async def _record(self, username: str) -> Tuple[int, int]:
        if self.redis is not None:
            try:
                return await self.redis.record_attempt(username, self.window_seconds)
            except (RedisError, OSError) as exc:
                logger.warning(
                    "login_throttle_redis_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        return self.local.record_attempt(username, self.window_seconds)
