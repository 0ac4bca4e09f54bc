from __future__ import annotations

import hashlib
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisAttemptCounter:
    """Counts login attempts per username in fixed windows shared by every worker."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Ping Redis with a short-lived sync client.

        The async client stays unbound so it attaches to the serving event loop.
        """
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def attempts_key(username: str) -> str:
        # Hashed so usernames never appear in Redis keys
        digest = hashlib.sha256(username.encode("utf-8", "surrogatepass")).hexdigest()
        return f"login_attempts:{digest}"

    async def record_attempt(self, username: str, window_seconds: int) -> Tuple[int, int]:
        """Count one attempt and return ``(attempts_in_window, seconds_left)``.

        The first attempt opens the window and sets its expiry; later attempts
        only increment, so the window never slides.
        """
        key = self.attempts_key(username)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(key, 0, ex=window_seconds, nx=True)
            pipe.incr(key)
            pipe.ttl(key)
            _, attempts, ttl = await pipe.execute()
        seconds_left = int(ttl) if ttl is not None and int(ttl) > 0 else window_seconds
        return int(attempts), seconds_left

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()
