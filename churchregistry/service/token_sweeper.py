"""Periodic purge of expired refresh tokens.

Expired values are already rejected when presented; the sweeper only keeps
the refresh ledger from growing without bound.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from churchregistry.logging import get_logger

if TYPE_CHECKING:
    from churchregistry.storage.memory import MemoryStore
    from churchregistry.storage.postgres import PostgresStore

logger = get_logger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60 * 60
MAX_BACKOFF_SECONDS = 30 * 60


class RefreshTokenSweeper:
    """Background task deleting refresh tokens whose expiry has passed."""

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        *,
        interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("sweep interval must be positive")
        self.store = store
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the sweep loop on the current event loop."""
        if self._running:
            logger.warning("refresh_sweeper_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("refresh_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to exit."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("refresh_sweeper_stopped")

    async def sweep_once(self, now: Optional[datetime] = None) -> int:
        cutoff = now or datetime.now(timezone.utc)
        removed = await asyncio.to_thread(self.store.delete_expired_refresh_tokens, cutoff)
        if removed:
            logger.info("refresh_tokens_purged", count=removed)
        else:
            logger.debug("refresh_tokens_purged", count=0)
        return removed

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.sweep_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "refresh_sweeper_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(
                        MAX_BACKOFF_SECONDS,
                        self.interval_seconds * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "refresh_sweeper_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue

            await asyncio.sleep(self.interval_seconds)
