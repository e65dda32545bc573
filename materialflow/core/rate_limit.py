"""In-memory fixed-window rate limiter with a periodic sweep.

One ``asyncio.Lock`` guards the map. ``check_limit`` holds it for a single
lookup; ``sweep`` holds it for its whole pass over the map.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from materialflow.core.config import settings

logger = structlog.get_logger()


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float


class ExpiringRateLimiter:
    """Counts requests per key inside a fixed window.

    Entries whose window has passed are reset on the next request for the
    same key, and removed entirely by the background sweep.
    """

    def __init__(
        self,
        max_requests: int | None = None,
        window_seconds: float | None = None,
        sweep_interval_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests or settings.rate_limit_max_requests
        self.window_seconds = window_seconds or settings.rate_limit_window_seconds
        self.sweep_interval_seconds = (
            sweep_interval_seconds or settings.rate_limit_sweep_interval_seconds
        )
        self._clock = clock
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = asyncio.Lock()
        self._sweeper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._entries)

    async def check_limit(self, key: str) -> bool:
        """Register one request for ``key``; return True when it is over the limit."""
        async with self._lock:
            now = self._clock()
            entry = self._entries.get(key)

            if entry is None or now >= entry.reset_at:
                self._entries[key] = RateLimitEntry(count=1, reset_at=now + self.window_seconds)
                return False

            if entry.count >= self.max_requests:
                return True

            entry.count += 1
            return False

    async def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        async with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if now >= entry.reset_at]
            for key in expired:
                del self._entries[key]

        if expired:
            logger.debug("Rate limit cleanup", removed=len(expired), remaining=len(self._entries))
        return len(expired)

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._run_sweeper())

    async def stop(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._sweeper
        self._sweeper = None

    async def _run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Rate limit sweep failed")
