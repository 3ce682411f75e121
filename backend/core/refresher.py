"""
Background stats refresh for watched entities.

StatsRefresher polls entity stats on an interval and when the app becomes
visible again. Each refresh goes through the "stats_poll" rate limit
category, and each pass revalidates the session through the throttled gate.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Callable, List, Optional, Set

from adapter.rate_limiter import RateLimiter
from services.session import SessionGate

from .interactions import InteractionStore

logger = logging.getLogger(__name__)

STATS_POLL_CATEGORY = "stats_poll"

DEFAULT_POLL_INTERVAL = int(os.getenv("STATS_POLL_INTERVAL", "60"))


class StatsRefresher:
    """
    Background service that refreshes stats for watched entities.

    Usage:
        refresher = StatsRefresher(store, rate_limiter=limiter, session_gate=gate)
        refresher.watch("vibe123")
        await refresher.start()
        await refresher.on_visibility_change(True)
        await refresher.stop()
    """

    def __init__(
        self,
        store: InteractionStore,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        debounce_seconds: float = 2.0,
        rate_limiter: Optional[RateLimiter] = None,
        session_gate: Optional[SessionGate] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.poll_interval = poll_interval
        self.debounce_seconds = debounce_seconds
        self.rate_limiter = rate_limiter
        self.session_gate = session_gate
        self._clock = clock or time.monotonic

        self._watched: Set[str] = set()
        self._visible = True
        self._last_visibility_refresh: Optional[float] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def watch(self, entity_id: str) -> None:
        self._watched.add(entity_id)

    def unwatch(self, entity_id: str) -> bool:
        if entity_id in self._watched:
            self._watched.discard(entity_id)
            return True
        return False

    @property
    def watched(self) -> List[str]:
        return sorted(self._watched)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the background polling task."""
        if self._running:
            logger.warning("Refresher already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"StatsRefresher started with {self.poll_interval}s interval")

    async def stop(self):
        """Stop the background polling task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("StatsRefresher stopped")

    async def _poll_loop(self):
        """Main polling loop."""
        while self._running:
            try:
                if self._visible:
                    await self._refresh_all()
            except Exception as e:
                logger.error(f"Error in refresh loop: {e}")

            await asyncio.sleep(self.poll_interval)

    async def _refresh_entity(self, entity_id: str) -> bool:
        if self.rate_limiter and not self.rate_limiter.try_acquire(STATS_POLL_CATEGORY):
            logger.debug(f"Stats refresh for {entity_id} throttled")
            return False
        try:
            return await self.store.refresh_stats(entity_id)
        finally:
            if self.rate_limiter:
                self.rate_limiter.release(STATS_POLL_CATEGORY)

    async def _refresh_all(self) -> int:
        """Revalidate the session, then refresh every watched entity. Returns how many updated."""
        if self.session_gate and self.session_gate.session:
            await self.session_gate.revalidate()

        refreshed = 0
        for entity_id in self.watched:
            try:
                if await self._refresh_entity(entity_id):
                    refreshed += 1
            except Exception as e:
                logger.error(f"Error refreshing {entity_id}: {e}")
        return refreshed

    async def refresh_now(self, entity_id: Optional[str] = None) -> int:
        """
        Manually trigger a refresh.

        Args:
            entity_id: Specific entity to refresh, or None to refresh all watched

        Returns:
            Number of entities whose stats were updated
        """
        if entity_id:
            return 1 if await self._refresh_entity(entity_id) else 0
        return await self._refresh_all()

    async def on_visibility_change(self, visible: bool) -> bool:
        """
        React to the app being shown or hidden.

        Becoming visible refreshes immediately unless the previous
        visibility refresh was less than debounce_seconds ago. Polling
        pauses while hidden.

        Returns:
            True if a refresh ran
        """
        self._visible = visible
        if not visible:
            return False

        now = self._clock()
        if (
            self._last_visibility_refresh is not None
            and now - self._last_visibility_refresh < self.debounce_seconds
        ):
            logger.debug("Visibility refresh debounced")
            return False

        self._last_visibility_refresh = now
        await self._refresh_all()
        return True


__all__ = ["StatsRefresher", "STATS_POLL_CATEGORY"]
