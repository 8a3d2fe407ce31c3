"""Background scheduler for the sync cycles.

Runs tag discovery (followed by one refresh batch) on one cadence and the
posting poll on another. A failed cycle is logged and the next tick retries
it, so the cadence doubles as the retry backoff.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from timebridge.errors import CycleError
from timebridge.sync.reconciler import BatchReconciler

logger = logging.getLogger("timebridge.scheduler")


class ConnectorScheduler:
    """Two background loops driving a BatchReconciler."""

    def __init__(self):
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self._reconciler: Optional[BatchReconciler] = None

    async def start(
        self,
        reconciler: BatchReconciler,
        tag_sync_interval_seconds: float,
        posting_interval_seconds: float,
    ) -> None:
        """Start both loops in background tasks."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._running = True
        self._reconciler = reconciler
        reconciler.stop_event.clear()
        self._tasks = [
            asyncio.create_task(self._loop("tag sync", self._tag_sync, reconciler, tag_sync_interval_seconds)),
            asyncio.create_task(self._loop("posting", self._posting, reconciler, posting_interval_seconds)),
        ]
        logger.info(
            "Scheduler started (tag sync every %ss, posting poll every %ss)",
            tag_sync_interval_seconds,
            posting_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop both loops; running cycles abort at the next item boundary."""
        self._running = False
        if self._reconciler is not None:
            self._reconciler.request_stop()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        self._reconciler = None
        logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @staticmethod
    async def _tag_sync(reconciler: BatchReconciler) -> None:
        await reconciler.run_discovery_cycle()
        await reconciler.run_refresh_cycle()

    @staticmethod
    async def _posting(reconciler: BatchReconciler) -> None:
        await reconciler.run_posting_cycle()

    async def _loop(
        self,
        name: str,
        tick: Callable[[BatchReconciler], Awaitable[None]],
        reconciler: BatchReconciler,
        interval_seconds: float,
    ) -> None:
        try:
            while self._running:
                try:
                    await tick(reconciler)
                except CycleError as exc:
                    logger.error("Scheduled %s cycle failed, retrying next tick: %s", name, exc)
                await asyncio.sleep(max(0.0, interval_seconds))
        except asyncio.CancelledError:
            logger.info("Scheduler %s loop cancelled", name)
            raise


# Singleton instance
scheduler = ConnectorScheduler()
