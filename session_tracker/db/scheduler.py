"""Periodic discovery scan driver."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from session_tracker import config

logger = logging.getLogger("tracker.scheduler")


class ScanScheduler:
    """Runs ``tick`` every ``interval`` seconds until stopped.

    A failing tick is logged and the schedule continues. ``stop`` waits for
    a running tick to finish.
    """

    def __init__(self, tick: Callable[[], Awaitable[object]], interval: float | None = None):
        self._tick = tick
        self._interval = interval if interval is not None else config.SCAN_INTERVAL_SECONDS
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self.tick_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.is_running:
            logger.warning("Scan scheduler already running")
            return False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info("Scan scheduler started (interval=%.2fs)", self._interval)
        return True

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        task, self._task = self._task, None
        if task is not asyncio.current_task():
            await task
        logger.info("Scan scheduler stopped")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self._tick()
            except Exception as exc:  # noqa: BLE001
                logger.error("Scheduled scan failed: %s", exc)
            self.tick_count += 1
