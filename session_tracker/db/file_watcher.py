"""Live file watcher for active transcripts.

Polls each registered transcript for size changes and pushes freshly parsed
messages to a notification sink. Emission is throttled per path; a change
seen inside the throttle window is emitted by the first poll after it
closes.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from session_tracker import config
from session_tracker.db.state import TrackingState
from session_tracker.models import ParsedSession
from session_tracker.notifications import NotificationSink
from session_tracker.parsers.transcript import parse_session_file

logger = logging.getLogger("tracker.watcher")


@dataclass
class _WatchedFile:
    path: str
    session_id: str
    last_seen_size: int = -1
    last_emitted_size: int = -1
    last_emit_at: Optional[float] = None
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None


class LiveFileWatcher:
    """Per-path polling watcher that never writes to the session store."""

    def __init__(
        self,
        state: TrackingState,
        sink: NotificationSink,
        *,
        interval: float | None = None,
        throttle: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        parse: Callable[[Path], ParsedSession] = parse_session_file,
    ):
        self._state = state
        self._sink = sink
        self._interval = interval if interval is not None else config.FILE_WATCH_INTERVAL_SECONDS
        self._throttle = throttle if throttle is not None else config.UPDATE_THROTTLE_SECONDS
        self._clock = clock
        self._parse = parse
        self._files: dict[str, _WatchedFile] = {}

    @property
    def is_running(self) -> bool:
        return bool(self._files)

    @property
    def watched_paths(self) -> list[str]:
        return list(self._files)

    def is_watching(self, path: str) -> bool:
        return path in self._files

    async def watch(self, path: str, session_id: str | None = None) -> bool:
        """Start polling ``path``. Returns False when it is already watched."""
        if path in self._files:
            return False

        try:
            size = os.stat(path).st_size
        except OSError:
            size = -1
        watched = _WatchedFile(
            path=path,
            session_id=session_id or Path(path).stem,
            last_seen_size=size,
            last_emitted_size=size,
        )
        self._files[path] = watched
        self._state.watched.add(path)
        watched.task = asyncio.create_task(self._poll_loop(watched))
        logger.info("Watching %s", path)
        return True

    async def unwatch(self, path: str) -> None:
        watched = self._unregister(path)
        if watched is None or watched.task is None:
            return
        if watched.task is not asyncio.current_task():
            await watched.task

    async def stop(self) -> None:
        """Stop every poller. In-flight parses finish first. Idempotent."""
        if not self._files:
            return
        watched_files = [self._unregister(path) for path in list(self._files)]
        tasks = [w.task for w in watched_files if w is not None and w.task is not None]
        current = asyncio.current_task()
        await asyncio.gather(*(t for t in tasks if t is not current), return_exceptions=True)
        logger.info("Live watcher stopped (%d files)", len(tasks))

    def sweep_deleted(self) -> list[str]:
        """Unregister watched files that no longer exist."""
        removed: list[str] = []
        for path in list(self._files):
            if not os.path.exists(path):
                self._forget_deleted(path)
                removed.append(path)
        return removed

    def _unregister(self, path: str) -> _WatchedFile | None:
        watched = self._files.pop(path, None)
        if watched is None:
            return None
        watched.stop_event.set()
        self._state.watched.discard(path)
        return watched

    def _forget_deleted(self, path: str) -> None:
        self._unregister(path)
        self._state.forget(path)
        logger.info("Stopped watching deleted transcript %s", path)

    async def _poll_loop(self, watched: _WatchedFile) -> None:
        while not watched.stop_event.is_set():
            try:
                await asyncio.wait_for(watched.stop_event.wait(), timeout=self._interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self._poll_once(watched.path)
            except Exception as exc:  # noqa: BLE001
                logger.error("Error polling %s: %s", watched.path, exc)
                if not os.path.exists(watched.path):
                    self._forget_deleted(watched.path)

    async def _poll_once(self, path: str) -> bool:
        """Check one file and emit if due. Returns True when an update was emitted."""
        watched = self._files.get(path)
        if watched is None or watched.stop_event.is_set():
            return False

        try:
            size = os.stat(path).st_size
        except FileNotFoundError:
            self._forget_deleted(path)
            return False

        watched.last_seen_size = size
        if size == watched.last_emitted_size:
            return False

        now = self._clock()
        if watched.last_emit_at is not None and now - watched.last_emit_at < self._throttle:
            # Deferred; the next poll after the window emits the latest size.
            return False

        async with self._state.lock_for(path):
            parsed = await asyncio.to_thread(self._parse, Path(path))

        watched.last_emitted_size = size
        watched.last_emit_at = now
        self._sink.session_updated(path, watched.session_id, parsed.messages)
        return True
