"""Mutable tracking state shared by the sync engine and the live watcher."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field


@dataclass
class TrackingState:
    known_files: set[str] = field(default_factory=set)
    watched: set[str] = field(default_factory=set)
    _locks: dict[str, asyncio.Lock] = field(default_factory=dict)

    def lock_for(self, path: str) -> asyncio.Lock:
        """Per-path lock serializing every reparse of one file."""
        lock = self._locks.get(path)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[path] = lock
        return lock

    def forget(self, path: str) -> None:
        self.known_files.discard(path)
        self.watched.discard(path)
        lock = self._locks.get(path)
        if lock is not None and not lock.locked():
            self._locks.pop(path, None)
