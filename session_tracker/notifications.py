"""Notification sink protocol and the in-process event broadcaster."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, Union

from session_tracker import config
from session_tracker.models import (
    ScanStatusEvent,
    SessionDetectedEvent,
    SessionKind,
    SessionMessage,
    SessionUpdatedEvent,
)

logger = logging.getLogger("tracker.events")

SessionEvent = Union[SessionDetectedEvent, SessionUpdatedEvent, ScanStatusEvent]


class NotificationSink(Protocol):
    def session_detected(self, path: str, project_name: str, session_id: str, session_kind: SessionKind) -> None:
        ...

    def session_updated(self, path: str, session_id: str, messages: list[SessionMessage]) -> None:
        ...

    def scan_status(self, event: ScanStatusEvent) -> None:
        ...


class NullSink:
    """Sink that discards every event."""

    def session_detected(self, path: str, project_name: str, session_id: str, session_kind: SessionKind) -> None:
        return None

    def session_updated(self, path: str, session_id: str, messages: list[SessionMessage]) -> None:
        return None

    def scan_status(self, event: ScanStatusEvent) -> None:
        return None


class SessionEventBroadcaster:
    """Fan events out to subscriber queues.

    Publishing never blocks. A subscriber whose queue is full misses the
    event; delivery is best effort.
    """

    def __init__(self, max_queue_size: int | None = None):
        self._max_queue_size = max_queue_size if max_queue_size is not None else config.EVENT_QUEUE_SIZE
        self._subscribers: set[asyncio.Queue] = set()
        self.dropped_events = 0

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: SessionEvent) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped_events += 1
                logger.debug("Dropping %s event for a slow subscriber", event.type)

    def session_detected(self, path: str, project_name: str, session_id: str, session_kind: SessionKind) -> None:
        self.publish(
            SessionDetectedEvent(
                path=path,
                projectName=project_name,
                sessionId=session_id,
                sessionKind=session_kind,
            )
        )

    def session_updated(self, path: str, session_id: str, messages: list[SessionMessage]) -> None:
        self.publish(SessionUpdatedEvent(path=path, sessionId=session_id, messages=messages))

    def scan_status(self, event: ScanStatusEvent) -> None:
        self.publish(event)


def event_payload(event: SessionEvent) -> dict[str, Any]:
    return event.model_dump()
