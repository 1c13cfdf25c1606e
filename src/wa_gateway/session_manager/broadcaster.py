"""Fan-out of session snapshots to connected real-time observers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from ..config import OBSERVER_QUEUE_SIZE
from ..constants import EVENT_QR_CODE, EVENT_STATUS_UPDATE
from ..models.session import SessionSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusEvent:
    """One frame pushed to an observer."""

    event: str
    data: Any

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.event, "data": self.data}


class ObserverClosed(Exception):
    """Raised by an observer that can no longer accept events."""


class Observer(Protocol):
    def deliver(self, event: StatusEvent) -> None:
        """Accept an event without blocking; raise ObserverClosed if dead."""


class QueueObserver:
    """Observer that buffers events for a consumer such as a WebSocket pump."""

    def __init__(self, name: str = "", maxsize: int = OBSERVER_QUEUE_SIZE) -> None:
        self.name = name
        self.closed = False
        # None is the end-of-stream marker left behind when the observer is dropped
        self.queue: asyncio.Queue[Optional[StatusEvent]] = asyncio.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize

    def deliver(self, event: StatusEvent) -> None:
        if self.closed:
            raise ObserverClosed(f"observer {self.name or id(self)} is closed")
        if self.queue.qsize() >= self._maxsize:
            self.close()
            raise ObserverClosed(f"observer {self.name or id(self)} is not keeping up")
        self.queue.put_nowait(event)

    def close(self) -> None:
        """Mark the stream finished; the consumer sees None after pending events."""
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(None)

    def __repr__(self) -> str:
        return f"QueueObserver({self.name!r})"


def snapshot_events(snapshot: SessionSnapshot) -> list[StatusEvent]:
    """A status event, followed by a QR event when a QR payload is present."""
    events = [StatusEvent(EVENT_STATUS_UPDATE, snapshot.status.value)]
    if snapshot.qr_code is not None:
        events.append(StatusEvent(EVENT_QR_CODE, snapshot.qr_code))
    return events


class StatusBroadcaster:
    """Delivers every snapshot to all registered observers.

    ``snapshot_provider`` returns the snapshot a new observer is bootstrapped
    with; it is normally ``SessionStateMachine.current_snapshot``.
    """

    def __init__(self, snapshot_provider: Callable[[], SessionSnapshot] | None = None) -> None:
        self._observers: list[Observer] = []
        self._snapshot_provider = snapshot_provider or SessionSnapshot

    def bind(self, snapshot_provider: Callable[[], SessionSnapshot]) -> None:
        self._snapshot_provider = snapshot_provider

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def subscribe(self, observer: Observer) -> None:
        if observer not in self._observers:
            self._observers.append(observer)
            logger.info(f"Observer connected: {observer!r} ({len(self._observers)} total)")

        self._deliver(observer, snapshot_events(self._snapshot_provider()))

    def unsubscribe(self, observer: Observer) -> None:
        try:
            self._observers.remove(observer)
        except ValueError:
            return
        logger.info(f"Observer disconnected: {observer!r} ({len(self._observers)} remaining)")

    def broadcast(self, snapshot: SessionSnapshot) -> None:
        events = snapshot_events(snapshot)
        for observer in list(self._observers):
            self._deliver(observer, events)

    def _deliver(self, observer: Observer, events: list[StatusEvent]) -> None:
        for event in events:
            try:
                observer.deliver(event)
            except ObserverClosed as e:
                logger.warning(f"Dropping observer: {e}")
                self.unsubscribe(observer)
                return
            except Exception as e:
                logger.error(f"Observer {observer!r} failed to accept {event.event}: {e}", exc_info=True)
                self.unsubscribe(observer)
                return
