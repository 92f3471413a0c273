"""EventBus - session table changes pushed to dashboard clients over SSE.

Events:
- session_created, session_updated, session_removed: forwarded from the
  SessionStore, kept in a replay buffer.
- sessions_refreshed: one per watcher tick, broadcast live only so ticks
  do not push session changes out of the buffer.

A client reconnecting with ``Last-Event-ID`` gets the changes it missed.
When those are no longer buffered it gets a single ``resync`` event and
should refetch ``/api/sessions``.
"""

import json
import logging
import queue
import threading
from collections import deque
from collections.abc import Generator
from dataclasses import dataclass, field
from datetime import datetime

logger = logging.getLogger(__name__)

SESSION_CHANGE_EVENTS = frozenset({"session_created", "session_updated", "session_removed"})
TICK_EVENT = "sessions_refreshed"
RESYNC_EVENT = "resync"


@dataclass
class Event:
    """One session event as sent to SSE clients."""

    event_type: str
    data: dict
    id: int = 0
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def session_id(self) -> str | None:
        """Id of the session the event concerns, if any."""
        session = self.data.get("session")
        if isinstance(session, dict):
            return session.get("id")
        return self.data.get("session_id")

    def to_sse(self) -> str:
        lines = [f"event: {self.event_type}", f"data: {json.dumps(self.data, default=str)}"]
        if self.id:
            lines.append(f"id: {self.id}")
        return "\n".join(lines) + "\n\n"


def parse_event_id(value: str | None) -> int | None:
    """Parse a Last-Event-ID value; None when absent, -1 when unusable."""
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return -1


class EventBus:
    """Broadcasts session events to every connected SSE client.

    Each client gets a bounded queue. A client whose queue fills up is
    dropped rather than slowing down the watcher thread that emits.
    """

    def __init__(self, buffer_size: int = 200, queue_size: int = 100):
        """Initialize the EventBus.

        Args:
            buffer_size: Session changes kept for reconnecting clients.
            queue_size: Per-client queue bound.
        """
        self._queue_size = queue_size
        self._buffer: deque[Event] = deque(maxlen=buffer_size)
        self._clients: list[queue.Queue] = []
        self._lock = threading.Lock()
        self._last_id = 0
        # Highest id that fell out of the replay buffer
        self._evicted_through = 0
        self.dropped_clients = 0

    def emit(self, event_type: str, data: dict) -> Event:
        """Broadcast a session event.

        Args:
            event_type: A session change type or ``sessions_refreshed``.
            data: JSON-serializable payload.

        Returns:
            The Event with its assigned id.

        Raises:
            ValueError: If the event type is not a session event.
        """
        if event_type not in SESSION_CHANGE_EVENTS and event_type != TICK_EVENT:
            raise ValueError(f"Unknown event type: {event_type}")

        with self._lock:
            self._last_id += 1
            event = Event(event_type=event_type, data=data, id=self._last_id)

            if event_type in SESSION_CHANGE_EVENTS:
                if len(self._buffer) == self._buffer.maxlen:
                    self._evicted_through = self._buffer[0].id
                self._buffer.append(event)

            slow = []
            for client in self._clients:
                try:
                    client.put_nowait(event)
                except queue.Full:
                    slow.append(client)
            for client in slow:
                self._clients.remove(client)

        if slow:
            self.dropped_clients += len(slow)
            logger.info(f"Dropped {len(slow)} slow event stream client(s)")
        return event

    def on_store_event(self, event_type: str, data: dict) -> None:
        """SessionStore listener forwarding session changes."""
        self.emit(event_type, data)

    def replay(self, last_event_id: int | None) -> list[Event] | None:
        """Session changes after ``last_event_id``.

        Returns:
            The missed events, oldest first; an empty list for a fresh
            client; None when the missed events are no longer available.
        """
        with self._lock:
            return self._replay_locked(last_event_id)

    def _replay_locked(self, last_event_id: int | None) -> list[Event] | None:
        if last_event_id is None:
            return []
        # Ids from another process lifetime or behind the buffer
        if last_event_id < 0 or last_event_id > self._last_id or last_event_id < self._evicted_through:
            return None
        return [event for event in self._buffer if event.id > last_event_id]

    def get_sse_stream(
        self,
        last_event_id: str | None = None,
        keepalive: float = 30.0,
    ) -> Generator[str, None, None]:
        """SSE stream for one client.

        Args:
            last_event_id: The client's Last-Event-ID, if reconnecting.
            keepalive: Seconds of silence before a keep-alive comment.

        Yields:
            SSE-formatted messages.
        """
        client: queue.Queue = queue.Queue(maxsize=self._queue_size)

        with self._lock:
            self._clients.append(client)
            backlog = self._replay_locked(parse_event_id(last_event_id))

        try:
            if backlog is None:
                logger.debug(f"Event history unavailable for Last-Event-ID {last_event_id}")
                yield Event(RESYNC_EVENT, {"reason": "history_unavailable"}).to_sse()
            else:
                for event in backlog:
                    yield event.to_sse()

            while True:
                try:
                    yield client.get(timeout=keepalive).to_sse()
                except queue.Empty:
                    yield ": keep-alive\n\n"
        finally:
            with self._lock:
                if client in self._clients:
                    self._clients.remove(client)

    @property
    def subscriber_count(self) -> int:
        """Number of connected SSE clients."""
        with self._lock:
            return len(self._clients)
