"""
Event storage for resumable Streamable HTTP streams.

Every SSE event the server writes can be recorded in an EventStore under the
stream it belongs to. A client that lost its connection reconnects with the
``Last-Event-ID`` header and gets every later event of that stream replayed.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from uuid import uuid4

from mcpwire.types import JSONRPCMessage

logger = logging.getLogger(__name__)

StreamId = str
EventId = str


@dataclass
class EventMessage:
    """A JSON-RPC message paired with the SSE event id it was stored under."""

    message: JSONRPCMessage
    event_id: EventId | None = None


EventCallback = Callable[[EventMessage], Awaitable[None]]


class EventStore(ABC):
    """Interface for resumability support via event storage."""

    @abstractmethod
    async def store_event(self, stream_id: StreamId, message: JSONRPCMessage) -> EventId:
        """
        Stores an event for later retrieval.

        Args:
            stream_id: ID of the stream the event belongs to
            message: The JSON-RPC message to store

        Returns:
            The generated event ID for the stored event
        """

    @abstractmethod
    async def replay_events_after(
        self,
        last_event_id: EventId,
        send_callback: EventCallback,
    ) -> StreamId | None:
        """
        Replays events that occurred after the specified event ID.

        Args:
            last_event_id: The ID of the last event the client received
            send_callback: Called with each event to replay, in order

        Returns:
            The stream ID of the replayed events, or None if ``last_event_id``
            is unknown
        """


class InMemoryEventStore(EventStore):
    """
    Keeps the most recent events of every stream in memory.

    Only ``max_events_per_stream`` events are retained per stream; a client
    resuming from an event that has already been evicted gets nothing replayed.
    """

    def __init__(self, max_events_per_stream: int = 100):
        self.max_events_per_stream = max_events_per_stream
        self.streams: dict[StreamId, deque[tuple[EventId, JSONRPCMessage]]] = {}
        self.event_index: dict[EventId, StreamId] = {}

    async def store_event(self, stream_id: StreamId, message: JSONRPCMessage) -> EventId:
        event_id = uuid4().hex
        events = self.streams.setdefault(stream_id, deque())

        if len(events) == self.max_events_per_stream:
            oldest_id, _ = events.popleft()
            self.event_index.pop(oldest_id, None)

        events.append((event_id, message))
        self.event_index[event_id] = stream_id
        return event_id

    async def replay_events_after(
        self,
        last_event_id: EventId,
        send_callback: EventCallback,
    ) -> StreamId | None:
        stream_id = self.event_index.get(last_event_id)
        if stream_id is None:
            logger.warning("Event ID %s not found in store", last_event_id)
            return None

        found = False
        replayed = 0
        for event_id, message in list(self.streams.get(stream_id, ())):
            if found:
                await send_callback(EventMessage(message, event_id))
                replayed += 1
            elif event_id == last_event_id:
                found = True

        logger.debug("Replayed %d events of stream %s after %s", replayed, stream_id, last_event_id)
        return stream_id
