"""
Session Events.

Every lifecycle and traffic change of a session is published as one of four tagged
dataclasses on the process EventBus. Observers (the WebSocket monitor, MCP agents,
tests) each hold their own bounded queue so that a slow consumer never stalls
socket I/O.
"""
import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import AsyncIterator, List, Optional, Union

from .models import ConnectedClient, NetcatMessage

logger = logging.getLogger("netcatkit.events")


@dataclass
class StatusChanged:
    session_id: str
    status: str
    error_message: Optional[str] = None
    type: str = "statusChanged"


@dataclass
class MessageReceived:
    session_id: str
    message: NetcatMessage
    type: str = "messageReceived"


@dataclass
class ClientConnected:
    session_id: str
    client: ConnectedClient
    type: str = "clientConnected"


@dataclass
class ClientDisconnected:
    session_id: str
    client_id: str
    type: str = "clientDisconnected"


NetcatEvent = Union[StatusChanged, MessageReceived, ClientConnected, ClientDisconnected]


def event_to_dict(event: NetcatEvent) -> dict:
    return asdict(event)


class EventBus:
    """Broadcasts session events to any number of subscriber queues."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self.subscribers: List[asyncio.Queue] = []
        self.dropped = 0

    def publish(self, event: NetcatEvent):
        for q in list(self.subscribers):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                # Subscriber is too slow: make room by dropping its oldest event
                q.get_nowait()
                q.put_nowait(event)
                self.dropped += 1
                logger.debug(f"Subscriber queue full, dropped oldest event ({self.dropped} total)")

    async def subscribe(self) -> asyncio.Queue:
        q = asyncio.Queue(maxsize=self.queue_size)
        self.subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue):
        if q in self.subscribers:
            self.subscribers.remove(q)

    async def listen(self) -> AsyncIterator[NetcatEvent]:
        """Yields events until the consumer stops iterating."""
        q = await self.subscribe()
        try:
            while True:
                yield await q.get()
        finally:
            self.unsubscribe(q)
