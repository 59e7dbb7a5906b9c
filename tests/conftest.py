import asyncio
import socket

import pytest

from netcatkit.config import Settings
from netcatkit.core import SessionRegistry
from netcatkit.events import EventBus


def _free_port(kind: int) -> int:
    with socket.socket(socket.AF_INET, kind) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def free_port():
    """A TCP port on 127.0.0.1 that nothing listens on."""
    return _free_port(socket.SOCK_STREAM)


@pytest.fixture
def free_udp_port():
    return _free_port(socket.SOCK_DGRAM)


@pytest.fixture
def settings():
    return Settings(connect_timeout=2.0)


@pytest.fixture
async def registry(settings):
    reg = SessionRegistry(EventBus(queue_size=1000), settings)
    yield reg
    await reg.shutdown()


class EventRecorder:
    """Collects events from one bus subscription and lets tests wait for them."""

    def __init__(self, queue: asyncio.Queue):
        self.queue = queue
        self.events = []
        self._claimed = set()

    @staticmethod
    def _matches(event, type, session_id, fields):
        if event.type != type:
            return False
        if session_id is not None and event.session_id != session_id:
            return False
        return all(getattr(event, k) == v for k, v in fields.items())

    async def wait_for(self, type, session_id=None, timeout=3.0, **fields):
        for i, event in enumerate(self.events):
            if i not in self._claimed and self._matches(event, type, session_id, fields):
                self._claimed.add(i)
                return event

        async def _next():
            while True:
                event = await self.queue.get()
                self.events.append(event)
                if self._matches(event, type, session_id, fields):
                    self._claimed.add(len(self.events) - 1)
                    return event

        return await asyncio.wait_for(_next(), timeout)

    def drain(self):
        while not self.queue.empty():
            self.events.append(self.queue.get_nowait())

    def of_type(self, type, session_id=None):
        self.drain()
        return [e for e in self.events if e.type == type and (session_id is None or e.session_id == session_id)]


@pytest.fixture
async def events(registry):
    queue = await registry.bus.subscribe()
    yield EventRecorder(queue)
    registry.bus.unsubscribe(queue)


@pytest.fixture
async def tcp_pair(registry, events, free_port):
    """A listening TCP server session with one connected TCP client session."""
    server = await registry.create("tcp", "server", "127.0.0.1", free_port, "server")
    await registry.start(server.id)
    client = await registry.create("tcp", "client", "127.0.0.1", free_port, "client")
    await registry.start(client.id)
    connected = await events.wait_for("clientConnected", server.id)
    return server, client, connected.client


@pytest.fixture(autouse=True)
async def cleanup_app_registry():
    from netcatkit.app import registry
    # Run before test
    yield
    # Run after test
    await registry.shutdown()
    registry.bus.subscribers.clear()
