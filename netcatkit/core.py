"""
Session Engine.

A Session owns the socket(s) of one TCP/UDP client or server endpoint, drives its
status state machine and records traffic into its MessageStore. The SessionRegistry
holds every session of the process and routes commands to them, serializing commands
per session while leaving unrelated sessions fully concurrent.
"""
import asyncio
import ipaddress
import logging
import re
import time
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Dict, List, Optional, Set, Tuple

from .codec import Codec, TEXT, format_bytes
from .config import Settings
from .errors import (
    AlreadyRunning,
    BindFailed,
    ClientNotFound,
    ConnectFailed,
    EncodingError,
    InvalidConfig,
    IoError,
    NotRunning,
    SessionNotFound,
)
from .events import ClientConnected, ClientDisconnected, EventBus, MessageReceived, StatusChanged
from .models import (
    CLIENT,
    CONNECTED,
    CONNECTING,
    DISCONNECTED,
    ERROR,
    LISTENING,
    MODES,
    PROTOCOLS,
    RECEIVED,
    SENT,
    SERVER,
    TCP,
    UDP,
    ConnectedClient,
    NetcatMessage,
    NetcatSession,
    new_id,
)
from .store import MessageStore

logger = logging.getLogger("netcatkit.core")

STARTABLE = (DISCONNECTED, ERROR)
SENDABLE = (CONNECTED, LISTENING)

HOSTNAME = re.compile(
    r"^(?=.{1,253}$)[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*\.?$"
)


def format_addr(addr) -> str:
    host, port = addr[0], addr[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def close_writer(writer: asyncio.StreamWriter):
    # A graceful close waits for unsent data, which a peer that stopped reading never takes
    if writer.transport.get_write_buffer_size():
        writer.transport.abort()
    else:
        writer.close()


def validate_host(host) -> str:
    if not isinstance(host, str) or not host.strip():
        raise InvalidConfig("Host must be a non-empty string")
    host = host.strip()
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        pass
    # All-numeric names are malformed IPv4 addresses, not hostnames
    if re.fullmatch(r"[\d.]+", host) or not HOSTNAME.match(host):
        raise InvalidConfig(f"Invalid host '{host}'")
    return host


def validate_port(port) -> int:
    if isinstance(port, str) and port.strip().isdecimal():
        port = int(port)
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise InvalidConfig(f"Port must be an integer between 1 and 65535, got {port!r}")
    return port


def validate_choice(value, choices: Tuple[str, ...], what: str) -> str:
    normalized = value.lower() if isinstance(value, str) else value
    if normalized not in choices:
        raise InvalidConfig(f"Invalid {what} {value!r}, expected one of: {', '.join(choices)}")
    return normalized


class Session:
    """State machine and bookkeeping shared by every protocol/mode combination.

    Subclasses implement `_open`, `_close` and `_send`. All public coroutines are
    expected to run with `self.lock` held; the registry takes care of that.
    """

    def __init__(self, info: NetcatSession, bus: EventBus, settings: Settings):
        self.info = info
        self.bus = bus
        self.settings = settings
        self.store = MessageStore(settings.message_capacity)
        self.lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._pending: Optional[asyncio.Future] = None
        self._interrupted = False

    @property
    def id(self) -> str:
        return self.info.id

    @property
    def target(self) -> str:
        return format_addr((self.info.host, self.info.port))

    def snapshot(self) -> NetcatSession:
        return replace(self.info)

    # --- Lifecycle ---

    async def start(self):
        if self.info.status not in STARTABLE:
            raise AlreadyRunning(f"Session '{self.info.name}' is already {self.info.status}")
        self.info.error_message = None
        await self._open()

    async def stop(self):
        if self.info.status == DISCONNECTED:
            return
        await self._teardown()
        self._set_status(DISCONNECTED)
        logger.info(
            f"[{self.info.name}] stopped (sent {format_bytes(self.info.bytes_sent)}, "
            f"received {format_bytes(self.info.bytes_received)})"
        )

    def interrupt(self):
        """Cancels the connect or send in flight so that stop and remove get the lock."""
        if self._pending is not None and not self._pending.done():
            self._interrupted = True
            self._pending.cancel()

    async def _run_pending(self, coro):
        self._interrupted = False
        self._pending = asyncio.ensure_future(coro)
        try:
            return await self._pending
        finally:
            self._pending = None

    async def _open(self):
        raise NotImplementedError

    async def _close(self):
        raise NotImplementedError

    async def _teardown(self, keep: Optional[asyncio.Task] = None):
        tasks = [t for t in self._tasks if t is not keep]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await self._close()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._clear_roster()

    async def _fail(self, reason: str):
        """Moves a running session to error after an asynchronous socket failure.

        Called from the session's own tasks only; a task cancelled by stop never
        gets here, and a stale task (from before a restart) is ignored.
        """
        task = asyncio.current_task()
        async with self.lock:
            if task not in self._tasks or self.info.status not in SENDABLE:
                return
            logger.warning(f"[{self.info.name}] {reason}")
            await self._teardown(keep=task)
            self._set_status(ERROR, reason)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._track(task)
        return task

    def _track(self, task: asyncio.Task):
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _set_status(self, status: str, error_message: Optional[str] = None):
        self.info.status = status
        self.info.error_message = error_message
        self.bus.publish(StatusChanged(self.info.id, status, error_message))

    def _start_failed(self, error_cls, reason: str, cause: BaseException):
        self._set_status(ERROR, reason)
        logger.error(f"[{self.info.name}] {reason}")
        raise error_cls(reason) from cause

    # --- Traffic ---

    async def send(
        self,
        data: str,
        fmt: str = TEXT,
        target_client_id: Optional[str] = None,
        broadcast: bool = False,
    ) -> NetcatMessage:
        if self.info.status not in SENDABLE:
            raise NotRunning(f"Session '{self.info.name}' is {self.info.status}, start it first")
        payload = Codec.decode(data, fmt)
        if not payload:
            raise EncodingError("Nothing to send: the payload is empty")
        try:
            return await self._run_pending(self._send(payload, fmt, target_client_id, broadcast))
        except asyncio.CancelledError:
            if not self._interrupted:
                raise
            raise IoError(f"Send on '{self.info.name}' was interrupted because the session stopped") from None

    async def _send(self, payload: bytes, fmt: str, target_client_id: Optional[str], broadcast: bool) -> NetcatMessage:
        raise NotImplementedError

    async def _write(self, writer: asyncio.StreamWriter, payload: bytes, peer: str):
        timeout = self.settings.write_timeout
        try:
            writer.write(payload)
            await asyncio.wait_for(writer.drain(), timeout)
        except asyncio.TimeoutError as e:
            raise IoError(f"Timed out after {timeout}s writing to {peer}, the peer is not reading") from e
        except OSError as e:
            raise IoError(f"Failed to send to {peer}: {e}") from e

    def _record_sent(self, payload: bytes, fmt: str, client_addr: Optional[str] = None) -> NetcatMessage:
        message = self._new_message(SENT, Codec.encode(payload, fmt), fmt, len(payload), client_addr)
        self.info.bytes_sent += len(payload)
        return message

    def _record_received(self, payload: bytes, client_addr: Optional[str] = None) -> NetcatMessage:
        message = self._new_message(RECEIVED, Codec.render(payload), TEXT, len(payload), client_addr)
        self.info.bytes_received += len(payload)
        self.bus.publish(MessageReceived(self.info.id, message))
        return message

    def _new_message(self, direction, data, fmt, size, client_addr) -> NetcatMessage:
        message = NetcatMessage(
            id=new_id(),
            session_id=self.info.id,
            direction=direction,
            data=data,
            format=fmt,
            size=size,
            timestamp=time.time(),
            client_addr=client_addr,
        )
        self.store.append(message)
        self.info.message_count += 1
        return message

    # --- Roster (server mode only) ---

    def list_clients(self) -> List[ConnectedClient]:
        return []

    async def disconnect_client(self, client_id: str):
        raise ClientNotFound(f"Session '{self.info.name}' is a client and has no connected clients")

    def _clear_roster(self):
        pass


class TcpClientSession(Session):
    def __init__(self, info: NetcatSession, bus: EventBus, settings: Settings):
        super().__init__(info, bus, settings)
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    async def _open(self):
        self._set_status(CONNECTING)
        timeout = self.settings.connect_timeout
        try:
            self._reader, self._writer = await self._run_pending(
                asyncio.wait_for(asyncio.open_connection(self.info.host, self.info.port), timeout=timeout)
            )
        except asyncio.CancelledError:
            self._set_status(DISCONNECTED)
            if not self._interrupted:
                raise
            logger.info(f"[{self.info.name}] connection attempt to {self.target} cancelled")
            raise ConnectFailed(f"Connection attempt to {self.target} was cancelled") from None
        except asyncio.TimeoutError as e:
            self._start_failed(ConnectFailed, f"Timed out connecting to {self.target} after {timeout}s", e)
        except OSError as e:
            self._start_failed(ConnectFailed, f"Failed to connect to {self.target}: {e}", e)

        self._set_status(CONNECTED)
        logger.info(f"[{self.info.name}] connected to {self.target}")
        self._spawn(self._read_loop())

    async def _read_loop(self):
        try:
            while True:
                data = await self._reader.read(self.settings.read_chunk_size)
                if not data:
                    break
                self._record_received(data)
        except OSError as e:
            await self._fail(f"Connection error: {e}")
            return
        await self._fail("Connection closed by peer")

    async def _send(self, payload, fmt, target_client_id, broadcast):
        await self._write(self._writer, payload, self.target)
        return self._record_sent(payload, fmt)

    async def _close(self):
        writer, self._writer, self._reader = self._writer, None, None
        if writer is None:
            return
        close_writer(writer)
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"[{self.info.name}] error while closing connection: {e}")


class ServerSession(Session):
    """Adds the connected-client roster shared by TCP and UDP servers."""

    def __init__(self, info: NetcatSession, bus: EventBus, settings: Settings):
        super().__init__(info, bus, settings)
        self.clients: Dict[str, ConnectedClient] = {}

    def list_clients(self) -> List[ConnectedClient]:
        return [replace(c) for c in self.clients.values()]

    def _add_client(self, addr) -> ConnectedClient:
        client_id = new_id()[:8]
        while client_id in self.clients:
            client_id = new_id()[:8]
        client = ConnectedClient(id=client_id, addr=format_addr(addr), connected_at=time.time())
        self.clients[client_id] = client
        self.info.client_count = len(self.clients)
        logger.info(f"[{self.info.name}] client {client.addr} connected ({client_id})")
        self.bus.publish(ClientConnected(self.info.id, replace(client)))
        return client

    def _drop_client(self, client_id: str) -> Optional[ConnectedClient]:
        client = self.clients.pop(client_id, None)
        if client is None:
            return None
        self.info.client_count = len(self.clients)
        logger.info(f"[{self.info.name}] client {client.addr} disconnected ({client_id})")
        self.bus.publish(ClientDisconnected(self.info.id, client_id))
        return client

    def _clear_roster(self):
        for client_id in list(self.clients):
            self._drop_client(client_id)

    def _require_client(self, client_id: str) -> ConnectedClient:
        client = self.clients.get(client_id)
        if client is None:
            raise ClientNotFound(f"Client {client_id} is not connected to '{self.info.name}'")
        return client

    def _targets(self, target_client_id: Optional[str], broadcast: bool) -> List[ConnectedClient]:
        if broadcast:
            if not self.clients:
                raise ClientNotFound(f"No clients connected to '{self.info.name}' to broadcast to")
            return list(self.clients.values())
        if not target_client_id:
            raise ClientNotFound("Select a target client or enable broadcast")
        return [self._require_client(target_client_id)]


class TcpServerSession(ServerSession):
    def __init__(self, info: NetcatSession, bus: EventBus, settings: Settings):
        super().__init__(info, bus, settings)
        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: Dict[str, asyncio.StreamWriter] = {}
        self._client_tasks: Dict[str, asyncio.Task] = {}

    async def _open(self):
        try:
            self._server = await asyncio.start_server(self._handle_client, self.info.host, self.info.port)
        except OSError as e:
            self._start_failed(BindFailed, f"Failed to listen on {self.target}: {e}", e)
        self._set_status(LISTENING)
        logger.info(f"[{self.info.name}] listening on {self.target} (tcp)")
        self._spawn(self._accept_loop())

    async def _accept_loop(self):
        try:
            await self._server.serve_forever()
        except OSError as e:
            await self._fail(f"Listener error: {e}")

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        if self._server is None:
            # Accepted while the session was being torn down
            writer.close()
            return
        task = asyncio.current_task()
        self._track(task)
        client = self._add_client(writer.get_extra_info("peername"))
        self._writers[client.id] = writer
        self._client_tasks[client.id] = task
        try:
            while True:
                data = await reader.read(self.settings.read_chunk_size)
                if not data:
                    break
                self._record_received(data, client.addr)
        except OSError as e:
            logger.debug(f"[{self.info.name}] read error from {client.addr}: {e}")
        finally:
            self._drop_client(client.id)
            close_writer(writer)

    def _drop_client(self, client_id: str) -> Optional[ConnectedClient]:
        self._writers.pop(client_id, None)
        self._client_tasks.pop(client_id, None)
        return super()._drop_client(client_id)

    async def disconnect_client(self, client_id: str):
        self._require_client(client_id)
        writer = self._writers.get(client_id)
        task = self._client_tasks.get(client_id)
        self._drop_client(client_id)
        if task is not None:
            task.cancel()
        if writer is not None:
            close_writer(writer)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _send(self, payload, fmt, target_client_id, broadcast):
        records = []
        for client in self._targets(target_client_id, broadcast):
            writer = self._writers.get(client.id)
            if writer is None:
                # Left while an earlier write of this broadcast was draining
                continue
            try:
                await self._write(writer, payload, client.addr)
            except IoError as e:
                logger.warning(f"[{self.info.name}] {e}, dropping client {client.id}")
                self._drop_client(client.id)
                close_writer(writer)
                if not broadcast:
                    raise
                continue
            records.append(self._record_sent(payload, fmt, client.addr))
        if not records:
            raise IoError("Failed to deliver the message to any client")
        return records[0]

    async def _close(self):
        server, self._server = self._server, None
        writers = list(self._writers.values())
        if server is not None:
            server.close()
        for writer in writers:
            close_writer(writer)
        if server is not None:
            await server.wait_closed()


class _DatagramQueue(asyncio.DatagramProtocol):
    """Feeds datagrams into a queue consumed by the session's read loop.

    A `(None, exc)` item signals that the transport was lost.
    """

    def __init__(self, name: str):
        self.name = name
        self.queue: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data: bytes, addr):
        self.queue.put_nowait((data, addr))

    def error_received(self, exc: Exception):
        # ICMP errors (e.g. port unreachable) do not invalidate the socket
        logger.warning(f"[{self.name}] datagram error: {exc}")

    def connection_lost(self, exc: Optional[Exception]):
        self.queue.put_nowait((None, exc))


class UdpSession(Session):
    def __init__(self, info: NetcatSession, bus: EventBus, settings: Settings):
        super().__init__(info, bus, settings)
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._protocol: Optional[_DatagramQueue] = None

    async def _endpoint(self, **addresses):
        loop = asyncio.get_running_loop()
        self._transport, self._protocol = await loop.create_datagram_endpoint(
            lambda: _DatagramQueue(self.info.name), **addresses
        )

    async def _read_loop(self):
        while True:
            data, addr = await self._protocol.queue.get()
            if data is None:
                reason = f"Socket closed: {addr}" if addr else "Socket closed"
                await self._fail(reason)
                return
            self._on_datagram(data, addr)

    def _on_datagram(self, data: bytes, addr):
        raise NotImplementedError

    def _sendto(self, payload: bytes, addr=None):
        if self._transport is None or self._transport.is_closing():
            raise IoError("Socket is closed")
        try:
            self._transport.sendto(payload, addr)
        except OSError as e:
            raise IoError(f"Failed to send datagram: {e}") from e

    async def _close(self):
        transport, self._transport, self._protocol = self._transport, None, None
        if transport is not None:
            transport.close()


class UdpClientSession(UdpSession):
    async def _open(self):
        try:
            await self._endpoint(remote_addr=(self.info.host, self.info.port))
        except OSError as e:
            self._start_failed(ConnectFailed, f"Failed to open UDP socket towards {self.target}: {e}", e)
        self._set_status(CONNECTED)
        logger.info(f"[{self.info.name}] udp socket ready towards {self.target}")
        self._spawn(self._read_loop())

    def _on_datagram(self, data, addr):
        self._record_received(data)

    async def _send(self, payload, fmt, target_client_id, broadcast):
        self._sendto(payload)
        return self._record_sent(payload, fmt)


class UdpServerSession(UdpSession, ServerSession):
    """UDP has no connections: peers join the roster on their first datagram and
    are evicted after `udp_idle_timeout` seconds of silence."""

    def __init__(self, info: NetcatSession, bus: EventBus, settings: Settings):
        super().__init__(info, bus, settings)
        self._peers: Dict[str, tuple] = {}  # client id -> socket address
        self._by_addr: Dict[tuple, str] = {}  # (host, port) -> client id
        self._last_seen: Dict[str, float] = {}

    async def _open(self):
        try:
            await self._endpoint(local_addr=(self.info.host, self.info.port))
        except OSError as e:
            self._start_failed(BindFailed, f"Failed to bind {self.target}: {e}", e)
        self._set_status(LISTENING)
        logger.info(f"[{self.info.name}] listening on {self.target} (udp)")
        self._spawn(self._read_loop())
        if self.settings.udp_idle_timeout > 0:
            self._spawn(self._evict_idle_clients())

    def _on_datagram(self, data, addr):
        key = tuple(addr[:2])
        client_id = self._by_addr.get(key)
        if client_id is None:
            client_id = self._add_client(addr).id
            self._peers[client_id] = addr
            self._by_addr[key] = client_id
        self._last_seen[client_id] = asyncio.get_running_loop().time()
        self._record_received(data, self.clients[client_id].addr)

    async def _evict_idle_clients(self):
        timeout = self.settings.udp_idle_timeout
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(min(timeout, self.settings.udp_sweep_interval))
            now = loop.time()
            for client_id, seen in list(self._last_seen.items()):
                if now - seen >= timeout:
                    logger.info(f"[{self.info.name}] evicting idle udp peer {client_id}")
                    self._drop_client(client_id)

    def _drop_client(self, client_id: str) -> Optional[ConnectedClient]:
        addr = self._peers.pop(client_id, None)
        if addr is not None:
            self._by_addr.pop(tuple(addr[:2]), None)
        self._last_seen.pop(client_id, None)
        return super()._drop_client(client_id)

    async def disconnect_client(self, client_id: str):
        self._require_client(client_id)
        self._drop_client(client_id)

    async def _send(self, payload, fmt, target_client_id, broadcast):
        records = []
        for client in self._targets(target_client_id, broadcast):
            try:
                self._sendto(payload, self._peers[client.id])
            except IoError as e:
                if not broadcast:
                    raise
                logger.warning(f"[{self.info.name}] broadcast to {client.addr} failed: {e}")
                continue
            records.append(self._record_sent(payload, fmt, client.addr))
        if not records:
            raise IoError("Failed to deliver the message to any client")
        return records[0]


SESSION_TYPES = {
    (TCP, CLIENT): TcpClientSession,
    (TCP, SERVER): TcpServerSession,
    (UDP, CLIENT): UdpClientSession,
    (UDP, SERVER): UdpServerSession,
}


class SessionRegistry:
    """Process-wide table of sessions.

    Every command goes through here. Commands on one session are serialized by
    that session's lock; there is no lock across sessions.
    """

    def __init__(self, bus: Optional[EventBus] = None, settings: Optional[Settings] = None):
        self.settings = settings or Settings()
        self.bus = bus or EventBus(self.settings.event_queue_size)
        self.sessions: Dict[str, Session] = {}

    async def create(self, protocol: str, mode: str, host: str, port: int, name: Optional[str] = None) -> NetcatSession:
        protocol = validate_choice(protocol, PROTOCOLS, "protocol")
        mode = validate_choice(mode, MODES, "mode")
        host = validate_host(host)
        port = validate_port(port)
        if not name:
            name = f"{protocol.upper()} {mode.capitalize()} {format_addr((host, port))}"

        info = NetcatSession(id=new_id(), protocol=protocol, mode=mode, host=host, port=port, name=name)
        session = SESSION_TYPES[(protocol, mode)](info, self.bus, self.settings)
        self.sessions[info.id] = session
        logger.info(f"Created session '{name}' ({protocol}/{mode} {session.target})")
        return session.snapshot()

    def list_sessions(self) -> List[NetcatSession]:
        return [s.snapshot() for s in self.sessions.values()]

    def get(self, session_id: str) -> NetcatSession:
        return self._lookup(session_id).snapshot()

    def _lookup(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    @asynccontextmanager
    async def _locked(self, session_id: str):
        session = self._lookup(session_id)
        async with session.lock:
            # The session may have been removed while we waited for the lock
            if self.sessions.get(session_id) is not session:
                raise SessionNotFound(session_id)
            yield session

    async def start(self, session_id: str) -> NetcatSession:
        async with self._locked(session_id) as session:
            await session.start()
            return session.snapshot()

    async def stop(self, session_id: str):
        self._lookup(session_id).interrupt()
        async with self._locked(session_id) as session:
            await session.stop()

    async def remove(self, session_id: str):
        self._lookup(session_id).interrupt()
        async with self._locked(session_id) as session:
            await session.stop()
            del self.sessions[session_id]
        logger.info(f"Removed session '{session.info.name}'")

    async def send(
        self,
        session_id: str,
        data: str,
        fmt: str = TEXT,
        target_client_id: Optional[str] = None,
        broadcast: bool = False,
    ) -> NetcatMessage:
        async with self._locked(session_id) as session:
            return await session.send(data, fmt, target_client_id, broadcast)

    async def list_messages(self, session_id: str, limit: Optional[int] = None) -> List[NetcatMessage]:
        """Most recent first."""
        async with self._locked(session_id) as session:
            return session.store.recent(limit)

    async def clear_messages(self, session_id: str):
        async with self._locked(session_id) as session:
            session.store.clear()

    async def list_clients(self, session_id: str) -> List[ConnectedClient]:
        async with self._locked(session_id) as session:
            return session.list_clients()

    async def disconnect_client(self, session_id: str, client_id: str):
        async with self._locked(session_id) as session:
            await session.disconnect_client(client_id)

    async def shutdown(self):
        logger.info("Stopping all sessions...")
        if not self.sessions:
            return
        await asyncio.gather(*(self.remove(sid) for sid in list(self.sessions)), return_exceptions=True)
        logger.info("All sessions stopped.")
