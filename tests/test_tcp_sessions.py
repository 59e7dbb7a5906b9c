import asyncio
import socket

import pytest

from netcatkit.config import Settings
from netcatkit.errors import (
    AlreadyRunning,
    BindFailed,
    ClientNotFound,
    ConnectFailed,
    EncodingError,
    IoError,
    NotRunning,
)

MEGABYTE = "x" * (1024 * 1024)


def _silent_peer(port):
    """A raw TCP client with a tiny receive buffer that never reads."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 4096)
    sock.connect(("127.0.0.1", port))
    return sock


@pytest.mark.asyncio
async def test_client_connects_to_server(registry, events, tcp_pair):
    server, client, peer = tcp_pair

    assert registry.get(server.id).status == "listening"
    assert registry.get(client.id).status == "connected"
    assert registry.get(server.id).client_count == 1
    assert registry.get(client.id).client_count == 0

    # A TCP client goes through connecting before connected
    statuses = [e.status for e in events.of_type("statusChanged", client.id)]
    assert statuses == ["connecting", "connected"]

    await asyncio.sleep(0.1)
    assert len(events.of_type("clientConnected", server.id)) == 1

    clients = await registry.list_clients(server.id)
    assert [c.id for c in clients] == [peer.id]
    assert peer.addr.startswith("127.0.0.1:")


@pytest.mark.asyncio
async def test_text_message_reaches_server(registry, events, tcp_pair):
    server, client, peer = tcp_pair

    sent = await registry.send(client.id, "Hello", "text")
    assert sent.direction == "sent"
    assert sent.size == 5
    assert sent.data == "Hello"
    assert sent.client_addr is None

    event = await events.wait_for("messageReceived", server.id)
    msg = event.message
    assert msg.direction == "received"
    assert msg.size == 5
    assert msg.data == "Hello"
    assert msg.format == "text"
    assert msg.client_addr == peer.addr

    assert registry.get(client.id).bytes_sent == 5
    assert registry.get(client.id).message_count == 1
    assert registry.get(server.id).bytes_received == 5
    assert registry.get(server.id).message_count == 1


@pytest.mark.asyncio
async def test_hex_size_is_raw_byte_length(registry, events, tcp_pair):
    server, client, _ = tcp_pair

    sent = await registry.send(client.id, "48656C6C6F", "hex")
    assert sent.size == 5
    assert sent.format == "hex"
    assert sent.data == "48 65 6c 6c 6f"

    event = await events.wait_for("messageReceived", server.id)
    assert event.message.data == "Hello"
    assert event.message.size == 5
    assert registry.get(client.id).bytes_sent == 5


@pytest.mark.asyncio
async def test_base64_message(registry, events, tcp_pair):
    server, client, _ = tcp_pair

    sent = await registry.send(client.id, "SGVsbG8=", "base64")
    assert sent.size == 5

    event = await events.wait_for("messageReceived", server.id)
    assert event.message.data == "Hello"


@pytest.mark.asyncio
@pytest.mark.parametrize("bad", ["12G4", "123", "zz", "0x41"])
async def test_invalid_hex_leaves_counters_unchanged(registry, tcp_pair, bad):
    _, client, _ = tcp_pair

    with pytest.raises(EncodingError):
        await registry.send(client.id, bad, "hex")

    session = registry.get(client.id)
    assert session.bytes_sent == 0
    assert session.message_count == 0
    assert session.status == "connected"
    assert await registry.list_messages(client.id) == []


@pytest.mark.asyncio
async def test_server_sends_to_target_client(registry, events, tcp_pair):
    server, client, peer = tcp_pair

    sent = await registry.send(server.id, "pong", target_client_id=peer.id)
    assert sent.client_addr == peer.addr

    event = await events.wait_for("messageReceived", client.id)
    assert event.message.data == "pong"
    assert event.message.client_addr is None


@pytest.mark.asyncio
async def test_server_send_needs_a_live_target(registry, tcp_pair):
    server, _, _ = tcp_pair

    with pytest.raises(ClientNotFound):
        await registry.send(server.id, "pong")
    with pytest.raises(ClientNotFound):
        await registry.send(server.id, "pong", target_client_id="deadbeef")
    assert registry.get(server.id).bytes_sent == 0


@pytest.mark.asyncio
async def test_broadcast_writes_to_every_client(registry, events, tcp_pair, free_port):
    server, first, _ = tcp_pair
    second = await registry.create("tcp", "client", "127.0.0.1", free_port)
    await registry.start(second.id)
    await events.wait_for("clientConnected", server.id)

    await registry.send(server.id, "hi", broadcast=True)

    for client_id in (first.id, second.id):
        event = await events.wait_for("messageReceived", client_id)
        assert event.message.data == "hi"

    session = registry.get(server.id)
    assert session.bytes_sent == 4
    assert session.message_count == 2
    sent = await registry.list_messages(server.id)
    assert {m.client_addr for m in sent} == {c.addr for c in await registry.list_clients(server.id)}


@pytest.mark.asyncio
async def test_stopping_server_drops_all_clients(registry, events, tcp_pair):
    server, client, peer = tcp_pair

    await registry.stop(server.id)

    session = registry.get(server.id)
    assert session.status == "disconnected"
    assert session.client_count == 0
    assert await registry.list_clients(server.id) == []

    gone = await events.wait_for("clientDisconnected", server.id)
    assert gone.client_id == peer.id

    # The peer sees the connection go away and reports it asynchronously
    failed = await events.wait_for("statusChanged", client.id, status="error")
    assert failed.error_message == "Connection closed by peer"
    assert registry.get(client.id).error_message == "Connection closed by peer"


@pytest.mark.asyncio
async def test_client_leaving_keeps_server_listening(registry, events, tcp_pair):
    server, client, peer = tcp_pair

    await registry.stop(client.id)

    gone = await events.wait_for("clientDisconnected", server.id)
    assert gone.client_id == peer.id
    assert registry.get(server.id).status == "listening"
    assert registry.get(server.id).client_count == 0
    assert registry.get(client.id).status == "disconnected"


@pytest.mark.asyncio
async def test_kick_client(registry, events, tcp_pair):
    server, client, peer = tcp_pair

    await registry.disconnect_client(server.id, peer.id)

    assert await registry.list_clients(server.id) == []
    await events.wait_for("statusChanged", client.id, status="error")
    await asyncio.sleep(0.1)
    # Removed from the roster exactly once
    assert len(events.of_type("clientDisconnected", server.id)) == 1

    with pytest.raises(ClientNotFound):
        await registry.disconnect_client(server.id, peer.id)


@pytest.mark.asyncio
async def test_client_can_restart_after_error(registry, events, tcp_pair):
    server, client, _ = tcp_pair
    await registry.disconnect_client(server.id, (await registry.list_clients(server.id))[0].id)
    await events.wait_for("statusChanged", client.id, status="error")

    restarted = await registry.start(client.id)
    assert restarted.status == "connected"
    assert restarted.error_message is None
    await events.wait_for("clientConnected", server.id)


@pytest.mark.asyncio
async def test_connect_refused_sets_error(registry, events, free_port):
    client = await registry.create("tcp", "client", "127.0.0.1", free_port)

    with pytest.raises(ConnectFailed):
        await registry.start(client.id)

    session = registry.get(client.id)
    assert session.status == "error"
    assert session.error_message
    statuses = [e.status for e in events.of_type("statusChanged", client.id)]
    assert statuses == ["connecting", "error"]

    # error is startable again
    with pytest.raises(ConnectFailed):
        await registry.start(client.id)


@pytest.mark.asyncio
async def test_stop_while_connecting_aborts_attempt(registry, events, monkeypatch):
    async def hang(*args, **kwargs):
        await asyncio.Event().wait()

    monkeypatch.setattr(asyncio, "open_connection", hang)
    client = await registry.create("tcp", "client", "127.0.0.1", 9)
    start = asyncio.create_task(registry.start(client.id))
    await events.wait_for("statusChanged", client.id, status="connecting")

    await registry.stop(client.id)

    with pytest.raises(ConnectFailed, match="cancelled"):
        await start
    assert registry.get(client.id).status == "disconnected"


@pytest.mark.asyncio
async def test_port_in_use_fails_bind(registry, tcp_pair, free_port):
    server, _, _ = tcp_pair
    other = await registry.create("tcp", "server", "127.0.0.1", free_port)

    with pytest.raises(BindFailed):
        await registry.start(other.id)

    assert registry.get(other.id).status == "error"
    assert registry.get(other.id).error_message
    assert registry.get(server.id).status == "listening"


@pytest.mark.asyncio
async def test_start_running_session(registry, tcp_pair):
    server, client, _ = tcp_pair
    with pytest.raises(AlreadyRunning):
        await registry.start(server.id)
    with pytest.raises(AlreadyRunning):
        await registry.start(client.id)


@pytest.mark.asyncio
async def test_send_requires_running_session(registry, free_port):
    client = await registry.create("tcp", "client", "127.0.0.1", free_port)
    with pytest.raises(NotRunning):
        await registry.send(client.id, "Hello")


@pytest.mark.asyncio
async def test_clear_messages_keeps_counters(registry, events, tcp_pair):
    server, client, _ = tcp_pair
    await registry.send(client.id, "one")
    await events.wait_for("messageReceived", server.id)

    await registry.clear_messages(server.id)
    await registry.clear_messages(client.id)

    assert await registry.list_messages(server.id) == []
    assert await registry.list_messages(client.id) == []
    assert registry.get(server.id).message_count == 1
    assert registry.get(server.id).bytes_received == 3
    assert registry.get(client.id).message_count == 1
    assert registry.get(client.id).bytes_sent == 3


@pytest.mark.asyncio
async def test_remove_running_session(registry, events, tcp_pair):
    server, client, _ = tcp_pair

    await registry.remove(server.id)

    ids = [s.id for s in registry.list_sessions()]
    assert server.id not in ids
    assert client.id in ids
    await events.wait_for("statusChanged", server.id, status="disconnected")
    await events.wait_for("statusChanged", client.id, status="error")


@pytest.mark.asyncio
@pytest.mark.parametrize("settings", [Settings(connect_timeout=2.0, write_timeout=0.3)])
async def test_client_that_stops_reading_is_dropped(registry, events, free_port, settings):
    server = await registry.create("tcp", "server", "127.0.0.1", free_port)
    await registry.start(server.id)
    peer = _silent_peer(free_port)
    try:
        joined = await events.wait_for("clientConnected", server.id)

        with pytest.raises(IoError, match="not reading"):
            for _ in range(64):
                await registry.send(server.id, MEGABYTE, target_client_id=joined.client.id)

        left = await events.wait_for("clientDisconnected", server.id)
        assert left.client_id == joined.client.id
        assert await registry.list_clients(server.id) == []
        assert registry.get(server.id).status == "listening"

        await asyncio.wait_for(registry.stop(server.id), 3.0)
        assert registry.get(server.id).status == "disconnected"
    finally:
        peer.close()


@pytest.mark.asyncio
async def test_stop_interrupts_blocked_send(registry, events, free_port):
    server = await registry.create("tcp", "server", "127.0.0.1", free_port)
    await registry.start(server.id)
    peer = _silent_peer(free_port)
    try:
        joined = await events.wait_for("clientConnected", server.id)

        async def flood():
            while True:
                await registry.send(server.id, MEGABYTE, target_client_id=joined.client.id)

        sender = asyncio.create_task(flood())
        await asyncio.sleep(0.5)
        assert not sender.done()

        await asyncio.wait_for(registry.stop(server.id), 3.0)

        with pytest.raises((IoError, NotRunning)):
            await sender
        assert registry.get(server.id).status == "disconnected"
        assert registry.get(server.id).client_count == 0
    finally:
        peer.close()
