import argparse
import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request
from fastapi.responses import JSONResponse
from fastmcp import FastMCP
from pydantic import BaseModel

from .config import SESSIONS_ENV, Settings, load_startup_sessions, parse_session_arg
from .core import SessionRegistry
from .errors import (
    AlreadyRunning,
    BindFailed,
    ClientNotFound,
    ConnectFailed,
    EncodingError,
    InvalidConfig,
    IoError,
    NetcatError,
    NotRunning,
    SessionNotFound,
)
from .events import event_to_dict

logger = logging.getLogger("netcatkit.app")

# --- Configuration ---
settings = Settings.load()
registry = SessionRegistry(settings=settings)

ERROR_STATUS = {
    InvalidConfig: 400,
    EncodingError: 400,
    SessionNotFound: 404,
    ClientNotFound: 404,
    AlreadyRunning: 409,
    NotRunning: 409,
    BindFailed: 502,
    ConnectFailed: 502,
    IoError: 502,
}


class CreateSessionRequest(BaseModel):
    protocol: str
    mode: str
    host: str
    port: int
    name: Optional[str] = None


class SendMessageRequest(BaseModel):
    data: str
    format: str = "text"
    target_client_id: Optional[str] = None
    broadcast: bool = False


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup logic
    logger.info("NetcatKit initializing...")
    for entry in load_startup_sessions():
        name = entry.get("name")
        try:
            session = await registry.create(
                entry.get("protocol", "tcp"),
                entry.get("mode", "client"),
                entry.get("host"),
                int(entry.get("port", 0)),
                name,
            )
            if entry.get("autostart"):
                await registry.start(session.id)
        except (NetcatError, ValueError) as e:
            logger.error(f"Failed to set up startup session '{name}': {e}")
    yield
    # Shutdown logic
    logger.info("NetcatKit shutting down...")
    await registry.shutdown()


# --- MCP Server Definition ---
mcp = FastMCP("NetcatKit Protocol Tester")


@mcp.tool()
def get_help() -> str:
    """
    Returns a guide on how to use NetcatKit to test TCP/UDP endpoints.
    Read this if you are unsure how to proceed.
    """
    return """
# NetcatKit User Guide for AI Agents

You are connected to **NetcatKit**, a netcat-style protocol tester. It manages any
number of independent TCP/UDP sessions, each acting as a **client** (connects to a
target) or a **server** (listens and tracks connected clients).

## Recommended Workflow

1.  **Check existing sessions**: read the resource `netcat://sessions`.

2.  **Create a session**: `create_session(protocol='tcp', mode='server', host='127.0.0.1', port=18080)`.
    Sessions are created `disconnected`; nothing is opened yet.

3.  **Start it**: `start_session(session_id)`.
    *   Servers move to `listening` (or `error` if the port is taken).
    *   TCP clients go `connecting` -> `connected` (or `error` if the target refuses).
    *   UDP clients are `connected` as soon as the local socket is open.

4.  **Send data**: `send_message(session_id, data, format)`.
    *   `format='text'` sends the string as UTF-8.
    *   `format='hex'` expects pairs of hex digits, e.g. `48 65 6C 6C 6F`.
    *   `format='base64'` expects standard base64.
    *   Servers need `target_client_id` (see `list_clients`) or `broadcast=True`.

5.  **Inspect traffic**: `list_messages(session_id, limit=20)` returns the newest first.
    `size` is always the raw byte count, whatever the display format.

## Debugging Scenarios

*   **Status `error` right after start**: read `error_message`. "Address already in use"
    means another process holds the port; "Connection refused" means nothing listens
    on the target.
*   **No `received` messages**: check that the peer actually writes back, and for UDP
    servers remember that a peer only appears in `list_clients` after its first datagram.
    """


def _describe(e: NetcatError) -> str:
    return f"{type(e).__name__}: {e}"


@mcp.tool()
async def create_session(protocol: str, mode: str, host: str, port: int, name: Optional[str] = None) -> str:
    """
    Create a new netcat session (not started).

    Args:
        protocol: 'tcp' or 'udp'.
        mode: 'client' to connect to host:port, 'server' to listen on host:port.
        host: Target address (client) or bind address (server).
        port: 1-65535.
        name: Optional display name.
    """
    try:
        session = await registry.create(protocol, mode, host, port, name)
        return json.dumps(session.to_dict(), indent=2)
    except NetcatError as e:
        return f"Failed to create session: {_describe(e)}"


@mcp.tool()
async def start_session(session_id: str) -> str:
    """Open the sockets of a session (connect or listen)."""
    try:
        session = await registry.start(session_id)
        return f"Session '{session.name}' is {session.status}"
    except NetcatError as e:
        return f"Failed to start session: {_describe(e)}"


@mcp.tool()
async def stop_session(session_id: str) -> str:
    """Close every socket of a session and disconnect its clients."""
    try:
        await registry.stop(session_id)
        return f"Session {session_id} stopped"
    except NetcatError as e:
        return f"Failed to stop session: {_describe(e)}"


@mcp.tool()
async def remove_session(session_id: str) -> str:
    """Stop (if needed) and delete a session with its message history."""
    try:
        await registry.remove(session_id)
        return f"Session {session_id} removed"
    except NetcatError as e:
        return f"Failed to remove session: {_describe(e)}"


@mcp.tool()
async def send_message(
    session_id: str,
    data: str,
    format: str = "text",
    target_client_id: Optional[str] = None,
    broadcast: bool = False,
) -> str:
    """
    Send data on a running session.

    Args:
        session_id: The session to send on.
        data: The payload as text, hex digits or base64 depending on `format`.
        format: 'text', 'hex' or 'base64'.
        target_client_id: Server sessions only, the client to send to.
        broadcast: Server sessions only, send to every connected client.
    """
    try:
        message = await registry.send(session_id, data, format, target_client_id, broadcast)
        return json.dumps(message.to_dict(), indent=2)
    except NetcatError as e:
        return f"Failed to send message: {_describe(e)}"


@mcp.tool()
async def list_messages(session_id: str, limit: int = 20) -> str:
    """Get the most recent messages of a session, newest first."""
    try:
        messages = await registry.list_messages(session_id, limit)
        return json.dumps([m.to_dict() for m in messages], indent=2)
    except NetcatError as e:
        return f"Failed to list messages: {_describe(e)}"


@mcp.tool()
async def list_clients(session_id: str) -> str:
    """List the clients connected to a server session."""
    try:
        clients = await registry.list_clients(session_id)
        return json.dumps([c.to_dict() for c in clients], indent=2)
    except NetcatError as e:
        return f"Failed to list clients: {_describe(e)}"


@mcp.tool()
async def clear_messages(session_id: str) -> str:
    """Empty the message history of a session. Counters are kept."""
    try:
        await registry.clear_messages(session_id)
        return f"Messages of session {session_id} cleared"
    except NetcatError as e:
        return f"Failed to clear messages: {_describe(e)}"


@mcp.tool()
async def disconnect_client(session_id: str, client_id: str) -> str:
    """Kick one client from a server session."""
    try:
        await registry.disconnect_client(session_id, client_id)
        return f"Client {client_id} disconnected"
    except NetcatError as e:
        return f"Failed to disconnect client: {_describe(e)}"


@mcp.resource("netcat://sessions")
def list_active_sessions() -> str:
    """Returns every session with its status and counters."""
    return json.dumps([s.to_dict() for s in registry.list_sessions()], indent=2)


# --- FastAPI App ---
app = FastAPI(lifespan=lifespan)

# Mount MCP
mcp_app = mcp.http_app(transport="sse")
app.mount("/mcp", mcp_app)


@app.exception_handler(NetcatError)
async def netcat_error_handler(request: Request, exc: NetcatError):
    status_code = ERROR_STATUS.get(type(exc), 500)
    return JSONResponse(status_code=status_code, content={"error": type(exc).__name__, "detail": str(exc)})


@app.post("/api/sessions")
async def create(req: CreateSessionRequest):
    session = await registry.create(req.protocol, req.mode, req.host, req.port, req.name)
    return session.to_dict()


@app.get("/api/sessions")
async def get_sessions() -> List[dict]:
    return [s.to_dict() for s in registry.list_sessions()]


@app.get("/api/sessions/{session_id}")
async def get_session(session_id: str):
    return registry.get(session_id).to_dict()


@app.post("/api/sessions/{session_id}/start")
async def start(session_id: str):
    session = await registry.start(session_id)
    return session.to_dict()


@app.post("/api/sessions/{session_id}/stop")
async def stop(session_id: str):
    await registry.stop(session_id)
    return registry.get(session_id).to_dict()


@app.delete("/api/sessions/{session_id}")
async def remove(session_id: str):
    await registry.remove(session_id)
    return {"status": "success", "message": f"Session {session_id} removed"}


@app.post("/api/sessions/{session_id}/messages")
async def send(session_id: str, req: SendMessageRequest):
    message = await registry.send(session_id, req.data, req.format, req.target_client_id, req.broadcast)
    return message.to_dict()


@app.get("/api/sessions/{session_id}/messages")
async def get_messages(session_id: str, limit: int = 200):
    """Most recent messages first."""
    messages = await registry.list_messages(session_id, limit)
    return [m.to_dict() for m in messages]


@app.delete("/api/sessions/{session_id}/messages")
async def clear(session_id: str):
    await registry.clear_messages(session_id)
    return {"status": "success", "message": "Messages cleared"}


@app.get("/api/sessions/{session_id}/clients")
async def get_clients(session_id: str):
    clients = await registry.list_clients(session_id)
    return [c.to_dict() for c in clients]


@app.delete("/api/sessions/{session_id}/clients/{client_id}")
async def kick(session_id: str, client_id: str):
    await registry.disconnect_client(session_id, client_id)
    return {"status": "success", "message": f"Client {client_id} disconnected"}


async def _wait_disconnect(websocket: WebSocket):
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


@app.websocket("/ws/events")
async def websocket_endpoint(websocket: WebSocket):
    # Subscribe before accepting so no event published after the handshake is missed
    queue = await registry.bus.subscribe()
    disconnected = None
    try:
        await websocket.accept()
        disconnected = asyncio.create_task(_wait_disconnect(websocket))
        while True:
            next_event = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({next_event, disconnected}, return_when=asyncio.FIRST_COMPLETED)
            if disconnected in done:
                next_event.cancel()
                break
            await websocket.send_json(event_to_dict(next_event.result()))
    except WebSocketDisconnect:
        pass
    finally:
        if disconnected is not None:
            disconnected.cancel()
        registry.bus.unsubscribe(queue)


def main():
    import uvicorn

    parser = argparse.ArgumentParser(prog="netcatkit-server", description="NetcatKit TCP/UDP protocol tester")
    parser.add_argument("--host", default="0.0.0.0", help="Address of the HTTP/MCP server")
    parser.add_argument("--port", type=int, default=8002, help="Port of the HTTP/MCP server")
    parser.add_argument(
        "--session",
        action="append",
        default=[],
        metavar="NAME:PROTO:MODE:HOST:PORT",
        help="Session to create at startup (repeatable)",
    )
    parser.add_argument("--autostart", action="store_true", help="Start the --session sessions immediately")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    parser.add_argument("--log-level", default="info", choices=["critical", "error", "warning", "info", "debug"])
    args = parser.parse_args()

    sessions = []
    for value in args.session:
        try:
            entry = parse_session_arg(value)
        except InvalidConfig as e:
            parser.error(str(e))
        entry["autostart"] = args.autostart
        sessions.append(entry)
    if sessions:
        # Passed through the environment so that reloaded workers see them too
        os.environ[SESSIONS_ENV] = json.dumps(sessions)

    uvicorn.run("netcatkit.app:app", host=args.host, port=args.port, reload=args.reload, log_level=args.log_level)


if __name__ == "__main__":
    main()
