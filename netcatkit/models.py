import uuid
from dataclasses import dataclass, asdict
from typing import Optional

# Protocols
TCP = "tcp"
UDP = "udp"
PROTOCOLS = (TCP, UDP)

# Modes
CLIENT = "client"
SERVER = "server"
MODES = (CLIENT, SERVER)

# Session status
DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"
LISTENING = "listening"
ERROR = "error"

# Message direction
SENT = "sent"
RECEIVED = "received"


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class NetcatSession:
    id: str
    protocol: str  # "tcp" or "udp"
    mode: str  # "client" or "server"
    host: str
    port: int
    name: str
    status: str = DISCONNECTED
    error_message: Optional[str] = None
    bytes_sent: int = 0
    bytes_received: int = 0
    message_count: int = 0
    client_count: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ConnectedClient:
    id: str
    addr: str
    connected_at: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class NetcatMessage:
    id: str
    session_id: str
    direction: str  # "sent" or "received"
    data: str
    format: str  # "text", "hex" or "base64"
    size: int
    timestamp: float
    client_addr: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)
