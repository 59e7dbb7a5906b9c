"""Runtime configuration: engine settings and sessions to create at startup."""

import json
import os
from dataclasses import dataclass
from typing import List

from .errors import InvalidConfig

SESSIONS_ENV = "NETCATKIT_SESSIONS"


def _env(name: str, cast, default):
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise InvalidConfig(f"{name}={raw!r} is not a valid {cast.__name__}") from e


@dataclass
class Settings:
    message_capacity: int = 500  # records kept per session
    connect_timeout: float = 5.0  # TCP client connect, seconds
    write_timeout: float = 10.0  # TCP write to a peer that stops reading, seconds
    read_chunk_size: int = 4096
    event_queue_size: int = 100  # per subscriber
    udp_idle_timeout: float = 300.0  # 0 keeps UDP peers forever
    udp_sweep_interval: float = 5.0

    def __post_init__(self):
        if self.message_capacity < 1:
            raise InvalidConfig("message_capacity must be at least 1")
        if self.connect_timeout <= 0:
            raise InvalidConfig("connect_timeout must be positive")
        if self.write_timeout <= 0:
            raise InvalidConfig("write_timeout must be positive")
        if self.read_chunk_size < 1:
            raise InvalidConfig("read_chunk_size must be at least 1")
        if self.event_queue_size < 1:
            raise InvalidConfig("event_queue_size must be at least 1")
        if self.udp_idle_timeout < 0:
            raise InvalidConfig("udp_idle_timeout cannot be negative")
        if self.udp_sweep_interval <= 0:
            raise InvalidConfig("udp_sweep_interval must be positive")

    @classmethod
    def load(cls) -> "Settings":
        """Builds settings from NETCATKIT_* environment variables."""
        return cls(
            message_capacity=_env("NETCATKIT_MESSAGE_CAPACITY", int, cls.message_capacity),
            connect_timeout=_env("NETCATKIT_CONNECT_TIMEOUT", float, cls.connect_timeout),
            write_timeout=_env("NETCATKIT_WRITE_TIMEOUT", float, cls.write_timeout),
            read_chunk_size=_env("NETCATKIT_READ_CHUNK_SIZE", int, cls.read_chunk_size),
            event_queue_size=_env("NETCATKIT_EVENT_QUEUE_SIZE", int, cls.event_queue_size),
            udp_idle_timeout=_env("NETCATKIT_UDP_IDLE_TIMEOUT", float, cls.udp_idle_timeout),
            udp_sweep_interval=_env("NETCATKIT_UDP_SWEEP_INTERVAL", float, cls.udp_sweep_interval),
        )


def parse_session_arg(value: str) -> dict:
    """Parses a NAME:PROTO:MODE:HOST:PORT command line value.

    The host may itself contain colons (IPv6), optionally wrapped in brackets.
    """
    parts = value.split(":", 3)
    if len(parts) != 4 or ":" not in parts[3]:
        raise InvalidConfig(f"Invalid session '{value}', expected NAME:PROTO:MODE:HOST:PORT")
    name, protocol, mode, rest = parts
    host, port = rest.rsplit(":", 1)
    return {
        "name": name,
        "protocol": protocol,
        "mode": mode,
        "host": host.strip("[]"),
        "port": port,
    }


def load_startup_sessions() -> List[dict]:
    """Reads the sessions to create at startup from NETCATKIT_SESSIONS."""
    raw = os.environ.get(SESSIONS_ENV)
    if not raw:
        return []
    try:
        sessions = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidConfig(f"{SESSIONS_ENV} is not valid JSON: {e}") from e
    if not isinstance(sessions, list):
        raise InvalidConfig(f"{SESSIONS_ENV} must be a JSON list")
    return sessions
