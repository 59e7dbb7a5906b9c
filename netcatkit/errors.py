"""
Error Taxonomy.

Configuration and addressing errors (InvalidConfig, SessionNotFound, ClientNotFound,
EncodingError, AlreadyRunning, NotRunning) are raised back to the caller of a command
and leave the session untouched. BindFailed and ConnectFailed raised from a start have
already moved the session into its error state. IoError raised from a send leaves the
status as it was; a failed TCP server write only drops that client from the roster.
"""


class NetcatError(Exception):
    """Base class for every error raised by the session engine."""


class InvalidConfig(NetcatError):
    """Malformed protocol, mode, host, port or setting."""


class SessionNotFound(NetcatError):
    def __init__(self, session_id: str):
        super().__init__(f"No session found with id {session_id}")
        self.session_id = session_id


class ClientNotFound(NetcatError):
    """Unknown, stale or missing target client."""


class AlreadyRunning(NetcatError):
    pass


class NotRunning(NetcatError):
    pass


class BindFailed(NetcatError):
    pass


class ConnectFailed(NetcatError):
    pass


class EncodingError(NetcatError):
    """Malformed hex/base64 input, or an empty payload."""


class IoError(NetcatError):
    """Generic runtime socket failure."""
