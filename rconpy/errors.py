"""
RCON exceptions.

Transport and protocol errors are also emitted on a session's ``error``
signal; usage errors are raised before anything touches the network.
"""


class RconError(Exception):
    """Base exception for RCON errors."""


class RconTransportError(RconError):
    """Socket-level failure (connect refused, reset, write failed)."""

    def __init__(self, message: str = "RCON transport unavailable"):
        super().__init__(message)


class RconProtocolError(RconError):
    """Packet with an unexpected shape or type."""


class RconTimeoutError(RconError):
    """A request deadline elapsed without a response."""

    def __init__(self, timeout_ms: int | None = None, message: str | None = None):
        self.timeout_ms = timeout_ms
        if message is None:
            message = f"Timeout after {timeout_ms}ms" if timeout_ms else "Timeout"
        super().__init__(message)

    def __repr__(self):
        return f"RconTimeoutError(timeout_ms={self.timeout_ms})"


class RconAuthenticationError(RconError):
    """The server rejected the RCON password."""

    def __init__(self, host: str | None = None):
        self.host = host
        if host:
            super().__init__(f"Authentication failed for {host}")
        else:
            super().__init__("Authentication failed")


class RconUsageError(RconError):
    """Operation not valid in the session's current state."""


class RconNotConnectedError(RconUsageError):
    def __init__(self):
        super().__init__("Not connected")


class RconAlreadyConnectedError(RconUsageError):
    def __init__(self):
        super().__init__("Already connected")


class RconNotAuthenticatedError(RconUsageError):
    def __init__(self):
        super().__init__("Not authenticated")
