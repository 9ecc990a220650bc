"""
rconpy - Source/Valve RCON client.

Sessions:
- AsyncRconConnectionTCP: Source RCON over TCP (async, pure asyncio)
- AsyncRconConnectionUDP: GoldSrc-style RCON over UDP with challenge tokens (async)
- RconConnectionTCP / RconConnectionUDP: blocking wrappers (threaded reactor)

Example (async):
    import rconpy

    async with rconpy.create_connection(host="10.0.0.5", password="secret") as conn:
        print(await conn.send("status"))

Example (sync):
    with rconpy.create_sync_connection(host="10.0.0.5", password="secret") as conn:
        print(conn.send("status"))

Settings not passed explicitly come from configure(), then from the
RCON_HOST / RCON_PORT / RCON_PASSWORD / RCON_PROTOCOL / RCON_TIMEOUT /
RCON_CHALLENGE environment variables, then from built-in defaults.
"""

import logging
import os
import threading
from typing import Optional, Union

from rconpy.async_connection import (
    AsyncRconConnectionTCP,
    AsyncRconConnectionUDP,
    RconConnection,
)
from rconpy.connection_sync import RconConnectionTCP, RconConnectionUDP
from rconpy.constants import (
    DEFAULT_HOST,
    DEFAULT_TIMEOUT,
    SOURCE_RCON_PORT,
    PacketType,
    RconProtocol,
    SessionState,
)
from rconpy.errors import (
    RconAlreadyConnectedError,
    RconAuthenticationError,
    RconError,
    RconNotAuthenticatedError,
    RconNotConnectedError,
    RconProtocolError,
    RconTimeoutError,
    RconTransportError,
    RconUsageError,
)

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

__all__ = [
    # Sessions
    "AsyncRconConnectionTCP",
    "AsyncRconConnectionUDP",
    "RconConnectionTCP",
    "RconConnectionUDP",
    "RconConnection",
    # Factories / settings
    "create_connection",
    "create_sync_connection",
    "configure",
    "reset_configuration",
    # Constants
    "PacketType",
    "RconProtocol",
    "SessionState",
    "DEFAULT_TIMEOUT",
    "SOURCE_RCON_PORT",
    # Errors
    "RconError",
    "RconTransportError",
    "RconProtocolError",
    "RconTimeoutError",
    "RconAuthenticationError",
    "RconUsageError",
    "RconNotConnectedError",
    "RconAlreadyConnectedError",
    "RconNotAuthenticatedError",
]


# ─────────────────────────────────────────────────────────────────────────────
# Environment Variables (read at import)
# ─────────────────────────────────────────────────────────────────────────────


def _get_env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    """Get environment variable as int."""
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {val!r}")


def _get_env_bool(name: str, default: Optional[bool] = None) -> Optional[bool]:
    """Get environment variable as bool (1/0, true/false, yes/no, on/off)."""
    val = os.environ.get(name)
    if val is None:
        return default
    lowered = val.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"Environment variable {name} must be a boolean, got {val!r}")


_env_host = os.environ.get("RCON_HOST")
_env_port = _get_env_int("RCON_PORT")
_env_password = os.environ.get("RCON_PASSWORD")
_env_protocol = os.environ.get("RCON_PROTOCOL")
_env_timeout = _get_env_int("RCON_TIMEOUT")
_env_challenge = _get_env_bool("RCON_CHALLENGE")


# ─────────────────────────────────────────────────────────────────────────────
# Process-wide settings
# ─────────────────────────────────────────────────────────────────────────────

_config_lock = threading.Lock()

# User-configured settings (set via configure())
_config_host: Optional[str] = None
_config_port: Optional[int] = None
_config_password: Optional[str] = None
_config_protocol: Optional[RconProtocol] = None
_config_timeout: Optional[int] = None
_config_challenge: Optional[bool] = None


def _parse_protocol(value: Union[str, RconProtocol]) -> RconProtocol:
    try:
        return RconProtocol(str(value.value if isinstance(value, RconProtocol) else value).lower())
    except ValueError:
        raise ValueError(f"Unknown protocol: {value!r}") from None


def configure(
    host: Optional[str] = None,
    port: Optional[int] = None,
    password: Optional[str] = None,
    protocol: Optional[Union[str, RconProtocol]] = None,
    timeout: Optional[int] = None,
    challenge: Optional[bool] = None,
) -> None:
    """Set process-wide defaults used by create_connection().

    Only the given parameters change; the others keep their value.

    Args:
        host: Server hostname (default: RCON_HOST or localhost)
        port: Server port (default: RCON_PORT or 27015)
        password: RCON password (default: RCON_PASSWORD or empty)
        protocol: "tcp" or "udp" (default: RCON_PROTOCOL or tcp)
        timeout: Request timeout in milliseconds (default: RCON_TIMEOUT or 5000)
        challenge: UDP challenge handshake (default: RCON_CHALLENGE or True)

    Raises:
        ValueError: If protocol is not tcp/udp
    """
    global _config_host, _config_port, _config_password, _config_protocol
    global _config_timeout, _config_challenge

    parsed_protocol = _parse_protocol(protocol) if protocol is not None else None

    with _config_lock:
        if host is not None:
            _config_host = host
        if port is not None:
            _config_port = port
        if password is not None:
            _config_password = password
        if parsed_protocol is not None:
            _config_protocol = parsed_protocol
        if timeout is not None:
            _config_timeout = timeout
        if challenge is not None:
            _config_challenge = challenge


def reset_configuration() -> None:
    """Forget everything set through configure()."""
    global _config_host, _config_port, _config_password, _config_protocol
    global _config_timeout, _config_challenge

    with _config_lock:
        _config_host = None
        _config_port = None
        _config_password = None
        _config_protocol = None
        _config_timeout = None
        _config_challenge = None


def _pick(explicit, configured, env, default):
    """Priority: explicit argument > configure() > environment > default."""
    for value in (explicit, configured, env):
        if value is not None:
            return value
    return default


def _resolve_options(host, port, password, protocol, timeout, challenge) -> dict:
    with _config_lock:
        opts = {
            "host": _pick(host, _config_host, _env_host, DEFAULT_HOST),
            "port": _pick(port, _config_port, _env_port, SOURCE_RCON_PORT),
            "password": _pick(password, _config_password, _env_password, ""),
            "protocol": _pick(protocol, _config_protocol, _env_protocol, RconProtocol.TCP),
            "timeout": _pick(timeout, _config_timeout, _env_timeout, DEFAULT_TIMEOUT),
            "challenge": _pick(challenge, _config_challenge, _env_challenge, True),
        }
    opts["protocol"] = _parse_protocol(opts["protocol"])
    return opts


def create_connection(
    host: Optional[str] = None,
    port: Optional[int] = None,
    password: Optional[str] = None,
    protocol: Optional[Union[str, RconProtocol]] = None,
    timeout: Optional[int] = None,
    challenge: Optional[bool] = None,
    *,
    trace: bool = False,
) -> Union[AsyncRconConnectionTCP, AsyncRconConnectionUDP]:
    """Create an (unconnected) async RCON session for the chosen transport.

    Example:
        conn = rconpy.create_connection(host="10.0.0.5", password="secret", protocol="udp")
        await conn.connect()
        players = await conn.send("status")
        await conn.disconnect()

    Raises:
        ValueError: Unknown protocol
    """
    opts = _resolve_options(host, port, password, protocol, timeout, challenge)
    logger.debug(f"Creating {opts['protocol'].value} RCON session for {opts['host']}:{opts['port']}")

    if opts["protocol"] is RconProtocol.UDP:
        return AsyncRconConnectionUDP(
            opts["host"],
            opts["port"],
            opts["password"],
            timeout=opts["timeout"],
            challenge=opts["challenge"],
            trace=trace,
        )
    return AsyncRconConnectionTCP(
        opts["host"],
        opts["port"],
        opts["password"],
        timeout=opts["timeout"],
        trace=trace,
    )


def create_sync_connection(
    host: Optional[str] = None,
    port: Optional[int] = None,
    password: Optional[str] = None,
    protocol: Optional[Union[str, RconProtocol]] = None,
    timeout: Optional[int] = None,
    challenge: Optional[bool] = None,
    *,
    trace: bool = False,
) -> Union[RconConnectionTCP, RconConnectionUDP]:
    """Blocking counterpart of create_connection()."""
    opts = _resolve_options(host, port, password, protocol, timeout, challenge)

    if opts["protocol"] is RconProtocol.UDP:
        return RconConnectionUDP(
            opts["host"],
            opts["port"],
            opts["password"],
            timeout=opts["timeout"],
            challenge=opts["challenge"],
            trace=trace,
        )
    return RconConnectionTCP(
        opts["host"],
        opts["port"],
        opts["password"],
        timeout=opts["timeout"],
        trace=trace,
    )
