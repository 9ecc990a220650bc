"""
RCON protocol constants.

Packet type numbers follow the Source RCON naming (SERVERDATA_*).
RESPONSE_AUTH and COMMAND share the value 2; which one a packet means
depends on its direction.
"""

from enum import Enum, IntEnum

# Network ports
SOURCE_RCON_PORT = 27015  # Default Source / GoldSrc server port

# Packet structure (TCP)
RCON_HEADER_SIZE = 12  # size + id + type
RCON_SIZE_FIELD = 4  # the leading size field is not counted in size
RCON_PACKET_OVERHEAD = 10  # id + type + two trailing NUL bytes
RCON_PROBE_SIZE = 10  # size field value of an empty packet
RCON_PROBE_LENGTH = 14  # an empty packet on the wire, size field included

# Request id counter limit (31-bit positive ids, 0 reserved for "none")
MAX_REQUEST_ID = 2**31 - 1

# Auth reply id sent by Source servers when the password is wrong
AUTH_FAILED_ID = -1

# Datagram marker (int32 -1)
DATAGRAM_MARKER = b"\xff\xff\xff\xff"
CHALLENGE_REQUEST = "challenge rcon\n"

# Defaults
DEFAULT_TIMEOUT = 5000  # milliseconds
DEFAULT_HOST = "localhost"

# Read buffer for the stream transport
RECV_BUFFER_SIZE = 8192


class PacketType(IntEnum):
    """RCON packet types."""

    RESPONSE_VALUE = 0x00  # SERVERDATA_RESPONSE_VALUE
    RESPONSE_AUTH = 0x02  # SERVERDATA_AUTH_RESPONSE
    COMMAND = 0x02  # SERVERDATA_EXECCOMMAND
    AUTH = 0x03  # SERVERDATA_AUTH


class RconProtocol(str, Enum):
    """Transport used by a session."""

    TCP = "tcp"
    UDP = "udp"


class SessionState(Enum):
    """Lifecycle of an RCON session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CHALLENGE_PENDING = "challenge_pending"
    READY = "ready"
    ENDED = "ended"
