"""
RCON packet encoding and parsing.

TCP packets (all fields little-endian, signed):

Offset  Size  Field    Description
------  ----  -----    -----------
0       4     size     Byte length of everything after this field
4       4     id       Request id chosen by the client, echoed by the server
8       4     type     PacketType
12      var   payload  ASCII/UTF-8 text
12+n    2     -        Two NUL bytes (body terminator + empty string)

size = 4 + 4 + n + 2, so an empty packet has size 10.

UDP datagrams carry no header beyond the int32 -1 marker; the rest of the
datagram is text and datagram boundaries are message boundaries.
"""

import struct
from dataclasses import dataclass
from typing import Callable, Optional

from .constants import (
    CHALLENGE_REQUEST,
    DATAGRAM_MARKER,
    RCON_HEADER_SIZE,
    RCON_PACKET_OVERHEAD,
    RCON_PROBE_SIZE,
    RCON_SIZE_FIELD,
    PacketType,
)
from .errors import RconProtocolError

_HEADER = struct.Struct("<iii")
_TERMINATOR = b"\x00\x00"


@dataclass(frozen=True)
class RconPacket:
    """A parsed TCP packet (possibly only the first part of one)."""

    size: int
    id: int
    type: int
    payload: bytes
    complete: bool = True

    @property
    def body(self) -> str:
        """Payload decoded as UTF-8."""
        return self.payload.decode("utf-8", errors="replace")

    @property
    def total_size(self) -> int:
        """Declared length of the packet on the wire, size field included."""
        return self.size + RCON_SIZE_FIELD

    @staticmethod
    def parse(data: bytes) -> "RconPacket":
        """
        Parse raw bytes into an RconPacket.

        Args:
            data: Raw bytes starting at a size field (at least 12 bytes)

        Returns:
            RconPacket. If fewer bytes are available than the declared size,
            ``complete`` is False and ``payload`` holds what has arrived.
        """
        if len(data) < RCON_HEADER_SIZE:
            raise RconProtocolError(f"Packet too short: {len(data)} < {RCON_HEADER_SIZE}")

        size, packet_id, packet_type = _HEADER.unpack_from(data, 0)
        end = RCON_SIZE_FIELD + size

        if size >= RCON_PACKET_OVERHEAD and len(data) >= end:
            return RconPacket(size, packet_id, packet_type, bytes(data[RCON_HEADER_SIZE : end - 2]))

        return RconPacket(size, packet_id, packet_type, bytes(data[RCON_HEADER_SIZE:]), complete=False)


def read_header(data: bytes) -> tuple[int, int, int]:
    """Return (size, id, type) from the start of a packet."""
    if len(data) < RCON_HEADER_SIZE:
        raise RconProtocolError(f"Packet too short: {len(data)} < {RCON_HEADER_SIZE}")
    return _HEADER.unpack_from(data, 0)


def encode_packet(request_id: int, packet_type: int, body: str) -> bytes:
    """Build a TCP packet carrying ``body``."""
    payload = body.encode("utf-8")
    size = RCON_PACKET_OVERHEAD + len(payload)
    return _HEADER.pack(size, request_id, int(packet_type)) + payload + _TERMINATOR


def encode_probe(finalizer_id: int) -> bytes:
    """Build the empty packet sent after every command.

    Servers answer it after the real response, so its echoed id marks the
    end of a response that was split across several packets.
    """
    return _HEADER.pack(RCON_PROBE_SIZE, finalizer_id, PacketType.RESPONSE_VALUE) + _TERMINATOR


def is_probe_echo(data: bytes, is_finalizer: Callable[[int], bool]) -> bool:
    """Check whether ``data`` is the server's echo of a probe packet."""
    if len(data) < RCON_HEADER_SIZE:
        return False
    size, packet_id, packet_type = _HEADER.unpack_from(data, 0)
    return size == RCON_PROBE_SIZE and packet_type == PacketType.RESPONSE_VALUE and is_finalizer(packet_id)


def last_packet(data: bytes) -> tuple[int, int]:
    """Locate the last packet in a buffer of back-to-back packets.

    Returns (offset where it starts, bytes still missing to complete it).
    While its header is incomplete, the count covers only the header. A
    size below the empty-packet size is treated as an empty packet so a
    corrupt size field cannot stall the walk.
    """
    offset = start = 0
    while offset < len(data):
        start = offset
        remaining = len(data) - offset
        if remaining < RCON_HEADER_SIZE:
            return start, RCON_HEADER_SIZE - remaining
        size = max(_HEADER.unpack_from(data, offset)[0], RCON_PACKET_OVERHEAD)
        total = RCON_SIZE_FIELD + size
        if remaining < total:
            return start, total - remaining
        offset += total
    return start, 0


def split_packets(data: bytes) -> list[RconPacket]:
    """
    Split a reassembled response buffer into its packets.

    Large replies arrive either as one packet cut across several reads or
    as several complete packets back to back; both end up here. The last
    packet may be truncated and is returned with ``complete=False``.
    """
    packets = []
    offset = 0
    while len(data) - offset >= RCON_HEADER_SIZE:
        packet = RconPacket.parse(data[offset:])
        packets.append(packet)
        if not packet.complete:
            break
        offset += packet.total_size
    return packets


def join_payloads(data: bytes, length: int) -> str:
    """Extract the response text from a reassembled buffer.

    ``length`` is the size declared by the first packet; a buffer holding a
    single packet is cut at exactly that size, trailing bytes ignored.
    One trailing newline is removed.
    """
    packets = split_packets(data)
    if len(packets) == 1 and length >= RCON_PACKET_OVERHEAD:
        payload = bytes(data[RCON_HEADER_SIZE : RCON_SIZE_FIELD + length - 2])
    else:
        payload = b"".join(p.payload for p in packets)
    text = payload.decode("utf-8", errors="replace")
    if text.endswith("\n"):
        text = text[:-1]
    return text


# ----------------------------------------------------------------------
# Datagram framing
# ----------------------------------------------------------------------


def encode_datagram(text: str) -> bytes:
    """Prefix ``text`` with the -1 marker."""
    return DATAGRAM_MARKER + text.encode("utf-8")


def encode_challenge_request() -> bytes:
    return encode_datagram(CHALLENGE_REQUEST)


def encode_command_datagram(command: str, password: str = "", token: Optional[str] = None) -> bytes:
    """Frame a command as ``rcon [token ][password ]command\\n``."""
    text = "rcon "
    if token:
        text += f"{token} "
    if password:
        text += f"{password} "
    text += f"{command}\n"
    return encode_datagram(text)


def parse_datagram(data: bytes) -> str:
    """Return the text following the -1 marker."""
    if len(data) < len(DATAGRAM_MARKER) or data[: len(DATAGRAM_MARKER)] != DATAGRAM_MARKER:
        raise RconProtocolError("Invalid packet")
    return data[len(DATAGRAM_MARKER) :].decode("utf-8", errors="replace")


def parse_challenge(text: str) -> Optional[str]:
    """Return the token of a ``challenge rcon <token>`` reply, else None."""
    parts = text.split(" ")
    if len(parts) != 3 or parts[0] != "challenge" or parts[1] != "rcon":
        return None
    return parts[2].strip().strip("\x00").strip()


def parse_datagram_response(text: str) -> str:
    """Strip the one-character response type and the two trailing bytes."""
    return text[1:-2]
