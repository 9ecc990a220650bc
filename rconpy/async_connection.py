"""
Async RCON sessions: pure asyncio, one class per transport.

- AsyncRconConnectionTCP: Source RCON over a TCP stream, password auth,
  request ids echoed by the server, multi-packet reassembly.
- AsyncRconConnectionUDP: GoldSrc-style RCON over datagrams, optional
  challenge-token handshake, no request ids on the wire.

Both implement the RconConnection protocol (connect / disconnect / send)
independently; they share the packet codec, the pending-request table and
the event registry, but no session state.

Key design decisions:
- Single event loop per session: the pending table and session state are
  only touched from the loop, so no locks.
- Every TCP command is followed by an empty probe packet. Servers answer in
  order, so the probe's echo marks the end of a response that was split
  across several packets.
- Pending requests are retired by their own timers; disconnecting does not
  fail them early.

Example:
    async with AsyncRconConnectionTCP("127.0.0.1", 27015, "secret") as conn:
        print(await conn.send("status"))
"""

import asyncio
import logging
import socket
from typing import Optional, Protocol

from .constants import (
    AUTH_FAILED_ID,
    DEFAULT_HOST,
    DEFAULT_TIMEOUT,
    RCON_HEADER_SIZE,
    RCON_PACKET_OVERHEAD,
    RCON_PROBE_LENGTH,
    RCON_SIZE_FIELD,
    RECV_BUFFER_SIZE,
    SOURCE_RCON_PORT,
    PacketType,
    SessionState,
)
from .errors import (
    RconAlreadyConnectedError,
    RconAuthenticationError,
    RconError,
    RconNotAuthenticatedError,
    RconNotConnectedError,
    RconProtocolError,
    RconTimeoutError,
    RconTransportError,
)
from .events import (
    EVENT_AUTH,
    EVENT_CONNECT,
    EVENT_END,
    EVENT_ERROR,
    EVENT_RESPONSE,
    EventEmitter,
    Handler,
)
from .packet import (
    encode_challenge_request,
    encode_command_datagram,
    encode_packet,
    encode_probe,
    is_probe_echo,
    join_payloads,
    last_packet,
    parse_challenge,
    parse_datagram,
    parse_datagram_response,
    read_header,
)
from .pending import PendingRequestTable

logger = logging.getLogger(__name__)

# States from which connect() may start a new handshake
_IDLE_STATES = (SessionState.DISCONNECTED, SessionState.ENDED)


def _seconds(timeout_ms: int) -> Optional[float]:
    """Convert a millisecond timeout to asyncio seconds (None = no limit)."""
    return timeout_ms / 1000.0 if timeout_ms and timeout_ms > 0 else None


class RconConnection(Protocol):
    """Operations every RCON session offers, whatever the transport."""

    @property
    def host(self) -> str: ...

    @property
    def port(self) -> int: ...

    @property
    def authenticated(self) -> bool: ...

    @property
    def connected(self) -> bool: ...

    @property
    def state(self) -> SessionState: ...

    def on(self, event: str, handler: Handler) -> Handler: ...

    def off(self, event: str, handler: Handler) -> None: ...

    async def connect(self) -> "RconConnection": ...

    async def disconnect(self) -> "RconConnection": ...

    async def send(
        self, command: str, packet_type: PacketType = PacketType.COMMAND, timeout: Optional[int] = None
    ) -> str: ...


# ======================================================================
# TCP transport
# ======================================================================


class AsyncRconConnectionTCP:
    """Async Source RCON session over TCP."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = SOURCE_RCON_PORT,
        password: str = "",
        *,
        timeout: int = DEFAULT_TIMEOUT,
        trace: bool = False,
    ):
        self._host = host
        self._port = port
        self._password = password
        self._timeout = timeout
        self._trace = trace

        self._requests = PendingRequestTable(timeout)
        self._events = EventEmitter()

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None

        self._state = SessionState.DISCONNECTED
        self._authenticated = False
        # Request id of the AUTH packet of the current handshake
        self._auth_id = 0

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def timeout(self) -> int:
        return self._timeout

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    @property
    def connected(self) -> bool:
        return self._writer is not None

    @property
    def state(self) -> SessionState:
        return self._state

    def on(self, event: str, handler: Handler) -> Handler:
        return self._events.on(event, handler)

    def off(self, event: str, handler: Handler):
        self._events.off(event, handler)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> "AsyncRconConnectionTCP":
        """Open the stream and authenticate with the password."""
        # A handshake in flight has no writer yet
        if self._writer is not None or self._state not in _IDLE_STATES:
            raise RconAlreadyConnectedError()

        self._state = SessionState.CONNECTING
        try:
            await self._open_transport()
        except asyncio.CancelledError:
            self._state = SessionState.DISCONNECTED
            raise
        self._events.emit(EVENT_CONNECT)

        self._state = SessionState.AUTHENTICATING
        try:
            await self.send(self._password, PacketType.AUTH)
        except RconError:
            await self._close_transport()
            raise

        self._state = SessionState.READY
        logger.info(f"Connected to RCON via TCP {self._host}:{self._port}")
        return self

    async def disconnect(self) -> "AsyncRconConnectionTCP":
        """Close the stream. Outstanding requests run into their timeouts."""
        if self._writer is None:
            return self
        await self._close_transport()
        logger.info(f"Closed RCON TCP connection to {self._host}:{self._port}")
        return self

    async def _open_transport(self):
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port),
                timeout=_seconds(self._timeout),
            )
        except (OSError, asyncio.TimeoutError) as e:
            self._state = SessionState.DISCONNECTED
            logger.error(f"Failed to open TCP connection to {self._host}:{self._port}: {e!r}")
            raise RconTransportError(f"Failed to connect to {self._host}:{self._port}") from e

        sock = self._writer.get_extra_info("socket")
        if sock:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

        logger.debug(f"Opened TCP channel to {self._host}:{self._port}")
        self._read_task = asyncio.ensure_future(self._read_loop(self._reader))

    async def _close_transport(self):
        writer, self._writer = self._writer, None
        if writer is not None:
            try:
                writer.close()
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"Error while closing TCP channel: {e}")

        task, self._read_task = self._read_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            try:
                await asyncio.wait_for(task, timeout=1.0)
            except asyncio.TimeoutError:
                logger.debug("Read loop did not stop after close")

        self._reader = None
        self._handle_end()

    async def _read_loop(self, reader: asyncio.StreamReader):
        try:
            while True:
                chunk = await reader.read(RECV_BUFFER_SIZE)
                if not chunk:
                    logger.debug("Connection closed by remote")
                    break
                self._handle_data(chunk)
        except asyncio.CancelledError:
            raise
        except OSError as e:
            logger.warning(f"Socket error in read loop: {e}")
            self._events.emit(EVENT_ERROR, RconTransportError(str(e)))

        if self._reader is reader:
            writer, self._writer = self._writer, None
            self._reader = None
            self._read_task = None
            if writer is not None:
                writer.close()
            self._handle_end()

    def _handle_end(self):
        if self._state in _IDLE_STATES:
            return
        self._authenticated = False
        self._state = SessionState.ENDED
        logger.debug(f"RCON session to {self._host}:{self._port} ended")
        self._events.emit(EVENT_END)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(
        self, command: str, packet_type: PacketType = PacketType.COMMAND, timeout: Optional[int] = None
    ) -> str:
        """Send a command and wait for its (reassembled) response text.

        Args:
            command: Command text (the password for AUTH packets)
            packet_type: PacketType.COMMAND or PacketType.AUTH
            timeout: Milliseconds; None uses the session timeout, <= 0 waits forever
        """
        writer = self._writer
        if writer is None:
            raise RconNotConnectedError()

        request_id = self._requests.next_id()
        if packet_type == PacketType.AUTH:
            self._auth_id = request_id

        future = asyncio.get_running_loop().create_future()
        finalizer = self._requests.add(request_id, future, timeout)

        packet = encode_packet(request_id, packet_type, command)
        probe = encode_probe(finalizer)

        if self._trace:
            logger.info(f"TRACE> id={request_id} type={int(packet_type)} len={len(packet)} probe={finalizer}")

        try:
            writer.write(packet)
            writer.write(probe)
            await writer.drain()
        except OSError as e:
            logger.error(f"Failed to send command: {e}")
            error = RconTransportError(f"Failed to send command: {e}")
            self._requests.reject(request_id, error)
            self._events.emit(EVENT_ERROR, error)

        return await future

    # ------------------------------------------------------------------
    # Inbound dispatch (sync, runs in the read loop)
    # ------------------------------------------------------------------

    def _handle_data(self, data: bytes):
        if not data:
            return

        if self._trace:
            logger.info(f"TRACE< len={len(data)} {data[:32].hex()}")

        requests = self._requests

        if requests.current_id:
            self._continue_response(data)
            return

        if is_probe_echo(data, requests.is_finalizer_id):
            logger.debug("Dropping probe echo with no response in progress")
            self._handle_data(data[RCON_PROBE_LENGTH:])
            return

        try:
            size, packet_id, packet_type = read_header(data)
        except RconProtocolError as e:
            self._protocol_error(e)
            return

        # Several small packets can share one read; only a complete
        # leading packet can have a remainder.
        end = size + RCON_SIZE_FIELD
        complete = size >= RCON_PACKET_OVERHEAD and len(data) >= end
        packet, rest = (data[:end], data[end:]) if complete else (data, b"")

        if not self._authenticated and packet_type == PacketType.RESPONSE_AUTH:
            self._handle_auth_response(packet, size, packet_id)
        elif packet_type == PacketType.RESPONSE_VALUE:
            self._handle_value(packet, size, packet_id, complete)
        else:
            self._protocol_error(RconProtocolError(f"Unexpected packet type {packet_type}"))

        if rest:
            self._handle_data(rest)

    def _continue_response(self, data: bytes):
        """Feed a read to the response being reassembled.

        Bytes are queued one packet at a time, so the response ends exactly
        at its probe echo; whatever follows the echo (a pipelined response,
        a trailing marker packet) is dispatched again.
        """
        requests = self._requests
        while data:
            _, missing = last_packet(b"".join(requests.get_queued()))
            # On a packet boundary, take the next header before classifying it
            step = missing or RCON_HEADER_SIZE
            take, data = data[:step], data[step:]
            try:
                requests.queue_chunk(take)
            except RconProtocolError as e:
                self._protocol_error(e)
                return
            echo_at = self._queued_echo_offset()
            if echo_at:
                self._finalize(end=echo_at)
                self._handle_data(data)
                return

    def _queued_echo_offset(self) -> int:
        """Offset of a complete probe echo ending the queued bytes, else 0."""
        requests = self._requests
        buffered = b"".join(requests.get_queued())
        start, missing = last_packet(buffered)
        if not start or missing or len(buffered) - start != RCON_PROBE_LENGTH:
            return 0
        return start if is_probe_echo(buffered[start:], requests.is_finalizer_id) else 0

    def _handle_value(self, packet: bytes, size: int, packet_id: int, complete: bool):
        requests = self._requests
        if packet_id not in requests:
            logger.debug(f"Dropping response for unknown request id {packet_id}")
            return
        if not self._authenticated and packet_id == self._auth_id:
            # Source sends an empty value packet ahead of the auth reply
            logger.debug("Skipping value packet preceding auth response")
            return
        requests.set_current(packet_id, size)
        if complete:
            self._finalize(packet)
        else:
            requests.queue_chunk(packet)

    def _handle_auth_response(self, data: bytes, size: int, packet_id: int):
        if packet_id == AUTH_FAILED_ID:
            logger.warning(f"RCON password rejected by {self._host}:{self._port}")
            self._requests.reject(self._auth_id, RconAuthenticationError(f"{self._host}:{self._port}"))
            return

        self._authenticated = True
        self._requests.set_current(packet_id, size)
        self._finalize(data, emit=False)
        logger.debug(f"Authenticated with {self._host}:{self._port}")
        self._events.emit(EVENT_AUTH)

    def _finalize(self, data: bytes = b"", emit: bool = True, end: Optional[int] = None):
        """Resolve the current request with everything queued so far (up to ``end``)."""
        requests = self._requests
        if requests.get_queued():
            logger.debug(f"Reassembling response {requests.current_id} from {requests.get_queued_size()} queued bytes")
        buffer = (b"".join(requests.get_queued()) + data)[:end]
        text = join_payloads(buffer, requests.get_length())
        resolved = requests.resolve_current(text)
        requests.set_current()
        if resolved and emit:
            self._events.emit(EVENT_RESPONSE, text)

    def _protocol_error(self, error: RconProtocolError):
        logger.warning(f"RCON protocol error from {self._host}:{self._port}: {error}")
        self._events.emit(EVENT_ERROR, error)

    def _fail_pending(self, error: BaseException):
        """Fail every outstanding request (used when the reactor shuts down)."""
        self._requests.clear(error)

    # ------------------------------------------------------------------
    # Async context manager
    # ------------------------------------------------------------------

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()
        return False

    def __repr__(self):
        return f"AsyncRconConnectionTCP({self._host}:{self._port}, {self._state.value})"


# ======================================================================
# UDP transport
# ======================================================================


class _RconUDPProtocol(asyncio.DatagramProtocol):
    """asyncio DatagramProtocol that feeds datagrams to an AsyncRconConnectionUDP."""

    def __init__(self, connection: "AsyncRconConnectionUDP"):
        self._conn = connection

    def datagram_received(self, data: bytes, addr):
        self._conn._handle_data(data)

    def error_received(self, exc):
        self._conn._on_transport_error(self, exc)

    def connection_lost(self, exc):
        self._conn._on_connection_lost(self)


class AsyncRconConnectionUDP:
    """Async RCON session over UDP with optional challenge handshake."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = SOURCE_RCON_PORT,
        password: str = "",
        *,
        timeout: int = DEFAULT_TIMEOUT,
        challenge: bool = True,
        trace: bool = False,
    ):
        self._host = host
        self._port = port
        self._password = password
        self._timeout = timeout
        self._challenge = challenge
        self._trace = trace

        self._requests = PendingRequestTable(timeout)
        self._events = EventEmitter()

        self._udp_transport: Optional[asyncio.DatagramTransport] = None
        self._udp_protocol: Optional[_RconUDPProtocol] = None

        self._state = SessionState.DISCONNECTED
        self._authenticated = False
        self._challenge_token: Optional[str] = None
        self._challenge_waiter: Optional[asyncio.Future] = None

    @property
    def host(self) -> str:
        return self._host

    @property
    def port(self) -> int:
        return self._port

    @property
    def timeout(self) -> int:
        return self._timeout

    @property
    def challenge(self) -> bool:
        return self._challenge

    @property
    def challenge_token(self) -> Optional[str]:
        return self._challenge_token

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    @property
    def connected(self) -> bool:
        return self._udp_transport is not None

    @property
    def state(self) -> SessionState:
        return self._state

    def on(self, event: str, handler: Handler) -> Handler:
        return self._events.on(event, handler)

    def off(self, event: str, handler: Handler):
        self._events.off(event, handler)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> "AsyncRconConnectionUDP":
        """Open the datagram endpoint and, in challenge mode, fetch a token."""
        if self._udp_transport is not None or self._state not in _IDLE_STATES:
            raise RconAlreadyConnectedError()

        self._state = SessionState.CONNECTING
        try:
            await self._open_transport()
        except asyncio.CancelledError:
            self._state = SessionState.DISCONNECTED
            raise
        self._events.emit(EVENT_CONNECT)

        if not self._challenge:
            self._authenticated = True
            self._state = SessionState.READY
            self._events.emit(EVENT_AUTH)
            logger.info(f"Connected to RCON via UDP {self._host}:{self._port} (no challenge)")
            return self

        self._state = SessionState.CHALLENGE_PENDING
        waiter = asyncio.get_running_loop().create_future()
        self._challenge_waiter = waiter

        try:
            self._send_datagram(encode_challenge_request())
            await asyncio.wait_for(waiter, timeout=_seconds(self._timeout))
        except asyncio.TimeoutError:
            self._challenge_waiter = None
            await self._close_transport()
            raise RconTimeoutError(self._timeout, "Timed out waiting for challenge token") from None
        except RconError:
            self._challenge_waiter = None
            await self._close_transport()
            raise

        self._state = SessionState.READY
        logger.info(f"Connected to RCON via UDP {self._host}:{self._port}")
        return self

    async def disconnect(self) -> "AsyncRconConnectionUDP":
        """Close the endpoint. Outstanding requests run into their timeouts."""
        if self._udp_transport is None:
            return self
        await self._close_transport()
        logger.info(f"Closed RCON UDP endpoint for {self._host}:{self._port}")
        return self

    async def _open_transport(self):
        try:
            loop = asyncio.get_running_loop()
            transport, protocol = await asyncio.wait_for(
                loop.create_datagram_endpoint(
                    lambda: _RconUDPProtocol(self),
                    remote_addr=(self._host, self._port),
                ),
                timeout=_seconds(self._timeout),
            )
        except (OSError, asyncio.TimeoutError) as e:
            self._state = SessionState.DISCONNECTED
            logger.error(f"Failed to open UDP endpoint for {self._host}:{self._port}: {e!r}")
            raise RconTransportError(f"Failed to open UDP endpoint for {self._host}:{self._port}") from e

        self._udp_transport = transport
        self._udp_protocol = protocol
        logger.debug(f"Opened UDP endpoint for {self._host}:{self._port}")

    async def _close_transport(self):
        transport, self._udp_transport = self._udp_transport, None
        self._udp_protocol = None
        if transport is not None:
            transport.close()
        self._handle_end()

    def _on_connection_lost(self, protocol: _RconUDPProtocol):
        if protocol is not self._udp_protocol:
            return
        self._udp_transport = None
        self._udp_protocol = None
        self._handle_end()

    def _on_transport_error(self, protocol: _RconUDPProtocol, exc: Exception):
        if protocol is not self._udp_protocol:
            return
        logger.warning(f"UDP error from {self._host}:{self._port}: {exc}")
        error = RconTransportError(str(exc))
        self._events.emit(EVENT_ERROR, error)
        if self._challenge_waiter is not None and not self._challenge_waiter.done():
            self._challenge_waiter.set_exception(error)
        for request_id in self._requests.pending_ids():
            self._requests.reject(request_id, error)

    def _handle_end(self):
        waiter, self._challenge_waiter = self._challenge_waiter, None
        if waiter is not None and not waiter.done():
            waiter.set_exception(RconTransportError("Connection closed"))

        if self._state in _IDLE_STATES:
            return
        self._authenticated = False
        self._challenge_token = None
        self._state = SessionState.ENDED
        logger.debug(f"RCON session to {self._host}:{self._port} ended")
        self._events.emit(EVENT_END)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def _send_datagram(self, data: bytes):
        if self._udp_transport is None:
            raise RconNotConnectedError()
        if self._trace:
            logger.info(f"TRACE> len={len(data)} {data[:32].hex()}")
        try:
            self._udp_transport.sendto(data)
        except OSError as e:
            logger.error(f"Failed to send datagram: {e}")
            raise RconTransportError(f"Failed to send datagram: {e}") from e

    async def send(
        self, command: str, packet_type: PacketType = PacketType.COMMAND, timeout: Optional[int] = None
    ) -> str:
        """Send a command and wait for the next response datagram.

        ``packet_type`` is accepted for interface parity and ignored: the
        datagram framing has a single command form.
        """
        if self._udp_transport is None:
            raise RconNotConnectedError()
        if self._challenge and not self._challenge_token:
            raise RconNotAuthenticatedError()

        request_id = self._requests.next_id()
        future = asyncio.get_running_loop().create_future()
        self._requests.add(request_id, future, timeout)

        try:
            self._send_datagram(encode_command_datagram(command, self._password, self._challenge_token))
        except RconTransportError as e:
            self._requests.reject(request_id, e)
            self._events.emit(EVENT_ERROR, e)

        return await future

    # ------------------------------------------------------------------
    # Inbound dispatch (sync, runs in the protocol callback)
    # ------------------------------------------------------------------

    def _handle_data(self, data: bytes):
        if self._trace:
            logger.info(f"TRACE< len={len(data)} {data[:32].hex()}")

        try:
            text = parse_datagram(data)
        except RconProtocolError as e:
            logger.warning(f"RCON protocol error from {self._host}:{self._port}: {e}")
            self._events.emit(EVENT_ERROR, e)
            return

        token = parse_challenge(text)
        if token is not None:
            self._challenge_token = token
            self._authenticated = True
            waiter, self._challenge_waiter = self._challenge_waiter, None
            if waiter is not None and not waiter.done():
                waiter.set_result(token)
            logger.debug(f"Received challenge token from {self._host}:{self._port}")
            self._events.emit(EVENT_AUTH)
            return

        response = parse_datagram_response(text)
        self._events.emit(EVENT_RESPONSE, response)

        oldest = self._requests.oldest_id()
        if not oldest:
            logger.debug("Dropping response with no command outstanding")
            return
        self._requests.set_current(oldest, len(data))
        self._requests.resolve_current(response)
        self._requests.set_current()

    def _fail_pending(self, error: BaseException):
        """Fail every outstanding request (used when the reactor shuts down)."""
        self._requests.clear(error)

    # ------------------------------------------------------------------
    # Async context manager
    # ------------------------------------------------------------------

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()
        return False

    def __repr__(self):
        return f"AsyncRconConnectionUDP({self._host}:{self._port}, {self._state.value})"
