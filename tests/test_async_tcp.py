"""Tests for the async TCP session (no network, pure unit tests)."""

import asyncio
import struct
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rconpy.async_connection import AsyncRconConnectionTCP
from rconpy.constants import PacketType, SessionState
from rconpy.errors import (
    RconAlreadyConnectedError,
    RconAuthenticationError,
    RconNotConnectedError,
    RconProtocolError,
    RconTimeoutError,
    RconTransportError,
)
from rconpy.packet import RconPacket, encode_packet, encode_probe


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


async def _settle():
    """Let pending tasks run up to their next real suspension point."""
    for _ in range(3):
        await asyncio.sleep(0)


def _fake_writer() -> MagicMock:
    writer = MagicMock()
    writer.write = MagicMock()
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock()
    return writer


def _make_tcp_conn(**kwargs) -> AsyncRconConnectionTCP:
    """Create an authenticated AsyncRconConnectionTCP, bypassing real connect."""
    conn = AsyncRconConnectionTCP("localhost", port=9999, password="secret", **kwargs)
    conn._writer = _fake_writer()
    conn._reader = MagicMock()
    conn._authenticated = True
    conn._state = SessionState.READY
    return conn


def _written(writer) -> list[RconPacket]:
    return [RconPacket.parse(c.args[0]) for c in writer.write.call_args_list]


def _response(request_id: int, body: str) -> bytes:
    return encode_packet(request_id, PacketType.RESPONSE_VALUE, body)


class TestSend:
    def test_writes_command_then_probe(self):
        async def _test():
            conn = _make_tcp_conn()
            task = asyncio.ensure_future(conn.send("status"))
            await _settle()

            command, probe = _written(conn._writer)
            assert command.type == PacketType.COMMAND
            assert command.body == "status"
            assert probe.size == 10
            assert probe.type == PacketType.RESPONSE_VALUE
            assert probe.payload == b""
            assert probe.id != command.id
            assert conn._requests.is_finalizer_id(probe.id)

            conn._handle_data(_response(command.id, "ok"))
            assert await task == "ok"

        _run(_test())

    def test_not_connected_raises(self):
        async def _test():
            conn = AsyncRconConnectionTCP("localhost", port=9999)
            with pytest.raises(RconNotConnectedError):
                await conn.send("status")

        _run(_test())

    def test_ids_unique_while_pending(self):
        async def _test():
            conn = _make_tcp_conn()
            tasks = [asyncio.ensure_future(conn.send(f"cmd{i}")) for i in range(5)]
            await _settle()

            packets = _written(conn._writer)
            ids = [p.id for p in packets]
            assert len(set(ids)) == len(ids) == 10

            for task in tasks:
                task.cancel()
            conn._requests.clear()

        _run(_test())

    def test_timeout_rejects_and_removes_entry(self):
        async def _test():
            conn = _make_tcp_conn()
            with pytest.raises(RconTimeoutError):
                await conn.send("status", timeout=10)
            assert len(conn._requests) == 0

        _run(_test())

    def test_write_failure_rejects_request(self):
        async def _test():
            conn = _make_tcp_conn()
            conn._writer.drain = AsyncMock(side_effect=ConnectionResetError("reset"))
            errors = []
            conn.on("error", errors.append)

            with pytest.raises(RconTransportError):
                await conn.send("status")

            assert len(conn._requests) == 0
            assert len(errors) == 1

        _run(_test())


class TestSinglePacketResponse:
    def test_resolves_without_queueing(self):
        async def _test():
            conn = _make_tcp_conn()
            task = asyncio.ensure_future(conn.send("status"))
            await _settle()
            command, _probe = _written(conn._writer)

            with patch.object(conn._requests, "queue_chunk", wraps=conn._requests.queue_chunk) as spy:
                conn._handle_data(_response(command.id, "hostname: test\n"))
                spy.assert_not_called()

            assert await task == "hostname: test"
            assert conn._requests.current_id == 0

        _run(_test())

    def test_response_event_emitted(self):
        async def _test():
            conn = _make_tcp_conn()
            responses = []
            conn.on("response", responses.append)
            task = asyncio.ensure_future(conn.send("status"))
            await _settle()
            command, _probe = _written(conn._writer)

            conn._handle_data(_response(command.id, "players: 0"))
            await task

            assert responses == ["players: 0"]

        _run(_test())

    def test_trailing_probe_echo_is_dropped(self):
        async def _test():
            conn = _make_tcp_conn()
            responses = []
            conn.on("response", responses.append)
            task = asyncio.ensure_future(conn.send("status"))
            await _settle()
            command, probe = _written(conn._writer)

            conn._handle_data(_response(command.id, "ok"))
            conn._handle_data(encode_probe(probe.id))

            assert await task == "ok"
            assert responses == ["ok"]
            assert conn._requests.current_id == 0

        _run(_test())


class TestMultiPacketResponse:
    def test_fragments_reassembled_on_probe_echo(self):
        async def _test():
            conn = _make_tcp_conn()
            task = asyncio.ensure_future(conn.send("cvarlist"))
            await _settle()
            command, probe = _written(conn._writer)

            body = "".join(f"cvar_{i} = {i}\n" for i in range(400))
            raw = _response(command.id, body)
            conn._handle_data(raw[:1000])
            conn._handle_data(raw[1000:])
            await _settle()
            assert not task.done()
            assert conn._requests.current_id == command.id

            conn._handle_data(encode_probe(probe.id))
            assert await task == body[:-1]
            assert conn._requests.current_id == 0

        _run(_test())

    def test_consecutive_packets_joined(self):
        async def _test():
            conn = _make_tcp_conn()
            task = asyncio.ensure_future(conn.send("cvarlist"))
            await _settle()
            command, probe = _written(conn._writer)

            first = _response(command.id, "a" * 4086)
            second = _response(command.id, "b" * 10 + "\n")
            # First read: one full packet plus the head of the next
            conn._handle_data(first[:-2])
            conn._handle_data(first[-2:] + second)
            conn._handle_data(encode_probe(probe.id))

            assert await task == "a" * 4086 + "b" * 10

        _run(_test())

    def test_stale_probe_echo_ignored(self):
        async def _test():
            conn = _make_tcp_conn()
            task = asyncio.ensure_future(conn.send("status"))
            await _settle()
            command, probe = _written(conn._writer)

            conn._handle_data(encode_probe(probe.id + 1000))
            await _settle()

            assert not task.done()
            assert command.id in conn._requests
            assert conn._requests.current_id == 0

            conn._handle_data(_response(command.id, "fine"))
            assert await task == "fine"

        _run(_test())

    def test_pipelined_requests_resolve_in_server_order(self):
        async def _test():
            conn = _make_tcp_conn()
            first = asyncio.ensure_future(conn.send("one"))
            second = asyncio.ensure_future(conn.send("two"))
            await _settle()
            cmd_one, _p1, cmd_two, _p2 = _written(conn._writer)

            conn._handle_data(_response(cmd_two.id, "second"))
            await _settle()
            assert second.done() and not first.done()

            conn._handle_data(_response(cmd_one.id, "first"))
            assert await first == "first"
            assert await second == "second"

        _run(_test())


class TestCoalescedReads:
    def test_response_and_probe_echo_in_one_read(self):
        async def _test():
            conn = _make_tcp_conn()
            responses = []
            conn.on("response", responses.append)
            task = asyncio.ensure_future(conn.send("status"))
            await _settle()
            command, probe = _written(conn._writer)

            conn._handle_data(_response(command.id, "ok\n") + encode_probe(probe.id))

            assert await task == "ok"
            assert responses == ["ok"]
            assert conn._requests.current_id == 0

        _run(_test())

    def test_last_fragment_and_probe_echo_in_one_read(self):
        async def _test():
            conn = _make_tcp_conn()
            task = asyncio.ensure_future(conn.send("cvarlist"))
            await _settle()
            command, probe = _written(conn._writer)

            raw = _response(command.id, "x" * 3000)
            conn._handle_data(raw[:100])
            conn._handle_data(raw[100:] + encode_probe(probe.id))

            assert await task == "x" * 3000

        _run(_test())

    def test_two_responses_in_one_read(self):
        async def _test():
            conn = _make_tcp_conn()
            first = asyncio.ensure_future(conn.send("one"))
            second = asyncio.ensure_future(conn.send("two"))
            await _settle()
            cmd_one, _p1, cmd_two, _p2 = _written(conn._writer)

            conn._handle_data(_response(cmd_one.id, "1") + _response(cmd_two.id, "2"))

            assert await first == "1"
            assert await second == "2"

        _run(_test())

    def test_unmatched_probe_echo_followed_by_response(self):
        async def _test():
            conn = _make_tcp_conn()
            first = asyncio.ensure_future(conn.send("one"))
            second = asyncio.ensure_future(conn.send("two"))
            await _settle()
            cmd_one, p1, cmd_two, _p2 = _written(conn._writer)

            # Echo for a request whose response never arrived, then the next response
            conn._handle_data(encode_probe(p1.id) + _response(cmd_two.id, "two"))

            assert await second == "two"
            assert not first.done()
            assert cmd_one.id in conn._requests

            first.cancel()

        _run(_test())

    def test_split_response_then_echo_and_next_response_in_one_read(self):
        async def _test():
            conn = _make_tcp_conn()
            first = asyncio.ensure_future(conn.send("one"))
            second = asyncio.ensure_future(conn.send("two"))
            await _settle()
            cmd_one, p1, cmd_two, p2 = _written(conn._writer)

            raw = _response(cmd_one.id, "x" * 3000)
            conn._handle_data(raw[:1500])
            conn._handle_data(raw[1500:])
            conn._handle_data(encode_probe(p1.id) + _response(cmd_two.id, "two") + encode_probe(p2.id))

            assert await first == "x" * 3000
            assert await second == "two"
            assert conn._requests.current_id == 0

        _run(_test())

    def test_last_fragment_echo_and_next_response_in_one_read(self):
        async def _test():
            conn = _make_tcp_conn()
            responses = []
            conn.on("response", responses.append)
            first = asyncio.ensure_future(conn.send("one"))
            second = asyncio.ensure_future(conn.send("two"))
            await _settle()
            cmd_one, p1, cmd_two, p2 = _written(conn._writer)

            raw = _response(cmd_one.id, "x" * 3000)
            conn._handle_data(raw[:100])
            conn._handle_data(raw[100:] + encode_probe(p1.id) + _response(cmd_two.id, "two") + encode_probe(p2.id))

            assert await first == "x" * 3000
            assert await second == "two"
            assert responses == ["x" * 3000, "two"]

        _run(_test())

    def test_probe_echo_split_across_reads(self):
        async def _test():
            conn = _make_tcp_conn()
            task = asyncio.ensure_future(conn.send("cvarlist"))
            await _settle()
            command, probe = _written(conn._writer)

            raw = _response(command.id, "y" * 2000)
            echo = encode_probe(probe.id)
            conn._handle_data(raw[:500])
            conn._handle_data(raw[500:] + echo[:5])
            await _settle()
            assert not task.done()

            conn._handle_data(echo[5:])
            assert await task == "y" * 2000

        _run(_test())

    def test_packet_after_probe_echo_is_not_part_of_response(self):
        async def _test():
            conn = _make_tcp_conn()
            errors = []
            conn.on("error", errors.append)
            task = asyncio.ensure_future(conn.send("cvarlist"))
            await _settle()
            command, probe = _written(conn._writer)

            raw = _response(command.id, "z" * 2000)
            # Some servers follow the echo with a second marker packet
            trailer = encode_packet(probe.id, PacketType.RESPONSE_VALUE, "\x00\x01\x00\x00")
            conn._handle_data(raw[:700])
            conn._handle_data(raw[700:] + encode_probe(probe.id) + trailer)

            assert await task == "z" * 2000
            assert errors == []
            assert conn._requests.current_id == 0

        _run(_test())


class TestInboundErrors:
    def test_unexpected_type_emits_protocol_error(self):
        conn = _make_tcp_conn()
        errors = []
        conn.on("error", errors.append)

        conn._handle_data(encode_packet(5, PacketType.AUTH, ""))

        assert len(errors) == 1
        assert isinstance(errors[0], RconProtocolError)
        assert conn.state == SessionState.READY
        assert conn.authenticated

    def test_short_chunk_emits_protocol_error(self):
        conn = _make_tcp_conn()
        errors = []
        conn.on("error", errors.append)

        conn._handle_data(b"\x0a\x00\x00")

        assert isinstance(errors[0], RconProtocolError)

    def test_empty_chunk_ignored(self):
        conn = _make_tcp_conn()
        errors = []
        conn.on("error", errors.append)
        conn._handle_data(b"")
        assert errors == []

    def test_unknown_response_id_dropped(self):
        conn = _make_tcp_conn()
        errors = []
        conn.on("error", errors.append)

        conn._handle_data(_response(12345, "orphan"))

        assert errors == []
        assert conn._requests.current_id == 0


class TestConnect:
    def _make_unconnected(self, **kwargs):
        conn = AsyncRconConnectionTCP("localhost", port=9999, password="secret", **kwargs)
        writer = _fake_writer()

        async def _fake_open():
            conn._writer = writer
            conn._reader = MagicMock()

        conn._open_transport = AsyncMock(side_effect=_fake_open)
        return conn, writer

    def test_auth_handshake(self):
        async def _test():
            conn, writer = self._make_unconnected()
            auths = []
            conn.on("auth", lambda: auths.append(True))

            task = asyncio.ensure_future(conn.connect())
            await _settle()
            assert conn.state == SessionState.AUTHENTICATING

            auth, _probe = _written(writer)
            assert auth.type == PacketType.AUTH
            assert auth.body == "secret"

            conn._handle_data(encode_packet(auth.id, PacketType.RESPONSE_AUTH, ""))

            assert await task is conn
            assert conn.authenticated
            assert conn.state == SessionState.READY
            assert auths == [True]

        _run(_test())

    def test_empty_value_before_auth_response_skipped(self):
        async def _test():
            conn, writer = self._make_unconnected()
            task = asyncio.ensure_future(conn.connect())
            await _settle()
            auth, _probe = _written(writer)

            conn._handle_data(_response(auth.id, ""))
            await _settle()
            assert not task.done()
            assert not conn.authenticated

            conn._handle_data(encode_packet(auth.id, PacketType.RESPONSE_AUTH, ""))
            await task
            assert conn.authenticated

        _run(_test())

    def test_empty_value_and_auth_response_in_one_read(self):
        async def _test():
            conn, writer = self._make_unconnected()
            task = asyncio.ensure_future(conn.connect())
            await _settle()
            auth, _probe = _written(writer)

            conn._handle_data(_response(auth.id, "") + encode_packet(auth.id, PacketType.RESPONSE_AUTH, ""))

            await task
            assert conn.authenticated

        _run(_test())

    def test_rejected_password(self):
        async def _test():
            conn, writer = self._make_unconnected()
            ended = []
            conn.on("end", lambda: ended.append(True))

            task = asyncio.ensure_future(conn.connect())
            await _settle()

            conn._handle_data(struct.pack("<iii", 10, -1, PacketType.RESPONSE_AUTH) + b"\x00\x00")

            with pytest.raises(RconAuthenticationError):
                await task
            assert not conn.authenticated
            assert not conn.connected
            writer.close.assert_called_once()
            assert ended == [True]

        _run(_test())

    def test_auth_timeout_fails_connect(self):
        async def _test():
            conn, writer = self._make_unconnected(timeout=10)
            with pytest.raises(RconTimeoutError):
                await conn.connect()
            assert not conn.connected

        _run(_test())

    def test_double_connect_fails_without_new_socket(self):
        async def _test():
            conn = _make_tcp_conn()
            conn._open_transport = AsyncMock()

            with pytest.raises(RconAlreadyConnectedError):
                await conn.connect()

            conn._open_transport.assert_not_called()

        _run(_test())

    def test_connect_while_handshake_in_flight(self):
        async def _test():
            conn = AsyncRconConnectionTCP("localhost", port=9999, password="secret")
            gate = asyncio.Event()

            async def _slow_open():
                await gate.wait()

            conn._open_transport = AsyncMock(side_effect=_slow_open)
            task = asyncio.ensure_future(conn.connect())
            await _settle()
            assert conn.state == SessionState.CONNECTING

            with pytest.raises(RconAlreadyConnectedError):
                await conn.connect()
            conn._open_transport.assert_called_once()

            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            assert conn.state == SessionState.DISCONNECTED

        _run(_test())

    def test_open_failure_maps_to_transport_error(self):
        async def _test():
            conn = AsyncRconConnectionTCP("localhost", port=9999, timeout=100)
            with patch(
                "rconpy.async_connection.asyncio.open_connection",
                new=AsyncMock(side_effect=ConnectionRefusedError("refused")),
            ):
                with pytest.raises(RconTransportError):
                    await conn.connect()
            assert conn.state == SessionState.DISCONNECTED

        _run(_test())

    def test_connect_event_emitted(self):
        async def _test():
            conn, writer = self._make_unconnected()
            events = []
            conn.on("connect", lambda: events.append("connect"))

            task = asyncio.ensure_future(conn.connect())
            await _settle()
            auth, _probe = _written(writer)
            conn._handle_data(encode_packet(auth.id, PacketType.RESPONSE_AUTH, ""))
            await task

            assert events == ["connect"]

        _run(_test())


class TestDisconnect:
    def test_disconnect_resets_auth_and_keeps_pending(self):
        async def _test():
            conn = _make_tcp_conn()
            writer = conn._writer
            ended = []
            conn.on("end", lambda: ended.append(True))

            task = asyncio.ensure_future(conn.send("status", timeout=0))
            await _settle()

            assert await conn.disconnect() is conn

            writer.close.assert_called_once()
            assert not conn.authenticated
            assert not conn.connected
            assert conn.state == SessionState.ENDED
            assert ended == [True]
            assert len(conn._requests) == 1
            assert not task.done()

            task.cancel()
            conn._requests.clear()

        _run(_test())

    def test_disconnect_when_not_connected_is_noop(self):
        async def _test():
            conn = AsyncRconConnectionTCP("localhost", port=9999)
            ended = []
            conn.on("end", lambda: ended.append(True))
            assert await conn.disconnect() is conn
            assert ended == []

        _run(_test())


class TestReadLoop:
    def test_read_loop_dispatches_then_ends(self):
        async def _test():
            conn = _make_tcp_conn()
            writer = conn._writer
            ended = []
            conn.on("end", lambda: ended.append(True))

            task = asyncio.ensure_future(conn.send("status"))
            await _settle()
            command, _probe = _written(writer)

            reader = asyncio.StreamReader()
            reader.feed_data(_response(command.id, "from the wire\n"))
            reader.feed_eof()
            conn._reader = reader

            await conn._read_loop(reader)

            assert await task == "from the wire"
            assert ended == [True]
            assert not conn.connected
            writer.close.assert_called_once()

        _run(_test())


class TestContextManager:
    def test_async_with_full_lifecycle(self):
        async def _test():
            conn = AsyncRconConnectionTCP("localhost", port=9999)
            with (
                patch.object(conn, "connect", new=AsyncMock()),
                patch.object(conn, "disconnect", new=AsyncMock()) as mock_disconnect,
            ):
                async with conn:
                    assert True
                mock_disconnect.assert_called_once()

        _run(_test())
