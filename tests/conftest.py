"""
Shared pytest fixtures for rconpy unit tests.

FakeSourceServer is a minimal Source RCON server on 127.0.0.1 running on
its own event loop thread, so both the async and the blocking clients can
talk to it over a real socket.
"""

import asyncio
import struct
import threading

import pytest

from rconpy.constants import PacketType
from rconpy.packet import encode_packet

TEST_PASSWORD = "hunter2"


class FakeSourceServer:
    """Answers AUTH, echoes probes, and replies to commands via ``replies``.

    Unknown commands are answered with ``"echo <command>"``; commands in
    ``silent`` get no answer at all.
    """

    def __init__(self, password: str = TEST_PASSWORD):
        self.password = password
        self.replies: dict[str, str] = {}
        self.silent: set[str] = set()
        self.received: list[tuple[int, int, str]] = []
        self.port = 0
        self._writers: set[asyncio.StreamWriter] = set()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._server: asyncio.AbstractServer | None = None
        self._thread: threading.Thread | None = None

    def start(self):
        ready = threading.Event()

        def _run():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            self._loop = loop
            self._server = loop.run_until_complete(asyncio.start_server(self._handle, "127.0.0.1", 0))
            self.port = self._server.sockets[0].getsockname()[1]
            ready.set()
            loop.run_forever()
            self._server.close()
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()

        self._thread = threading.Thread(target=_run, name="FakeSourceServer", daemon=True)
        self._thread.start()
        ready.wait(timeout=5.0)

    def stop(self):
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=5.0)

    def drop_clients(self):
        """Close every client connection from the server side."""
        for writer in list(self._writers):
            self._loop.call_soon_threadsafe(writer.close)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._writers.add(writer)
        try:
            while True:
                head = await reader.readexactly(4)
                (size,) = struct.unpack("<i", head)
                rest = await reader.readexactly(size)
                request_id, packet_type = struct.unpack_from("<ii", rest)
                body = rest[8:-2].decode()
                self.received.append((request_id, packet_type, body))

                if packet_type == PacketType.AUTH:
                    auth_id = request_id if body == self.password else -1
                    writer.write(encode_packet(request_id, PacketType.RESPONSE_VALUE, ""))
                    writer.write(encode_packet(auth_id, PacketType.RESPONSE_AUTH, ""))
                elif packet_type == PacketType.COMMAND and body in self.silent:
                    continue
                elif packet_type == PacketType.COMMAND:
                    text = self.replies.get(body, f"echo {body}\n")
                    writer.write(encode_packet(request_id, PacketType.RESPONSE_VALUE, text))
                else:
                    writer.write(head + rest)
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            self._writers.discard(writer)
            writer.close()


@pytest.fixture
def source_server():
    """A running FakeSourceServer; stopped after the test."""
    server = FakeSourceServer()
    server.start()
    yield server
    server.stop()
