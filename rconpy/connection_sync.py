"""
Synchronous RCON connections: thin wrappers around the async sessions.

Each wrapper owns a dedicated asyncio reactor thread and delegates every
operation to the async core via run_coroutine_threadsafe. Event handlers
registered on a wrapper run on the reactor thread.

_SyncRconConnectionBase holds the reactor/delegation boilerplate.
Subclasses just provide a factory for the specific async session type.
"""

import asyncio
import logging
import threading
from typing import Optional, Union

from .async_connection import AsyncRconConnectionTCP, AsyncRconConnectionUDP
from .constants import DEFAULT_HOST, DEFAULT_TIMEOUT, SOURCE_RCON_PORT, PacketType, SessionState
from .errors import RconAlreadyConnectedError, RconNotConnectedError, RconTransportError
from .events import Handler

logger = logging.getLogger(__name__)

__all__ = ["RconConnectionTCP", "RconConnectionUDP"]

AsyncRconSession = Union[AsyncRconConnectionTCP, AsyncRconConnectionUDP]

# Extra seconds a blocking call waits beyond the session timeout
_SYNC_SLACK = 5.0


class _SyncRconConnectionBase:
    """
    Base class for synchronous RCON connections.

    All public methods block until the async operation completes.
    """

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

        self._async: Optional[AsyncRconSession] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._reactor_thread: Optional[threading.Thread] = None
        # Handlers registered before connect(), attached when the core is built
        self._early_handlers: list[tuple[str, Handler]] = []

    def _create_async(self) -> AsyncRconSession:
        """Factory method: subclasses return the appropriate async session."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Properties: proxy to async core
    # ------------------------------------------------------------------

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
        return self._async.authenticated if self._async else False

    @property
    def connected(self) -> bool:
        return self._async.connected if self._async else False

    @property
    def state(self) -> SessionState:
        return self._async.state if self._async else SessionState.DISCONNECTED

    def on(self, event: str, handler: Handler) -> Handler:
        """Register an event handler (called on the reactor thread)."""
        if self._async is None:
            self._early_handlers.append((event, handler))
            return handler
        return self._async.on(event, handler)

    def off(self, event: str, handler: Handler):
        self._early_handlers = [(e, h) for e, h in self._early_handlers if (e, h) != (event, handler)]
        if self._async is not None:
            self._async.off(event, handler)

    # ------------------------------------------------------------------
    # Reactor management
    # ------------------------------------------------------------------

    def _start_reactor(self):
        """Start the asyncio reactor thread."""
        ready = threading.Event()
        loop_holder: list[asyncio.AbstractEventLoop] = []

        def _run():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            loop_holder.append(loop)
            ready.set()
            loop.run_forever()
            # Cleanup after stop
            pending = asyncio.all_tasks(loop)
            for t in pending:
                t.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()

        self._reactor_thread = threading.Thread(
            target=_run,
            name="RCON-Reactor",
            daemon=True,
        )
        self._reactor_thread.start()
        ready.wait(timeout=5.0)

        if not loop_holder:
            raise RuntimeError("Failed to start RCON reactor")

        self._loop = loop_holder[0]

    def _stop_reactor(self):
        if self._loop:
            self._loop.call_soon_threadsafe(self._loop.stop)

        if self._reactor_thread and self._reactor_thread.is_alive():
            self._reactor_thread.join(timeout=2.0)

        self._async = None
        self._loop = None
        self._reactor_thread = None

    @property
    def _core(self) -> AsyncRconSession:
        """Return the async core, raising if it is not initialized."""
        if self._async is None:
            raise RconNotConnectedError()
        return self._async

    def _call_timeout(self, timeout: Optional[int] = None) -> Optional[float]:
        effective = timeout if timeout is not None else self._timeout
        if not effective or effective <= 0:
            return None
        return effective / 1000.0 + _SYNC_SLACK

    def _run_sync(self, coro, timeout: Optional[float] = None):
        """Schedule a coroutine on the reactor and block for its result."""
        assert self._loop is not None, "reactor not started"
        fut = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return fut.result(timeout=timeout)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self):
        """Connect and authenticate. Returns self."""
        if self._async is not None:
            if self._async.state is not SessionState.ENDED:
                raise RconAlreadyConnectedError()
            # The server closed the previous session; release its reactor first
            logger.debug(f"Reconnecting to {self._host}:{self._port} after session end")
            self.disconnect()

        self._start_reactor()
        self._async = self._create_async()
        for event, handler in self._early_handlers:
            self._async.on(event, handler)

        try:
            self._run_sync(self._core.connect(), timeout=self._call_timeout())
        except BaseException:
            self._stop_reactor()
            raise
        return self

    def disconnect(self):
        """Close the session and stop the reactor. Safe to call repeatedly."""
        if self._async and self._loop:
            try:
                self._run_sync(self._core.disconnect(), timeout=5.0)
            except Exception as e:
                logger.debug(f"Error during disconnect: {e}")
            self._loop.call_soon_threadsafe(self._core._fail_pending, RconTransportError("Connection closed"))

        self._stop_reactor()
        return self

    close = disconnect

    # ------------------------------------------------------------------
    # Public commands: delegate to async core
    # ------------------------------------------------------------------

    def send(self, command: str, packet_type: PacketType = PacketType.COMMAND, timeout: Optional[int] = None) -> str:
        """Send a command and block for its response text."""
        if self._async is None or self._loop is None:
            raise RconNotConnectedError()
        return self._run_sync(self._core.send(command, packet_type, timeout), timeout=self._call_timeout(timeout))

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self):
        cls = type(self).__name__
        return f"{cls}({self._host}:{self._port}, {self.state.value})"


class RconConnectionTCP(_SyncRconConnectionBase):
    """Synchronous RCON connection over TCP."""

    def _create_async(self) -> AsyncRconConnectionTCP:
        return AsyncRconConnectionTCP(
            host=self._host,
            port=self._port,
            password=self._password,
            timeout=self._timeout,
            trace=self._trace,
        )


class RconConnectionUDP(_SyncRconConnectionBase):
    """Synchronous RCON connection over UDP."""

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
        super().__init__(host, port, password, timeout=timeout, trace=trace)
        self._challenge = challenge

    @property
    def challenge(self) -> bool:
        return self._challenge

    def _create_async(self) -> AsyncRconConnectionUDP:
        return AsyncRconConnectionUDP(
            host=self._host,
            port=self._port,
            password=self._password,
            timeout=self._timeout,
            challenge=self._challenge,
            trace=self._trace,
        )
