"""
Pending-request table for RCON sessions.

Maps request ids to the futures of callers waiting on them, accumulates the
chunks of the response currently being reassembled, and retires requests
whose deadline passes. Used from a single event loop, so no locks.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from .constants import DEFAULT_TIMEOUT, MAX_REQUEST_ID
from .errors import RconProtocolError, RconTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """Bookkeeping for one in-flight request."""

    request_id: int
    future: asyncio.Future
    finalizer: int
    chunks: list[bytes] = field(default_factory=list)
    length: int = -1
    timer: Optional[asyncio.TimerHandle] = None


class PendingRequestTable:
    """In-flight requests of one session, keyed by request id."""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self._pending: dict[int, PendingRequest] = {}
        self._current_id = 0
        self._id_counter = 0

    def __contains__(self, request_id: int) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def current_id(self) -> int:
        return self._current_id

    def pending_ids(self) -> list[int]:
        return list(self._pending)

    def oldest_id(self) -> int:
        """Id of the longest-waiting request, or 0 when the table is empty."""
        return next(iter(self._pending), 0)

    def next_id(self) -> int:
        """Allocate the next request id. Wraps to 1; 0 means "no request"."""
        if self._id_counter + 1 > MAX_REQUEST_ID:
            self._id_counter = 0
        self._id_counter += 1
        return self._id_counter

    def add(self, request_id: int, future: asyncio.Future, timeout: Optional[int] = None) -> int:
        """Register a request and arm its deadline.

        Args:
            request_id: Id the request was sent with
            future: Completed with the response text or an exception
            timeout: Milliseconds; None uses the table default, <= 0 disables

        Returns:
            The finalizer id allocated for this request
        """
        finalizer = self.next_id()
        entry = PendingRequest(request_id=request_id, future=future, finalizer=finalizer)
        self._pending[request_id] = entry

        effective = timeout if timeout is not None else self.timeout
        if effective and effective > 0:
            loop = asyncio.get_running_loop()
            entry.timer = loop.call_later(effective / 1000.0, self._expire, request_id, effective)

        return finalizer

    def _expire(self, request_id: int, timeout: int):
        if request_id in self._pending:
            logger.debug(f"Request {request_id} timed out after {timeout}ms")
            self.reject(request_id, RconTimeoutError(timeout))

    def queue_chunk(self, chunk: bytes):
        """Append a chunk to the response being reassembled."""
        entry = self._pending.get(self._current_id)
        if entry is None:
            raise RconProtocolError(f"No pending request with id {self._current_id}")
        entry.chunks.append(chunk)

    def set_current(self, request_id: int = 0, length: int = 0):
        """Point the cursor at the request whose response is arriving."""
        self._current_id = request_id
        entry = self._pending.get(request_id)
        if entry is not None:
            entry.length = length

    def get_length(self, request_id: Optional[int] = None) -> int:
        entry = self._pending.get(self._current_id if request_id is None else request_id)
        return entry.length if entry else 0

    def get_queued(self, request_id: Optional[int] = None) -> list[bytes]:
        entry = self._pending.get(self._current_id if request_id is None else request_id)
        return entry.chunks if entry else []

    def get_queued_size(self, request_id: Optional[int] = None) -> int:
        return sum(len(c) for c in self.get_queued(request_id))

    def is_finalizer_id(self, value: int) -> bool:
        return any(entry.finalizer == value for entry in self._pending.values())

    def resolve_current(self, value: str) -> bool:
        """Resolve the current request. Returns False if there was none."""
        entry = self._pending.pop(self._current_id, None)
        if entry is None:
            return False
        self._settle(entry)
        if not entry.future.done():
            entry.future.set_result(value)
        return True

    def reject(self, request_id: int, error: BaseException) -> bool:
        """Fail a request. Returns False if it was no longer pending."""
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return False
        if self._current_id == request_id:
            self._current_id = 0
        self._settle(entry)
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def clear(self, error: Optional[BaseException] = None):
        """Drop every pending request, failing each with ``error`` if given."""
        for request_id in list(self._pending):
            entry = self._pending.pop(request_id)
            self._settle(entry)
            if error is not None and not entry.future.done():
                entry.future.set_exception(error)
        self._current_id = 0

    @staticmethod
    def _settle(entry: PendingRequest):
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None
