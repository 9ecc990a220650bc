"""Signal fan-out for RCON sessions.

Handlers run inline on the session's event loop, in registration order.
A handler that raises is logged and does not affect the session or the
remaining handlers.
"""

import logging
from collections import defaultdict
from typing import Callable

logger = logging.getLogger(__name__)

EVENT_RESPONSE = "response"
EVENT_AUTH = "auth"
EVENT_ERROR = "error"
EVENT_CONNECT = "connect"
EVENT_END = "end"

EVENTS = frozenset({EVENT_RESPONSE, EVENT_AUTH, EVENT_ERROR, EVENT_CONNECT, EVENT_END})

Handler = Callable


class EventEmitter:
    """Per-session registry of signal handlers."""

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def on(self, event: str, handler: Handler) -> Handler:
        """Register ``handler`` for ``event``. Returns the handler."""
        if event not in EVENTS:
            raise ValueError(f"Unknown event: {event!r}")
        self._handlers[event].append(handler)
        return handler

    def off(self, event: str, handler: Handler):
        """Remove a handler; unknown handlers are ignored."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, *args):
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(*args)
            except Exception as e:
                logger.warning(f"{event} handler exception: {e}")
