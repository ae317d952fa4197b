"""Session lifecycle events and a synchronous observer registry."""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class SessionEvent(str, Enum):
    """Events published by :class:`SessionManager`.

    Payloads:
        SESSION_ADDED: the new :class:`DeviceSession`.
        SESSION_REMOVED: the resource string of the removed session.
        SESSION_STATE_CHANGED: the session and its new :class:`SessionState`.
    """

    SESSION_ADDED = "session-added"
    SESSION_REMOVED = "session-removed"
    SESSION_STATE_CHANGED = "session-state-changed"


class EventRegistry:
    """Observer registry keyed by event kind.

    Handlers are plain callables invoked synchronously, in registration
    order. An exception raised by one handler is logged and does not stop
    delivery to the remaining handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[Any, list[Handler]] = {}

    def on(self, event: Any, handler: Handler) -> None:
        """Register *handler* for *event*."""
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: Any, handler: Handler) -> None:
        """Unregister *handler* for *event*. Unknown handlers are ignored."""
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def handlers(self, event: Any) -> tuple[Handler, ...]:
        """Handlers currently registered for *event*."""
        return tuple(self._handlers.get(event, ()))

    def emit(self, event: Any, *args: Any) -> None:
        """Deliver *args* to every handler registered for *event*."""
        for handler in self.handlers(event):
            try:
                handler(*args)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Handler %r for %s failed", handler, event)

    def clear(self) -> None:
        """Remove all handlers."""
        self._handlers.clear()
