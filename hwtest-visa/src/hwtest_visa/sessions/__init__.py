"""Supervised device sessions with discovery, reconnection and events."""

from hwtest_visa.sessions.events import EventRegistry, SessionEvent
from hwtest_visa.sessions.manager import SessionManager
from hwtest_visa.sessions.session import DeviceSession, SessionState

__all__ = [
    "DeviceSession",
    "EventRegistry",
    "SessionEvent",
    "SessionManager",
    "SessionState",
]
