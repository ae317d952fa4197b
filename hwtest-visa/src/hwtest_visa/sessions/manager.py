"""Discovery-driven session supervision.

:class:`SessionManager` periodically lists resources through a
:class:`ResourceManager`, opens a :class:`DeviceSession` for every new
resource that passes the configured filter, tears down sessions whose
resource disappeared and, when auto-reconnect is enabled, retries sessions
that are disconnected or in error.

Example:
    manager = SessionManager(ResourceManager(), SessionManagerConfig(query="USB?*::INSTR"))
    manager.on(SessionEvent.SESSION_ADDED, lambda session: print("added", session))
    await manager.start()
    idn = await manager.execute("USB0::0x1AB1::0x04CE::DS1ZA123::INSTR", lambda r: r.query("*IDN?"))
    await manager.stop()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from hwtest_visa.config import OpenOptions, SessionManagerConfig
from hwtest_visa.errors import SessionError, VisaError
from hwtest_visa.manager import ResourceManager
from hwtest_visa.resource import MessageBasedResource
from hwtest_visa.sessions.events import EventRegistry, Handler, SessionEvent
from hwtest_visa.sessions.session import DeviceSession, SessionState, Work

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionManager:
    """Keeps one supervised session per discovered resource.

    Args:
        resource_manager: Used to list and open resources.
        config: Discovery and session settings.
        options_for: Optional callable returning the open options for a
            resource string (for example :meth:`VisaConfig.options_for`).
        poll_fn: Optional poll function given to every session.
    """

    def __init__(
        self,
        resource_manager: ResourceManager,
        config: SessionManagerConfig | None = None,
        *,
        options_for: Callable[[str], OpenOptions] | None = None,
        poll_fn: Work[Any] | None = None,
    ) -> None:
        self._resource_manager = resource_manager
        self._config = config or SessionManagerConfig()
        self._options_for = options_for
        self._poll_fn = poll_fn
        self._sessions: dict[str, DeviceSession] = {}
        self._events = EventRegistry()
        self._scan_lock = asyncio.Lock()
        self._scan_task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def config(self) -> SessionManagerConfig:
        """Discovery and session settings."""
        return self._config

    @property
    def is_running(self) -> bool:
        """True between :meth:`start` and :meth:`stop`."""
        return self._running

    @property
    def sessions(self) -> dict[str, DeviceSession]:
        """Snapshot of the current sessions keyed by resource string."""
        return dict(self._sessions)

    def get_session(self, resource: str) -> DeviceSession | None:
        """Return the session for *resource*, or None."""
        return self._sessions.get(resource)

    # -- Events --------------------------------------------------------------

    def on(self, event: SessionEvent | str, handler: Handler) -> None:
        """Subscribe *handler* to *event*."""
        self._events.on(SessionEvent(event), handler)

    def off(self, event: SessionEvent | str, handler: Handler) -> None:
        """Unsubscribe *handler* from *event*."""
        self._events.off(SessionEvent(event), handler)

    # -- Lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Run an initial scan, then keep scanning in the background.

        Safe to call when already running.
        """
        if self._running:
            return
        self._running = True
        await self.scan()
        self._scan_task = asyncio.create_task(self._scan_loop(), name="hwtest-visa session scan")
        logger.info("Session manager started (scan every %.1f s)", self._config.scan_interval)

    async def stop(self) -> None:
        """Stop scanning and close every session. Safe to call repeatedly."""
        if not self._running:
            return
        self._running = False
        if self._scan_task is not None:
            self._scan_task.cancel()
            try:
                await self._scan_task
            except asyncio.CancelledError:
                pass
            self._scan_task = None
        for resource, session in list(self._sessions.items()):
            await session.close()
            del self._sessions[resource]
            self._events.emit(SessionEvent.SESSION_REMOVED, resource)
        logger.info("Session manager stopped")

    async def __aenter__(self) -> SessionManager:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()

    async def _scan_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.scan_interval)
            try:
                await self.scan()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Resource scan failed; retrying in %.1f s", self._config.scan_interval)

    # -- Discovery -----------------------------------------------------------

    async def scan(self) -> None:
        """Reconcile sessions with the resources currently present.

        Listing failures are logged and ignored; the next scan retries. Sessions
        busy with a unit of work are not reconnected until a later scan.
        """
        async with self._scan_lock:
            try:
                present = await self._resource_manager.list_resources(self._config.query)
            except (VisaError, OSError) as exc:
                logger.warning("Resource scan failed: %s", exc)
                return

            current = set(present)
            for resource in present:
                if resource not in self._sessions and self._config.accepts(resource):
                    await self._add_session(resource)

            for resource in [name for name in self._sessions if name not in current]:
                session = self._sessions.pop(resource)
                logger.info("Resource %s disappeared", resource)
                await session.close()
                self._events.emit(SessionEvent.SESSION_REMOVED, resource)

            if self._config.session.auto_reconnect:
                stale = (SessionState.DISCONNECTED, SessionState.ERROR)
                for session in list(self._sessions.values()):
                    if session.state in stale and not (session.is_reconnecting or session.is_busy):
                        await self._try_reconnect(session)

    async def _open(self, resource: str) -> MessageBasedResource:
        options = self._options_for(resource) if self._options_for is not None else None
        return await self._resource_manager.open_resource(resource, options)

    async def _add_session(self, resource: str) -> None:
        try:
            opened = await self._open(resource)
        except (VisaError, OSError) as exc:
            logger.warning("Could not open %s: %s", resource, exc)
            return
        session = DeviceSession(
            resource,
            opened,
            opener=self._open,
            config=self._config.session,
            poll_fn=self._poll_fn,
        )
        session.on_state_change(
            lambda state, session=session: self._events.emit(SessionEvent.SESSION_STATE_CHANGED, session, state)
        )
        self._sessions[resource] = session
        logger.info("Session added for %s", resource)
        self._events.emit(SessionEvent.SESSION_ADDED, session)
        session.start_polling()

    async def _try_reconnect(self, session: DeviceSession) -> None:
        try:
            await session.reconnect()
        except (VisaError, OSError) as exc:
            logger.debug("Reconnect of %s failed, retrying next scan: %s", session.resource_string, exc)

    # -- Execution -----------------------------------------------------------

    async def execute(self, resource: str, fn: Work[T], *, timeout: float | None = None) -> T:
        """Run *fn* on the session for *resource*.

        Raises:
            SessionError: If there is no session for *resource*.
        """
        session = self._sessions.get(resource)
        if session is None:
            raise SessionError(f"No session for {resource}")
        return await session.execute(fn, timeout=timeout)
