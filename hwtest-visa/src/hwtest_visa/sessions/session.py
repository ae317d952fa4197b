"""Supervised, long-lived connection to one instrument.

A :class:`DeviceSession` owns at most one open resource and serializes all
work against it. Work is submitted as an async callable taking the
resource; units of work run strictly one at a time in submission order.

State machine::

    connecting ──> connected ──> disconnected
        ^              │               │
        │              v               │
        └──────────  error  <──────────┘

A session enters ``error`` after ``max_consecutive_errors`` failed units of
work in a row, or when a reconnect attempt fails. Any successful unit of
work resets the counter and returns the session to ``connected``. A unit of
work that exceeds its timeout disconnects the session; the next unit of work
(or the next discovery scan) reconnects it when auto-reconnect is enabled.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from hwtest_visa.config import SessionConfig
from hwtest_visa.errors import SessionError, VisaError, VisaTimeoutError
from hwtest_visa.resource import MessageBasedResource
from hwtest_visa.sessions.events import EventRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

Opener = Callable[[str], Awaitable[MessageBasedResource]]
Work = Callable[[MessageBasedResource], Awaitable[T]]

_STATUS = "status"
_STATE = "state"


class SessionState(str, Enum):
    """Connection state of a :class:`DeviceSession`."""

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class DeviceSession:
    """Serialized, self-healing access to one resource.

    Args:
        resource_string: Resource string the session is bound to.
        resource: An already open resource, or None to start disconnected.
        opener: Coroutine function opening the resource string; used by
            :meth:`reconnect`.
        config: Supervision settings.
        poll_fn: Optional unit of work run every ``poll_interval`` seconds
            while connected; its result is published with :meth:`set_status`.
    """

    def __init__(
        self,
        resource_string: str,
        resource: MessageBasedResource | None = None,
        *,
        opener: Opener,
        config: SessionConfig | None = None,
        poll_fn: Work[Any] | None = None,
    ) -> None:
        self._resource_string = resource_string
        self._resource = resource
        self._opener = opener
        self._config = config or SessionConfig()
        self._poll_fn = poll_fn
        self._state = SessionState.CONNECTED if resource is not None else SessionState.DISCONNECTED
        self._status: Any = None
        self._error_count = 0
        self._last_error: BaseException | None = None
        self._closed = False
        self._lock = asyncio.Lock()
        self._reconnect_task: asyncio.Task[MessageBasedResource] | None = None
        self._generation = 0
        self._poll_task: asyncio.Task[None] | None = None
        self._events = EventRegistry()

    def __repr__(self) -> str:
        return f"<DeviceSession {self._resource_string} ({self._state.value})>"

    # -- Properties ----------------------------------------------------------

    @property
    def resource_string(self) -> str:
        """Resource string this session is bound to."""
        return self._resource_string

    @property
    def resource(self) -> MessageBasedResource | None:
        """The live resource, or None while disconnected."""
        return self._resource

    @property
    def state(self) -> SessionState:
        """Current connection state."""
        return self._state

    @property
    def status(self) -> Any:
        """Last value passed to :meth:`set_status` (opaque to the session)."""
        return self._status

    @property
    def error_count(self) -> int:
        """Consecutive failed units of work."""
        return self._error_count

    @property
    def last_error(self) -> BaseException | None:
        """Most recent failure, cleared by a successful unit of work."""
        return self._last_error

    @property
    def is_closed(self) -> bool:
        """True once :meth:`close` has been called."""
        return self._closed

    @property
    def is_reconnecting(self) -> bool:
        """True while a reconnect attempt is in flight."""
        return self._reconnect_task is not None

    @property
    def is_busy(self) -> bool:
        """True while a unit of work or a reconnect holds the session."""
        return self._lock.locked()

    # -- Observers -----------------------------------------------------------

    def on_state_change(self, handler: Callable[[SessionState], Any]) -> Callable[[], None]:
        """Call *handler* with the new state on every state change.

        Returns:
            A callable that unsubscribes the handler.
        """
        self._events.on(_STATE, handler)
        return lambda: self._events.off(_STATE, handler)

    def on_status(self, handler: Callable[[Any], Any]) -> Callable[[], None]:
        """Call *handler* with each new status value.

        Returns:
            A callable that unsubscribes the handler.
        """
        self._events.on(_STATUS, handler)
        return lambda: self._events.off(_STATUS, handler)

    def set_status(self, value: Any) -> None:
        """Store the last-known status and notify status handlers."""
        self._status = value
        self._events.emit(_STATUS, value)

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.debug("Session %s: %s -> %s", self._resource_string, self._state.value, state.value)
        self._state = state
        self._events.emit(_STATE, state)

    # -- Execution -----------------------------------------------------------

    async def execute(self, fn: Work[T], *, timeout: float | None = None) -> T:
        """Run *fn* against the session's resource.

        Units of work run one at a time in submission order. The timeout is
        measured from the moment the unit of work starts (not from
        submission) and also bounds any wait for a reconnect in progress.

        Args:
            fn: Coroutine function receiving the open resource.
            timeout: Seconds allowed (default ``config.execute_timeout``).

        Returns:
            Whatever *fn* returns.

        Raises:
            SessionError: If the session is closed, or disconnected with
                auto-reconnect disabled.
            VisaTimeoutError: If the unit of work exceeds its timeout. The
                session is disconnected.
            VisaError: Whatever *fn* or a reconnect attempt raised.
        """
        if self._closed:
            raise SessionError(f"Session {self._resource_string} is closed")
        limit = self._config.execute_timeout if timeout is None else timeout
        async with self._lock:
            if self._closed:
                raise SessionError(f"Session {self._resource_string} is closed")
            try:
                return await asyncio.wait_for(self._run(fn), limit)
            except VisaError:
                raise
            except asyncio.TimeoutError:
                error = VisaTimeoutError(f"Operation on {self._resource_string} timed out after {limit} s")
                logger.warning("%s; disconnecting", error)
                if self._reconnect_task is None:
                    await self._drop_resource(error)
                raise error from None

    async def _run(self, fn: Work[T]) -> T:
        resource = await self._ensure_resource()
        try:
            result = await fn(resource)
        except TimeoutError as exc:
            error = exc if isinstance(exc, VisaError) else VisaTimeoutError(str(exc) or "Operation timed out")
            self._record_failure(error)
            if error is exc:
                raise
            raise error from exc
        except Exception as exc:
            self._record_failure(exc)
            raise
        self._error_count = 0
        self._last_error = None
        self._set_state(SessionState.CONNECTED)
        self.start_polling()
        return result

    async def _ensure_resource(self) -> MessageBasedResource:
        if self._reconnect_task is not None:
            return await asyncio.shield(self._reconnect_task)
        resource = self._resource
        if resource is not None and resource.is_open:
            return resource
        if not self._config.auto_reconnect:
            raise SessionError(f"Session {self._resource_string} is {self._state.value}")
        return await asyncio.shield(self._begin_reconnect())

    def _record_failure(self, exc: BaseException) -> None:
        self._error_count += 1
        self._last_error = exc
        logger.debug(
            "Session %s failure %d/%d: %s",
            self._resource_string,
            self._error_count,
            self._config.max_consecutive_errors,
            exc,
        )
        if self._error_count >= self._config.max_consecutive_errors:
            if self._state is not SessionState.ERROR:
                logger.warning(
                    "Session %s entered error state after %d consecutive failures",
                    self._resource_string,
                    self._error_count,
                )
            self._set_state(SessionState.ERROR)

    # -- Connection management -----------------------------------------------

    async def reconnect(self) -> MessageBasedResource:
        """Close any stale resource and reopen the resource string.

        Concurrent callers share a single attempt. The attempt waits for the
        unit of work currently running to finish; work queued behind it then
        waits for the attempt. Manual reconnects are allowed regardless of
        ``auto_reconnect``.

        Returns:
            The newly opened resource.

        Raises:
            SessionError: If the session is closed.
            ConnectError: If the resource cannot be reopened; the session is
                left in the error state.
        """
        if self._closed:
            raise SessionError(f"Session {self._resource_string} is closed")
        task = self._reconnect_task
        if task is None:
            generation = self._generation
            async with self._lock:
                if self._closed:
                    raise SessionError(f"Session {self._resource_string} is closed")
                resource = self._resource
                if (
                    self._reconnect_task is None
                    and generation != self._generation
                    and resource is not None
                    and resource.is_open
                ):
                    # Another caller reconnected while this one waited.
                    return resource
                task = self._begin_reconnect()
        return await asyncio.shield(task)

    def _begin_reconnect(self) -> asyncio.Task[MessageBasedResource]:
        # Callers hold self._lock, so no unit of work is using the old resource.
        if self._reconnect_task is None:
            self._reconnect_task = asyncio.create_task(
                self._reconnect(), name=f"reconnect {self._resource_string}"
            )
        return self._reconnect_task

    async def _reconnect(self) -> MessageBasedResource:
        try:
            self._set_state(SessionState.CONNECTING)
            stale, self._resource = self._resource, None
            if stale is not None:
                await stale.close()
            try:
                resource = await self._opener(self._resource_string)
            except Exception as exc:
                self._last_error = exc
                self._set_state(SessionState.ERROR)
                logger.warning("Reconnect of %s failed: %s", self._resource_string, exc)
                raise
            if self._closed:
                await resource.close()
                raise SessionError(f"Session {self._resource_string} was closed while reconnecting")
            self._resource = resource
            self._generation += 1
            self._error_count = 0
            self._last_error = None
            self._set_state(SessionState.CONNECTED)
            logger.info("Session %s reconnected", self._resource_string)
            self.start_polling()
            return resource
        finally:
            self._reconnect_task = None

    async def _drop_resource(self, reason: BaseException | None) -> None:
        if reason is not None:
            self._last_error = reason
        await self._stop_polling()
        resource, self._resource = self._resource, None
        self._set_state(SessionState.DISCONNECTED)
        if resource is not None:
            await resource.close()

    async def disconnect(self) -> None:
        """Close the resource and enter the disconnected state.

        The session stays usable; the next unit of work reconnects when
        auto-reconnect is enabled.
        """
        await self._drop_resource(None)

    async def close(self) -> None:
        """Stop polling, close the resource and reject further work."""
        if self._closed:
            return
        self._closed = True
        task = self._reconnect_task
        if task is not None:
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):  # pylint: disable=broad-except
                pass
        await self._drop_resource(None)
        logger.debug("Session %s closed", self._resource_string)

    # -- Polling -------------------------------------------------------------

    def start_polling(self) -> None:
        """Start the poll loop if a poll function is set and none is running."""
        if self._poll_fn is None or self._closed or self._poll_task is not None:
            return
        self._poll_task = asyncio.create_task(self._poll_loop(), name=f"poll {self._resource_string}")

    async def _stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _poll_loop(self) -> None:
        assert self._poll_fn is not None
        current = asyncio.current_task()
        try:
            while self._poll_task is current and not self._closed:
                if self._resource is None or self._state is SessionState.ERROR:
                    break
                try:
                    result = await self.execute(self._poll_fn)
                except Exception as exc:  # pylint: disable=broad-except
                    logger.debug("Poll of %s failed: %s", self._resource_string, exc)
                else:
                    self.set_status(result)
                await asyncio.sleep(self._config.poll_interval)
        finally:
            if self._poll_task is current:
                self._poll_task = None
