"""Transport base class and connection state machine.

A transport owns exactly one physical link (USB interface claim, serial
handle or TCP socket) and moves bytes over it. :class:`Transport` implements
everything that does not depend on the medium:

- the state machine (``CLOSED -> OPENING -> OPEN -> CLOSING -> CLOSED``,
  with ``ERROR`` reachable from any state and left only by ``close()``),
- read/write termination handling and text encoding,
- one operation in flight at a time, granted in FIFO order,
- mapping of low-level failures onto :mod:`hwtest_visa.errors`,
- consecutive timeout accounting,
- SCPI fallbacks for ``trigger()`` (``*TRG``) and ``read_stb()`` (``*STB?``).

Concrete transports implement the underscore-prefixed hooks.
"""

from __future__ import annotations

import abc
import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any

from hwtest_visa.config import DEFAULT_TIMEOUT
from hwtest_visa.errors import (
    AlreadyOpenError,
    ConnectError,
    NotOpenError,
    ProtocolError,
    TransportIOError,
    ValidationError,
    VisaError,
    VisaTimeoutError,
)
from hwtest_visa.quirks import QuirkPolicy, QuirkProfile, get_quirk_policy, resolve_quirk_profile

logger = logging.getLogger(__name__)


class TransportState(str, Enum):
    """Connection state of a transport."""

    CLOSED = "closed"
    OPENING = "opening"
    OPEN = "open"
    CLOSING = "closing"
    ERROR = "error"


class Transport(abc.ABC):
    """Base class for all transports.

    Args:
        timeout: I/O timeout in seconds.
        read_termination: Suffix that ends a text response.
        write_termination: Suffix appended to text commands.
        encoding: Text encoding.
        quirks: Quirk profile selecting chunk size, command delay and
            header handling.
        command_delay: Seconds to wait before each write. None uses the
            quirk profile's delay.
    """

    #: Consecutive timeouts after which the transport enters ``ERROR``.
    #: None means timeouts never do.
    timeout_error_threshold: int | None = None

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        read_termination: str = "\n",
        write_termination: str = "\n",
        encoding: str = "ascii",
        quirks: QuirkProfile | str | None = None,
        command_delay: float | None = None,
    ) -> None:
        self._quirks = resolve_quirk_profile(quirks)
        self._policy = get_quirk_policy(self._quirks)
        self._state = TransportState.CLOSED
        self._lock = asyncio.Lock()
        self._consecutive_timeouts = 0
        self._timeout = DEFAULT_TIMEOUT
        self.timeout = timeout
        self.read_termination = read_termination
        self.write_termination = write_termination
        self._encoding = encoding
        self._command_delay = self._policy.command_delay if command_delay is None else command_delay
        self._chunk_size = self._policy.chunk_size

    def __str__(self) -> str:
        return self.description

    # -- Properties ----------------------------------------------------------

    @property
    @abc.abstractmethod
    def description(self) -> str:
        """Short human-readable description of the link."""

    @property
    def state(self) -> TransportState:
        """Current connection state."""
        return self._state

    @property
    def is_open(self) -> bool:
        """True when the transport is in the ``OPEN`` state."""
        return self._state is TransportState.OPEN

    @property
    def timeout(self) -> float:
        """I/O timeout in seconds."""
        return self._timeout

    @timeout.setter
    def timeout(self, value: float) -> None:
        if value <= 0:
            raise ValidationError(f"timeout must be positive, got {value}")
        self._timeout = float(value)

    @property
    def read_termination(self) -> str:
        """Suffix that ends a text response."""
        return self._read_termination

    @read_termination.setter
    def read_termination(self, value: str) -> None:
        if not value:
            raise ValidationError("read_termination must not be empty")
        self._read_termination = value

    @property
    def write_termination(self) -> str:
        """Suffix appended to text commands."""
        return self._write_termination

    @write_termination.setter
    def write_termination(self, value: str) -> None:
        self._write_termination = value

    @property
    def encoding(self) -> str:
        """Text encoding for commands and responses."""
        return self._encoding

    @property
    def quirks(self) -> QuirkProfile:
        """Active quirk profile."""
        return self._quirks

    @property
    def policy(self) -> QuirkPolicy:
        """Policy selected by the quirk profile."""
        return self._policy

    @property
    def command_delay(self) -> float:
        """Seconds waited before each write."""
        return self._command_delay

    @property
    def chunk_size(self) -> int:
        """Default size in bytes of raw reads and bulk transfers."""
        return self._chunk_size

    @chunk_size.setter
    def chunk_size(self, value: int) -> None:
        if value <= 0:
            raise ValidationError(f"chunk_size must be positive, got {value}")
        self._chunk_size = int(value)

    # -- Lifecycle -----------------------------------------------------------

    async def open(self) -> None:
        """Open the link.

        Raises:
            AlreadyOpenError: If the transport is not ``CLOSED``.
            ConnectError: If the link cannot be established. The transport
                is left ``CLOSED``.
        """
        if self._state is not TransportState.CLOSED:
            raise AlreadyOpenError(f"{self} is {self._state.value}, not closed")
        self._state = TransportState.OPENING
        try:
            await self._open()
        except BaseException as exc:
            await self._release_after_failed_open()
            self._state = TransportState.CLOSED
            if isinstance(exc, OSError) and not isinstance(exc, VisaError):
                raise ConnectError(f"Failed to open {self}: {exc}") from exc
            raise
        self._consecutive_timeouts = 0
        self._state = TransportState.OPEN
        logger.info("Opened %s", self)

    async def close(self) -> None:
        """Close the link and release the OS handle.

        Safe to call in any state and more than once. Errors reported by the
        underlying close are logged and ignored.
        """
        if self._state is TransportState.CLOSED:
            return
        self._state = TransportState.CLOSING
        try:
            await self._close()
        except Exception as exc:  # pylint: disable=broad-except
            logger.debug("Error while closing %s: %s", self, exc)
        finally:
            self._state = TransportState.CLOSED
            self._consecutive_timeouts = 0
        logger.info("Closed %s", self)

    async def __aenter__(self) -> Transport:
        await self.open()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # -- Text I/O ------------------------------------------------------------

    async def write(self, message: str) -> None:
        """Send *message* followed by the write termination."""
        async with self._operation("write"):
            await self._write_text(message)

    async def read(self) -> str:
        """Read one response, without its read termination.

        Raises:
            VisaTimeoutError: If the termination does not arrive in time.
        """
        async with self._operation("read"):
            return await self._read_text()

    async def query(self, command: str, delay: float | None = None) -> str:
        """Write *command* and read the response.

        Args:
            command: Command to send.
            delay: Optional seconds to wait between the write and the read.
        """
        async with self._operation("query"):
            await self._write_text(command)
            if delay:
                await asyncio.sleep(delay)
            return await self._read_text()

    # -- Raw I/O -------------------------------------------------------------

    async def write_raw(self, data: bytes) -> int:
        """Send *data* untranslated. Returns the number of bytes sent."""
        async with self._operation("write_raw"):
            await self._send_delayed(bytes(data))
        return len(data)

    async def read_raw(self, size: int | None = None) -> bytes:
        """Read whatever is available, up to *size* bytes (default chunk size)."""
        limit = self._chunk_size if size is None else size
        if limit <= 0:
            raise ValidationError(f"size must be positive, got {limit}")
        async with self._operation("read_raw"):
            return await self._receive_raw(limit)

    async def read_bytes(self, count: int) -> bytes:
        """Read exactly *count* bytes.

        Raises:
            VisaTimeoutError: If *count* bytes do not arrive in time.
        """
        if count < 0:
            raise ValidationError(f"count must be >= 0, got {count}")
        async with self._operation("read_bytes"):
            if count == 0:
                return b""
            return await self._receive_exact(count)

    # -- Device control ------------------------------------------------------

    async def clear(self) -> None:
        """Clear the device's input and output buffers."""
        async with self._operation("clear"):
            await self._clear()

    async def trigger(self) -> None:
        """Send a device trigger."""
        async with self._operation("trigger"):
            await self._trigger()

    async def read_stb(self) -> int:
        """Read the IEEE 488.2 status byte."""
        async with self._operation("read_stb"):
            return await self._read_stb()

    # -- Internals -----------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _operation(self, name: str) -> AsyncIterator[None]:
        self._require_open(name)
        async with self._lock:
            self._require_open(name)
            try:
                yield
            except VisaTimeoutError as exc:
                self._record_timeout(exc)
                raise
            except TransportIOError:
                self._enter_error()
                raise
            except VisaError:
                raise
            except TimeoutError as exc:
                error = VisaTimeoutError(f"{name} on {self} timed out after {self._timeout}s")
                self._record_timeout(error)
                raise error from exc
            except OSError as exc:
                self._enter_error()
                raise TransportIOError(f"{name} on {self} failed: {exc}") from exc
            else:
                self._consecutive_timeouts = 0

    def _require_open(self, operation: str) -> None:
        if self._state is not TransportState.OPEN:
            raise NotOpenError(
                f"Cannot {operation}: {self} is {self._state.value}",
                requires_reopen=self._state is TransportState.ERROR,
            )

    def _record_timeout(self, error: VisaTimeoutError) -> None:
        self._consecutive_timeouts += 1
        threshold = self.timeout_error_threshold
        if threshold is not None and self._consecutive_timeouts >= threshold:
            error.requires_reopen = True
            self._enter_error()

    def _enter_error(self) -> None:
        if self._state is not TransportState.ERROR:
            logger.warning("%s entered error state", self)
        self._state = TransportState.ERROR

    def _encode(self, text: str) -> bytes:
        try:
            return text.encode(self._encoding)
        except UnicodeEncodeError as exc:
            raise ValidationError(f"Cannot encode {text!r} as {self._encoding}: {exc}") from None

    async def _send_delayed(self, data: bytes) -> None:
        if self._command_delay > 0:
            await asyncio.sleep(self._command_delay)
        await self._send(data)

    async def _write_text(self, message: str) -> None:
        logger.debug("%s << %r", self, message)
        await self._send_delayed(self._encode(message + self._write_termination))

    async def _read_text(self) -> str:
        data = await self._receive_message(self._encode(self._read_termination))
        text = data.decode(self._encoding, errors="replace")
        logger.debug("%s >> %r", self, text)
        return text

    async def _release_after_failed_open(self) -> None:
        try:
            await self._close()
        except Exception as exc:  # pylint: disable=broad-except
            logger.debug("Cleanup after failed open of %s: %s", self, exc)

    async def _trigger(self) -> None:
        await self._write_text("*TRG")

    async def _read_stb(self) -> int:
        await self._write_text("*STB?")
        response = await self._read_text()
        try:
            return int(response.strip())
        except ValueError:
            raise ProtocolError(f"Invalid *STB? response from {self}: {response!r}") from None

    # -- Medium hooks --------------------------------------------------------

    @abc.abstractmethod
    async def _open(self) -> None:
        """Establish the link; raise a ConnectError subclass on failure."""

    @abc.abstractmethod
    async def _close(self) -> None:
        """Release the link. Must tolerate a partially opened link."""

    @abc.abstractmethod
    async def _send(self, data: bytes) -> None:
        """Send all of *data* within the timeout."""

    @abc.abstractmethod
    async def _receive_message(self, termination: bytes) -> bytes:
        """Receive one message and return it without *termination*."""

    @abc.abstractmethod
    async def _receive_raw(self, size: int) -> bytes:
        """Receive between 1 and *size* bytes."""

    @abc.abstractmethod
    async def _receive_exact(self, count: int) -> bytes:
        """Receive exactly *count* bytes."""

    @abc.abstractmethod
    async def _clear(self) -> None:
        """Discard pending input and ask the device to clear its buffers."""
