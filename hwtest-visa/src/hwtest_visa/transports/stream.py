"""Buffered reading for byte-stream links (serial, TCP, simulated).

Stream links deliver bytes without message boundaries, so responses are
accumulated in a bounded :class:`ReadBuffer` until the read termination or
the requested byte count is available. Bytes beyond the current response
stay buffered for the next read.
"""

from __future__ import annotations

import abc
import asyncio
from collections.abc import Callable
from typing import Any

from hwtest_visa.config import DEFAULT_MAX_BUFFER_SIZE
from hwtest_visa.errors import ProtocolError, VisaTimeoutError
from hwtest_visa.transports.base import Transport


class ReadBuffer:
    """Bounded byte buffer holding data received but not yet consumed."""

    def __init__(self, max_size: int = DEFAULT_MAX_BUFFER_SIZE) -> None:
        self.max_size = max_size
        self._data = bytearray()

    def __len__(self) -> int:
        return len(self._data)

    def extend(self, chunk: bytes) -> None:
        """Append *chunk*.

        Raises:
            ProtocolError: If the buffer would exceed ``max_size``. The
                buffer is emptied.
        """
        if len(self._data) + len(chunk) > self.max_size:
            self._data.clear()
            raise ProtocolError(f"Read buffer overflow: exceeded {self.max_size} bytes")
        self._data.extend(chunk)

    def find(self, termination: bytes) -> int:
        """Return the index of *termination*, or -1."""
        return self._data.find(termination)

    def take(self, count: int) -> bytes:
        """Remove and return up to *count* bytes from the front."""
        data = bytes(self._data[:count])
        del self._data[:count]
        return data

    def take_until(self, termination: bytes) -> bytes | None:
        """Remove and return the bytes before *termination*, consuming it too.

        Returns None if the termination is not buffered.
        """
        index = self._data.find(termination)
        if index < 0:
            return None
        data = bytes(self._data[:index])
        del self._data[: index + len(termination)]
        return data

    def clear(self) -> None:
        """Discard all buffered bytes."""
        self._data.clear()


class StreamTransport(Transport):
    """Transport over a byte stream with a local read buffer.

    Subclasses implement :meth:`_read_chunk` plus the open/close/send hooks.
    """

    def __init__(self, *, max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._buffer = ReadBuffer(max_buffer_size)

    @property
    def bytes_buffered(self) -> int:
        """Number of received bytes not yet consumed."""
        return len(self._buffer)

    @abc.abstractmethod
    async def _read_chunk(self, timeout: float) -> bytes:
        """Wait up to *timeout* seconds for data; return b"" if none arrived."""

    async def _fill(self, ready: Callable[[], bool], expectation: Callable[[], str]) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        while not ready():
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise VisaTimeoutError(f"Read timeout on {self} after {self._timeout}s: {expectation()}")
            chunk = await self._read_chunk(remaining)
            if chunk:
                self._buffer.extend(chunk)

    async def _receive_message(self, termination: bytes) -> bytes:
        await self._fill(
            lambda: self._buffer.find(termination) >= 0,
            lambda: f"no {termination!r} termination in {len(self._buffer)} buffered bytes",
        )
        data = self._buffer.take_until(termination)
        assert data is not None
        return data

    async def _receive_raw(self, size: int) -> bytes:
        await self._fill(lambda: len(self._buffer) > 0, lambda: "no data received")
        return self._buffer.take(size)

    async def _receive_exact(self, count: int) -> bytes:
        await self._fill(
            lambda: len(self._buffer) >= count,
            lambda: f"expected {count} bytes, received {len(self._buffer)}",
        )
        return self._buffer.take(count)

    async def _clear(self) -> None:
        self._buffer.clear()
