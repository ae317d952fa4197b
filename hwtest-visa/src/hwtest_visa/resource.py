"""Message-based instrument resource.

This module provides :class:`MessageBasedResource`, the object returned by
:meth:`ResourceManager.open_resource`. It wraps an open transport and adds
binary block and ASCII array helpers on top of the plain text protocol.

Typical usage::

    from hwtest_visa import ResourceManager

    async with ResourceManager() as rm:
        scope = await rm.open_resource("USB0::0x1AB1::0x04CE::DS1ZA123::INSTR")
        print(await scope.query("*IDN?"))
        samples = await scope.query_binary_values(":WAV:DATA?", datatype="B")
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Any

from hwtest_visa.block import (
    DEFAULT_ASCII_SEPARATOR,
    array_to_binary,
    binary_to_array,
    encode_block,
    format_ascii_values,
    parse_ascii_values,
    parse_block_header,
)
from hwtest_visa.errors import ProtocolError
from hwtest_visa.scpi import InstrumentError, InstrumentIdentity, parse_error_response, parse_idn_response
from hwtest_visa.transports.base import Transport, TransportState

logger = logging.getLogger(__name__)

DEFAULT_MAX_BLOCK_SIZE = 128 * 1024 * 1024
MAX_ERROR_QUEUE_READS = 100


async def read_binary_block(
    transport: Transport,
    *,
    chunk_size: int | None = None,
    max_block_size: int = DEFAULT_MAX_BLOCK_SIZE,
    expect_termination: bool = True,
) -> bytes:
    """Read one IEEE 488.2 binary block from *transport* and return its payload.

    Bytes before the ``#`` (such as an echoed header) are skipped. A header
    split across several reads is completed with further reads. When a
    definite-length block ends exactly at the end of what was received, the
    read termination that follows it is consumed as well unless
    *expect_termination* is False.

    Raises:
        ProtocolError: If no block header is found or the declared length
            exceeds *max_block_size*.
    """
    first = await transport.read_raw(chunk_size)
    start = first.find(b"#")
    if start < 0:
        raise ProtocolError(f"No binary block header in response from {transport}: {first[:16]!r}")
    if len(first) < start + 2:
        first += await transport.read_bytes(start + 2 - len(first))
    digit = first[start + 1 : start + 2]
    if b"1" <= digit <= b"9":
        header_end = start + 2 + int(digit)
        if len(first) < header_end:
            first += await transport.read_bytes(header_end - len(first))
    header = parse_block_header(first[start:])
    if header is None:
        raise ProtocolError(f"No binary block header in response from {transport}: {first[:16]!r}")
    if header.data_length > max_block_size:
        raise ProtocolError(
            f"Binary block of {header.data_length} bytes exceeds the {max_block_size} byte limit"
        )
    begin = start + header.header_length
    end = begin + header.data_length
    data = first[begin:end]
    missing = header.data_length - len(data)
    if missing > 0:
        data += await transport.read_bytes(missing)
    definite = header.header_length > 2
    if definite and expect_termination and len(first) <= end:
        termination = transport.read_termination.encode(transport.encoding)
        trailer = await transport.read_bytes(len(termination))
        if trailer != termination:
            logger.debug("Unexpected bytes after binary block from %s: %r", transport, trailer)
    return data


class MessageBasedResource:
    """An open instrument resource exchanging text and binary messages.

    Args:
        transport: An open transport.
        resource_name: Canonical resource string.
        on_close: Called once after the resource is closed.
        max_block_size: Largest binary block accepted, in bytes.
    """

    def __init__(
        self,
        transport: Transport,
        resource_name: str,
        *,
        on_close: Callable[[MessageBasedResource], None] | None = None,
        max_block_size: int = DEFAULT_MAX_BLOCK_SIZE,
    ) -> None:
        self._transport = transport
        self._resource_name = resource_name
        self._on_close = on_close
        self.max_block_size = max_block_size

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._resource_name} ({self._transport.state.value})>"

    # -- Properties ----------------------------------------------------------

    @property
    def resource_name(self) -> str:
        """Canonical resource string."""
        return self._resource_name

    @property
    def transport(self) -> Transport:
        """Underlying transport."""
        return self._transport

    @property
    def state(self) -> TransportState:
        """Transport state."""
        return self._transport.state

    @property
    def is_open(self) -> bool:
        """True while the transport is open."""
        return self._transport.is_open

    @property
    def timeout(self) -> float:
        """I/O timeout in seconds."""
        return self._transport.timeout

    @timeout.setter
    def timeout(self, value: float) -> None:
        self._transport.timeout = value

    @property
    def read_termination(self) -> str:
        """Suffix that ends a text response."""
        return self._transport.read_termination

    @read_termination.setter
    def read_termination(self, value: str) -> None:
        self._transport.read_termination = value

    @property
    def write_termination(self) -> str:
        """Suffix appended to text commands."""
        return self._transport.write_termination

    @write_termination.setter
    def write_termination(self, value: str) -> None:
        self._transport.write_termination = value

    @property
    def chunk_size(self) -> int:
        """Size in bytes of raw reads and bulk transfers."""
        return self._transport.chunk_size

    @chunk_size.setter
    def chunk_size(self, value: int) -> None:
        self._transport.chunk_size = value

    # -- Core operations -----------------------------------------------------

    async def write(self, command: str) -> None:
        """Send a command."""
        await self._transport.write(command)

    async def read(self) -> str:
        """Read one response."""
        return await self._transport.read()

    async def query(self, command: str, delay: float | None = None) -> str:
        """Send a command and read the response."""
        return await self._transport.query(command, delay)

    async def write_raw(self, data: bytes) -> int:
        """Send bytes untranslated."""
        return await self._transport.write_raw(data)

    async def read_raw(self, size: int | None = None) -> bytes:
        """Read up to *size* bytes untranslated."""
        return await self._transport.read_raw(size)

    async def read_bytes(self, count: int) -> bytes:
        """Read exactly *count* bytes."""
        return await self._transport.read_bytes(count)

    async def clear(self) -> None:
        """Clear the device's I/O buffers."""
        await self._transport.clear()

    async def trigger(self) -> None:
        """Send a device trigger."""
        await self._transport.trigger()

    async def read_stb(self) -> int:
        """Read the status byte."""
        return await self._transport.read_stb()

    # -- Binary blocks -------------------------------------------------------

    async def read_binary(self, *, expect_termination: bool = True) -> bytes:
        """Read one binary block and return its payload."""
        return await read_binary_block(
            self._transport,
            max_block_size=self.max_block_size,
            expect_termination=expect_termination,
        )

    async def query_binary(
        self, command: str, *, delay: float | None = None, expect_termination: bool = True
    ) -> bytes:
        """Send *command* and read the binary block it returns."""
        await self._transport.write(command)
        if delay:
            await asyncio.sleep(delay)
        return await self.read_binary(expect_termination=expect_termination)

    async def read_binary_values(
        self,
        datatype: str = "B",
        *,
        container: Callable[[list[Any]], Any] = list,
        expect_termination: bool = True,
    ) -> Any:
        """Read a binary block and decode it as an array of *datatype*."""
        data = await self.read_binary(expect_termination=expect_termination)
        return container(binary_to_array(data, datatype))

    async def query_binary_values(
        self,
        command: str,
        datatype: str = "B",
        *,
        container: Callable[[list[Any]], Any] = list,
        delay: float | None = None,
        expect_termination: bool = True,
    ) -> Any:
        """Send *command* and decode the binary block response.

        Args:
            command: Query command, e.g. ``":WAV:DATA?"``.
            datatype: Element datatype (see :mod:`hwtest_visa.block`).
            container: Callable applied to the decoded list.
            delay: Optional seconds between the write and the read.
            expect_termination: Consume the read termination after the block.

        Returns:
            ``container(values)``.
        """
        data = await self.query_binary(command, delay=delay, expect_termination=expect_termination)
        return container(binary_to_array(data, datatype))

    async def write_binary_values(self, command: str, values: Sequence[Any], datatype: str = "B") -> int:
        """Send *command* followed by *values* as a definite-length binary block.

        Returns:
            Number of bytes written.
        """
        encoding = self._transport.encoding
        message = (
            command.encode(encoding)
            + encode_block(array_to_binary(values, datatype))
            + self._transport.write_termination.encode(encoding)
        )
        return await self._transport.write_raw(message)

    # -- ASCII arrays --------------------------------------------------------

    async def read_ascii_values(
        self,
        converter: Callable[[str], Any] = float,
        separator: Any = DEFAULT_ASCII_SEPARATOR,
        container: Callable[[list[Any]], Any] = list,
    ) -> Any:
        """Read a response and parse it as delimited numbers."""
        return container(parse_ascii_values(await self.read(), converter, separator))

    async def query_ascii_values(
        self,
        command: str,
        converter: Callable[[str], Any] = float,
        separator: Any = DEFAULT_ASCII_SEPARATOR,
        container: Callable[[list[Any]], Any] = list,
        delay: float | None = None,
    ) -> Any:
        """Send *command* and parse the response as delimited numbers."""
        response = await self.query(command, delay)
        return container(parse_ascii_values(response, converter, separator))

    async def write_ascii_values(
        self,
        command: str,
        values: Sequence[Any],
        converter: Callable[[Any], str] = str,
        separator: str = ",",
    ) -> None:
        """Send *command* followed by *values* as a delimited list."""
        await self.write(command + format_ascii_values(values, converter, separator))

    # -- IEEE 488.2 helpers --------------------------------------------------

    async def get_identity(self) -> InstrumentIdentity:
        """Query ``*IDN?`` and parse the response."""
        return parse_idn_response(await self.query("*IDN?"))

    async def get_errors(self, max_entries: int = MAX_ERROR_QUEUE_READS) -> list[InstrumentError]:
        """Drain the instrument error queue via ``SYST:ERR?``.

        Stops at the ``0,"No error"`` entry or after *max_entries* reads.
        """
        errors = []
        for _ in range(max_entries):
            entry = parse_error_response(await self.query("SYST:ERR?"))
            if not entry.is_error:
                break
            errors.append(entry)
        return errors

    # -- Lifecycle -----------------------------------------------------------

    async def close(self) -> None:
        """Close the transport. Safe to call more than once."""
        await self._transport.close()
        callback, self._on_close = self._on_close, None
        if callback is not None:
            callback(self)

    async def __aenter__(self) -> MessageBasedResource:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
