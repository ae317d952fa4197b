"""Raw TCP socket transport (``TCPIP::host::port::SOCKET``) on asyncio streams."""

from __future__ import annotations

import asyncio
import errno
import socket
from typing import Any

from hwtest_visa.config import TcpipOptions
from hwtest_visa.errors import (
    ConnectError,
    ConnectRefusedError,
    ConnectTimeoutError,
    DeviceNotFoundError,
    TransportIOError,
    VisaTimeoutError,
)
from hwtest_visa.transports.stream import StreamTransport

_READ_CHUNK = 65536


class TcpipTransport(StreamTransport):
    """Transport over a raw TCP socket (commonly port 5025).

    ``clear()`` only discards locally buffered input. Triggers and status
    byte reads use the SCPI ``*TRG`` / ``*STB?`` fallbacks.

    Args:
        host: Hostname or IP address.
        port: TCP port.
        options: Connect timeout and keepalive settings.
        **kwargs: Passed to :class:`StreamTransport`.
    """

    def __init__(self, host: str, port: int, *, options: TcpipOptions | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._host = host
        self._port = port
        self._options = options or TcpipOptions()
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None

    @property
    def description(self) -> str:
        return f"TCPIP {self._host}:{self._port}"

    @property
    def host(self) -> str:
        """Remote host."""
        return self._host

    @property
    def port(self) -> int:
        """Remote TCP port."""
        return self._port

    # -- Medium hooks --------------------------------------------------------

    async def _open(self) -> None:
        target = f"{self._host}:{self._port}"
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port),
                timeout=self._options.connect_timeout,
            )
        except asyncio.TimeoutError:
            raise ConnectTimeoutError(
                f"Connection to {target} timed out after {self._options.connect_timeout}s"
            ) from None
        except ConnectionRefusedError as exc:
            raise ConnectRefusedError(f"Connection refused: {target}") from exc
        except socket.gaierror as exc:
            raise DeviceNotFoundError(f"Host not found: {self._host}") from exc
        except OSError as exc:
            if exc.errno in (errno.EHOSTUNREACH, errno.ENETUNREACH):
                raise DeviceNotFoundError(f"Host unreachable: {target}") from exc
            raise ConnectError(f"Failed to connect to {target}: {exc}") from exc
        if self._options.keepalive:
            self._enable_keepalive()

    def _enable_keepalive(self) -> None:
        assert self._writer is not None
        sock = self._writer.get_extra_info("socket")
        if sock is None:
            return
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        idle = max(1, int(self._options.keepalive_interval))
        if hasattr(socket, "TCP_KEEPIDLE"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, idle)
        elif hasattr(socket, "TCP_KEEPALIVE"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPALIVE, idle)

    async def _close(self) -> None:
        self._buffer.clear()
        writer, self._writer, self._reader = self._writer, None, None
        if writer is not None:
            writer.close()
            await writer.wait_closed()

    async def _send(self, data: bytes) -> None:
        if self._writer is None:
            raise TransportIOError(f"{self} has no open socket")
        self._writer.write(data)
        try:
            await asyncio.wait_for(self._writer.drain(), timeout=self._timeout)
        except asyncio.TimeoutError:
            raise VisaTimeoutError(f"Write timeout on {self} after {self._timeout}s") from None

    async def _read_chunk(self, timeout: float) -> bytes:
        if self._reader is None:
            raise TransportIOError(f"{self} has no open socket")
        try:
            data = await asyncio.wait_for(self._reader.read(_READ_CHUNK), timeout=timeout)
        except asyncio.TimeoutError:
            return b""
        if not data:
            raise TransportIOError(f"Connection closed by {self._host}:{self._port}")
        return data
