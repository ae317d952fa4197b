"""RS-232 serial transport built on pyserial.

pyserial calls block, so they run on worker threads with
:func:`asyncio.to_thread`. Device triggers and status byte reads use the
SCPI ``*TRG`` / ``*STB?`` fallbacks.

Typical usage::

    from hwtest_visa.config import SerialOptions
    from hwtest_visa.transports.serial import SerialTransport

    transport = SerialTransport("/dev/ttyUSB0", options=SerialOptions(baud_rate=115200))
    await transport.open()
    print(await transport.query("*IDN?"))
    await transport.close()
"""

from __future__ import annotations

import asyncio
import errno
import logging
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import Any

import serial

from hwtest_visa.config import FlowControl, Parity, SerialOptions
from hwtest_visa.errors import (
    ConnectError,
    DeviceBusyError,
    DeviceNotFoundError,
    TransportIOError,
    VisaError,
    VisaTimeoutError,
)
from hwtest_visa.transports.stream import StreamTransport

logger = logging.getLogger(__name__)

DEFAULT_PROBE_BAUD_RATES = (115200, 9600, 57600, 38400, 19200)
DEFAULT_PROBE_TIMEOUT = 0.5
DEFAULT_PROBE_COMMAND_DELAY = 0.05

_PARITY = {
    Parity.NONE: serial.PARITY_NONE,
    Parity.EVEN: serial.PARITY_EVEN,
    Parity.ODD: serial.PARITY_ODD,
    Parity.MARK: serial.PARITY_MARK,
    Parity.SPACE: serial.PARITY_SPACE,
}

_STOP_BITS = {
    1: serial.STOPBITS_ONE,
    1.5: serial.STOPBITS_ONE_POINT_FIVE,
    2: serial.STOPBITS_TWO,
}


def _connect_error(port: str, exc: serial.SerialException) -> ConnectError:
    code = getattr(exc, "errno", None)
    text = str(exc)
    if code == errno.ENOENT or "FileNotFoundError" in text:
        return DeviceNotFoundError(f"Port not found: {port}")
    if code in (errno.EBUSY, errno.EACCES) or "PermissionError" in text:
        return DeviceBusyError(f"Port is busy: {port}")
    return ConnectError(f"Failed to open {port}: {exc}")


class SerialTransport(StreamTransport):
    """Transport over a serial port.

    Args:
        port: Device name such as ``"/dev/ttyUSB0"`` or ``"COM3"``.
        options: Line settings.
        **kwargs: Passed to :class:`StreamTransport` (timeout, terminations,
            quirks, command delay, buffer size).
    """

    timeout_error_threshold = 3

    def __init__(self, port: str, *, options: SerialOptions | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._port_name = port
        self._options = options or SerialOptions()
        self._baud_rate = self._options.baud_rate
        self._serial: serial.Serial | None = None

    # -- Properties ----------------------------------------------------------

    @property
    def description(self) -> str:
        return f"ASRL {self._port_name}"

    @property
    def port(self) -> str:
        """Serial device name."""
        return self._port_name

    @property
    def baud_rate(self) -> int:
        """Baud rate in use (the probed rate when auto-baud is enabled)."""
        return self._baud_rate

    @property
    def options(self) -> SerialOptions:
        """Line settings."""
        return self._options

    # -- Medium hooks --------------------------------------------------------

    async def _open(self) -> None:
        if self._options.auto_baud:
            result = await probe_serial_port(
                self._port_name,
                options=self._options,
                probe_command=self._options.probe_command,
            )
            if result is None:
                raise ConnectError(f"No response from {self._port_name} at any probed baud rate")
            self._baud_rate = result.baud_rate
        self._serial = await asyncio.to_thread(self._open_port)

    def _open_port(self) -> serial.Serial:
        port = serial.Serial()
        port.port = self._port_name
        port.baudrate = self._baud_rate
        port.bytesize = self._options.data_bits
        port.stopbits = _STOP_BITS[self._options.stop_bits]
        port.parity = _PARITY[self._options.parity]
        port.rtscts = self._options.flow_control is FlowControl.HARDWARE
        port.xonxoff = self._options.flow_control is FlowControl.SOFTWARE
        port.timeout = self._timeout
        port.write_timeout = self._timeout
        try:
            port.open()
        except serial.SerialException as exc:
            raise _connect_error(self._port_name, exc) from exc
        return port

    async def _close(self) -> None:
        self._buffer.clear()
        port, self._serial = self._serial, None
        if port is not None:
            await asyncio.to_thread(port.close)

    async def _send(self, data: bytes) -> None:
        await asyncio.to_thread(self._write_blocking, data)

    def _write_blocking(self, data: bytes) -> None:
        port = self._require_port()
        port.write_timeout = self._timeout
        try:
            port.write(data)
        except serial.SerialTimeoutException as exc:
            raise VisaTimeoutError(f"Write timeout on {self} after {self._timeout}s") from exc
        except serial.SerialException as exc:
            raise TransportIOError(f"Write failed on {self}: {exc}") from exc

    async def _read_chunk(self, timeout: float) -> bytes:
        return await asyncio.to_thread(self._read_blocking, timeout)

    def _read_blocking(self, timeout: float) -> bytes:
        port = self._require_port()
        port.timeout = timeout
        try:
            data = port.read(1)
            waiting = port.in_waiting if data else 0
            if waiting:
                data += port.read(waiting)
        except serial.SerialException as exc:
            raise TransportIOError(f"Read failed on {self}: {exc}") from exc
        return data

    async def _clear(self) -> None:
        await super()._clear()
        port = self._require_port()
        await asyncio.to_thread(port.reset_input_buffer)
        await asyncio.to_thread(port.reset_output_buffer)

    def _require_port(self) -> serial.Serial:
        if self._serial is None:
            raise TransportIOError(f"{self} has no open port")
        return self._serial


# ---------------------------------------------------------------------------
# Baud rate probing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProbeResult:
    """Baud rate at which a serial instrument answered the probe command."""

    baud_rate: int
    response: str


async def probe_serial_port(
    port: str,
    *,
    baud_rates: Sequence[int] = DEFAULT_PROBE_BAUD_RATES,
    probe_command: str = "*IDN?",
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
    command_delay: float = DEFAULT_PROBE_COMMAND_DELAY,
    options: SerialOptions | None = None,
    read_termination: str = "\n",
    write_termination: str = "\n",
) -> ProbeResult | None:
    """Find the baud rate at which the instrument on *port* responds.

    Each rate is tried in order by sending *probe_command* and waiting up to
    *probe_timeout* seconds for a non-empty response.

    Returns:
        The first rate that produced a response, or None.

    Raises:
        ConnectError: If the port itself cannot be opened.
    """
    base = replace(options or SerialOptions(), auto_baud=False)
    for baud_rate in baud_rates:
        transport = SerialTransport(
            port,
            options=replace(base, baud_rate=baud_rate),
            timeout=probe_timeout,
            command_delay=command_delay,
            read_termination=read_termination,
            write_termination=write_termination,
        )
        await transport.open()
        try:
            response = (await transport.query(probe_command)).strip()
        except VisaError as exc:
            logger.debug("No response from %s at %d baud: %s", port, baud_rate, exc)
            continue
        finally:
            await transport.close()
        if response:
            logger.info("Instrument on %s responds at %d baud", port, baud_rate)
            return ProbeResult(baud_rate=baud_rate, response=response)
    return None
