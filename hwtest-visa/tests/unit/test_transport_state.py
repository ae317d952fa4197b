"""Tests for the Open-state requirement shared by every transport."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from hwtest_visa.errors import NotOpenError
from hwtest_visa.resource_string import UsbAddress
from hwtest_visa.transports import (
    ScriptedDevice,
    SerialTransport,
    SimulationTransport,
    TcpipTransport,
    Transport,
    TransportState,
    UsbtmcTransport,
)

MEDIA: dict[str, Callable[[], Transport]] = {
    "sim": lambda: SimulationTransport(ScriptedDevice()),
    "tcpip": lambda: TcpipTransport("127.0.0.1", 5025),
    "serial": lambda: SerialTransport("/dev/ttyUSB0"),
    "usbtmc": lambda: UsbtmcTransport(UsbAddress(0x1AB1, 0x04CE)),
}

OPERATIONS: dict[str, Callable[[Transport], Awaitable[Any]]] = {
    "write": lambda t: t.write("*RST"),
    "read": lambda t: t.read(),
    "query": lambda t: t.query("*IDN?"),
    "write_raw": lambda t: t.write_raw(b"*RST\n"),
    "read_raw": lambda t: t.read_raw(),
    "read_bytes": lambda t: t.read_bytes(4),
    "clear": lambda t: t.clear(),
    "trigger": lambda t: t.trigger(),
    "read_stb": lambda t: t.read_stb(),
}


class TestRequiresOpen:
    """Every I/O and device-control operation needs an Open transport."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", sorted(OPERATIONS))
    @pytest.mark.parametrize("medium", sorted(MEDIA))
    async def test_closed_transport_rejects(self, medium: str, operation: str) -> None:
        transport = MEDIA[medium]()
        assert transport.state is TransportState.CLOSED
        with pytest.raises(NotOpenError, match=operation) as info:
            await OPERATIONS[operation](transport)
        assert not info.value.requires_reopen
        assert transport.state is TransportState.CLOSED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", sorted(OPERATIONS))
    async def test_closed_after_use_rejects(self, operation: str) -> None:
        transport = SimulationTransport(ScriptedDevice())
        await transport.open()
        await transport.close()
        with pytest.raises(NotOpenError):
            await OPERATIONS[operation](transport)
