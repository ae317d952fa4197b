"""Transports: one physical link each, sharing the contract of :class:`Transport`."""

from hwtest_visa.transports.base import Transport, TransportState
from hwtest_visa.transports.serial import ProbeResult, SerialTransport, probe_serial_port
from hwtest_visa.transports.simulation import (
    CommandResult,
    ScriptedDevice,
    SimulatedDevice,
    SimulationTransport,
)
from hwtest_visa.transports.stream import ReadBuffer, StreamTransport
from hwtest_visa.transports.tcpip import TcpipTransport
from hwtest_visa.transports.usbtmc import UsbtmcTransport

__all__ = [
    # Base
    "Transport",
    "TransportState",
    "StreamTransport",
    "ReadBuffer",
    # Media
    "SerialTransport",
    "TcpipTransport",
    "UsbtmcTransport",
    "SimulationTransport",
    # Serial probing
    "ProbeResult",
    "probe_serial_port",
    # Simulation
    "CommandResult",
    "SimulatedDevice",
    "ScriptedDevice",
]
