"""Pure-Python VISA-style instrument communication for hwtest.

This package talks to test instruments over USB-TMC, serial and raw TCP
sockets without a vendor VISA library. It includes:

- Resource string parsing, normalization and pattern matching
- Transports for USB-TMC (pyusb), serial (pyserial), TCP and simulation
- Message-based resources with IEEE 488.2 binary block and ASCII helpers
- A resource manager for discovery and opening
- Query/write middleware (logging, retry, transforms)
- Supervised sessions with auto-reconnect and lifecycle events

Typical usage::

    from hwtest_visa import ResourceManager

    async with ResourceManager() as rm:
        print(await rm.list_resources())
        dmm = await rm.open_resource("TCPIP0::192.168.1.60::5025::SOCKET")
        identity = await dmm.get_identity()
        print(f"Connected to {identity.manufacturer} {identity.model}")
"""

from hwtest_visa.block import (
    binary_to_array,
    create_block_header,
    decode_block,
    encode_block,
    parse_ascii_values,
    parse_block_header,
)
from hwtest_visa.config import (
    OpenOptions,
    SerialOptions,
    SessionConfig,
    SessionManagerConfig,
    TcpipOptions,
    UsbtmcOptions,
    VisaConfig,
    load_config,
)
from hwtest_visa.errors import (
    AlreadyOpenError,
    ConnectError,
    ConnectRefusedError,
    ConnectTimeoutError,
    DeviceBusyError,
    DeviceNotFoundError,
    NotOpenError,
    ProtocolError,
    ResourceParseError,
    SessionError,
    TransportIOError,
    ValidationError,
    VisaError,
    VisaTimeoutError,
)
from hwtest_visa.manager import ResourceInfo, ResourceLister, ResourceManager
from hwtest_visa.middleware import (
    command_transform_middleware,
    logging_middleware,
    response_transform_middleware,
    retry_middleware,
    with_middleware,
)
from hwtest_visa.quirks import QuirkProfile
from hwtest_visa.resource import MessageBasedResource
from hwtest_visa.resource_string import (
    InterfaceType,
    SerialAddress,
    SimAddress,
    TcpipInstrAddress,
    TcpipSocketAddress,
    UsbAddress,
    build_resource,
    matches_pattern,
    normalize_resource,
    parse_resource,
)
from hwtest_visa.scpi import InstrumentError, InstrumentIdentity
from hwtest_visa.sessions import DeviceSession, EventRegistry, SessionEvent, SessionManager, SessionState
from hwtest_visa.transports import (
    CommandResult,
    ScriptedDevice,
    SerialTransport,
    SimulatedDevice,
    SimulationTransport,
    TcpipTransport,
    Transport,
    TransportState,
    UsbtmcTransport,
)

__all__ = [
    # Resource strings
    "InterfaceType",
    "SerialAddress",
    "SimAddress",
    "TcpipInstrAddress",
    "TcpipSocketAddress",
    "UsbAddress",
    "build_resource",
    "matches_pattern",
    "normalize_resource",
    "parse_resource",
    # Binary blocks
    "binary_to_array",
    "create_block_header",
    "decode_block",
    "encode_block",
    "parse_ascii_values",
    "parse_block_header",
    # Configuration
    "OpenOptions",
    "SerialOptions",
    "SessionConfig",
    "SessionManagerConfig",
    "TcpipOptions",
    "UsbtmcOptions",
    "VisaConfig",
    "load_config",
    "QuirkProfile",
    # Errors
    "AlreadyOpenError",
    "ConnectError",
    "ConnectRefusedError",
    "ConnectTimeoutError",
    "DeviceBusyError",
    "DeviceNotFoundError",
    "NotOpenError",
    "ProtocolError",
    "ResourceParseError",
    "SessionError",
    "TransportIOError",
    "ValidationError",
    "VisaError",
    "VisaTimeoutError",
    # Transports
    "Transport",
    "TransportState",
    "SerialTransport",
    "TcpipTransport",
    "UsbtmcTransport",
    "SimulationTransport",
    "SimulatedDevice",
    "ScriptedDevice",
    "CommandResult",
    # Resources
    "MessageBasedResource",
    "InstrumentError",
    "InstrumentIdentity",
    "ResourceInfo",
    "ResourceLister",
    "ResourceManager",
    # Middleware
    "command_transform_middleware",
    "logging_middleware",
    "response_transform_middleware",
    "retry_middleware",
    "with_middleware",
    # Sessions
    "DeviceSession",
    "EventRegistry",
    "SessionEvent",
    "SessionManager",
    "SessionState",
]
