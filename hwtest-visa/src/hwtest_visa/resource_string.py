"""VISA resource string parsing, building and pattern matching.

Resource strings identify an instrument and the link used to reach it::

    USB0::0x1AB1::0x04CE::DS1ZA123456789::INSTR
    ASRL/dev/ttyUSB0::INSTR
    TCPIP0::192.168.1.50::5025::SOCKET
    TCPIP0::192.168.1.50::inst0::INSTR
    SIM::PSU::INSTR

:func:`parse_resource` turns a string into one of the frozen address
dataclasses below and :func:`build_resource` is its exact inverse, so
``build_resource(parse_resource(s))`` is the canonical (normalized) form of
``s``.

Typical usage::

    from hwtest_visa.resource_string import parse_resource, matches_pattern

    address = parse_resource("usb0::1ab1::04ce::INSTR")
    str(address)  # 'USB0::0x1AB1::0x04CE::INSTR'

    matches_pattern("ASRL3::INSTR", "USB?*::INSTR")  # False
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Union

from hwtest_visa.errors import ResourceParseError, ValidationError

DEFAULT_QUERY = "?*::INSTR"
DEFAULT_LAN_DEVICE = "inst0"


class InterfaceType(str, Enum):
    """Interface type tag at the start of a resource string."""

    USB = "USB"
    ASRL = "ASRL"
    TCPIP = "TCPIP"
    SIM = "SIM"


# -- Address variants -------------------------------------------------------


@dataclass(frozen=True)
class UsbAddress:
    """USB-TMC instrument address.

    Attributes:
        vendor_id: 16-bit USB vendor id.
        product_id: 16-bit USB product id.
        serial_number: Serial number string descriptor, or None for any.
        interface_number: USB interface number (default 0).
        board: VISA board index.
    """

    vendor_id: int
    product_id: int
    serial_number: str | None = None
    interface_number: int = 0
    board: int = 0

    interface_type: ClassVar[InterfaceType] = InterfaceType.USB
    resource_class: ClassVar[str] = "INSTR"

    def __post_init__(self) -> None:
        for name in ("vendor_id", "product_id"):
            value = getattr(self, name)
            if not 0 <= value <= 0xFFFF:
                raise ValidationError(f"{name} must be a 16-bit value, got {value}")
        if self.interface_number < 0:
            raise ValidationError(f"interface_number must be >= 0, got {self.interface_number}")
        if self.interface_number and not self.serial_number:
            raise ValidationError("interface_number requires a serial_number")

    def __str__(self) -> str:
        return build_resource(self)


@dataclass(frozen=True)
class SerialAddress:
    """Serial (ASRL) instrument address.

    ``port`` is whatever follows ``ASRL``: a board index such as ``"3"`` or
    a device path such as ``"/dev/ttyUSB0"`` or ``"COM3"``.
    """

    port: str

    interface_type: ClassVar[InterfaceType] = InterfaceType.ASRL
    resource_class: ClassVar[str] = "INSTR"

    def __post_init__(self) -> None:
        if not self.port or "::" in self.port:
            raise ValidationError(f"Invalid serial port: {self.port!r}")

    @property
    def board(self) -> int | None:
        """Board index when the port is numeric, otherwise None."""
        return int(self.port) if self.port.isdigit() else None

    @property
    def device_path(self) -> str:
        """OS device name to open (a numeric board ``n`` maps to ``COMn``)."""
        board = self.board
        return f"COM{board}" if board is not None else self.port

    def __str__(self) -> str:
        return build_resource(self)


@dataclass(frozen=True)
class TcpipSocketAddress:
    """Raw TCP socket instrument address."""

    host: str
    port: int
    board: int = 0

    interface_type: ClassVar[InterfaceType] = InterfaceType.TCPIP
    resource_class: ClassVar[str] = "SOCKET"

    def __post_init__(self) -> None:
        if not self.host:
            raise ValidationError("host must not be empty")
        if not 0 < self.port <= 0xFFFF:
            raise ValidationError(f"port must be in 1..65535, got {self.port}")

    def __str__(self) -> str:
        return build_resource(self)


@dataclass(frozen=True)
class TcpipInstrAddress:
    """LAN instrument address (VXI-11 / HiSLIP device name)."""

    host: str
    device_name: str = DEFAULT_LAN_DEVICE
    board: int = 0

    interface_type: ClassVar[InterfaceType] = InterfaceType.TCPIP
    resource_class: ClassVar[str] = "INSTR"

    def __post_init__(self) -> None:
        if not self.host:
            raise ValidationError("host must not be empty")

    def __str__(self) -> str:
        return build_resource(self)


@dataclass(frozen=True)
class SimAddress:
    """Address of an in-process simulated instrument.

    Names are case-insensitive and stored upper-case.
    """

    name: str

    interface_type: ClassVar[InterfaceType] = InterfaceType.SIM
    resource_class: ClassVar[str] = "INSTR"

    def __post_init__(self) -> None:
        if not self.name:
            raise ValidationError("simulated device name must not be empty")
        object.__setattr__(self, "name", self.name.upper())

    def __str__(self) -> str:
        return build_resource(self)


ResourceAddress = Union[UsbAddress, SerialAddress, TcpipSocketAddress, TcpipInstrAddress, SimAddress]


# -- Parsing ----------------------------------------------------------------

_HEAD_RE = re.compile(r"^(USB|ASRL|TCPIP|SIM)(.*)$", re.IGNORECASE)
_BOARD_RE = re.compile(r"^\d*$")


def _malformed(resource: str, reason: str) -> ResourceParseError:
    return ResourceParseError(f"Malformed resource string {resource!r}: {reason}")


def _parse_board(resource: str, text: str) -> int:
    if not _BOARD_RE.match(text):
        raise _malformed(resource, f"invalid board index {text!r}")
    return int(text) if text else 0


def _parse_hex16(resource: str, name: str, text: str) -> int:
    try:
        value = int(text, 16)
    except ValueError:
        raise _malformed(resource, f"{name} {text!r} is not hexadecimal") from None
    if not 0 <= value <= 0xFFFF:
        raise _malformed(resource, f"{name} {text!r} out of range")
    return value


def _parse_usb(resource: str, board: int, fields: list[str], resource_class: str) -> UsbAddress:
    if resource_class != "INSTR" or not 2 <= len(fields) <= 4:
        raise _malformed(resource, "expected USB<n>::<vid>::<pid>[::<serial>[::<intf>]]::INSTR")
    vendor_id = _parse_hex16(resource, "vendor id", fields[0])
    product_id = _parse_hex16(resource, "product id", fields[1])
    serial_number = fields[2] if len(fields) >= 3 else None
    interface_number = 0
    if len(fields) == 4:
        if not fields[3].isdigit():
            raise _malformed(resource, f"invalid interface number {fields[3]!r}")
        interface_number = int(fields[3])
    return UsbAddress(
        vendor_id=vendor_id,
        product_id=product_id,
        serial_number=serial_number,
        interface_number=interface_number,
        board=board,
    )


def _parse_tcpip(resource: str, board: int, fields: list[str], resource_class: str) -> ResourceAddress:
    if resource_class == "SOCKET":
        if len(fields) != 2:
            raise _malformed(resource, "expected TCPIP<n>::<host>::<port>::SOCKET")
        host, port_text = fields
        if not port_text.isdigit():
            raise _malformed(resource, f"invalid port {port_text!r}")
        try:
            return TcpipSocketAddress(host=host, port=int(port_text), board=board)
        except ValidationError as exc:
            raise _malformed(resource, str(exc)) from None
    if resource_class == "INSTR":
        if not 1 <= len(fields) <= 2:
            raise _malformed(resource, "expected TCPIP<n>::<host>[::<device>]::INSTR")
        device_name = fields[1] if len(fields) == 2 else DEFAULT_LAN_DEVICE
        return TcpipInstrAddress(host=fields[0], device_name=device_name, board=board)
    raise _malformed(resource, f"unsupported TCPIP resource class {resource_class!r}")


def parse_resource(resource: str) -> ResourceAddress:
    """Parse a VISA resource string.

    The interface type tag and resource class are case-insensitive. USB
    vendor and product ids accept ``0x``-prefixed or bare hexadecimal.

    Args:
        resource: The resource string, e.g. ``"TCPIP0::10.0.0.5::5025::SOCKET"``.

    Returns:
        The parsed address.

    Raises:
        ResourceParseError: If the string is malformed or a required segment
            is missing.
    """
    text = resource.strip()
    parts = text.split("::")
    if len(parts) < 2 or not all(parts):
        raise _malformed(resource, "missing segments")

    match = _HEAD_RE.match(parts[0])
    if match is None:
        raise _malformed(resource, f"unknown interface type {parts[0]!r}")
    interface_type = InterfaceType(match.group(1).upper())
    rest = match.group(2)
    fields = parts[1:-1]
    resource_class = parts[-1].upper()

    if interface_type is InterfaceType.USB:
        return _parse_usb(resource, _parse_board(resource, rest), fields, resource_class)
    if interface_type is InterfaceType.TCPIP:
        return _parse_tcpip(resource, _parse_board(resource, rest), fields, resource_class)
    if interface_type is InterfaceType.ASRL:
        if fields or resource_class != "INSTR" or not rest:
            raise _malformed(resource, "expected ASRL<port>::INSTR")
        return SerialAddress(port=rest)
    if rest or len(fields) != 1 or resource_class != "INSTR":
        raise _malformed(resource, "expected SIM::<name>::INSTR")
    return SimAddress(name=fields[0])


# -- Building ---------------------------------------------------------------


def build_resource(address: ResourceAddress) -> str:
    """Build the canonical resource string for *address*.

    Args:
        address: Any resource address variant.

    Returns:
        The canonical resource string; parsing it yields an equal address.
    """
    if isinstance(address, UsbAddress):
        segments = [f"USB{address.board}", f"0x{address.vendor_id:04X}", f"0x{address.product_id:04X}"]
        if address.serial_number:
            segments.append(address.serial_number)
        if address.interface_number:
            segments.append(str(address.interface_number))
        segments.append("INSTR")
        return "::".join(segments)
    if isinstance(address, SerialAddress):
        return f"ASRL{address.port}::INSTR"
    if isinstance(address, TcpipSocketAddress):
        return f"TCPIP{address.board}::{address.host}::{address.port}::SOCKET"
    if isinstance(address, TcpipInstrAddress):
        return f"TCPIP{address.board}::{address.host}::{address.device_name}::INSTR"
    if isinstance(address, SimAddress):
        return f"SIM::{address.name}::INSTR"
    raise TypeError(f"Not a resource address: {address!r}")


def normalize_resource(resource: str) -> str:
    """Return the canonical form of *resource* (parse then build)."""
    return build_resource(parse_resource(resource))


# -- Pattern matching -------------------------------------------------------


def _pattern_to_regex(pattern: str) -> re.Pattern[str]:
    pieces = []
    for char in pattern:
        if char == "*":
            pieces.append(".*")
        elif char == "?":
            pieces.append(".")
        else:
            pieces.append(re.escape(char))
    return re.compile("^" + "".join(pieces) + "$", re.IGNORECASE | re.DOTALL)


def matches_pattern(resource: str, pattern: str = DEFAULT_QUERY) -> bool:
    """Test a resource string against a VISA glob pattern.

    ``?`` matches exactly one character and ``*`` zero or more characters.
    Matching is case-insensitive.

    Args:
        resource: Resource string to test.
        pattern: VISA query pattern (default ``"?*::INSTR"``).

    Returns:
        True if the whole resource string matches the pattern.
    """
    return _pattern_to_regex(pattern).match(resource.strip()) is not None
