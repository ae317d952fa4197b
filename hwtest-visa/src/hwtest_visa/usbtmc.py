"""USB Test & Measurement Class message framing.

Every bulk transfer starts with a 12 byte header::

    byte 0     MsgID
    byte 1     bTag (1..255)
    byte 2     bTagInverse (~bTag & 0xFF)
    byte 3     reserved (0)
    bytes 4-7  TransferSize, uint32 little-endian
    byte 8     bmTransferAttributes (bit 0 = EOM)
    bytes 9-11 reserved (0)

Bulk-out messages are padded with zeros to a multiple of four bytes.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from hwtest_visa.errors import ProtocolError

# Bulk message types
DEV_DEP_MSG_OUT = 1
DEV_DEP_MSG_IN = 2
TRIGGER = 128

# Class-specific control requests
INITIATE_CLEAR = 5
CHECK_CLEAR_STATUS = 6
GET_CAPABILITIES = 7
READ_STATUS_BYTE = 128

# Control request status values
STATUS_SUCCESS = 0x01
STATUS_PENDING = 0x02

# CHECK_CLEAR_STATUS bmClear bit: the host must read and discard bulk-IN
CLEAR_BULK_IN_FIFO = 0x01

# bmRequestType for class requests to the interface, device-to-host
REQUEST_TYPE_IN = 0xA1

# USB interface class/subclass identifying a USB-TMC interface
USBTMC_CLASS = 0xFE
USBTMC_SUBCLASS = 0x03

HEADER_SIZE = 12
EOM_FLAG = 0x01

_HEADER = struct.Struct("<BBBxIB3x")


class TagGenerator:
    """Rolling bTag counter producing 1, 2, ... 255, 1, ... (never 0)."""

    def __init__(self) -> None:
        self._tag = 0

    def next(self) -> int:
        """Return the next tag."""
        self._tag = (self._tag % 255) + 1
        return self._tag

    def reset(self) -> None:
        """Restart the sequence at 1."""
        self._tag = 0


@dataclass(frozen=True)
class BulkInHeader:
    """Decoded bulk-in (device-to-host) header."""

    msg_id: int
    tag: int
    transfer_size: int
    eom: bool


def build_header(msg_id: int, tag: int, transfer_size: int = 0, *, eom: bool = False) -> bytes:
    """Build a 12 byte bulk-out header."""
    if not 1 <= tag <= 255:
        raise ValueError(f"USB-TMC tag must be in 1..255, got {tag}")
    return _HEADER.pack(msg_id, tag, ~tag & 0xFF, transfer_size, EOM_FLAG if eom else 0)


def pad_to_alignment(data: bytes, alignment: int = 4) -> bytes:
    """Zero-pad *data* to a multiple of *alignment* bytes."""
    remainder = len(data) % alignment
    if remainder:
        return data + b"\x00" * (alignment - remainder)
    return data


def build_dev_dep_msg_out(payload: bytes, tag: int, *, eom: bool = True) -> bytes:
    """Build a complete, padded DEV_DEP_MSG_OUT transfer carrying *payload*."""
    header = build_header(DEV_DEP_MSG_OUT, tag, len(payload), eom=eom)
    return pad_to_alignment(header + payload)


def build_dev_dep_msg_in_request(transfer_size: int, tag: int) -> bytes:
    """Build a REQUEST_DEV_DEP_MSG_IN header asking for up to *transfer_size* bytes."""
    return build_header(DEV_DEP_MSG_IN, tag, transfer_size)


def build_trigger(tag: int) -> bytes:
    """Build a USB488 TRIGGER header."""
    return build_header(TRIGGER, tag)


def parse_bulk_in_header(data: bytes) -> BulkInHeader:
    """Decode the header at the start of a bulk-in transfer.

    Raises:
        ProtocolError: If fewer than 12 bytes are available.
    """
    if len(data) < HEADER_SIZE:
        raise ProtocolError(f"Bulk-in transfer too short for a USB-TMC header: {len(data)} bytes")
    msg_id, tag, _tag_inverse, transfer_size, attributes = _HEADER.unpack_from(data)
    return BulkInHeader(msg_id=msg_id, tag=tag, transfer_size=transfer_size, eom=bool(attributes & EOM_FLAG))
