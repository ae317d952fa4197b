"""IEEE 488.2 binary block and ASCII array codecs.

A definite-length block is ``#`` followed by one digit *n* (1-9), *n*
decimal digits giving the byte count, then the raw bytes::

    #15hello
    #3100<100 bytes>

An indefinite-length block is ``#0`` followed by raw bytes terminated by a
newline. Its length is unknown until the newline arrives; when the buffer
ends without one, the rest of the buffer is taken as the data. For
incremental reads this fallback may report a block that is still
incomplete.

Typed arrays use single-letter datatypes matching :mod:`struct`:

=====  ====================  =====
Code   Type                  Bytes
=====  ====================  =====
``b``  signed 8-bit          1
``B``  unsigned 8-bit        1
``h``  signed 16-bit         2
``H``  unsigned 16-bit       2
``i``  signed 32-bit         4
``I``  unsigned 32-bit       4
``f``  IEEE float32          4
``d``  IEEE float64          8
=====  ====================  =====

Codes are big-endian; append ``<`` for little-endian (``"h<"``, ``"f<"``).
"""

from __future__ import annotations

import math
import re
import struct
from collections.abc import Callable, Iterable, Sequence
from typing import Any, NamedTuple

from hwtest_visa.errors import ProtocolError, ValidationError

_TYPE_CODES = frozenset("bBhHiIfd")

# Runs of whitespace and/or commas.
DEFAULT_ASCII_SEPARATOR = re.compile(r"[\s,]+")


class BlockHeader(NamedTuple):
    """Location of a binary block's payload within a buffer."""

    header_length: int
    data_length: int


# -- Headers ----------------------------------------------------------------


def parse_block_header(buffer: bytes) -> BlockHeader | None:
    """Parse the header of a binary block at the start of *buffer*.

    Args:
        buffer: Bytes beginning with the block.

    Returns:
        The header and data lengths, or None if *buffer* does not start with
        a complete block header.
    """
    if len(buffer) < 2 or buffer[0:1] != b"#":
        return None
    digit = buffer[1:2]
    if digit == b"0":
        newline = buffer.find(b"\n", 2)
        data_length = newline - 2 if newline >= 0 else len(buffer) - 2
        return BlockHeader(header_length=2, data_length=data_length)
    if not b"1" <= digit <= b"9":
        return None
    digit_count = int(digit)
    header_length = 2 + digit_count
    if len(buffer) < header_length:
        return None
    length_text = buffer[2:header_length]
    if not length_text.isdigit():
        return None
    return BlockHeader(header_length=header_length, data_length=int(length_text))


def create_block_header(data_length: int) -> str:
    """Create a definite-length block header for *data_length* bytes."""
    if data_length < 0:
        raise ValidationError(f"Block length must be >= 0, got {data_length}")
    length_text = str(data_length)
    if len(length_text) > 9:
        raise ValidationError(f"Block length {data_length} does not fit a definite header")
    return f"#{len(length_text)}{length_text}"


def encode_block(data: bytes) -> bytes:
    """Wrap *data* in a definite-length binary block."""
    return create_block_header(len(data)).encode("ascii") + bytes(data)


def decode_block(buffer: bytes) -> bytes:
    """Extract the payload of the binary block at the start of *buffer*.

    Raises:
        ProtocolError: If there is no block header or the buffer is shorter
            than the declared length.
    """
    header = parse_block_header(buffer)
    if header is None:
        raise ProtocolError(f"No binary block header in response: {bytes(buffer[:16])!r}")
    end = header.header_length + header.data_length
    if len(buffer) < end:
        received = len(buffer) - header.header_length
        raise ProtocolError(f"Binary block truncated: expected {header.data_length} bytes, got {received}")
    return bytes(buffer[header.header_length : end])


# -- Typed arrays -----------------------------------------------------------


def _byte_order_and_code(datatype: str) -> tuple[str, str]:
    code, suffix = datatype[:1], datatype[1:]
    if code not in _TYPE_CODES or suffix not in ("", "<", ">"):
        raise ValidationError(f"Unsupported datatype: {datatype!r}")
    return ("<" if suffix == "<" else ">"), code


def element_size(datatype: str) -> int:
    """Return the size in bytes of one element of *datatype*."""
    order, code = _byte_order_and_code(datatype)
    return struct.calcsize(order + code)


def binary_to_array(data: bytes, datatype: str = "B") -> list[Any]:
    """Decode *data* as an array of *datatype* elements.

    Trailing bytes that do not make up a whole element are ignored.
    """
    order, code = _byte_order_and_code(datatype)
    count = len(data) // struct.calcsize(order + code)
    return list(struct.unpack_from(f"{order}{count}{code}", data))


def array_to_binary(values: Sequence[Any], datatype: str = "B") -> bytes:
    """Encode *values* as packed *datatype* elements.

    Raises:
        ValidationError: If a value does not fit the datatype.
    """
    order, code = _byte_order_and_code(datatype)
    try:
        return struct.pack(f"{order}{len(values)}{code}", *values)
    except struct.error as exc:
        raise ValidationError(f"Cannot encode values as {datatype!r}: {exc}") from exc


# -- ASCII arrays -----------------------------------------------------------


def parse_ascii_values(
    text: str,
    converter: Callable[[str], Any] = float,
    separator: str | re.Pattern[str] = DEFAULT_ASCII_SEPARATOR,
) -> list[Any]:
    """Parse a delimited list of numbers.

    Tokens that fail to convert, or that convert to NaN, are dropped rather
    than failing the whole parse.

    Args:
        text: Response text such as ``"1.0, 2.5,3e-3"``.
        converter: Function applied to each token (default :class:`float`).
        separator: Literal separator string or compiled regular expression
            (default: runs of whitespace and commas).

    Returns:
        The converted values in order.
    """
    if isinstance(separator, str):
        tokens = text.split(separator)
    else:
        tokens = separator.split(text)
    values = []
    for token in tokens:
        token = token.strip()
        if not token:
            continue
        try:
            value = converter(token)
        except (TypeError, ValueError):
            continue
        if isinstance(value, float) and math.isnan(value):
            continue
        values.append(value)
    return values


def format_ascii_values(
    values: Iterable[Any],
    converter: Callable[[Any], str] = str,
    separator: str = ",",
) -> str:
    """Format *values* as a delimited ASCII list."""
    return separator.join(converter(value) for value in values)
