"""Tests for IEEE 488.2 binary blocks and ASCII value lists."""

from __future__ import annotations

import math

import pytest

from hwtest_visa.block import (
    BlockHeader,
    array_to_binary,
    binary_to_array,
    create_block_header,
    decode_block,
    element_size,
    encode_block,
    format_ascii_values,
    parse_ascii_values,
    parse_block_header,
)
from hwtest_visa.errors import ProtocolError, ValidationError

# ---------------------------------------------------------------------------
# Block headers
# ---------------------------------------------------------------------------


class TestParseBlockHeader:
    """Tests for parse_block_header."""

    def test_definite_header(self) -> None:
        assert parse_block_header(b"#41000" + b"\x00" * 1000) == BlockHeader(6, 1000)

    def test_single_digit_length(self) -> None:
        assert parse_block_header(b"#15hello") == BlockHeader(3, 5)

    def test_header_is_found_even_when_payload_is_incomplete(self) -> None:
        assert parse_block_header(b"#210ab") == BlockHeader(4, 10)

    def test_indefinite_header_ends_at_newline(self) -> None:
        assert parse_block_header(b"#0abc\n") == BlockHeader(2, 3)

    def test_indefinite_header_without_newline_uses_rest(self) -> None:
        assert parse_block_header(b"#0abcd") == BlockHeader(2, 4)

    @pytest.mark.parametrize("buffer", [b"", b"#", b"12345", b"#A12", b"#3" + b"12", b"#2x1"])
    def test_incomplete_or_invalid(self, buffer: bytes) -> None:
        assert parse_block_header(buffer) is None


class TestCreateBlockHeader:
    """Tests for create_block_header."""

    @pytest.mark.parametrize(
        ("length", "header"),
        [(0, "#10"), (5, "#15"), (1000, "#41000"), (123456789, "#9123456789")],
    )
    def test_lengths(self, length: int, header: str) -> None:
        assert create_block_header(length) == header

    def test_negative_length_rejected(self) -> None:
        with pytest.raises(ValidationError):
            create_block_header(-1)

    def test_ten_digit_length_rejected(self) -> None:
        with pytest.raises(ValidationError):
            create_block_header(1_000_000_000)


class TestEncodeDecode:
    """Tests for encode_block and decode_block."""

    def test_encode(self) -> None:
        assert encode_block(b"\x01\x02\x03") == b"#13\x01\x02\x03"

    def test_decode_ignores_trailing_bytes(self) -> None:
        assert decode_block(b"#15hello\n") == b"hello"

    def test_decode_without_header_raises(self) -> None:
        with pytest.raises(ProtocolError, match="No binary block header"):
            decode_block(b"1,2,3\n")

    def test_decode_truncated_raises(self) -> None:
        with pytest.raises(ProtocolError, match="truncated"):
            decode_block(b"#210abc")


# ---------------------------------------------------------------------------
# Typed arrays
# ---------------------------------------------------------------------------


class TestArrays:
    """Tests for binary_to_array / array_to_binary."""

    def test_unsigned_bytes(self) -> None:
        assert binary_to_array(b"\x00\x7f\xff") == [0, 127, 255]

    def test_default_is_big_endian(self) -> None:
        assert binary_to_array(b"\x01\x02", "H") == [0x0102]

    def test_little_endian_suffix(self) -> None:
        assert binary_to_array(b"\x01\x02", "H<") == [0x0201]

    def test_partial_trailing_element_ignored(self) -> None:
        assert binary_to_array(b"\x00\x01\x02", "h") == [1]

    def test_float32(self) -> None:
        assert binary_to_array(array_to_binary([1.5, -2.0], "f"), "f") == [1.5, -2.0]

    def test_pack_signed(self) -> None:
        assert array_to_binary([-1, 1], "h>") == b"\xff\xff\x00\x01"

    def test_value_out_of_range_rejected(self) -> None:
        with pytest.raises(ValidationError):
            array_to_binary([256], "B")

    @pytest.mark.parametrize("datatype", ["q", "", "B!", "xyz"])
    def test_unsupported_datatype(self, datatype: str) -> None:
        with pytest.raises(ValidationError):
            element_size(datatype)

    def test_element_size(self) -> None:
        assert element_size("B") == 1
        assert element_size("i<") == 4
        assert element_size("d") == 8


# ---------------------------------------------------------------------------
# ASCII values
# ---------------------------------------------------------------------------


class TestAsciiValues:
    """Tests for parse_ascii_values / format_ascii_values."""

    def test_comma_and_whitespace_separated(self) -> None:
        assert parse_ascii_values("1.0, 2.5,3e-3 \n4") == [1.0, 2.5, 0.003, 4.0]

    def test_bad_tokens_and_nan_dropped(self) -> None:
        values = parse_ascii_values("1,abc,nan,2")
        assert values == [1.0, 2.0]
        assert not any(math.isnan(v) for v in values)

    def test_literal_separator(self) -> None:
        assert parse_ascii_values("1;2;3", converter=int, separator=";") == [1, 2, 3]

    def test_empty_text(self) -> None:
        assert parse_ascii_values("") == []

    def test_format(self) -> None:
        assert format_ascii_values([1, 2.5, 3]) == "1,2.5,3"

    def test_format_with_converter(self) -> None:
        assert format_ascii_values([1.0, 2.0], converter=lambda v: f"{v:.3f}", separator=" ") == "1.000 2.000"
