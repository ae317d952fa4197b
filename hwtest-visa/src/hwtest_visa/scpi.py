"""SCPI response parsing helpers.

These helpers interpret the handful of response grammars shared by almost
every SCPI instrument: NR1/NR2/NR3 numbers (including the ``9.9E37``
overflow sentinel), booleans, enumerated keywords, the ``*IDN?`` identity
string, and ``SYST:ERR?`` error queue entries.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

_E = TypeVar("_E", bound=Enum)

# SCPI reports overflow (and "no measurement") as +/-9.9E37.
_OVERFLOW_RE = re.compile(r"^([+-]?)9\.9[Ee]\+?37$")

_SPECIAL_FLOAT_MAP: dict[str, float] = {
    "NAN": float("nan"),
    "INF": float("inf"),
    "NINF": float("-inf"),
    "-INF": float("-inf"),
}

_TRUE_TOKENS = frozenset({"1", "ON", "TRUE"})
_FALSE_TOKENS = frozenset({"0", "OFF", "FALSE"})

# Matches SCPI error responses: optional +/- code, comma, optional quoted message.
_ERROR_RE = re.compile(r"^\s*([+-]?\d+)\s*,\s*\"?([^\"]*)\"?\s*$")


@dataclass(frozen=True)
class InstrumentIdentity:
    """Identity fields reported by ``*IDN?``."""

    manufacturer: str
    model: str
    serial: str
    firmware: str


@dataclass(frozen=True)
class InstrumentError:
    """Single entry from an instrument's error queue.

    Attributes:
        code: SCPI error code (negative for standard errors, positive for
            device-specific ones, 0 for "no error").
        message: Human-readable error description from the instrument.
    """

    code: int
    message: str

    @property
    def is_error(self) -> bool:
        """True unless this is the ``0,"No error"`` entry."""
        return self.code != 0

    def __str__(self) -> str:
        return f'{self.code},"{self.message}"'


def parse_number(text: str) -> float:
    """Parse a SCPI numeric response.

    ``9.9E37`` and ``-9.9E37`` map to positive and negative infinity. The
    tokens ``NAN``, ``INF`` and ``NINF`` are recognized. Empty or
    unparsable text gives NaN.

    Args:
        text: The raw response string.

    Returns:
        The parsed value.
    """
    token = text.strip()
    overflow = _OVERFLOW_RE.match(token)
    if overflow:
        return float("-inf") if overflow.group(1) == "-" else float("inf")
    special = _SPECIAL_FLOAT_MAP.get(token.upper())
    if special is not None:
        return special
    try:
        return float(token)
    except ValueError:
        return float("nan")


def parse_bool(text: str) -> bool | None:
    """Parse a SCPI boolean: ``1/ON/TRUE`` or ``0/OFF/FALSE``.

    Returns:
        True, False, or None when the token is not a recognized boolean.
    """
    token = text.strip().upper()
    if token in _TRUE_TOKENS:
        return True
    if token in _FALSE_TOKENS:
        return False
    return None


def parse_int(text: str) -> int:
    """Parse a SCPI NR1 integer response.

    Raises:
        ValueError: If *text* is not an integer.
    """
    token = text.strip()
    try:
        return int(token)
    except ValueError:
        raise ValueError(f"Invalid SCPI integer: {text!r}") from None


def parse_enum(text: str, enum_type: type[_E]) -> _E | None:
    """Match a keyword response against the values of *enum_type*.

    Matching is case-insensitive and also accepts the member name. Returns
    None when nothing matches.
    """
    token = text.strip().upper()
    for member in enum_type:
        if str(member.value).upper() == token or member.name.upper() == token:
            return member
    return None


def parse_idn_response(response: str) -> InstrumentIdentity:
    """Parse a ``*IDN?`` response into an :class:`InstrumentIdentity`.

    The standard response is four comma-separated fields::

        manufacturer,model,serial_number,firmware_version

    Extra fields are joined into the firmware string.

    Raises:
        ValueError: If the response has fewer than four fields.
    """
    parts = [p.strip() for p in response.strip().split(",")]
    if len(parts) < 4:
        raise ValueError(
            f"Expected at least 4 comma-separated fields in *IDN? response, "
            f"got {len(parts)}: {response!r}"
        )
    return InstrumentIdentity(
        manufacturer=parts[0],
        model=parts[1],
        serial=parts[2],
        firmware=",".join(parts[3:]),
    )


def parse_error_response(response: str) -> InstrumentError:
    """Parse a ``SYST:ERR?`` response such as ``-113,"Undefined header"``.

    Raises:
        ValueError: If the response does not follow ``<code>,"<message>"``.
    """
    match = _ERROR_RE.match(response)
    if match is None:
        raise ValueError(f"Unparsable SYST:ERR? response: {response!r}")
    return InstrumentError(code=int(match.group(1)), message=match.group(2))
