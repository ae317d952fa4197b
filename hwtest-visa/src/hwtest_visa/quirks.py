"""Instrument quirk profiles.

Some instruments deviate from the letter of USB-TMC or need breathing room
between commands. A transport is constructed with a :class:`QuirkProfile`
which selects a frozen :class:`QuirkPolicy`; transport code only ever
consults the policy fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from hwtest_visa.errors import ValidationError

DEFAULT_CHUNK_SIZE = 65536


class QuirkProfile(str, Enum):
    """Named quirk profiles."""

    NONE = "none"
    RIGOL = "rigol"


@dataclass(frozen=True)
class QuirkPolicy:
    """Behavior adjustments applied by transports.

    Attributes:
        chunk_size: Default bulk transfer size in bytes.
        command_delay: Seconds to wait before each write.
        strip_null_padding: Drop trailing NUL bytes from bulk-in payloads.
        check_tag: Require the bulk-in tag to echo the request tag.
    """

    chunk_size: int = DEFAULT_CHUNK_SIZE
    command_delay: float = 0.0
    strip_null_padding: bool = False
    check_tag: bool = True


_POLICIES: dict[QuirkProfile, QuirkPolicy] = {
    QuirkProfile.NONE: QuirkPolicy(),
    # Rigol firmware pads bulk-in payloads with NULs, may not echo the
    # request tag, and drops commands sent back to back.
    QuirkProfile.RIGOL: QuirkPolicy(
        chunk_size=DEFAULT_CHUNK_SIZE,
        command_delay=0.01,
        strip_null_padding=True,
        check_tag=False,
    ),
}


def resolve_quirk_profile(profile: QuirkProfile | str | None) -> QuirkProfile:
    """Convert a profile name (case-insensitive) or member to a :class:`QuirkProfile`.

    Raises:
        ValidationError: If the name is not a known profile.
    """
    if profile is None:
        return QuirkProfile.NONE
    if isinstance(profile, QuirkProfile):
        return profile
    try:
        return QuirkProfile(profile.strip().lower())
    except ValueError:
        known = ", ".join(p.value for p in QuirkProfile)
        raise ValidationError(f"Unknown quirk profile {profile!r} (expected one of: {known})") from None


def get_quirk_policy(profile: QuirkProfile | str | None) -> QuirkPolicy:
    """Return the policy for *profile*."""
    return _POLICIES[resolve_quirk_profile(profile)]
