"""In-process simulated instruments.

:class:`SimulationTransport` honors the same contract as the hardware
transports but hands every command to a :class:`SimulatedDevice`. A matched
command's response is queued for the next read; an unmatched command queues
nothing, so the following read times out exactly as it would against a real
instrument that ignored the command.

:class:`ScriptedDevice` is a small table-driven device for tests and demos.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, Union

from hwtest_visa.config import SimulationOptions
from hwtest_visa.transports.stream import StreamTransport

logger = logging.getLogger(__name__)

# IEEE 488.2 status byte: message available
STB_MAV = 0x10


# ---------------------------------------------------------------------------
# Device contract
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandResult:
    """Outcome of handing one command to a simulated device.

    Attributes:
        matched: Whether the device recognized the command.
        response: Text or bytes to return to the next read, or None.
    """

    matched: bool
    response: str | bytes | None = None


class SimulatedDevice(Protocol):
    """Command handler behind a simulated resource."""

    def handle_command(self, command: str) -> CommandResult:
        """Process one trimmed command string."""
        ...


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class SimulationTransport(StreamTransport):
    """Transport backed by a :class:`SimulatedDevice`.

    Args:
        device: The simulated device.
        name: Name used in descriptions (``SIM::<name>::INSTR``).
        options: Latency settings.
        **kwargs: Passed to :class:`StreamTransport`.
    """

    def __init__(
        self,
        device: SimulatedDevice,
        *,
        name: str = "SIM",
        options: SimulationOptions | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._device = device
        self._name = name
        self._options = options or SimulationOptions()

    @property
    def description(self) -> str:
        return f"SIM {self._name}"

    @property
    def device(self) -> SimulatedDevice:
        """The simulated device."""
        return self._device

    async def _open(self) -> None:
        self._buffer.clear()

    async def _close(self) -> None:
        self._buffer.clear()

    async def _send(self, data: bytes) -> None:
        if self._options.latency > 0:
            await asyncio.sleep(self._options.latency)
        text = data.decode(self._encoding, errors="replace")
        if self._write_termination and text.endswith(self._write_termination):
            text = text[: -len(self._write_termination)]
        command = text.strip()
        result = self._device.handle_command(command)
        if not result.matched:
            logger.debug("%s ignored unmatched command %r", self, command)
            return
        if result.response is None:
            return
        response = result.response
        if isinstance(response, str):
            response = self._encode(response)
        self._buffer.extend(response + self._encode(self._read_termination))

    async def _read_chunk(self, timeout: float) -> bytes:
        # Responses are queued at write time; nothing arrives later.
        await asyncio.sleep(timeout)
        return b""

    async def _read_stb(self) -> int:
        return STB_MAV if len(self._buffer) else 0


# ---------------------------------------------------------------------------
# Scripted device
# ---------------------------------------------------------------------------

Responder = Union[str, bytes, None, Callable[[re.Match], Union[str, bytes, None]]]


class ScriptedDevice:
    """Simulated device driven by a table of command patterns.

    Patterns are regular expressions matched against the whole command,
    case-insensitively. A responder is a static response, None for commands
    that produce no output, or a callable receiving the match.

    ``*IDN?``, ``*RST``, ``*CLS``, ``*OPC?``, ``*TRG`` and ``SYST:ERR?`` are
    built in. Unmatched commands push ``-113,"Undefined header"`` onto the
    error queue.

    Args:
        identity: ``*IDN?`` response.
        dialogues: Initial pattern-to-responder table.
    """

    def __init__(
        self,
        identity: str = "hwtest,Simulated Instrument,0,1.0",
        *,
        dialogues: Mapping[str, Responder] | None = None,
    ) -> None:
        self.identity = identity
        self.commands: list[str] = []
        self.trigger_count = 0
        self._errors: deque[tuple[int, str]] = deque()
        self._properties: dict[str, str] = {}
        self._dialogues: list[tuple[re.Pattern[str], Responder]] = []
        self.add_dialogue(r"\*IDN\?", lambda _m: self.identity)
        self.add_dialogue(r"\*RST", self._reset)
        self.add_dialogue(r"\*CLS", self._clear_status)
        self.add_dialogue(r"\*OPC\?", "1")
        self.add_dialogue(r"\*TRG", self._count_trigger)
        self.add_dialogue(r":?SYST(EM)?:ERR(OR)?(:NEXT)?\?", self._next_error)
        for pattern, responder in (dialogues or {}).items():
            self.add_dialogue(pattern, responder)

    def add_dialogue(self, pattern: str, responder: Responder) -> None:
        """Register *responder* for commands matching *pattern*.

        Later registrations take precedence over earlier ones.
        """
        self._dialogues.insert(0, (re.compile(pattern, re.IGNORECASE), responder))

    def add_property(self, name: str, initial: str) -> None:
        """Add a settable property: ``<name> <value>`` sets it, ``<name>?`` reads it."""
        key = name.upper()
        self._properties[key] = initial
        escaped = re.escape(name)

        def set_value(match: re.Match[str]) -> None:
            self._properties[key] = match.group(1).strip()

        self.add_dialogue(rf"{escaped}\?", lambda _m: self._properties[key])
        self.add_dialogue(rf"{escaped}\s+(.+)", set_value)

    def get_property(self, name: str) -> str:
        """Current value of property *name*."""
        return self._properties[name.upper()]

    def push_error(self, code: int, message: str) -> None:
        """Append an entry to the error queue."""
        self._errors.append((code, message))

    def handle_command(self, command: str) -> CommandResult:
        """Process one command."""
        self.commands.append(command)
        for pattern, responder in self._dialogues:
            match = pattern.fullmatch(command)
            if match is None:
                continue
            response = responder(match) if callable(responder) else responder
            return CommandResult(matched=True, response=response)
        self.push_error(-113, "Undefined header")
        return CommandResult(matched=False)

    # -- Built-in handlers ---------------------------------------------------

    def _reset(self, _match: re.Match[str]) -> None:
        self._errors.clear()

    def _clear_status(self, _match: re.Match[str]) -> None:
        self._errors.clear()

    def _count_trigger(self, _match: re.Match[str]) -> None:
        self.trigger_count += 1

    def _next_error(self, _match: re.Match[str]) -> str:
        if not self._errors:
            return '0,"No error"'
        code, message = self._errors.popleft()
        return f'{code},"{message}"'
