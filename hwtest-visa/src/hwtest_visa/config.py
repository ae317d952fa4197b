"""Configuration for transports, sessions and the session manager.

All options are frozen dataclasses validated on construction. They can be
built directly, from plain mappings with ``from_dict``, or from a YAML file
with :func:`load_config`.

Example YAML configuration::

    manager:
      scan_interval: 5.0
      filter: ["USB?*::INSTR", "SIM::*"]
      session:
        max_consecutive_errors: 5
        execute_timeout: 30.0
        auto_reconnect: true

    defaults:
      timeout: 2.0
      read_termination: "\\n"

    resources:
      "USB?*::0x1AB1::*":
        quirks: rigol
        usbtmc:
          chunk_size: 65536
      "ASRL/dev/ttyUSB*::INSTR":
        serial:
          baud_rate: 115200
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Union

import yaml

from hwtest_visa.errors import ValidationError
from hwtest_visa.quirks import QuirkProfile, resolve_quirk_profile
from hwtest_visa.resource_string import DEFAULT_QUERY, matches_pattern

DEFAULT_TIMEOUT = 2.0
DEFAULT_MAX_BUFFER_SIZE = 1024 * 1024

# A pattern string, compiled regex, predicate, or list of patterns.
ResourceFilter = Union[str, re.Pattern, Callable[[str], bool], Sequence[str]]


class Parity(str, Enum):
    """Serial parity setting."""

    NONE = "none"
    EVEN = "even"
    ODD = "odd"
    MARK = "mark"
    SPACE = "space"


class FlowControl(str, Enum):
    """Serial flow control setting."""

    NONE = "none"
    HARDWARE = "hardware"
    SOFTWARE = "software"


def _from_mapping(cls: Any, data: Mapping[str, Any], nested: Mapping[str, Any] | None = None) -> Any:
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ValidationError(f"Unknown {cls.__name__} option(s): {', '.join(sorted(unknown))}")
    kwargs = dict(data)
    for name, nested_cls in (nested or {}).items():
        value = kwargs.get(name)
        if isinstance(value, Mapping):
            kwargs[name] = nested_cls.from_dict(value)
    return cls(**kwargs)


def _require_positive(owner: str, name: str, value: float) -> None:
    if value <= 0:
        raise ValidationError(f"{owner}.{name} must be positive, got {value}")


# -- Medium options ---------------------------------------------------------


@dataclass(frozen=True)
class SerialOptions:
    """Serial link settings.

    Attributes:
        baud_rate: Line speed in baud.
        data_bits: Data bits per character (5-8).
        stop_bits: Stop bits (1, 1.5 or 2).
        parity: Parity mode.
        flow_control: Flow control mode.
        auto_baud: Probe common baud rates on open instead of using ``baud_rate``.
        probe_command: Command sent while probing for the baud rate.
    """

    baud_rate: int = 9600
    data_bits: int = 8
    stop_bits: float = 1
    parity: Parity = Parity.NONE
    flow_control: FlowControl = FlowControl.NONE
    auto_baud: bool = False
    probe_command: str = "*IDN?"

    def __post_init__(self) -> None:
        """Validate and normalize configuration."""
        _require_positive("SerialOptions", "baud_rate", self.baud_rate)
        if self.data_bits not in (5, 6, 7, 8):
            raise ValidationError(f"SerialOptions.data_bits must be 5-8, got {self.data_bits}")
        if self.stop_bits not in (1, 1.5, 2):
            raise ValidationError(f"SerialOptions.stop_bits must be 1, 1.5 or 2, got {self.stop_bits}")
        try:
            object.__setattr__(self, "parity", Parity(self.parity))
            object.__setattr__(self, "flow_control", FlowControl(self.flow_control))
        except ValueError as exc:
            raise ValidationError(f"Invalid serial option: {exc}") from None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SerialOptions:
        """Create options from a mapping."""
        return _from_mapping(cls, data)


@dataclass(frozen=True)
class TcpipOptions:
    """TCP socket settings.

    Attributes:
        connect_timeout: Seconds allowed for the TCP connection to open.
        keepalive: Enable TCP keepalive probes.
        keepalive_interval: Idle seconds before keepalive probes start.
    """

    connect_timeout: float = 5.0
    keepalive: bool = True
    keepalive_interval: float = 10.0

    def __post_init__(self) -> None:
        """Validate configuration."""
        _require_positive("TcpipOptions", "connect_timeout", self.connect_timeout)
        _require_positive("TcpipOptions", "keepalive_interval", self.keepalive_interval)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TcpipOptions:
        """Create options from a mapping."""
        return _from_mapping(cls, data)


@dataclass(frozen=True)
class UsbtmcOptions:
    """USB-TMC settings.

    Attributes:
        chunk_size: Bulk transfer size in bytes; None uses the quirk profile's.
        detach_kernel_driver: Detach an attached kernel driver before claiming.
    """

    chunk_size: int | None = None
    detach_kernel_driver: bool = True

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.chunk_size is not None:
            _require_positive("UsbtmcOptions", "chunk_size", self.chunk_size)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> UsbtmcOptions:
        """Create options from a mapping."""
        return _from_mapping(cls, data)


@dataclass(frozen=True)
class SimulationOptions:
    """Simulated transport settings.

    Attributes:
        latency: Seconds added to every command.
    """

    latency: float = 0.0

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.latency < 0:
            raise ValidationError(f"SimulationOptions.latency must be >= 0, got {self.latency}")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SimulationOptions:
        """Create options from a mapping."""
        return _from_mapping(cls, data)


@dataclass(frozen=True)
class OpenOptions:
    """Medium-neutral options used when opening a resource.

    Attributes:
        timeout: I/O timeout in seconds.
        read_termination: Suffix that ends a text response.
        write_termination: Suffix appended to every text command.
        encoding: Text encoding for commands and responses.
        quirks: Quirk profile name or member.
        command_delay: Seconds to wait before each write; None uses the
            quirk profile's delay.
        max_buffer_size: Maximum bytes buffered while waiting for a
            termination (serial, TCP and simulated links).
        serial: Serial settings.
        tcpip: TCP settings.
        usbtmc: USB-TMC settings.
        simulation: Simulated transport settings.
    """

    timeout: float = DEFAULT_TIMEOUT
    read_termination: str = "\n"
    write_termination: str = "\n"
    encoding: str = "ascii"
    quirks: QuirkProfile = QuirkProfile.NONE
    command_delay: float | None = None
    max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE
    serial: SerialOptions = field(default_factory=SerialOptions)
    tcpip: TcpipOptions = field(default_factory=TcpipOptions)
    usbtmc: UsbtmcOptions = field(default_factory=UsbtmcOptions)
    simulation: SimulationOptions = field(default_factory=SimulationOptions)

    def __post_init__(self) -> None:
        """Validate and normalize configuration."""
        _require_positive("OpenOptions", "timeout", self.timeout)
        _require_positive("OpenOptions", "max_buffer_size", self.max_buffer_size)
        if not self.read_termination:
            raise ValidationError("OpenOptions.read_termination must not be empty")
        if self.command_delay is not None and self.command_delay < 0:
            raise ValidationError(f"OpenOptions.command_delay must be >= 0, got {self.command_delay}")
        object.__setattr__(self, "quirks", resolve_quirk_profile(self.quirks))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OpenOptions:
        """Create options from a mapping, including nested medium sections."""
        return _from_mapping(
            cls,
            data,
            nested={
                "serial": SerialOptions,
                "tcpip": TcpipOptions,
                "usbtmc": UsbtmcOptions,
                "simulation": SimulationOptions,
            },
        )

    def merged(self, data: Mapping[str, Any]) -> OpenOptions:
        """Return a copy with the top-level and nested values in *data* applied."""
        changes: dict[str, Any] = {}
        for key, value in data.items():
            current = getattr(self, key, None)
            if isinstance(value, Mapping) and hasattr(current, "from_dict"):
                changes[key] = type(current).from_dict({**_as_dict(current), **value})
            else:
                changes[key] = value
        unknown = set(changes) - {f.name for f in fields(self)}
        if unknown:
            raise ValidationError(f"Unknown OpenOptions option(s): {', '.join(sorted(unknown))}")
        return replace(self, **changes)


def _as_dict(options: Any) -> dict[str, Any]:
    return {f.name: getattr(options, f.name) for f in fields(options)}


# -- Sessions ---------------------------------------------------------------


@dataclass(frozen=True)
class SessionConfig:
    """Per-session supervision settings.

    Attributes:
        max_consecutive_errors: Failures in a row before the session enters
            the error state.
        execute_timeout: Default seconds allowed for one ``execute`` call.
        auto_reconnect: Reconnect automatically when work arrives for a
            disconnected session and on each discovery scan.
        poll_interval: Seconds between runs of the session's poll function.
    """

    max_consecutive_errors: int = 5
    execute_timeout: float = 30.0
    auto_reconnect: bool = True
    poll_interval: float = 0.25

    def __post_init__(self) -> None:
        """Validate configuration."""
        _require_positive("SessionConfig", "max_consecutive_errors", self.max_consecutive_errors)
        _require_positive("SessionConfig", "execute_timeout", self.execute_timeout)
        _require_positive("SessionConfig", "poll_interval", self.poll_interval)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SessionConfig:
        """Create a config from a mapping."""
        return _from_mapping(cls, data)


@dataclass(frozen=True)
class SessionManagerConfig:
    """Discovery loop settings.

    Attributes:
        scan_interval: Seconds between discovery scans.
        query: VISA pattern passed to ``list_resources``.
        resource_filter: Optional filter selecting which discovered resources
            get a session: a pattern string, compiled regex, predicate, or
            list of patterns (first match wins). None accepts everything.
        session: Settings applied to each session.
    """

    scan_interval: float = 5.0
    query: str = DEFAULT_QUERY
    resource_filter: ResourceFilter | None = None
    session: SessionConfig = field(default_factory=SessionConfig)

    def __post_init__(self) -> None:
        """Validate configuration."""
        _require_positive("SessionManagerConfig", "scan_interval", self.scan_interval)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SessionManagerConfig:
        """Create a config from a mapping.

        ``filter`` is accepted as a pattern string or list of patterns and
        ``filter_regex`` as a regular expression.
        """
        values = dict(data)
        if "filter" in values:
            patterns = values.pop("filter")
            values["resource_filter"] = tuple(patterns) if isinstance(patterns, list) else patterns
        if "filter_regex" in values:
            values["resource_filter"] = re.compile(values.pop("filter_regex"), re.IGNORECASE)
        return _from_mapping(cls, values, nested={"session": SessionConfig})

    def accepts(self, resource: str) -> bool:
        """Return True if *resource* passes the resource filter."""
        flt = self.resource_filter
        if flt is None:
            return True
        if isinstance(flt, str):
            return matches_pattern(resource, flt)
        if isinstance(flt, re.Pattern):
            return flt.search(resource) is not None
        if callable(flt):
            return bool(flt(resource))
        return any(matches_pattern(resource, pattern) for pattern in flt)


# -- Files ------------------------------------------------------------------


@dataclass(frozen=True)
class VisaConfig:
    """Top-level configuration loaded from YAML.

    Attributes:
        manager: Session manager settings.
        defaults: Open options applied to every resource.
        resources: Per-resource overrides keyed by VISA pattern, in file order.
    """

    manager: SessionManagerConfig = field(default_factory=SessionManagerConfig)
    defaults: OpenOptions = field(default_factory=OpenOptions)
    resources: tuple[tuple[str, OpenOptions], ...] = ()

    def options_for(self, resource: str) -> OpenOptions:
        """Return the open options for *resource* (first matching pattern wins)."""
        for pattern, options in self.resources:
            if matches_pattern(resource, pattern):
                return options
        return self.defaults


def parse_config(data: Mapping[str, Any]) -> VisaConfig:
    """Build a :class:`VisaConfig` from an already-loaded mapping.

    Raises:
        ValueError: If a section has the wrong shape or an option is invalid.
    """
    manager_data = data.get("manager") or {}
    defaults_data = data.get("defaults") or {}
    resources_data = data.get("resources") or {}
    for name, section in (("manager", manager_data), ("defaults", defaults_data), ("resources", resources_data)):
        if not isinstance(section, Mapping):
            raise ValueError(f"{name} must be a mapping")

    defaults = OpenOptions.from_dict(defaults_data)
    resources = []
    for pattern, overrides in resources_data.items():
        if not isinstance(overrides, Mapping):
            raise ValueError(f"Resource '{pattern}' must be a mapping")
        resources.append((pattern, defaults.merged(overrides)))

    return VisaConfig(
        manager=SessionManagerConfig.from_dict(manager_data),
        defaults=defaults,
        resources=tuple(resources),
    )


def load_config(path: str | Path) -> VisaConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        Parsed configuration.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ValueError: If the config is invalid.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("Config must be a YAML mapping")
    return parse_config(data)
