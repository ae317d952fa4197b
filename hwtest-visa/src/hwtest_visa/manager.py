"""Resource manager: discovery, opening and bookkeeping of resources.

The manager turns resource strings into open :class:`MessageBasedResource`
objects backed by the matching transport, and tracks every resource it has
opened so that they can be torn down together with :meth:`close_all`.

Typical usage::

    from hwtest_visa import ResourceManager, ScriptedDevice

    rm = ResourceManager()
    rm.register_simulated_device("psu", ScriptedDevice("ACME,PSU-1,42,1.0"))
    print(await rm.list_resources())   # ['SIM::PSU::INSTR', 'ASRL/dev/ttyUSB0::INSTR', ...]

    psu = await rm.open_resource("SIM::PSU::INSTR")
    print(await psu.query("*IDN?"))
    await rm.close_all()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from hwtest_visa import discovery
from hwtest_visa.config import OpenOptions
from hwtest_visa.discovery import SerialPortInfo, UsbDeviceInfo
from hwtest_visa.errors import DeviceBusyError, DeviceNotFoundError, ValidationError
from hwtest_visa.resource import MessageBasedResource
from hwtest_visa.resource_string import (
    DEFAULT_QUERY,
    InterfaceType,
    ResourceAddress,
    SerialAddress,
    SimAddress,
    TcpipInstrAddress,
    TcpipSocketAddress,
    UsbAddress,
    build_resource,
    matches_pattern,
    parse_resource,
)
from hwtest_visa.transports.base import Transport
from hwtest_visa.transports.serial import SerialTransport
from hwtest_visa.transports.simulation import SimulatedDevice, SimulationTransport
from hwtest_visa.transports.tcpip import TcpipTransport
from hwtest_visa.transports.usbtmc import UsbtmcTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceInfo:
    """Description of a discoverable resource.

    Attributes:
        resource_name: Canonical resource string.
        interface_type: Interface type tag.
        resource_class: Resource class (``INSTR`` or ``SOCKET``).
        alias: Human-readable description, if the OS provided one.
    """

    resource_name: str
    interface_type: InterfaceType
    resource_class: str
    alias: str | None = None


class ResourceLister:
    """Discovery collaborator listing serial ports and USB-TMC devices.

    The default implementation delegates to :mod:`hwtest_visa.discovery`.
    Replace it to restrict or fake discovery.
    """

    def list_serial_ports(self) -> list[SerialPortInfo]:
        """Return the serial ports currently present."""
        return discovery.list_serial_ports()

    def list_usb_devices(self) -> list[UsbDeviceInfo]:
        """Return the USB-TMC devices currently attached."""
        return discovery.list_usb_devices()


def _device_key(address: ResourceAddress) -> str:
    """Key naming the physical device behind *address*.

    ``ASRL3::INSTR`` and ``ASRLCOM3::INSTR`` address the same port, so
    serial resources are keyed by device path.
    """
    if isinstance(address, SerialAddress):
        return f"ASRL::{address.device_path}"
    return build_resource(address)


class ResourceManager:
    """Opens resources and tracks the ones it has opened.

    Args:
        lister: Discovery collaborator (default :class:`ResourceLister`).
        default_options: Options used when ``open_resource`` gets none.
    """

    def __init__(self, lister: ResourceLister | None = None, *, default_options: OpenOptions | None = None) -> None:
        self._lister = lister or ResourceLister()
        self._default_options = default_options or OpenOptions()
        self._simulated: dict[str, SimulatedDevice] = {}
        self._open: dict[str, MessageBasedResource] = {}
        self._opening: set[str] = set()

    # -- Simulated devices ---------------------------------------------------

    def register_simulated_device(self, name: str, device: SimulatedDevice) -> str:
        """Make *device* available as ``SIM::<NAME>::INSTR``.

        Returns:
            The resource string of the registered device.
        """
        key = name.strip().upper()
        if not key:
            raise ValidationError("Simulated device name must not be empty")
        self._simulated[key] = device
        return build_resource(SimAddress(key))

    def unregister_simulated_device(self, name: str) -> None:
        """Remove a simulated device registration."""
        self._simulated.pop(name.strip().upper(), None)

    # -- Discovery -----------------------------------------------------------

    async def list_resources_info(self, query: str = DEFAULT_QUERY) -> list[ResourceInfo]:
        """List discoverable resources matching *query*, with descriptions.

        Raw TCP sockets cannot be discovered and are never listed.
        """
        infos = [
            ResourceInfo(build_resource(SimAddress(name)), InterfaceType.SIM, "INSTR", f"Simulated {name}")
            for name in sorted(self._simulated)
        ]
        ports = await asyncio.to_thread(self._lister.list_serial_ports)
        for port in sorted(ports, key=lambda p: p.path):
            infos.append(
                ResourceInfo(
                    build_resource(SerialAddress(port.path)),
                    InterfaceType.ASRL,
                    "INSTR",
                    port.description or None,
                )
            )
        devices = await asyncio.to_thread(self._lister.list_usb_devices)
        for device in sorted(devices, key=lambda d: (d.vendor_id, d.product_id, d.serial_number or "")):
            address = UsbAddress(device.vendor_id, device.product_id, device.serial_number)
            alias = " ".join(part for part in (device.manufacturer, device.product) if part) or None
            infos.append(ResourceInfo(build_resource(address), InterfaceType.USB, "INSTR", alias))
        return [info for info in infos if matches_pattern(info.resource_name, query)]

    async def list_resources(self, query: str = DEFAULT_QUERY) -> list[str]:
        """List resource strings matching *query* (default ``"?*::INSTR"``)."""
        return [info.resource_name for info in await self.list_resources_info(query)]

    # -- Opening -------------------------------------------------------------

    @property
    def open_resources(self) -> list[MessageBasedResource]:
        """Resources opened by this manager and not yet closed."""
        return list(self._open.values())

    def is_open(self, resource: str) -> bool:
        """True if this manager holds *resource* open."""
        return _device_key(parse_resource(resource)) in self._open

    def create_transport(self, address: ResourceAddress, options: OpenOptions) -> Transport:
        """Build (but do not open) the transport for *address*.

        Raises:
            DeviceNotFoundError: For an unregistered simulated device.
            ValidationError: For ``TCPIP::...::INSTR`` (VXI-11/HiSLIP)
                resources, which are not supported.
        """
        common: dict[str, Any] = {
            "timeout": options.timeout,
            "read_termination": options.read_termination,
            "write_termination": options.write_termination,
            "encoding": options.encoding,
            "quirks": options.quirks,
            "command_delay": options.command_delay,
        }
        if isinstance(address, UsbAddress):
            return UsbtmcTransport(address, options=options.usbtmc, **common)
        if isinstance(address, SerialAddress):
            return SerialTransport(
                address.device_path,
                options=options.serial,
                max_buffer_size=options.max_buffer_size,
                **common,
            )
        if isinstance(address, TcpipSocketAddress):
            return TcpipTransport(
                address.host,
                address.port,
                options=options.tcpip,
                max_buffer_size=options.max_buffer_size,
                **common,
            )
        if isinstance(address, TcpipInstrAddress):
            raise ValidationError(
                f"VXI-11/HiSLIP resources are not supported ({build_resource(address)}); "
                "use TCPIP::<host>::<port>::SOCKET"
            )
        device = self._simulated.get(address.name.upper())
        if device is None:
            raise DeviceNotFoundError(f"No simulated device registered as {address.name!r}")
        return SimulationTransport(
            device,
            name=address.name.upper(),
            options=options.simulation,
            max_buffer_size=options.max_buffer_size,
            **common,
        )

    async def open_resource(self, resource: str, options: OpenOptions | None = None) -> MessageBasedResource:
        """Open *resource* and return it.

        Args:
            resource: Resource string in any accepted spelling.
            options: Open options (default: the manager's defaults).

        Raises:
            ResourceParseError: If the string is malformed.
            DeviceBusyError: If this manager already holds the resource open.
            ConnectError: If the transport cannot be opened.
        """
        address = parse_resource(resource)
        name = build_resource(address)
        key = _device_key(address)
        if key in self._open or key in self._opening:
            held = self._open.get(key)
            owner = held.resource_name if held is not None else name
            raise DeviceBusyError(f"{name} is already open (as {owner})")
        transport = self.create_transport(address, options or self._default_options)
        self._opening.add(key)
        try:
            await transport.open()
        finally:
            self._opening.discard(key)
        opened = MessageBasedResource(transport, name, on_close=self._forget)
        self._open[key] = opened
        logger.info("Opened resource %s", name)
        return opened

    def _forget(self, resource: MessageBasedResource) -> None:
        key = _device_key(parse_resource(resource.resource_name))
        if self._open.get(key) is resource:
            del self._open[key]

    async def close_all(self) -> None:
        """Close every resource this manager opened."""
        for resource in list(self._open.values()):
            await resource.close()

    async def __aenter__(self) -> ResourceManager:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close_all()
