"""Enumeration of local serial ports and USB-TMC devices.

Both listings are read-only snapshots of what the operating system reports
right now. They are used by :class:`~hwtest_visa.manager.ResourceManager`
to build resource strings and by the USB-TMC transport to locate a device.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

import usb.core
import usb.util
from serial.tools import list_ports

from hwtest_visa.usbtmc import USBTMC_CLASS, USBTMC_SUBCLASS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SerialPortInfo:
    """A serial port reported by the OS."""

    path: str
    description: str = ""
    hwid: str = ""


@dataclass(frozen=True)
class UsbDeviceInfo:
    """A USB device exposing a USB-TMC interface."""

    vendor_id: int
    product_id: int
    serial_number: str | None = None
    manufacturer: str | None = None
    product: str | None = None


def list_serial_ports() -> list[SerialPortInfo]:
    """Return the serial ports currently present."""
    return [
        SerialPortInfo(path=port.device, description=port.description or "", hwid=port.hwid or "")
        for port in list_ports.comports()
    ]


def usbtmc_interfaces(device: Any) -> Iterator[Any]:
    """Yield the USB-TMC interfaces (class 0xFE, subclass 0x03) of *device*."""
    for config in device:
        for interface in config:
            if interface.bInterfaceClass == USBTMC_CLASS and interface.bInterfaceSubClass == USBTMC_SUBCLASS:
                yield interface


def is_usbtmc_device(device: Any) -> bool:
    """True if *device* has at least one USB-TMC interface."""
    try:
        return any(True for _ in usbtmc_interfaces(device))
    except usb.core.USBError as exc:
        logger.debug("Cannot read descriptors of %04x:%04x: %s", device.idVendor, device.idProduct, exc)
        return False


def read_string(device: Any, index: int) -> str | None:
    """Read string descriptor *index*, or None if absent or unreadable."""
    if not index:
        return None
    try:
        return usb.util.get_string(device, index)
    except (usb.core.USBError, ValueError, NotImplementedError) as exc:
        logger.debug("Cannot read string descriptor %d: %s", index, exc)
        return None


def find_usbtmc_devices(vendor_id: int | None = None, product_id: int | None = None) -> list[Any]:
    """Return pyusb devices with a USB-TMC interface, optionally filtered by id.

    Raises:
        usb.core.NoBackendError: If no libusb backend is installed.
    """
    criteria = {}
    if vendor_id is not None:
        criteria["idVendor"] = vendor_id
    if product_id is not None:
        criteria["idProduct"] = product_id
    devices = usb.core.find(find_all=True, **criteria) or []
    return [device for device in devices if is_usbtmc_device(device)]


def list_usb_devices() -> list[UsbDeviceInfo]:
    """Return the USB-TMC devices currently attached.

    Returns an empty list, with a warning, when no libusb backend exists.
    """
    try:
        devices = find_usbtmc_devices()
    except usb.core.NoBackendError:
        logger.warning("No libusb backend available; USB-TMC devices cannot be listed")
        return []
    return [
        UsbDeviceInfo(
            vendor_id=device.idVendor,
            product_id=device.idProduct,
            serial_number=read_string(device, device.iSerialNumber),
            manufacturer=read_string(device, device.iManufacturer),
            product=read_string(device, device.iProduct),
        )
        for device in devices
    ]
