"""USB Test & Measurement Class transport built on pyusb.

Messages are framed with the 12 byte headers from :mod:`hwtest_visa.usbtmc`.
Each read issues REQUEST_DEV_DEP_MSG_IN transfers of ``chunk_size`` bytes
until the device marks the end of the message (EOM). Device clear,
trigger and status byte reads use the native USB-TMC/USB488 mechanisms
rather than SCPI commands.

pyusb calls block, so they run on worker threads with
:func:`asyncio.to_thread`.
"""

from __future__ import annotations

import asyncio
import errno
import logging
from collections.abc import Callable
from typing import Any

import usb.core
import usb.util

from hwtest_visa.config import UsbtmcOptions
from hwtest_visa.discovery import find_usbtmc_devices, read_string, usbtmc_interfaces
from hwtest_visa.errors import (
    ConnectError,
    DeviceBusyError,
    DeviceNotFoundError,
    ProtocolError,
    TransportIOError,
    VisaTimeoutError,
)
from hwtest_visa.resource_string import UsbAddress
from hwtest_visa.transports.base import Transport
from hwtest_visa.usbtmc import (
    CHECK_CLEAR_STATUS,
    CLEAR_BULK_IN_FIFO,
    DEV_DEP_MSG_IN,
    GET_CAPABILITIES,
    HEADER_SIZE,
    INITIATE_CLEAR,
    READ_STATUS_BYTE,
    REQUEST_TYPE_IN,
    STATUS_PENDING,
    STATUS_SUCCESS,
    TagGenerator,
    build_dev_dep_msg_in_request,
    build_dev_dep_msg_out,
    build_trigger,
    parse_bulk_in_header,
)

logger = logging.getLogger(__name__)

CLEAR_POLL_ATTEMPTS = 10
CLEAR_POLL_INTERVAL = 0.05
CAPABILITIES_LENGTH = 0x18


def _is_bulk(direction: int) -> Callable[[Any], bool]:
    def match(endpoint: Any) -> bool:
        return (
            usb.util.endpoint_direction(endpoint.bEndpointAddress) == direction
            and usb.util.endpoint_type(endpoint.bmAttributes) == usb.util.ENDPOINT_TYPE_BULK
        )

    return match


def _is_interrupt_in(endpoint: Any) -> bool:
    return (
        usb.util.endpoint_direction(endpoint.bEndpointAddress) == usb.util.ENDPOINT_IN
        and usb.util.endpoint_type(endpoint.bmAttributes) == usb.util.ENDPOINT_TYPE_INTR
    )


class UsbtmcTransport(Transport):
    """Transport to a USB-TMC instrument.

    Args:
        address: Vendor/product id, optional serial number and interface.
        options: Chunk size and kernel driver handling.
        **kwargs: Passed to :class:`Transport`.
    """

    timeout_error_threshold = 3

    def __init__(self, address: UsbAddress, *, options: UsbtmcOptions | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._address = address
        self._options = options or UsbtmcOptions()
        if self._options.chunk_size is not None:
            self.chunk_size = self._options.chunk_size
        self._tags = TagGenerator()
        self._stb_tag = 1
        self._pending = bytearray()
        self._device: Any = None
        self._interface_number = 0
        self._ep_out: Any = None
        self._ep_in: Any = None
        self._ep_interrupt: Any = None
        self._reattach_kernel_driver = False
        self._capabilities: bytes | None = None

    # -- Properties ----------------------------------------------------------

    @property
    def description(self) -> str:
        address = self._address
        serial = f" {address.serial_number}" if address.serial_number else ""
        return f"USB {address.vendor_id:04X}:{address.product_id:04X}{serial}"

    @property
    def address(self) -> UsbAddress:
        """Address of the device."""
        return self._address

    @property
    def capabilities(self) -> bytes | None:
        """Raw GET_CAPABILITIES response, if the device answered it."""
        return self._capabilities

    @property
    def _timeout_ms(self) -> int:
        return max(1, int(self._timeout * 1000))

    # -- Open / close --------------------------------------------------------

    async def _open(self) -> None:
        await asyncio.to_thread(self._open_blocking)

    def _open_blocking(self) -> None:
        address = self._address
        try:
            candidates = find_usbtmc_devices(address.vendor_id, address.product_id)
        except usb.core.NoBackendError as exc:
            raise DeviceNotFoundError("No libusb backend available") from exc
        device = next(
            (
                d
                for d in candidates
                if address.serial_number is None or read_string(d, d.iSerialNumber) == address.serial_number
            ),
            None,
        )
        if device is None:
            raise DeviceNotFoundError(f"USB-TMC device not found: {self}")
        self._device = device
        try:
            self._claim(device)
        except usb.core.USBError as exc:
            if exc.errno in (errno.EBUSY, errno.EACCES):
                raise DeviceBusyError(f"USB device is busy: {self} ({exc})") from exc
            raise ConnectError(f"Failed to claim {self}: {exc}") from exc
        self._tags.reset()
        self._pending.clear()
        self._capabilities = self._read_capabilities()

    def _claim(self, device: Any) -> None:
        try:
            config = device.get_active_configuration()
        except usb.core.USBError:
            config = None
        if config is None:
            device.set_configuration()
        interface = self._select_interface(device)
        self._interface_number = interface.bInterfaceNumber
        if self._options.detach_kernel_driver:
            try:
                if device.is_kernel_driver_active(self._interface_number):
                    device.detach_kernel_driver(self._interface_number)
                    self._reattach_kernel_driver = True
            except NotImplementedError:
                pass
        usb.util.claim_interface(device, self._interface_number)
        self._ep_out = usb.util.find_descriptor(interface, custom_match=_is_bulk(usb.util.ENDPOINT_OUT))
        self._ep_in = usb.util.find_descriptor(interface, custom_match=_is_bulk(usb.util.ENDPOINT_IN))
        self._ep_interrupt = usb.util.find_descriptor(interface, custom_match=_is_interrupt_in)
        if self._ep_out is None or self._ep_in is None:
            raise ConnectError(f"{self} has no bulk endpoints on interface {self._interface_number}")

    def _select_interface(self, device: Any) -> Any:
        interfaces = list(usbtmc_interfaces(device))
        wanted = self._address.interface_number
        for interface in interfaces:
            if not wanted or interface.bInterfaceNumber == wanted:
                return interface
        raise DeviceNotFoundError(f"{self} has no USB-TMC interface {wanted}")

    def _read_capabilities(self) -> bytes | None:
        try:
            response = self._device.ctrl_transfer(
                REQUEST_TYPE_IN, GET_CAPABILITIES, 0, self._interface_number, CAPABILITIES_LENGTH, self._timeout_ms
            )
        except usb.core.USBError as exc:
            logger.debug("GET_CAPABILITIES failed on %s: %s", self, exc)
            return None
        if not response or response[0] != STATUS_SUCCESS:
            return None
        return bytes(response)

    async def _close(self) -> None:
        await asyncio.to_thread(self._close_blocking)

    def _close_blocking(self) -> None:
        device, self._device = self._device, None
        self._ep_out = self._ep_in = self._ep_interrupt = None
        self._pending.clear()
        if device is None:
            return
        try:
            usb.util.release_interface(device, self._interface_number)
            if self._reattach_kernel_driver:
                device.attach_kernel_driver(self._interface_number)
        finally:
            self._reattach_kernel_driver = False
            usb.util.dispose_resources(device)

    # -- Bulk transfers ------------------------------------------------------

    async def _usb_call(self, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args)
        except usb.core.USBTimeoutError as exc:
            raise VisaTimeoutError(f"USB timeout on {self} after {self._timeout}s") from exc
        except usb.core.USBError as exc:
            raise TransportIOError(f"USB I/O error on {self}: {exc}") from exc

    def _require_endpoints(self) -> None:
        if self._device is None or self._ep_out is None or self._ep_in is None:
            raise TransportIOError(f"{self} is not claimed")

    async def _send(self, data: bytes) -> None:
        self._require_endpoints()
        size = self._chunk_size
        offsets = range(0, len(data), size) if data else range(1)
        last = offsets[-1]
        for offset in offsets:
            chunk = data[offset : offset + size]
            message = build_dev_dep_msg_out(chunk, self._tags.next(), eom=offset == last)
            await self._usb_call(self._ep_out.write, message, self._timeout_ms)

    async def _read_transfer(self, size: int) -> tuple[bytes, bool]:
        """Request up to *size* bytes; return the payload and its EOM flag."""
        self._require_endpoints()
        tag = self._tags.next()
        await self._usb_call(self._ep_out.write, build_dev_dep_msg_in_request(size, tag), self._timeout_ms)
        data = bytes(await self._usb_call(self._ep_in.read, size + HEADER_SIZE + 3, self._timeout_ms))
        header = parse_bulk_in_header(data)
        if header.msg_id != DEV_DEP_MSG_IN:
            raise ProtocolError(f"Unexpected bulk-in message type {header.msg_id} from {self}")
        if self._policy.check_tag and header.tag != tag:
            raise ProtocolError(f"Bulk-in tag {header.tag} does not match request tag {tag} from {self}")
        payload = bytearray(data[HEADER_SIZE:])
        while len(payload) < header.transfer_size:
            more = await self._usb_call(
                self._ep_in.read, header.transfer_size - len(payload) + 3, self._timeout_ms
            )
            if not more:
                raise ProtocolError(
                    f"Short bulk-in transfer from {self}: expected {header.transfer_size} bytes, got {len(payload)}"
                )
            payload.extend(more)
        return bytes(payload[: header.transfer_size]), header.eom

    async def _receive_message(self, termination: bytes) -> bytes:
        message = bytearray(self._pending)
        self._pending.clear()
        while True:
            payload, eom = await self._read_transfer(self._chunk_size)
            message.extend(payload)
            if eom or not payload:
                break
        if self._policy.strip_null_padding:
            message = bytearray(message.rstrip(b"\x00"))
        if message.endswith(termination):
            del message[-len(termination) :]
        return bytes(message)

    async def _receive_raw(self, size: int) -> bytes:
        if self._pending:
            data = bytes(self._pending[:size])
            del self._pending[:size]
            return data
        payload, _eom = await self._read_transfer(size)
        return payload

    async def _receive_exact(self, count: int) -> bytes:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        while len(self._pending) < count:
            if loop.time() >= deadline:
                raise VisaTimeoutError(
                    f"Read timeout on {self} after {self._timeout}s: "
                    f"expected {count} bytes, received {len(self._pending)}"
                )
            wanted = min(self._chunk_size, count - len(self._pending))
            payload, _eom = await self._read_transfer(wanted)
            self._pending.extend(payload)
        data = bytes(self._pending[:count])
        del self._pending[:count]
        return data

    # -- Control requests ----------------------------------------------------

    async def _control_in(self, request: int, value: int, length: int) -> bytes:
        self._require_endpoints()
        response = await self._usb_call(
            self._device.ctrl_transfer,
            REQUEST_TYPE_IN,
            request,
            value,
            self._interface_number,
            length,
            self._timeout_ms,
        )
        return bytes(response)

    async def _clear(self) -> None:
        self._pending.clear()
        response = await self._control_in(INITIATE_CLEAR, 0, 1)
        if not response or response[0] != STATUS_SUCCESS:
            raise ProtocolError(f"INITIATE_CLEAR rejected by {self}: {response!r}")
        for _ in range(CLEAR_POLL_ATTEMPTS):
            response = await self._control_in(CHECK_CLEAR_STATUS, 0, 2)
            if not response or response[0] != STATUS_PENDING:
                break
            if len(response) > 1 and response[1] & CLEAR_BULK_IN_FIFO:
                await self._drain_bulk_in()
            else:
                await asyncio.sleep(CLEAR_POLL_INTERVAL)
        else:
            raise VisaTimeoutError(f"Device clear on {self} still pending after {CLEAR_POLL_ATTEMPTS} polls")
        if not response or response[0] != STATUS_SUCCESS:
            raise ProtocolError(f"CHECK_CLEAR_STATUS failed on {self}: {response!r}")
        await self._usb_call(self._ep_out.clear_halt)

    async def _drain_bulk_in(self) -> None:
        packet_size = getattr(self._ep_in, "wMaxPacketSize", 0) or 64
        try:
            data = await self._usb_call(self._ep_in.read, packet_size, self._timeout_ms)
        except VisaTimeoutError:
            return
        logger.debug("Discarded %d bulk-IN bytes from %s during clear", len(data), self)

    async def _trigger(self) -> None:
        self._require_endpoints()
        await self._usb_call(self._ep_out.write, build_trigger(self._tags.next()), self._timeout_ms)

    def _next_stb_tag(self) -> int:
        # READ_STATUS_BYTE tags must lie in 2..127.
        self._stb_tag = self._stb_tag % 127 + 1
        if self._stb_tag < 2:
            self._stb_tag = 2
        return self._stb_tag

    async def _read_stb(self) -> int:
        tag = self._next_stb_tag()
        response = await self._control_in(READ_STATUS_BYTE, tag, 3)
        if not response or response[0] != STATUS_SUCCESS:
            raise ProtocolError(f"READ_STATUS_BYTE rejected by {self}: {response!r}")
        if self._ep_interrupt is not None:
            notification = bytes(await self._usb_call(self._ep_interrupt.read, 2, self._timeout_ms))
            if len(notification) < 2 or notification[0] != (0x80 | tag):
                raise ProtocolError(f"Unexpected status byte notification from {self}: {notification!r}")
            return notification[1]
        if len(response) < 3:
            raise ProtocolError(f"READ_STATUS_BYTE response too short from {self}: {response!r}")
        return response[2]
