"""
USB control-transfer transport for DFU devices.

Handles low-level pyusb communication with a device in DFU mode.

This module provides:
- The transport contract the protocol engine is written against
- A pyusb implementation (device lookup, interface claim, release)
- Descriptor helpers (strings, bcdDevice, DfuSe alternate-setting names)
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Union

try:
    import usb.core
    import usb.util
except ImportError:
    raise ImportError("PyUSB required: pip install pyusb")

from .errors import SessionError, TransportError

logger = logging.getLogger(__name__)

# bmRequestType: class request, interface recipient
DFU_REQUEST_TYPE_OUT = 0x21
DFU_REQUEST_TYPE_IN = 0xA1

_LOG_PREVIEW_BYTES = 32


class Direction(Enum):
    """Data stage direction of a control transfer."""
    OUT = DFU_REQUEST_TYPE_OUT  # host -> device
    IN = DFU_REQUEST_TYPE_IN    # device -> host


def _preview(data: bytes) -> str:
    if len(data) <= _LOG_PREVIEW_BYTES:
        return data.hex().upper()
    return f"{data[:_LOG_PREVIEW_BYTES].hex().upper()}... ({len(data)} bytes)"


class Transport:
    """
    Contract for a single blocking control transfer.

    For Direction.OUT, `buffer` is the payload. For Direction.IN, `buffer`
    must be a bytearray that is filled in place. Returns the number of
    bytes transferred; a negative value signals failure. Implementations
    may also raise TransportError directly.
    """

    def transfer(
        self,
        direction: Direction,
        request: int,
        value: int,
        buffer: Union[bytes, bytearray],
        timeout_ms: int,
    ) -> int:
        raise NotImplementedError


@dataclass(frozen=True)
class UsbDeviceInfo:
    """Descriptor summary for one attached USB device."""
    vendor_id: int
    product_id: int
    bus: Optional[int]
    address: Optional[int]
    device_version: int
    manufacturer: str = ""
    product: str = ""
    serial_number: str = ""

    @property
    def id_string(self) -> str:
        return f"{self.vendor_id:04X}:{self.product_id:04X}"

    @property
    def version_string(self) -> str:
        return f"{self.device_version >> 8:X}.{self.device_version & 0xFF:02X}"


def _read_string(device, index: int) -> str:
    """Read a USB string descriptor, returning '' when unavailable."""
    if not index:
        return ""
    try:
        return usb.util.get_string(device, index) or ""
    except (usb.core.USBError, ValueError) as e:
        logger.debug(f"String descriptor {index} unavailable: {e}")
        return ""


def _device_info(device) -> UsbDeviceInfo:
    return UsbDeviceInfo(
        vendor_id=device.idVendor,
        product_id=device.idProduct,
        bus=getattr(device, "bus", None),
        address=getattr(device, "address", None),
        device_version=device.bcdDevice,
        manufacturer=_read_string(device, device.iManufacturer),
        product=_read_string(device, device.iProduct),
        serial_number=_read_string(device, device.iSerialNumber),
    )


def find_devices(vendor_id: int, product_id: int) -> List[UsbDeviceInfo]:
    """
    List attached devices matching VID:PID.

    Raises:
        SessionError: If no libusb backend is available
    """
    try:
        found = usb.core.find(find_all=True, idVendor=vendor_id, idProduct=product_id)
        return [_device_info(dev) for dev in found]
    except usb.core.NoBackendError as e:
        raise SessionError(f"libusb backend not found: {e}") from e


class PyUSBTransport(Transport):
    """
    Control-transfer transport over a pyusb device.

    Example:
        transport = PyUSBTransport.open(0x0483, 0xDF11)
        try:
            buf = bytearray(6)
            transport.transfer(Direction.IN, 3, 0, buf, 500)
        finally:
            transport.close()
    """

    def __init__(self, device, interface: int = 0):
        """
        Wrap an already-found pyusb device.

        Args:
            device: usb.core.Device in DFU mode
            interface: DFU interface number (wIndex), 0 for STM32
        """
        self.device = device
        self.interface = interface
        self._claimed = False

    @classmethod
    def open(
        cls,
        vendor_id: int,
        product_id: int,
        interface: int = 0,
    ) -> "PyUSBTransport":
        """
        Find a device by VID:PID and claim its DFU interface.

        Raises:
            SessionError: If the device is missing or cannot be claimed
        """
        try:
            device = usb.core.find(idVendor=vendor_id, idProduct=product_id)
        except usb.core.NoBackendError as e:
            raise SessionError(f"libusb backend not found: {e}") from e
        if device is None:
            raise SessionError(
                f"No DFU device found at {vendor_id:04X}:{product_id:04X}"
            )

        transport = cls(device, interface=interface)
        transport.claim()
        return transport

    def claim(self) -> None:
        """Detach any kernel driver and claim the DFU interface."""
        try:
            if self.device.is_kernel_driver_active(self.interface):
                self.device.detach_kernel_driver(self.interface)
        except (NotImplementedError, usb.core.USBError):
            # Not supported on Windows / macOS backends
            pass
        try:
            usb.util.claim_interface(self.device, self.interface)
        except usb.core.USBError as e:
            raise SessionError(f"Cannot claim interface {self.interface}: {e}") from e
        self._claimed = True
        logger.debug(
            f"Claimed interface {self.interface} on "
            f"{self.device.idVendor:04X}:{self.device.idProduct:04X}"
        )

    def close(self) -> None:
        """Release the interface and free pyusb resources."""
        if self.device is None:
            return
        try:
            if self._claimed:
                usb.util.release_interface(self.device, self.interface)
        except usb.core.USBError as e:
            logger.debug(f"Release interface failed (device gone?): {e}")
        finally:
            self._claimed = False
            usb.util.dispose_resources(self.device)
            logger.debug("USB resources released")

    @property
    def device_version(self) -> int:
        """bcdDevice; on STM32 this is the system bootloader version."""
        return self.device.bcdDevice

    def info(self) -> UsbDeviceInfo:
        return _device_info(self.device)

    def interface_names(self) -> List[str]:
        """
        iInterface strings of every alternate setting of the DFU interface.

        DfuSe devices describe their memory layout here, e.g.
        "@Internal Flash  /0x08000000/04*016Kg,01*064Kg,07*128Kg".
        """
        names: List[str] = []
        try:
            configuration = self.device[0]
        except (usb.core.USBError, IndexError) as e:
            raise TransportError(f"Cannot read configuration descriptor: {e}") from e
        for intf in configuration:
            if intf.bInterfaceNumber != self.interface:
                continue
            name = _read_string(self.device, intf.iInterface)
            if name:
                names.append(name)
        return names

    def transfer(
        self,
        direction: Direction,
        request: int,
        value: int,
        buffer: Union[bytes, bytearray],
        timeout_ms: int,
    ) -> int:
        """
        Perform one control transfer.

        Raises:
            TransportError: On any USB error (stall, timeout, disconnect)
        """
        try:
            if direction is Direction.OUT:
                logger.debug(f">>> req={request} wValue={value} {_preview(bytes(buffer))}")
                return self.device.ctrl_transfer(
                    DFU_REQUEST_TYPE_OUT,
                    request,
                    value,
                    self.interface,
                    bytes(buffer),
                    timeout=timeout_ms,
                )

            data = self.device.ctrl_transfer(
                DFU_REQUEST_TYPE_IN,
                request,
                value,
                self.interface,
                len(buffer),
                timeout=timeout_ms,
            )
            received = bytes(data)
            buffer[: len(received)] = received
            logger.debug(f"<<< req={request} wValue={value} {_preview(received)}")
            return len(received)
        except usb.core.USBError as e:
            raise TransportError(f"Control transfer failed (request {request}): {e}") from e
