"""
USB DFU session management.

A DfuSession binds one (VID, PID) pair to an open transport and the protocol
engine driving it. At most one session per (VID, PID) may be open in the
process; engine calls are serialized through the session lock.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

from .config import DEFAULT_PRODUCT_ID, DEFAULT_TIMINGS, DEFAULT_VENDOR_ID, DFU_INTERFACE, DfuTimings
from .protocol.dfu_protocol import DfuProtocol
from .protocol.errors import SessionError, TransportError
from .protocol.usb_transport import PyUSBTransport, Transport
from .targets import MemoryLayout, parse_memory_layout

logger = logging.getLogger(__name__)

_registry_lock = threading.Lock()
_active_sessions: Dict[Tuple[int, int], "DfuSession"] = {}


def active_sessions() -> List[Tuple[int, int]]:
    """(VID, PID) pairs with an open session."""
    with _registry_lock:
        return list(_active_sessions.keys())


class DfuSession:
    """
    Exclusive handle on one DFU device.

    Example:
        with DfuSession.open(0x0483, 0xDF11) as session:
            with session.exclusive() as protocol:
                protocol.get_status()
    """

    def __init__(
        self,
        vendor_id: int,
        product_id: int,
        transport: Transport,
        timings: DfuTimings = DEFAULT_TIMINGS,
        protocol: Optional[DfuProtocol] = None,
    ):
        """
        Register a session around an already-open transport.

        Raises:
            SessionError: If a session for (vendor_id, product_id) is open
        """
        self.vendor_id = vendor_id
        self.product_id = product_id
        self.transport = transport
        self.protocol = protocol or DfuProtocol(transport, timings)
        self._lock = threading.Lock()
        self._closed = False

        key = (vendor_id, product_id)
        with _registry_lock:
            if key in _active_sessions:
                raise SessionError(
                    f"A session for {vendor_id:04X}:{product_id:04X} is already open"
                )
            _active_sessions[key] = self
        logger.debug(f"Session opened for {self.id_string}")

    @classmethod
    def open(
        cls,
        vendor_id: int = DEFAULT_VENDOR_ID,
        product_id: int = DEFAULT_PRODUCT_ID,
        timings: DfuTimings = DEFAULT_TIMINGS,
        interface: int = DFU_INTERFACE,
    ) -> "DfuSession":
        """
        Find, claim and wrap a USB DFU device.

        Raises:
            SessionError: If the device is missing, unclaimable or already open
        """
        with _registry_lock:
            if (vendor_id, product_id) in _active_sessions:
                raise SessionError(
                    f"A session for {vendor_id:04X}:{product_id:04X} is already open"
                )

        transport = PyUSBTransport.open(vendor_id, product_id, interface=interface)
        try:
            return cls(vendor_id, product_id, transport, timings)
        except SessionError:
            transport.close()
            raise

    @property
    def id_string(self) -> str:
        return f"{self.vendor_id:04X}:{self.product_id:04X}"

    @property
    def closed(self) -> bool:
        return self._closed

    @contextmanager
    def exclusive(self) -> Iterator[DfuProtocol]:
        """Hold the session lock and yield the protocol engine."""
        if self._closed:
            raise SessionError(f"Session for {self.id_string} is closed")
        with self._lock:
            yield self.protocol

    @property
    def device_version(self) -> Optional[int]:
        """bcdDevice (bootloader version on STM32), if the transport exposes it."""
        return getattr(self.transport, "device_version", None)

    def describe(self) -> Dict[str, str]:
        """Descriptor strings and version for display."""
        details = {"device": self.id_string}
        info = getattr(self.transport, "info", None)
        if info is not None:
            usb_info = info()
            details.update({
                "manufacturer": usb_info.manufacturer,
                "product": usb_info.product,
                "serial": usb_info.serial_number,
                "bootloader_version": usb_info.version_string,
            })
        return details

    def memory_layouts(self) -> List[MemoryLayout]:
        """Parse every DfuSe layout string the device reports."""
        names_fn = getattr(self.transport, "interface_names", None)
        if names_fn is None:
            return []
        layouts = []
        for name in names_fn():
            try:
                layouts.append(parse_memory_layout(name))
            except ValueError as e:
                logger.debug(f"Ignoring non-layout interface string {name!r}: {e}")
        return layouts

    def memory_layout(self) -> Optional[MemoryLayout]:
        """Layout of alternate setting 0 (internal flash on STM32), if reported."""
        layouts = self.memory_layouts()
        return layouts[0] if layouts else None

    def close(self) -> None:
        """Release the device and unregister the session. Idempotent."""
        if self._closed:
            return
        self._closed = True
        with _registry_lock:
            if _active_sessions.get((self.vendor_id, self.product_id)) is self:
                del _active_sessions[(self.vendor_id, self.product_id)]
        close = getattr(self.transport, "close", None)
        if close is not None:
            try:
                close()
            except TransportError as e:
                logger.debug(f"Transport close failed: {e}")
        logger.debug(f"Session closed for {self.id_string}")

    def __enter__(self) -> "DfuSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
