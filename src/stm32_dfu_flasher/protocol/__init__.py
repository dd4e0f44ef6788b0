"""DFU protocol layer - USB transport, status decoding and the DfuSe engine."""

from .errors import (
    DfuError,
    TransportError,
    ProtocolStateError,
    DfuTimeoutError,
    VerificationError,
    SessionError,
    FirmwareImageError,
)
from .dfu_status import (
    DfuState,
    DfuStatusCode,
    DeviceStatus,
    decode_status,
    state_name,
    status_name,
    STATUS_LENGTH,
)
from .usb_transport import (
    Direction,
    Transport,
    PyUSBTransport,
    UsbDeviceInfo,
    find_devices,
)
from .dfu_protocol import (
    DfuProtocol,
    DOWNLOAD_READY_STATES,
    UPLOAD_READY_STATES,
    MASS_ERASE_COMMAND,
    READ_UNPROTECT_COMMAND,
    encode_set_address,
)

__all__ = [
    # Errors
    "DfuError",
    "TransportError",
    "ProtocolStateError",
    "DfuTimeoutError",
    "VerificationError",
    "SessionError",
    "FirmwareImageError",
    # Status
    "DfuState",
    "DfuStatusCode",
    "DeviceStatus",
    "decode_status",
    "state_name",
    "status_name",
    "STATUS_LENGTH",
    # Transport
    "Direction",
    "Transport",
    "PyUSBTransport",
    "UsbDeviceInfo",
    "find_devices",
    # Engine
    "DfuProtocol",
    "DOWNLOAD_READY_STATES",
    "UPLOAD_READY_STATES",
    "MASS_ERASE_COMMAND",
    "READ_UNPROTECT_COMMAND",
    "encode_set_address",
]
