"""
DFU GETSTATUS response decoding.

The 6-byte response layout is fixed by the DFU 1.1 class specification:

    byte 0     bStatus        status code (0..15)
    bytes 1-3  bwPollTimeout  24-bit little-endian, milliseconds
    byte 4     bState         device state
    byte 5     iString        status string descriptor index

Decoding never rejects out-of-range status or state values so a misbehaving
device can still be observed; they are reported as "unknown".
"""

from dataclasses import dataclass
from enum import IntEnum

from .errors import TransportError

STATUS_LENGTH = 6


class DfuState(IntEnum):
    """bState values, including the STM32 upload sync/busy extensions."""
    APP_IDLE = 0x00
    APP_DETACH = 0x01
    DFU_IDLE = 0x02
    DOWNLOAD_SYNC = 0x03
    DOWNLOAD_BUSY = 0x04
    DOWNLOAD_IDLE = 0x05
    MANIFEST_SYNC = 0x06
    MANIFEST = 0x07
    MANIFEST_WAIT_RESET = 0x08
    UPLOAD_IDLE = 0x09
    ERROR = 0x0A
    UPLOAD_SYNC = 0x91
    UPLOAD_BUSY = 0x92


class DfuStatusCode(IntEnum):
    """bStatus values."""
    OK = 0x00
    errTARGET = 0x01
    errFILE = 0x02
    errWRITE = 0x03
    errERASE = 0x04
    errCHECK_ERASED = 0x05
    errPROG = 0x06
    errVERIFY = 0x07
    errADDRESS = 0x08
    errNOTDONE = 0x09
    errFIRMWARE = 0x0A
    errVENDOR = 0x0B
    errUSBR = 0x0C
    errPOR = 0x0D
    errUNKNOWN = 0x0E
    errSTALLEDPKT = 0x0F


STATE_NAMES = {
    DfuState.APP_IDLE: "appIDLE",
    DfuState.APP_DETACH: "appDETACH",
    DfuState.DFU_IDLE: "dfuIDLE",
    DfuState.DOWNLOAD_SYNC: "dfuDNLOAD-SYNC",
    DfuState.DOWNLOAD_BUSY: "dfuDNBUSY",
    DfuState.DOWNLOAD_IDLE: "dfuDNLOAD-IDLE",
    DfuState.MANIFEST_SYNC: "dfuMANIFEST-SYNC",
    DfuState.MANIFEST: "dfuMANIFEST",
    DfuState.MANIFEST_WAIT_RESET: "dfuMANIFEST-WAIT-RESET",
    DfuState.UPLOAD_IDLE: "dfuUPLOAD-IDLE",
    DfuState.ERROR: "dfuERROR",
    DfuState.UPLOAD_SYNC: "dfuUPLOAD-SYNC",
    DfuState.UPLOAD_BUSY: "dfuUPLOAD-BUSY",
}

STATUS_DESCRIPTIONS = {
    DfuStatusCode.OK: "No error condition is present.",
    DfuStatusCode.errTARGET: "File is not targeted for use by this device.",
    DfuStatusCode.errFILE: "File fails some vendor-specific verification test.",
    DfuStatusCode.errWRITE: "Device is unable to write memory.",
    DfuStatusCode.errERASE: "Memory erase function failed.",
    DfuStatusCode.errCHECK_ERASED: "Memory erase check failed.",
    DfuStatusCode.errPROG: "Program memory function failed.",
    DfuStatusCode.errVERIFY: "Programmed memory failed verification.",
    DfuStatusCode.errADDRESS: "Received address is out of range.",
    DfuStatusCode.errNOTDONE: "Zero-length DNLOAD received before all data arrived.",
    DfuStatusCode.errFIRMWARE: "Device firmware is corrupt.",
    DfuStatusCode.errVENDOR: "Vendor-specific error.",
    DfuStatusCode.errUSBR: "Unexpected USB reset signaling.",
    DfuStatusCode.errPOR: "Unexpected power on reset.",
    DfuStatusCode.errUNKNOWN: "Unknown error.",
    DfuStatusCode.errSTALLEDPKT: "Device stalled an unexpected request.",
}


def state_name(state: int) -> str:
    """Name of a bState value, or unknown(0x..) for out-of-range values."""
    try:
        return STATE_NAMES[DfuState(state)]
    except ValueError:
        return f"unknown(0x{state:02X})"


def status_name(status_code: int) -> str:
    """Name of a bStatus value, or unknown(0x..) for out-of-range values."""
    try:
        return DfuStatusCode(status_code).name
    except ValueError:
        return f"unknown(0x{status_code:02X})"


@dataclass(frozen=True)
class DeviceStatus:
    """Decoded GETSTATUS response."""
    status_code: int
    poll_timeout_ms: int
    state: int
    string_index: int = 0

    @property
    def state_name(self) -> str:
        return state_name(self.state)

    @property
    def status_name(self) -> str:
        return status_name(self.status_code)

    @property
    def is_error(self) -> bool:
        return self.state == DfuState.ERROR

    def describe(self) -> str:
        """One-line summary for logs and event messages."""
        return (
            f"state={self.state_name} status={self.status_name} "
            f"poll_timeout={self.poll_timeout_ms}ms"
        )


def decode_status(raw: bytes) -> DeviceStatus:
    """
    Decode a GETSTATUS response.

    Args:
        raw: At least 6 bytes as returned by the device

    Returns:
        DeviceStatus with numeric values preserved as-is

    Raises:
        TransportError: If fewer than 6 bytes were received (short read)
    """
    if len(raw) < STATUS_LENGTH:
        raise TransportError(
            f"GETSTATUS returned {len(raw)} bytes, expected {STATUS_LENGTH}"
        )
    poll_timeout = raw[1] | (raw[2] << 8) | (raw[3] << 16)
    return DeviceStatus(
        status_code=raw[0],
        poll_timeout_ms=poll_timeout,
        state=raw[4],
        string_index=raw[5],
    )
