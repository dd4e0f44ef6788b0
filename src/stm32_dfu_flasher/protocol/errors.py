"""Error taxonomy for the DFU engine and everything layered on it."""

from typing import Optional


class DfuError(Exception):
    """Base exception for DFU operations."""


class TransportError(DfuError):
    """The control transfer itself failed (negative result or USB error)."""


class ProtocolStateError(DfuError):
    """
    Device reported an unexpected state after a command.

    Attributes:
        operation: Human-readable name of the attempted operation
        status: The DeviceStatus that was rejected, if one was read
    """
    def __init__(self, operation: str, message: str, status=None):
        self.operation = operation
        self.status = status
        super().__init__(f"{operation}: {message}")


class DfuTimeoutError(DfuError, TimeoutError):
    """A wait-until-idle loop exceeded its deadline."""

    def __init__(self, message: str, last_status=None):
        self.last_status = last_status
        super().__init__(message)


class VerificationError(DfuError):
    """
    Read-back after write did not match what was written.

    Attributes:
        block_index: Image-relative block index (wire block number - 2)
        address: Absolute flash address of the block, if known
        offset: First mismatching byte offset inside the block, if any
    """
    def __init__(
        self,
        block_index: int,
        address: Optional[int] = None,
        offset: Optional[int] = None,
    ):
        self.block_index = block_index
        self.address = address
        self.offset = offset
        where = f" at 0x{address:08X}" if address is not None else ""
        detail = f" (first mismatch at byte {offset})" if offset is not None else ""
        super().__init__(f"Error verifying block {block_index}{where}{detail}")


class SessionError(DfuError):
    """Device could not be opened, or a session for it is already active."""


class FirmwareImageError(DfuError):
    """Firmware image is unreadable or does not fit the flash target."""
