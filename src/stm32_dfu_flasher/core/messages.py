"""
Structured warnings with stable codes and remediation hints.

Core actions report plain strings; these helpers classify them so the CLI
can show a consistent title plus a suggested fix.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Device / USB
    W_DEVICE_NOT_FOUND = "W_DEVICE_NOT_FOUND"
    W_DEVICE_BUSY = "W_DEVICE_BUSY"
    W_USB_ERROR = "W_USB_ERROR"
    W_NO_BACKEND = "W_NO_BACKEND"

    # DFU state machine
    W_UNEXPECTED_STATE = "W_UNEXPECTED_STATE"
    W_IDLE_TIMEOUT = "W_IDLE_TIMEOUT"
    W_VERIFY_MISMATCH = "W_VERIFY_MISMATCH"

    # Image / target
    W_IMAGE_TOO_LARGE = "W_IMAGE_TOO_LARGE"
    W_IMAGE_EMPTY = "W_IMAGE_EMPTY"
    W_VECTOR_TABLE = "W_VECTOR_TABLE"
    W_TARGET_READ_ONLY = "W_TARGET_READ_ONLY"

    # Safety
    W_WRITE_DISABLED = "W_WRITE_DISABLED"
    W_CONFIRMATION_REQUIRED = "W_CONFIRMATION_REQUIRED"

    W_UNKNOWN = "W_UNKNOWN"


WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_DEVICE_NOT_FOUND:
        "Hold BOOT0 high and reset the board, then run 'list-devices'.",
    WarningCode.W_DEVICE_BUSY:
        "Close other DFU tools (dfu-util, STM32CubeProgrammer) using the device.",
    WarningCode.W_USB_ERROR:
        "Check the cable and USB permissions (udev rules on Linux).",
    WarningCode.W_NO_BACKEND:
        "Install libusb-1.0 for your platform.",
    WarningCode.W_UNEXPECTED_STATE:
        "Run 'clear-status' and retry. Power cycle the board if it persists.",
    WarningCode.W_IDLE_TIMEOUT:
        "The device did not return to idle. Try --idle-timeout or power cycle.",
    WarningCode.W_VERIFY_MISMATCH:
        "Read-back differs from the image. Erase and flash again.",
    WarningCode.W_IMAGE_TOO_LARGE:
        "Check the --target and --address, or use a smaller image.",
    WarningCode.W_IMAGE_EMPTY:
        "The image file is empty; nothing will be written.",
    WarningCode.W_VECTOR_TABLE:
        "Check the image was linked for the flash address you are writing to.",
    WarningCode.W_TARGET_READ_ONLY:
        "Pick a writable target with 'list-targets'.",
    WarningCode.W_WRITE_DISABLED:
        "Add --write to perform the operation.",
    WarningCode.W_CONFIRMATION_REQUIRED:
        "Type 'WRITE' when prompted, or pass --confirm WRITE.",
    WarningCode.W_UNKNOWN:
        "Re-run with --verbose for transfer-level logs.",
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }

    def to_cli_string(self, verbose: bool = False) -> str:
        """Format for terminal output."""
        if not verbose:
            return self.title
        lines = [f"[{self.code.value}] {self.title}"]
        if self.detail:
            lines.append(f"   {self.detail}")
        if self.remediation:
            lines.append(f"   -> {self.remediation}")
        return "\n".join(lines)


def classify_message(message: str) -> WarningCode:
    """Map a warning or error string to the closest known code."""
    msg = message.lower()
    if "backend" in msg:
        return WarningCode.W_NO_BACKEND
    if "no dfu device" in msg or "not found" in msg:
        return WarningCode.W_DEVICE_NOT_FOUND
    if "already open" in msg or "cannot claim" in msg:
        return WarningCode.W_DEVICE_BUSY
    if "verifying block" in msg:
        return WarningCode.W_VERIFY_MISMATCH
    if "timed out" in msg:
        return WarningCode.W_IDLE_TIMEOUT
    if "expected dfu" in msg:
        return WarningCode.W_UNEXPECTED_STATE
    if "does not fit" in msg or "overruns" in msg:
        return WarningCode.W_IMAGE_TOO_LARGE
    if "empty" in msg:
        return WarningCode.W_IMAGE_EMPTY
    if "vector table" in msg or "reset handler" in msg or "initial sp" in msg:
        return WarningCode.W_VECTOR_TABLE
    if "read-only" in msg:
        return WarningCode.W_TARGET_READ_ONLY
    if "--write" in msg:
        return WarningCode.W_WRITE_DISABLED
    if "confirm" in msg:
        return WarningCode.W_CONFIRMATION_REQUIRED
    if "control transfer" in msg or "usb" in msg:
        return WarningCode.W_USB_ERROR
    return WarningCode.W_UNKNOWN


def warnings_from_strings(
    messages: List[str],
    level: MessageLevel = MessageLevel.WARN,
) -> List[WarningItem]:
    return [WarningItem(level=level, code=classify_message(m), title=m) for m in messages]


def result_to_warnings(result) -> List[WarningItem]:
    """Warnings and errors of an OperationResult as WarningItems."""
    items = warnings_from_strings(result.warnings, MessageLevel.WARN)
    items.extend(warnings_from_strings(result.errors, MessageLevel.ERROR))
    return items
