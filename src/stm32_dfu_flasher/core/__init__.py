"""
Core module for the STM32 DFU flasher.

This module provides the single source of truth for:
- Write gating / confirmation (safety.py)
- Address, size and device ID parsing (parsing.py)
- Result objects (results.py)
- Status / erase / flash / dump workflows (actions.py)
- Standardized warnings/messages (messages.py)

The CLI calls into this module rather than driving the engine directly.
"""

from .safety import (
    CONFIRMATION_TOKEN,
    SafetyContext,
    WritePermissionError,
    create_cli_safety_context,
    require_write_permission,
)
from .parsing import parse_address, parse_size, parse_device_id, format_region
from .results import OperationResult
from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    classify_message,
    warnings_from_strings,
    result_to_warnings,
)
from .actions import (
    list_devices,
    read_status,
    clear_device_status,
    erase_device,
    flash_firmware,
    dump_flash,
)

__all__ = [
    # Safety
    "CONFIRMATION_TOKEN",
    "SafetyContext",
    "WritePermissionError",
    "create_cli_safety_context",
    "require_write_permission",
    # Parsing
    "parse_address",
    "parse_size",
    "parse_device_id",
    "format_region",
    # Results
    "OperationResult",
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "classify_message",
    "warnings_from_strings",
    "result_to_warnings",
    # Actions
    "list_devices",
    "read_status",
    "clear_device_status",
    "erase_device",
    "flash_firmware",
    "dump_flash",
]
