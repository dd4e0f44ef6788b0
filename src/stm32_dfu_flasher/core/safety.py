"""
Write gating for destructive device operations.

Erase and flash wipe the device's application. Every such operation must
pass require_write_permission() before the device is touched.
"""

import sys
from dataclasses import dataclass, field
from typing import Callable, List, Optional

# Confirmation token required for non-interactive writes
CONFIRMATION_TOKEN = "WRITE"


class WritePermissionError(Exception):
    """
    Raised when a write operation is not permitted.

    Attributes:
        reason: Human-readable explanation of why write was denied
        details: Additional context (device, target, region, ...)
    """
    def __init__(self, reason: str, details: Optional[dict] = None):
        self.reason = reason
        self.details = details or {}
        super().__init__(reason)


@dataclass
class SafetyContext:
    """
    Everything needed to decide whether a destructive operation may run.

    Attributes:
        write_enabled: Whether the --write flag was provided
        confirmation_token: For non-interactive mode, must match CONFIRMATION_TOKEN
        interactive: Whether the caller can prompt for confirmation
        device: "VID:PID" of the device being written
        target_writable: Whether the selected flash target accepts writes
        warnings: Messages accumulated while preparing the operation
    """
    write_enabled: bool = False
    confirmation_token: Optional[str] = None
    interactive: bool = True
    device: str = ""
    target_writable: bool = True
    warnings: List[str] = field(default_factory=list)

    prompt_confirmation: Optional[Callable[[str], str]] = None
    show_details: Optional[Callable[[dict], None]] = None

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def to_details_dict(
        self,
        operation: str = "",
        target: str = "",
        region: str = "",
        bytes_length: int = 0,
    ) -> dict:
        details = {
            "operation": operation,
            "device": self.device or "unknown",
            "target": target,
            "region": region,
            "bytes_length": bytes_length,
        }
        if self.warnings:
            details["warnings"] = list(self.warnings)
        return details


def require_write_permission(
    ctx: SafetyContext,
    operation: str = "",
    target: str = "",
    region: str = "",
    bytes_length: int = 0,
) -> None:
    """
    Enforce write permission rules.

    Rules, in order:
    1. Write must be enabled explicitly
    2. The target must be writable
    3. A confirmation token, if given, must match exactly
    4. Otherwise an interactive prompt must be answered with the token

    Raises:
        WritePermissionError: If the operation is not permitted
    """
    details = ctx.to_details_dict(operation, target, region, bytes_length)

    if not ctx.write_enabled:
        raise WritePermissionError(
            f"{operation or 'This operation'} erases the device. Re-run with --write.",
            details=details,
        )

    if not ctx.target_writable:
        raise WritePermissionError(
            f"Target {target or '(unknown)'} is read-only.",
            details=details,
        )

    if ctx.confirmation_token is not None:
        if ctx.confirmation_token.strip().upper() != CONFIRMATION_TOKEN:
            raise WritePermissionError(
                f"Confirmation token mismatch. Expected '{CONFIRMATION_TOKEN}'.",
                details=details,
            )
        return

    if not ctx.interactive:
        raise WritePermissionError(
            f"Non-interactive mode requires --confirm {CONFIRMATION_TOKEN}.",
            details=details,
        )

    if ctx.show_details:
        ctx.show_details(details)

    if ctx.prompt_confirmation is None:
        raise WritePermissionError(
            "Interactive confirmation required but no prompt handler set.",
            details=details,
        )

    user_input = ctx.prompt_confirmation(
        f"Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort"
    )
    if user_input.strip().upper() != CONFIRMATION_TOKEN:
        raise WritePermissionError(
            "Confirmation failed. Write aborted by user.",
            details=details,
        )


def create_cli_safety_context(
    write_flag: bool,
    device: str = "",
    target_writable: bool = True,
    confirmation_token: Optional[str] = None,
) -> SafetyContext:
    """
    SafetyContext for CLI use.

    Interactive only when stdin is a TTY and no token was supplied; the CLI
    attaches prompt callbacks afterwards.
    """
    interactive = sys.stdin.isatty() and confirmation_token is None
    return SafetyContext(
        write_enabled=write_flag,
        confirmation_token=confirmation_token,
        interactive=interactive,
        device=device,
        target_writable=target_writable,
    )
