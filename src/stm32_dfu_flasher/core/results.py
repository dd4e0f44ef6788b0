"""
Result objects for core operations.

Engine calls raise; the actions layer turns their outcome into an
OperationResult so callers (the CLI, scripts) get one uniform shape.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass
class OperationResult:
    """
    Outcome of one core action.

    Attributes:
        ok: Whether the operation completed successfully
        operation: Name of the operation (e.g., "flash_firmware", "dump_flash")
        device: "VID:PID" of the device used
        target: Flash target name
        region: Address range touched (e.g., "0x08000000-0x08004000")
        bytes_len: Number of bytes processed
        hashes: Hash values (sha256 of image or read-out)
        warnings: Non-blocking issues encountered
        errors: Blocking errors that caused failure
        metadata: Additional operation-specific data
        logs: Captured log lines from the operation
    """
    ok: bool
    operation: str
    device: str = ""
    target: str = ""
    region: str = ""
    bytes_len: int = 0
    hashes: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def add_error(self, message: str) -> None:
        """Add an error message and mark result as failed."""
        self.errors.append(message)
        self.ok = False

    def to_summary(self) -> str:
        """Multi-line plain-text summary for logs or terminals."""
        status = "SUCCESS" if self.ok else "FAILED"
        lines = [f"[{status}] {self.operation}"]

        if self.device:
            lines.append(f"  Device: {self.device}")
        if self.target:
            lines.append(f"  Target: {self.target}")
        if self.region:
            lines.append(f"  Region: {self.region}")
        if self.bytes_len:
            lines.append(f"  Bytes: {self.bytes_len:,}")
        for name, value in self.hashes.items():
            lines.append(f"  {name}: {value[:16]}...")

        if self.warnings:
            lines.append("  Warnings:")
            lines.extend(f"    - {w}" for w in self.warnings)
        if self.errors:
            lines.append("  Errors:")
            lines.extend(f"    - {e}" for e in self.errors)

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dict (bytes metadata is omitted)."""
        return {
            "ok": self.ok,
            "operation": self.operation,
            "device": self.device,
            "target": self.target,
            "region": self.region,
            "bytes_len": self.bytes_len,
            "hashes": self.hashes,
            "warnings": self.warnings,
            "errors": self.errors,
            "metadata": {
                k: v for k, v in self.metadata.items()
                if not isinstance(v, (bytes, bytearray))
            },
            "logs": self.logs,
        }

    @classmethod
    def success(cls, operation: str, **kwargs) -> "OperationResult":
        return cls(ok=True, operation=operation, **kwargs)

    @classmethod
    def failure(cls, operation: str, error: str, **kwargs) -> "OperationResult":
        result = cls(ok=False, operation=operation, **kwargs)
        result.errors.append(error)
        return result
