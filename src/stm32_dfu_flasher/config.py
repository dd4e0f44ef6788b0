"""
Default device identifiers, block geometry and protocol timings.

Values here match the STM32 system-memory DfuSe bootloader. CLI options
override them per invocation; nothing is read from the environment.
"""

from dataclasses import dataclass, replace
from typing import Optional

# STMicroelectronics "STM32 BOOTLOADER" in DFU mode
DEFAULT_VENDOR_ID = 0x0483
DEFAULT_PRODUCT_ID = 0xDF11
DFU_INTERFACE = 0

BLOCK_SIZE = 2048  # wTransferSize
FIRST_DATA_BLOCK = 2  # wValue 0 carries DfuSe commands, 1 is reserved

DEFAULT_TARGET = "stm32f405-internal"


@dataclass(frozen=True)
class DfuTimings:
    """
    Per-request USB timeouts and polling budget, all in milliseconds.

    Attributes:
        status_timeout_ms: GETSTATUS / GETSTATE control transfers
        command_timeout_ms: short DfuSe commands (erase, set address)
        block_timeout_ms: DNLOAD/UPLOAD data blocks
        clear_status_timeout_ms: CLRSTATUS / ABORT
        idle_wait_ms: overall budget for wait_until() before giving up
        idle_poll_interval_ms: pause between polls inside wait_until()
    """
    status_timeout_ms: int = 500
    command_timeout_ms: int = 50
    block_timeout_ms: int = 500
    clear_status_timeout_ms: int = 5000
    idle_wait_ms: int = 500
    idle_poll_interval_ms: int = 10

    def with_idle_wait(self, idle_wait_ms: Optional[int]) -> "DfuTimings":
        """Return a copy with a different wait-for-idle budget."""
        if idle_wait_ms is None:
            return self
        if idle_wait_ms <= 0:
            raise ValueError("idle wait budget must be positive")
        return replace(self, idle_wait_ms=idle_wait_ms)


DEFAULT_TIMINGS = DfuTimings()
