"""
DFU 1.1 / STM32 DfuSe protocol engine.

Implements the request/response state machine used by the STM32 system
bootloader (ST AN3156):

1. Before every download command, poll GETSTATUS (clearing status between
   polls) until the device is dfuIDLE or dfuDNLOAD-IDLE
2. Issue DNLOAD: block 0 carries DfuSe commands (0x21 set address,
   0x41 mass erase), blocks >= 2 carry data relative to the address pointer
3. GETSTATUS must report dfuDNBUSY or dfuDNLOAD-IDLE
4. Sleep bwPollTimeout, then GETSTATUS must report dfuIDLE or dfuDNLOAD-IDLE

Reads (UPLOAD) are synchronous flash read-outs followed by one status check.
Failures raise the typed errors from `errors`; nothing here retries, and
dfuERROR is never cleared on the caller's behalf after a destructive command.
"""

import logging
import struct
import time
from typing import Callable, Iterable, Optional

from ..config import BLOCK_SIZE, DEFAULT_TIMINGS, DfuTimings
from .dfu_status import DeviceStatus, DfuState, STATUS_LENGTH, decode_status, state_name
from .errors import DfuTimeoutError, ProtocolStateError, TransportError
from .usb_transport import Direction, Transport

logger = logging.getLogger(__name__)

# DFU class requests (bRequest)
DFU_DETACH = 0x00
DFU_DNLOAD = 0x01
DFU_UPLOAD = 0x02
DFU_GETSTATUS = 0x03
DFU_CLRSTATUS = 0x04
DFU_GETSTATE = 0x05
DFU_ABORT = 0x06

# DfuSe in-band commands (DNLOAD with wValue=0)
CMD_SET_ADDRESS = 0x21
CMD_ERASE = 0x41
CMD_READ_UNPROTECT = 0x92

MASS_ERASE_COMMAND = bytes([CMD_ERASE])
# Declared for completeness; triggers a full erase and reset, so nothing sends it.
READ_UNPROTECT_COMMAND = bytes([CMD_READ_UNPROTECT])

DOWNLOAD_READY_STATES = frozenset({DfuState.DFU_IDLE, DfuState.DOWNLOAD_IDLE})
UPLOAD_READY_STATES = frozenset({DfuState.DFU_IDLE, DfuState.UPLOAD_IDLE})
_DOWNLOAD_ACCEPTED_STATES = frozenset({DfuState.DOWNLOAD_BUSY, DfuState.DOWNLOAD_IDLE})


def encode_set_address(address: int) -> bytes:
    """Encode the 5-byte DfuSe set-address-pointer command."""
    if not 0 <= address <= 0xFFFFFFFF:
        raise ValueError(f"Address out of 32-bit range: {address:#x}")
    return struct.pack("<BI", CMD_SET_ADDRESS, address)


def _state_list(states: Iterable[int]) -> str:
    return ", ".join(state_name(s) for s in sorted(states))


class DfuProtocol:
    """
    Single-session DFU command engine.

    Every method is one logical transaction over the transport and blocks
    for the transfer plus any device-mandated poll delay. Callers must
    serialize access (see DfuSession.exclusive()).

    Example:
        protocol = DfuProtocol(transport)
        protocol.mass_erase()
        protocol.set_address_pointer(0x08000000)
        protocol.write_block(2, firmware[:2048])
    """

    def __init__(
        self,
        transport: Transport,
        timings: DfuTimings = DEFAULT_TIMINGS,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            transport: Control-transfer transport bound to one device
            timings: Request timeouts and wait-for-idle budget
            sleep: Sleep function taking seconds (injectable for tests)
            clock: Monotonic clock returning seconds (injectable for tests)
        """
        self.transport = transport
        self.timings = timings
        self._sleep = sleep
        self._clock = clock

    # ---------------------------------------------------------------------------
    # Raw transfers
    # ---------------------------------------------------------------------------

    def _out(self, request: int, value: int, payload: bytes, timeout_ms: int, operation: str) -> int:
        result = self.transport.transfer(Direction.OUT, request, value, payload, timeout_ms)
        if result < 0:
            raise TransportError(f"{operation}: control transfer failed ({result})")
        return result

    def _in(self, request: int, value: int, length: int, timeout_ms: int, operation: str) -> bytes:
        buffer = bytearray(length)
        result = self.transport.transfer(Direction.IN, request, value, buffer, timeout_ms)
        if result < 0:
            raise TransportError(f"{operation}: control transfer failed ({result})")
        return bytes(buffer[:result])

    def _sleep_ms(self, milliseconds: int) -> None:
        if milliseconds > 0:
            self._sleep(milliseconds / 1000.0)

    # ---------------------------------------------------------------------------
    # DFU class requests
    # ---------------------------------------------------------------------------

    def get_status(self) -> DeviceStatus:
        """Read and decode the 6-byte GETSTATUS response."""
        raw = self._in(
            DFU_GETSTATUS, 0, STATUS_LENGTH, self.timings.status_timeout_ms, "get_status"
        )
        status = decode_status(raw)
        logger.debug(f"GETSTATUS {status.describe()}")
        return status

    def clear_status(self) -> None:
        """Send CLRSTATUS (zero-length); moves dfuERROR back to dfuIDLE."""
        self._out(DFU_CLRSTATUS, 0, b"", self.timings.clear_status_timeout_ms, "clear_status")

    def get_state(self) -> int:
        """Read bState alone via GETSTATE (no side effects on the device)."""
        raw = self._in(DFU_GETSTATE, 0, 1, self.timings.status_timeout_ms, "get_state")
        if len(raw) < 1:
            raise TransportError("get_state: device returned no data")
        return raw[0]

    def abort(self) -> None:
        """Send ABORT; returns an idle-but-busy-with-transfer device to dfuIDLE."""
        self._out(DFU_ABORT, 0, b"", self.timings.clear_status_timeout_ms, "abort")

    def detach(self, timeout_ms: int = 1000) -> None:
        """Send DETACH; wValue is the detach timeout the device should allow."""
        self._out(DFU_DETACH, timeout_ms, b"", self.timings.clear_status_timeout_ms, "detach")

    def wait_until(self, states: Iterable[int], timeout_ms: Optional[int] = None) -> DeviceStatus:
        """
        Poll until the device reports one of `states`.

        Between polls the status is cleared, which recovers a device left in
        dfuERROR by an earlier failure.

        Args:
            states: Acceptable bState values
            timeout_ms: Wall-clock budget (defaults to timings.idle_wait_ms)

        Returns:
            The status that satisfied the wait

        Raises:
            DfuTimeoutError: If no acceptable state was seen within budget
            TransportError: If any transfer fails
        """
        wanted = frozenset(states)
        budget_ms = self.timings.idle_wait_ms if timeout_ms is None else timeout_ms
        deadline = self._clock() + budget_ms / 1000.0

        status = self.get_status()
        while status.state not in wanted:
            if self._clock() >= deadline:
                raise DfuTimeoutError(
                    f"Timed out after {budget_ms} ms waiting for {_state_list(wanted)} "
                    f"(last: {status.describe()})",
                    last_status=status,
                )
            self.clear_status()
            self._sleep_ms(self.timings.idle_poll_interval_ms)
            status = self.get_status()
        return status

    # ---------------------------------------------------------------------------
    # DfuSe download commands
    # ---------------------------------------------------------------------------

    def _verify_download(self, operation: str) -> DeviceStatus:
        """Busy->idle verification shared by erase, set-address and write."""
        status = self.get_status()
        if status.state not in _DOWNLOAD_ACCEPTED_STATES:
            raise ProtocolStateError(
                operation,
                f"expected dfuDNBUSY or dfuDNLOAD-IDLE, got {status.describe()}",
                status=status,
            )

        # bwPollTimeout: minimum wait before the next GETSTATUS
        self._sleep_ms(status.poll_timeout_ms)

        status = self.get_status()
        if status.state not in DOWNLOAD_READY_STATES:
            raise ProtocolStateError(
                operation,
                f"expected dfuIDLE or dfuDNLOAD-IDLE after {operation}, got {status.describe()}",
                status=status,
            )
        return status

    def _download(self, operation: str, block_number: int, payload: bytes, timeout_ms: int) -> int:
        self.wait_until(DOWNLOAD_READY_STATES)
        written = self._out(DFU_DNLOAD, block_number, payload, timeout_ms, operation)
        if written != len(payload):
            raise TransportError(
                f"{operation}: short write, sent {written}/{len(payload)} bytes"
            )
        self._verify_download(operation)
        return written

    def set_address_pointer(self, address: int) -> None:
        """Point subsequent block reads/writes at `address` (DfuSe 0x21)."""
        logger.debug(f"Setting address pointer to 0x{address:08X}")
        self._download(
            "set_address_pointer",
            0,
            encode_set_address(address),
            self.timings.command_timeout_ms,
        )

    def mass_erase(self) -> None:
        """Erase the whole flash (DfuSe 0x41 with no address)."""
        logger.info("Mass erase started")
        self._download("mass_erase", 0, MASS_ERASE_COMMAND, self.timings.command_timeout_ms)
        logger.info("Mass erase complete")

    def write_block(self, block_number: int, data: bytes) -> int:
        """
        Download one data block.

        Args:
            block_number: Wire block number (2 + image block index)
            data: 1..BLOCK_SIZE bytes

        Returns:
            Number of bytes transferred
        """
        if not 0 <= block_number <= 0xFFFF:
            raise ValueError(f"Block number out of range: {block_number}")
        if not data:
            raise ValueError("write_block requires data; use leave() for a zero-length DNLOAD")
        if len(data) > BLOCK_SIZE:
            raise ValueError(f"Block too large: {len(data)} > {BLOCK_SIZE}")
        return self._download("write_block", block_number, bytes(data), self.timings.block_timeout_ms)

    def read_block(self, block_number: int, length: int) -> bytes:
        """
        Upload one block from flash.

        Reads complete synchronously, so there is no busy wait, but the
        status is checked once afterwards.

        Args:
            block_number: Wire block number (2 + image block index)
            length: Bytes to read, at most BLOCK_SIZE

        Returns:
            The bytes the device returned (may be short)
        """
        if not 0 <= block_number <= 0xFFFF:
            raise ValueError(f"Block number out of range: {block_number}")
        if not 0 < length <= BLOCK_SIZE:
            raise ValueError(f"Read length must be 1..{BLOCK_SIZE}, got {length}")

        data = self._in(DFU_UPLOAD, block_number, length, self.timings.block_timeout_ms, "read_block")

        status = self.get_status()
        if status.state not in UPLOAD_READY_STATES:
            raise ProtocolStateError(
                "read_block",
                f"expected dfuUPLOAD-IDLE or dfuIDLE after upload, got {status.describe()}",
                status=status,
            )
        return data

    def leave(self) -> DeviceStatus:
        """
        Zero-length DNLOAD on block 0, which makes the bootloader jump to
        the application at the current address pointer.

        The device usually resets during the final GETSTATUS, in which case
        TransportError propagates to the caller.
        """
        self.wait_until(DOWNLOAD_READY_STATES)
        self._out(DFU_DNLOAD, 0, b"", self.timings.command_timeout_ms, "leave")
        return self.get_status()
