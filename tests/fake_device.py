"""
Simulated STM32 DfuSe bootloader implementing the Transport contract.

The device keeps its own fake clock: every control transfer costs 1 ms and
sleeps requested by the engine advance it. A download command is executed
on the first GETSTATUS after it (which reports dfuDNBUSY with a poll
timeout); the device only reports dfuDNLOAD-IDLE once that timeout has
elapsed on the fake clock.
"""

from typing import List, Optional, Set, Tuple

from stm32_dfu_flasher.config import BLOCK_SIZE, FIRST_DATA_BLOCK
from stm32_dfu_flasher.protocol.dfu_protocol import (
    CMD_ERASE,
    CMD_SET_ADDRESS,
    DFU_ABORT,
    DFU_CLRSTATUS,
    DFU_DNLOAD,
    DFU_GETSTATE,
    DFU_GETSTATUS,
    DFU_UPLOAD,
    DfuProtocol,
)
from stm32_dfu_flasher.protocol.dfu_status import DfuState, DfuStatusCode
from stm32_dfu_flasher.protocol.errors import TransportError
from stm32_dfu_flasher.protocol.usb_transport import Direction, Transport, UsbDeviceInfo
from stm32_dfu_flasher.targets import STM32F405_FLASH_LAYOUT, STM32F4_OPTION_BYTES_LAYOUT

FLASH_BASE = 0x08000000
TRANSFER_COST = 0.001


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeDfuDevice(Transport):
    """
    In-memory DfuSe device.

    Fault injection:
        corrupt_block: image block index whose read-back has one byte flipped
        data_write_final_state: state reported after a data block finishes
            (instead of dfuDNLOAD-IDLE)
        stuck_in_error: device sits in dfuERROR and ignores CLRSTATUS
        fail_requests: request codes whose transfers return -1
        reset_on_leave: GETSTATUS after a zero-length DNLOAD raises
    """

    def __init__(
        self,
        flash_size: int = 1024 * 1024,
        base_address: int = FLASH_BASE,
        erase_poll_ms: int = 100,
        write_poll_ms: int = 5,
        command_poll_ms: int = 1,
        device_version: int = 0x2200,
    ):
        self.clock = FakeClock()
        self.base_address = base_address
        self.memory = bytearray(b"\xFF" * flash_size)
        self.address_pointer = base_address
        self.state = DfuState.DFU_IDLE
        self.status_code = DfuStatusCode.OK
        self.erase_poll_ms = erase_poll_ms
        self.write_poll_ms = write_poll_ms
        self.command_poll_ms = command_poll_ms
        self.device_version = device_version

        self.corrupt_block: Optional[int] = None
        self.data_write_final_state: Optional[int] = None
        self.stuck_in_error = False
        self.fail_requests: Set[int] = set()
        self.reset_on_leave = False

        self.requests: List[Tuple[Direction, int, int, bytes]] = []
        self.status_times: List[float] = []
        self.erase_count = 0
        self.closed = False

        self._pending: Optional[Tuple[int, bytes]] = None
        self._busy_until = 0.0
        self._pending_is_data = False
        self._left = False

    # ---------------------------------------------------------------------------
    # Helpers for tests
    # ---------------------------------------------------------------------------

    def protocol(self, timings=None) -> DfuProtocol:
        kwargs = {"sleep": self.clock.sleep, "clock": self.clock.monotonic}
        if timings is not None:
            return DfuProtocol(self, timings, **kwargs)
        return DfuProtocol(self, **kwargs)

    def read_memory(self, address: int, length: int) -> bytes:
        offset = address - self.base_address
        return bytes(self.memory[offset:offset + length])

    def requests_of(self, request: int) -> List[Tuple[Direction, int, int, bytes]]:
        return [r for r in self.requests if r[1] == request]

    def enter_error(self, status_code: int = DfuStatusCode.errUNKNOWN) -> None:
        self.state = DfuState.ERROR
        self.status_code = status_code

    # ---------------------------------------------------------------------------
    # Session-facing descriptor API
    # ---------------------------------------------------------------------------

    def info(self) -> UsbDeviceInfo:
        return UsbDeviceInfo(
            vendor_id=0x0483,
            product_id=0xDF11,
            bus=1,
            address=7,
            device_version=self.device_version,
            manufacturer="STMicroelectronics",
            product="STM32  BOOTLOADER",
            serial_number="367D35693136",
        )

    def interface_names(self) -> List[str]:
        return [STM32F405_FLASH_LAYOUT, STM32F4_OPTION_BYTES_LAYOUT]

    def close(self) -> None:
        self.closed = True

    # ---------------------------------------------------------------------------
    # Transport contract
    # ---------------------------------------------------------------------------

    def transfer(self, direction, request, value, buffer, timeout_ms) -> int:
        self.clock.now += TRANSFER_COST
        payload = bytes(buffer) if direction is Direction.OUT else b""
        self.requests.append((direction, request, value, payload))

        if request in self.fail_requests:
            return -1

        if direction is Direction.OUT:
            return self._handle_out(request, value, payload)
        data = self._handle_in(request, value, len(buffer))
        buffer[: len(data)] = data
        return len(data)

    def _handle_out(self, request: int, value: int, payload: bytes) -> int:
        if request == DFU_CLRSTATUS:
            if not self.stuck_in_error:
                self.state = DfuState.DFU_IDLE
                self.status_code = DfuStatusCode.OK
            return 0

        if request == DFU_ABORT:
            if not self.stuck_in_error:
                self.state = DfuState.DFU_IDLE
            return 0

        if request == DFU_DNLOAD:
            if self.state not in (DfuState.DFU_IDLE, DfuState.DOWNLOAD_IDLE):
                self.enter_error(DfuStatusCode.errSTALLEDPKT)
                return len(payload)
            if value == 0 and not payload:
                self.state = DfuState.MANIFEST_SYNC
                self._left = True
                return 0
            self._pending = (value, payload)
            self.state = DfuState.DOWNLOAD_SYNC
            return len(payload)

        return len(payload)

    def _handle_in(self, request: int, value: int, length: int) -> bytes:
        if request == DFU_GETSTATUS:
            return self._get_status()[:length]

        if request == DFU_GETSTATE:
            return bytes([self.state])[:length]

        if request == DFU_UPLOAD:
            if self.state not in (DfuState.DFU_IDLE, DfuState.UPLOAD_IDLE) or value < FIRST_DATA_BLOCK:
                self.enter_error(DfuStatusCode.errSTALLEDPKT)
                return b""
            block_index = value - FIRST_DATA_BLOCK
            address = self.address_pointer + block_index * BLOCK_SIZE
            data = bytearray(self.read_memory(address, length))
            if block_index == self.corrupt_block and data:
                data[len(data) // 2] ^= 0x5A
            self.state = DfuState.UPLOAD_IDLE
            return bytes(data)

        return b""

    def _status_bytes(self, poll_ms: int = 0) -> bytes:
        return bytes([
            self.status_code,
            poll_ms & 0xFF,
            (poll_ms >> 8) & 0xFF,
            (poll_ms >> 16) & 0xFF,
            self.state,
            0,
        ])

    def _get_status(self) -> bytes:
        self.status_times.append(self.clock.now)

        if self._left and self.reset_on_leave:
            raise TransportError("Control transfer failed (request 3): [Errno 19] No such device")

        if self.state == DfuState.DOWNLOAD_SYNC:
            poll_ms = self._execute_pending()
            if self.state == DfuState.ERROR:
                return self._status_bytes()
            self.state = DfuState.DOWNLOAD_BUSY
            self._busy_until = self.clock.now + poll_ms / 1000.0
            return self._status_bytes(poll_ms)

        if self.state == DfuState.DOWNLOAD_BUSY and self.clock.now >= self._busy_until:
            if self._pending_is_data and self.data_write_final_state is not None:
                self.state = self.data_write_final_state
            else:
                self.state = DfuState.DOWNLOAD_IDLE

        if self.stuck_in_error:
            self.state = DfuState.ERROR

        return self._status_bytes()

    def _execute_pending(self) -> int:
        value, payload = self._pending
        self._pending = None
        self._pending_is_data = value >= FIRST_DATA_BLOCK

        if value == 0:
            if payload == bytes([CMD_ERASE]):
                self.memory[:] = b"\xFF" * len(self.memory)
                self.erase_count += 1
                return self.erase_poll_ms
            if len(payload) == 5 and payload[0] == CMD_SET_ADDRESS:
                self.address_pointer = int.from_bytes(payload[1:5], "little")
                return self.command_poll_ms
            self.enter_error(DfuStatusCode.errTARGET)
            return 0

        address = self.address_pointer + (value - FIRST_DATA_BLOCK) * BLOCK_SIZE
        offset = address - self.base_address
        if offset < 0 or offset + len(payload) > len(self.memory):
            self.enter_error(DfuStatusCode.errADDRESS)
            return 0
        self.memory[offset:offset + len(payload)] = payload
        return self.write_poll_ms
