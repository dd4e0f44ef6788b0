"""Tests for the DFU protocol engine against the simulated bootloader."""

import pytest

from fake_device import FLASH_BASE, FakeDfuDevice

from stm32_dfu_flasher.config import DfuTimings
from stm32_dfu_flasher.protocol.dfu_protocol import (
    DFU_ABORT,
    DFU_CLRSTATUS,
    DFU_DETACH,
    DFU_DNLOAD,
    DFU_GETSTATUS,
    DFU_UPLOAD,
    DOWNLOAD_READY_STATES,
    MASS_ERASE_COMMAND,
    READ_UNPROTECT_COMMAND,
    encode_set_address,
)
from stm32_dfu_flasher.protocol.dfu_status import DfuState, DfuStatusCode
from stm32_dfu_flasher.protocol.errors import (
    DfuTimeoutError,
    ProtocolStateError,
    TransportError,
)
from stm32_dfu_flasher.protocol.usb_transport import Direction


class TestCommandPayloads:
    def test_set_address_is_little_endian(self):
        assert encode_set_address(0x08000000) == bytes([0x21, 0x00, 0x00, 0x00, 0x08])
        assert encode_set_address(0x1FFFC000) == bytes([0x21, 0x00, 0xC0, 0xFF, 0x1F])

    def test_set_address_rejects_out_of_range(self):
        with pytest.raises(ValueError):
            encode_set_address(0x1_0000_0000)
        with pytest.raises(ValueError):
            encode_set_address(-1)

    def test_fixed_commands(self):
        assert MASS_ERASE_COMMAND == bytes([0x41])
        assert READ_UNPROTECT_COMMAND == bytes([0x92])


def test_get_status_reads_idle_device(protocol):
    status = protocol.get_status()
    assert status.state == DfuState.DFU_IDLE
    assert status.status_code == DfuStatusCode.OK


def test_get_state_and_abort(device, protocol):
    assert protocol.get_state() == DfuState.DFU_IDLE
    device.state = DfuState.UPLOAD_IDLE
    protocol.abort()
    assert device.requests_of(DFU_ABORT)
    assert protocol.get_state() == DfuState.DFU_IDLE


def test_detach_sends_timeout_as_value(device, protocol):
    protocol.detach(2000)
    assert device.requests_of(DFU_DETACH) == [(Direction.OUT, DFU_DETACH, 2000, b"")]


def test_clear_status_recovers_from_error(device, protocol):
    device.enter_error(DfuStatusCode.errWRITE)
    protocol.clear_status()
    assert protocol.get_status().state == DfuState.DFU_IDLE


def test_set_address_pointer(device, protocol):
    protocol.set_address_pointer(0x08004000)

    dnloads = device.requests_of(DFU_DNLOAD)
    assert dnloads == [(Direction.OUT, DFU_DNLOAD, 0, bytes([0x21, 0x00, 0x40, 0x00, 0x08]))]
    assert device.address_pointer == 0x08004000
    assert device.state == DfuState.DOWNLOAD_IDLE


def test_mass_erase_waits_poll_timeout_before_second_status(device, protocol):
    device.erase_poll_ms = 250
    device.memory[0:4] = b"\x00\x01\x02\x03"

    protocol.mass_erase()

    assert device.erase_count == 1
    assert device.read_memory(FLASH_BASE, 4) == b"\xFF" * 4
    assert 0.25 in device.clock.sleeps
    busy_query, idle_query = device.status_times[-2:]
    assert idle_query - busy_query >= 0.25


def test_mass_erase_sends_single_byte_command(device, protocol):
    protocol.mass_erase()
    assert device.requests_of(DFU_DNLOAD)[0][3] == b"\x41"


def test_download_command_clears_prior_error_first(device, protocol):
    device.enter_error(DfuStatusCode.errUNKNOWN)

    protocol.set_address_pointer(FLASH_BASE)

    assert len(device.requests_of(DFU_CLRSTATUS)) == 1
    assert device.address_pointer == FLASH_BASE


def test_write_block_stores_data(device, protocol):
    protocol.set_address_pointer(FLASH_BASE)
    written = protocol.write_block(3, b"\xAA" * 16)

    assert written == 16
    assert device.read_memory(FLASH_BASE + 2048, 16) == b"\xAA" * 16


def test_write_block_rejected_by_device_raises_without_clearing(device, protocol):
    protocol.set_address_pointer(FLASH_BASE + len(device.memory) - 8)

    with pytest.raises(ProtocolStateError) as exc_info:
        protocol.write_block(2, b"\x00" * 64)

    assert exc_info.value.operation == "write_block"
    assert exc_info.value.status.state == DfuState.ERROR
    last_dnload = max(i for i, r in enumerate(device.requests) if r[1] == DFU_DNLOAD)
    assert all(r[1] != DFU_CLRSTATUS for r in device.requests[last_dnload:])
    assert device.state == DfuState.ERROR


def test_write_block_unexpected_final_state(device, protocol):
    device.data_write_final_state = DfuState.UPLOAD_IDLE
    protocol.set_address_pointer(FLASH_BASE)

    with pytest.raises(ProtocolStateError, match="dfuUPLOAD-IDLE"):
        protocol.write_block(2, b"\x01" * 32)


class TestWriteBlockValidation:
    def test_empty_block(self, protocol):
        with pytest.raises(ValueError):
            protocol.write_block(2, b"")

    def test_oversized_block(self, protocol):
        with pytest.raises(ValueError):
            protocol.write_block(2, b"\x00" * 2049)

    def test_block_number_range(self, protocol):
        with pytest.raises(ValueError):
            protocol.write_block(0x10000, b"\x00")


def test_read_block_returns_flash_contents(device, protocol):
    device.memory[2048:2052] = b"\xDE\xAD\xBE\xEF"
    data = protocol.read_block(3, 4)

    assert data == b"\xDE\xAD\xBE\xEF"
    assert device.state == DfuState.UPLOAD_IDLE


def test_read_block_in_wrong_state_raises(device, protocol):
    device.state = DfuState.DOWNLOAD_IDLE
    with pytest.raises(ProtocolStateError):
        protocol.read_block(2, 16)


def test_read_block_length_validation(protocol):
    with pytest.raises(ValueError):
        protocol.read_block(2, 0)
    with pytest.raises(ValueError):
        protocol.read_block(2, 4096)


class TestWaitUntil:
    def test_returns_immediately_when_ready(self, device, protocol):
        status = protocol.wait_until(DOWNLOAD_READY_STATES)
        assert status.state == DfuState.DFU_IDLE
        assert not device.requests_of(DFU_CLRSTATUS)

    def test_error_forever_times_out_within_budget(self, device, protocol):
        device.stuck_in_error = True
        device.enter_error()

        with pytest.raises(DfuTimeoutError) as exc_info:
            protocol.wait_until(DOWNLOAD_READY_STATES)

        assert exc_info.value.last_status.is_error
        assert device.clock.now <= 0.5 + 0.05
        assert device.clock.now >= 0.5

    def test_timeout_is_a_builtin_timeout_error(self, device, protocol):
        device.stuck_in_error = True
        with pytest.raises(TimeoutError):
            protocol.wait_until({DfuState.UPLOAD_IDLE}, timeout_ms=50)

    def test_custom_budget_from_timings(self, device):
        device.stuck_in_error = True
        protocol = device.protocol(DfuTimings().with_idle_wait(100))
        with pytest.raises(DfuTimeoutError):
            protocol.wait_until(DOWNLOAD_READY_STATES)
        assert device.clock.now < 0.2


def test_failed_transfer_raises_transport_error(device, protocol):
    device.fail_requests = {DFU_GETSTATUS}
    with pytest.raises(TransportError):
        protocol.get_status()


def test_failed_upload_raises_transport_error(device, protocol):
    device.fail_requests = {DFU_UPLOAD}
    with pytest.raises(TransportError):
        protocol.read_block(2, 16)


def test_short_write_raises_transport_error():
    class ShortWriteDevice(FakeDfuDevice):
        def _handle_out(self, request, value, payload):
            written = super()._handle_out(request, value, payload)
            return written - 1 if request == DFU_DNLOAD and value >= 2 else written

    device = ShortWriteDevice()
    protocol = device.protocol()
    protocol.set_address_pointer(FLASH_BASE)
    with pytest.raises(TransportError, match="short write"):
        protocol.write_block(2, b"\x00" * 8)


class TestLeave:
    def test_leave_sends_zero_length_download(self, device, protocol):
        status = protocol.leave()
        assert device.requests_of(DFU_DNLOAD)[-1] == (Direction.OUT, DFU_DNLOAD, 0, b"")
        assert status.state == DfuState.MANIFEST_SYNC

    def test_leave_reset_surfaces_as_transport_error(self, device, protocol):
        device.reset_on_leave = True
        with pytest.raises(TransportError):
            protocol.leave()
