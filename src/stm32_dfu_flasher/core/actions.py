"""
Core workflow actions for the STM32 DFU flasher.

Each action opens a session, drives the engine, and returns an
OperationResult. DFU errors never escape from here; they become failed
results with the captured log lines attached. WritePermissionError is the
one exception that propagates, so the caller can show its own prompt flow.
"""

import hashlib
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Optional

from ..config import DEFAULT_PRODUCT_ID, DEFAULT_TARGET, DEFAULT_TIMINGS, DEFAULT_VENDOR_ID, DfuTimings
from ..firmware_image import FirmwareImage, analyze_vector_table, read_image_header
from ..flasher import EventSink, FlashProgrammer, format_hex_dump
from ..protocol.errors import DfuError, TransportError
from ..protocol.usb_transport import find_devices
from ..session import DfuSession
from ..targets import FlashTarget, get_target
from .parsing import format_region
from .results import OperationResult
from .safety import SafetyContext, WritePermissionError, require_write_permission

logger = logging.getLogger(__name__)

SessionFactory = Callable[[int, int, DfuTimings], DfuSession]


def open_session(vendor_id: int, product_id: int, timings: DfuTimings) -> DfuSession:
    return DfuSession.open(vendor_id, product_id, timings=timings)


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "stm32_dfu_flasher"):
    """Capture package logs for the duration of an action."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def _failure(operation: str, error: Exception, logs, **kwargs) -> OperationResult:
    if isinstance(error, (DfuError, ValueError)):
        logger.error(f"{operation} failed: {error}")
    else:
        logger.exception(f"{operation} failed")
    result = OperationResult.failure(operation=operation, error=str(error), **kwargs)
    result.logs = logs
    return result


def _resolve_target(name: str) -> FlashTarget:
    target = get_target(name)
    if target is None:
        raise ValueError(f"Unknown target '{name}'. Run 'list-targets' for choices.")
    return target


def list_devices(
    vendor_id: int = DEFAULT_VENDOR_ID,
    product_id: int = DEFAULT_PRODUCT_ID,
) -> OperationResult:
    """
    Enumerate attached DFU devices.

    Returns:
        OperationResult with metadata["devices"]: list of UsbDeviceInfo
    """
    device = f"{vendor_id:04X}:{product_id:04X}"
    with _capture_logs() as logs:
        try:
            devices = find_devices(vendor_id, product_id)
        except DfuError as e:
            return _failure("list_devices", e, logs, device=device)

        result = OperationResult.success(operation="list_devices", device=device)
        result.metadata["devices"] = devices
        if not devices:
            result.add_warning(f"No DFU device found at {device}")
        result.logs = logs
        return result


def read_status(
    vendor_id: int = DEFAULT_VENDOR_ID,
    product_id: int = DEFAULT_PRODUCT_ID,
    timings: DfuTimings = DEFAULT_TIMINGS,
    session_factory: SessionFactory = open_session,
) -> OperationResult:
    """
    Query the device status without changing its state.

    Returns:
        OperationResult with metadata:
            - status: DeviceStatus
            - info: descriptor strings and bootloader version
            - layouts: list of MemoryLayout reported by the device
    """
    device = f"{vendor_id:04X}:{product_id:04X}"
    with _capture_logs() as logs:
        try:
            with session_factory(vendor_id, product_id, timings) as session:
                with session.exclusive() as protocol:
                    status = protocol.get_status()
                info = session.describe()
                layouts = session.memory_layouts()
        except Exception as e:
            return _failure("read_status", e, logs, device=device)

        result = OperationResult.success(operation="read_status", device=device)
        result.metadata["status"] = status
        result.metadata["info"] = info
        result.metadata["layouts"] = layouts
        if status.is_error:
            result.add_warning(
                f"Device is in dfuERROR ({status.status_name}); run clear-status"
            )
        result.logs = logs
        return result


def clear_device_status(
    vendor_id: int = DEFAULT_VENDOR_ID,
    product_id: int = DEFAULT_PRODUCT_ID,
    timings: DfuTimings = DEFAULT_TIMINGS,
    session_factory: SessionFactory = open_session,
    abort: bool = False,
) -> OperationResult:
    """
    Send CLRSTATUS (and optionally ABORT first), then report the new status.
    """
    device = f"{vendor_id:04X}:{product_id:04X}"
    with _capture_logs() as logs:
        try:
            with session_factory(vendor_id, product_id, timings) as session:
                with session.exclusive() as protocol:
                    if abort:
                        protocol.abort()
                    protocol.clear_status()
                    status = protocol.get_status()
        except Exception as e:
            return _failure("clear_status", e, logs, device=device)

        result = OperationResult.success(operation="clear_status", device=device)
        result.metadata["status"] = status
        if status.is_error:
            result.add_warning(f"Device still reports dfuERROR ({status.status_name})")
        result.logs = logs
        return result


def erase_device(
    safety_ctx: SafetyContext,
    vendor_id: int = DEFAULT_VENDOR_ID,
    product_id: int = DEFAULT_PRODUCT_ID,
    timings: DfuTimings = DEFAULT_TIMINGS,
    session_factory: SessionFactory = open_session,
    event_sink: Optional[EventSink] = None,
) -> OperationResult:
    """
    Mass erase the device after the safety gate passes.

    Raises:
        WritePermissionError: If the safety context does not allow the erase
    """
    device = f"{vendor_id:04X}:{product_id:04X}"
    with _capture_logs() as logs:
        try:
            require_write_permission(safety_ctx, operation="mass erase", target="all flash")

            with session_factory(vendor_id, product_id, timings) as session:
                with session.exclusive() as protocol:
                    # Mass erase ignores the target, any entry works here
                    programmer = FlashProgrammer(
                        protocol, _resolve_target(DEFAULT_TARGET), event_sink=event_sink
                    )
                    programmer.erase()
        except WritePermissionError:
            raise
        except Exception as e:
            return _failure("erase", e, logs, device=device)

        result = OperationResult.success(operation="erase", device=device)
        result.logs = logs
        return result


def flash_firmware(
    image_path: str,
    safety_ctx: SafetyContext,
    target_name: str = DEFAULT_TARGET,
    address: Optional[int] = None,
    vendor_id: int = DEFAULT_VENDOR_ID,
    product_id: int = DEFAULT_PRODUCT_ID,
    timings: DfuTimings = DEFAULT_TIMINGS,
    session_factory: SessionFactory = open_session,
    event_sink: Optional[EventSink] = None,
    leave: bool = False,
) -> OperationResult:
    """
    Mass erase, then write and verify a flat binary image.

    Args:
        image_path: Path to the .bin image
        safety_ctx: Write gate (see core.safety)
        target_name: Flash target registry key
        address: Start address (defaults to the target base)
        leave: Start the application after a successful write

    Returns:
        OperationResult with:
            - hashes["sha256"]: hash of the image as written
            - metadata["report"]: WriteReport
            - metadata["vector_table"]: plausibility analysis

    Raises:
        WritePermissionError: If the safety context does not allow the write
    """
    device = f"{vendor_id:04X}:{product_id:04X}"
    with _capture_logs() as logs:
        try:
            target = _resolve_target(target_name)
            base = target.base_address if address is None else address
            safety_ctx.target_writable = target.writable

            with FirmwareImage.from_path(image_path) as image:
                region = format_region(base, image.size_hint or 0)

                vector_table = analyze_vector_table(
                    read_image_header(image_path),
                    start_address=base,
                    image_len=image.size_hint,
                    flash_limit=target.size,
                )
                if image.size_hint == 0:
                    safety_ctx.add_warning("Image is empty; the device will only be erased")
                elif vector_table["plausible"] != "yes":
                    safety_ctx.add_warning(f"Vector table check: {vector_table['reason']}")

                if not target.contains(base, image.size_hint or 0):
                    raise ValueError(
                        f"Image ({image.size_hint} bytes at 0x{base:08X}) does not fit "
                        f"target {target.name}"
                    )

                require_write_permission(
                    safety_ctx,
                    operation="flash",
                    target=target.name,
                    region=region,
                    bytes_length=image.size_hint or 0,
                )

                with session_factory(vendor_id, product_id, timings) as session:
                    with session.exclusive() as protocol:
                        programmer = FlashProgrammer(protocol, target, event_sink=event_sink)
                        report = programmer.mass_erase_and_flash(image, base_address=base)
                        if leave:
                            try:
                                protocol.leave()
                            except TransportError as e:
                                # Bootloader resets into the application
                                logger.info(f"Device left DFU mode ({e})")
        except WritePermissionError:
            raise
        except Exception as e:
            return _failure("flash", e, logs, device=device, target=target_name)

        result = OperationResult.success(
            operation="flash",
            device=device,
            target=target.name,
            region=format_region(base, report.bytes_written),
            bytes_len=report.bytes_written,
        )
        result.hashes["sha256"] = report.sha256
        result.metadata["report"] = report
        result.metadata["vector_table"] = vector_table
        for warning in safety_ctx.warnings:
            result.add_warning(warning)
        result.logs = logs
        return result


def dump_flash(
    output_path: Optional[str] = None,
    target_name: str = DEFAULT_TARGET,
    address: Optional[int] = None,
    size: Optional[int] = None,
    vendor_id: int = DEFAULT_VENDOR_ID,
    product_id: int = DEFAULT_PRODUCT_ID,
    timings: DfuTimings = DEFAULT_TIMINGS,
    session_factory: SessionFactory = open_session,
    event_sink: Optional[EventSink] = None,
    hex_dump: bool = False,
) -> OperationResult:
    """
    Read a memory region.

    Args:
        output_path: Write the bytes here; when None they stay in metadata
        target_name: Flash target registry key
        address: Start address (defaults to the target base)
        size: Byte count (defaults to the rest of the target)
        hex_dump: Also render metadata["hex_dump"]

    Returns:
        OperationResult with hashes["sha256"], metadata["data"] (bytes) and,
        when requested, metadata["hex_dump"] (str)
    """
    device = f"{vendor_id:04X}:{product_id:04X}"
    with _capture_logs() as logs:
        try:
            target = _resolve_target(target_name)
            base = target.base_address if address is None else address

            chunks = []
            with session_factory(vendor_id, product_id, timings) as session:
                with session.exclusive() as protocol:
                    programmer = FlashProgrammer(protocol, target, event_sink=event_sink)
                    for _, data in programmer.read_flash(size=size, base_address=base):
                        chunks.append(data)
            data = b"".join(chunks)

            if output_path:
                Path(output_path).write_bytes(data)
                logger.info(f"Saved {len(data)} bytes to {output_path}")
        except Exception as e:
            return _failure("dump", e, logs, device=device, target=target_name)

        result = OperationResult.success(
            operation="dump",
            device=device,
            target=target.name,
            region=format_region(base, len(data)),
            bytes_len=len(data),
        )
        result.hashes["sha256"] = hashlib.sha256(data).hexdigest()
        result.metadata["data"] = data
        if output_path:
            result.metadata["output_path"] = output_path
        if hex_dump:
            result.metadata["hex_dump"] = format_hex_dump(data, base)
        result.logs = logs
        return result
