"""
High-level flash programming on top of the DFU protocol engine.

FlashProgrammer sequences engine calls into whole-image operations:

- erase(): mass erase with start/complete events
- write_image(): block-by-block download, each block read back and compared
- read_flash(): lazy block-by-block read-out of a memory region
- mass_erase_and_flash(): erase, point at the target base, write

Progress goes to an optional EventSink passed at construction. Every error
is reported to the sink and then re-raised unchanged; nothing is rolled back.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, Optional, Tuple

from .config import BLOCK_SIZE, FIRST_DATA_BLOCK
from .firmware_image import FirmwareImage
from .protocol.dfu_protocol import DfuProtocol, UPLOAD_READY_STATES
from .protocol.errors import DfuError, FirmwareImageError, TransportError, VerificationError
from .targets import FlashTarget

logger = logging.getLogger(__name__)

HEX_DUMP_WIDTH = 16
HEX_DUMP_GROUP = 4


class EventKind(Enum):
    """Kinds of progress events emitted by FlashProgrammer."""
    ERASE_STARTED = "erase_started"
    ERASE_COMPLETE = "erase_complete"
    BLOCK_VERIFIED = "block_verified"
    BLOCK_READ = "block_read"
    ERROR = "error"


@dataclass(frozen=True)
class FlashEvent:
    """
    One progress notification.

    Attributes:
        kind: What happened
        message: Human-readable line
        block_index: Image-relative block, for block events
        address: Absolute address of the block, for block events
        bytes_done: Bytes written or read so far in the current operation
        total: Total bytes expected, when known
    """
    kind: EventKind
    message: str
    block_index: Optional[int] = None
    address: Optional[int] = None
    bytes_done: int = 0
    total: Optional[int] = None


EventSink = Callable[[FlashEvent], None]


@dataclass(frozen=True)
class WriteReport:
    """Outcome of a verified image write."""
    base_address: int
    blocks: int
    bytes_written: int
    sha256: str

    @property
    def end_address(self) -> int:
        return self.base_address + self.bytes_written


def _first_mismatch(expected: bytes, actual: bytes) -> int:
    for offset, (a, b) in enumerate(zip(expected, actual)):
        if a != b:
            return offset
    return min(len(expected), len(actual))


def format_hex_dump(data: bytes, start_address: int = 0) -> str:
    """
    Render bytes as an address-prefixed hex dump.

    Each line holds 16 bytes as "0xAAAAAAAA: " followed by lowercase hex,
    with two spaces between 4-byte groups.
    """
    lines = []
    for offset in range(0, len(data), HEX_DUMP_WIDTH):
        row = data[offset:offset + HEX_DUMP_WIDTH]
        groups = [
            row[i:i + HEX_DUMP_GROUP].hex()
            for i in range(0, len(row), HEX_DUMP_GROUP)
        ]
        lines.append(f"0x{start_address + offset:08X}: " + "  ".join(groups))
    return "\n".join(lines)


class FlashProgrammer:
    """
    Whole-image operations against one flash target.

    Example:
        programmer = FlashProgrammer(protocol, get_target("stm32f405-internal"))
        with FirmwareImage.from_path("app.bin") as image:
            report = programmer.mass_erase_and_flash(image)
    """

    def __init__(
        self,
        protocol: DfuProtocol,
        target: FlashTarget,
        event_sink: Optional[EventSink] = None,
        block_size: int = BLOCK_SIZE,
    ):
        self.protocol = protocol
        self.target = target
        self.event_sink = event_sink
        self.block_size = block_size

    def _emit(self, kind: EventKind, message: str, **kwargs) -> None:
        if kind is EventKind.ERROR:
            logger.error(message)
        else:
            logger.debug(message)
        if self.event_sink is not None:
            self.event_sink(FlashEvent(kind=kind, message=message, **kwargs))

    @contextmanager
    def _reporting_errors(self):
        try:
            yield
        except DfuError as e:
            self._emit(EventKind.ERROR, str(e))
            raise

    def _check_fits(self, image: FirmwareImage, base_address: int) -> None:
        if image.size_hint is None:
            return
        if not self.target.contains(base_address, image.size_hint):
            raise FirmwareImageError(
                f"Image {image.name} ({image.size_hint} bytes at 0x{base_address:08X}) "
                f"does not fit target {self.target.name} "
                f"[0x{self.target.base_address:08X}, 0x{self.target.end_address:08X})"
            )

    def erase(self) -> None:
        """Mass erase the device."""
        with self._reporting_errors():
            self._emit(EventKind.ERASE_STARTED, "Erasing flash...")
            self.protocol.mass_erase()
            self._emit(EventKind.ERASE_COMPLETE, "Mass erase complete")

    def write_image(self, image: FirmwareImage, base_address: Optional[int] = None) -> WriteReport:
        """
        Write and verify every block of `image`.

        The device address pointer must already point at `base_address`.
        Block k goes out as wire block k + 2, then the same wire block is
        read back and compared.

        Args:
            image: Firmware stream, consumed sequentially
            base_address: Address of image block 0 (defaults to target base)

        Returns:
            WriteReport with block/byte counts and SHA-256 of the image

        Raises:
            FirmwareImageError: If the image does not fit the target
            VerificationError: If a block reads back differently
            TransportError, ProtocolStateError, DfuTimeoutError: From the engine
        """
        base = self.target.base_address if base_address is None else base_address
        blocks = 0
        written = 0

        with self._reporting_errors():
            self._check_fits(image, base)

            for index, block in image.blocks():
                address = base + index * self.block_size
                if not self.target.contains(address, len(block)):
                    raise FirmwareImageError(
                        f"Image {image.name} overruns target {self.target.name} "
                        f"at 0x{address:08X}"
                    )

                wire_block = FIRST_DATA_BLOCK + index
                self.protocol.write_block(wire_block, block)
                self.protocol.wait_until(UPLOAD_READY_STATES)
                readback = self.protocol.read_block(wire_block, len(block))

                if readback != block:
                    raise VerificationError(
                        index,
                        address=address,
                        offset=_first_mismatch(block, readback),
                    )

                blocks += 1
                written += len(block)
                self._emit(
                    EventKind.BLOCK_VERIFIED,
                    f"Block {index} verified at 0x{address:08X} ({len(block)} bytes)",
                    block_index=index,
                    address=address,
                    bytes_done=written,
                    total=image.size_hint,
                )

        logger.info(f"Wrote and verified {written} bytes in {blocks} blocks from {image.name}")
        return WriteReport(
            base_address=base,
            blocks=blocks,
            bytes_written=written,
            sha256=image.sha256,
        )

    def read_flash(
        self,
        size: Optional[int] = None,
        base_address: Optional[int] = None,
    ) -> Iterator[Tuple[int, bytes]]:
        """
        Lazily read `size` bytes starting at `base_address`.

        Yields (address, data) pairs: full blocks first, then one short
        remainder block if `size` is not a multiple of the block size. The
        address pointer is set and the device brought to an upload-ready
        state once, before the first read. Calling again restarts from the
        beginning.

        Args:
            size: Bytes to read (defaults to the whole target)
            base_address: Start address (defaults to target base)

        Raises:
            ValueError: If the region lies outside the target
            TransportError: On a short read
        """
        base = self.target.base_address if base_address is None else base_address
        length = self.target.size - (base - self.target.base_address) if size is None else size
        if length < 0 or not self.target.contains(base, length):
            raise ValueError(
                f"Region 0x{base:08X}+{length} is outside target {self.target.name}"
            )

        with self._reporting_errors():
            self.protocol.set_address_pointer(base)
            self.protocol.wait_until(UPLOAD_READY_STATES)

            done = 0
            index = 0
            while done < length:
                chunk = min(self.block_size, length - done)
                address = base + done
                data = self.protocol.read_block(FIRST_DATA_BLOCK + index, chunk)
                if len(data) != chunk:
                    raise TransportError(
                        f"Short read at 0x{address:08X}: {len(data)}/{chunk} bytes"
                    )
                done += chunk
                self._emit(
                    EventKind.BLOCK_READ,
                    f"Read block {index} at 0x{address:08X} ({chunk} bytes)",
                    block_index=index,
                    address=address,
                    bytes_done=done,
                    total=length,
                )
                yield address, data
                index += 1

    def mass_erase_and_flash(self, image: FirmwareImage, base_address: Optional[int] = None) -> WriteReport:
        """
        Erase, set the address pointer and write `image` with verification.

        An image that is known to be too large is rejected before the erase.
        A failure part-way leaves the device erased or partially written.
        """
        base = self.target.base_address if base_address is None else base_address
        with self._reporting_errors():
            self._check_fits(image, base)

        self.erase()
        with self._reporting_errors():
            self.protocol.set_address_pointer(base)
        return self.write_image(image, base_address=base)
