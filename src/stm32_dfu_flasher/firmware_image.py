"""
Flat binary firmware images.

A FirmwareImage wraps a byte stream and hands it out as consecutive
BLOCK_SIZE blocks. The stream is read strictly front to back and never
seeked, so pipes and sockets work as well as files. A SHA-256 of
everything consumed is computed on the way through.
"""

import hashlib
import logging
import os
import struct
from io import BytesIO
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, Optional, Tuple, Union

from .config import BLOCK_SIZE
from .protocol.errors import FirmwareImageError

logger = logging.getLogger(__name__)

VECTOR_TABLE_HEADER = 8  # initial SP + reset handler

# Broad SRAM window; device-specific sizes vary.
SRAM_START = 0x20000000
SRAM_END = 0x20080000


class FirmwareImage:
    """
    Sequential view of a firmware byte stream.

    Example:
        with FirmwareImage.from_path("app.bin") as image:
            for index, block in image.blocks():
                ...
            print(image.sha256)
    """

    def __init__(
        self,
        stream: BinaryIO,
        name: str = "<stream>",
        size_hint: Optional[int] = None,
        block_size: int = BLOCK_SIZE,
        owns_stream: bool = False,
    ):
        """
        Args:
            stream: Readable binary stream positioned at the first byte
            name: Label used in logs and reports
            size_hint: Total size when known up front (lets callers reject
                oversized images before touching the device)
            block_size: Block length; the final block may be shorter
            owns_stream: Close the stream when the image is closed
        """
        if block_size <= 0:
            raise ValueError("block_size must be positive")
        self._stream = stream
        self.name = name
        self.size_hint = size_hint
        self.block_size = block_size
        self._owns_stream = owns_stream
        self._hash = hashlib.sha256()
        self._consumed = False
        self.bytes_read = 0

    @classmethod
    def from_path(cls, path: Union[str, Path], block_size: int = BLOCK_SIZE) -> "FirmwareImage":
        """
        Open a firmware file for streaming.

        Raises:
            FirmwareImageError: If the file cannot be opened
        """
        path = Path(path)
        try:
            size = os.path.getsize(path)
            stream = open(path, "rb")
        except OSError as e:
            raise FirmwareImageError(f"Cannot open firmware image {path}: {e}") from e
        return cls(stream, name=str(path), size_hint=size, block_size=block_size, owns_stream=True)

    @classmethod
    def from_bytes(cls, data: bytes, name: str = "<bytes>", block_size: int = BLOCK_SIZE) -> "FirmwareImage":
        return cls(BytesIO(bytes(data)), name=name, size_hint=len(data), block_size=block_size, owns_stream=True)

    def _read_block(self) -> bytes:
        # Non-file streams may return short reads before EOF
        chunks = []
        remaining = self.block_size
        while remaining > 0:
            try:
                chunk = self._stream.read(remaining)
            except OSError as e:
                raise FirmwareImageError(f"Error reading {self.name}: {e}") from e
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def blocks(self) -> Iterator[Tuple[int, bytes]]:
        """
        Yield (block_index, data) pairs from the start of the stream.

        Every block is block_size bytes except possibly the last one. An
        empty stream yields nothing. The stream can only be consumed once.

        Raises:
            FirmwareImageError: On a second iteration or a read failure
        """
        if self._consumed:
            raise FirmwareImageError(f"Firmware image {self.name} was already consumed")
        self._consumed = True

        index = 0
        while True:
            block = self._read_block()
            if not block:
                break
            self._hash.update(block)
            self.bytes_read += len(block)
            yield index, block
            index += 1
            if len(block) < self.block_size:
                break

        logger.debug(f"{self.name}: {index} blocks, {self.bytes_read} bytes read")

    @property
    def sha256(self) -> str:
        """Hex digest of the bytes consumed so far."""
        return self._hash.hexdigest()

    @property
    def block_count(self) -> Optional[int]:
        """Number of blocks implied by size_hint, if known."""
        if self.size_hint is None:
            return None
        return (self.size_hint + self.block_size - 1) // self.block_size

    def close(self) -> None:
        if self._owns_stream:
            self._stream.close()

    def __enter__(self) -> "FirmwareImage":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def read_image_header(path: Union[str, Path], length: int = VECTOR_TABLE_HEADER) -> bytes:
    """Read the first `length` bytes of a firmware file."""
    try:
        with open(path, "rb") as f:
            return f.read(length)
    except OSError as e:
        raise FirmwareImageError(f"Cannot read firmware image {path}: {e}") from e


def analyze_vector_table(
    header: bytes,
    *,
    start_address: int,
    image_len: Optional[int] = None,
    flash_limit: Optional[int] = None,
) -> Dict[str, str]:
    """
    Heuristic check that an image looks like a Cortex-M application linked
    for `start_address`.

    Only the first 8 bytes are needed:
    - vector[0] initial SP should be in SRAM (0x2000_0000..0x2008_0000, broad)
    - vector[1] reset handler should be Thumb (LSB=1) and point into the
      programmed region

    Args:
        header: At least the first 8 bytes of the image
        start_address: Address the image will be flashed to
        image_len: Full image length (defaults to len(header))
        flash_limit: Upper bound for the programmed span, e.g. target size

    Returns:
        Dict of string fields; "plausible" is "yes" or "no", "reason" explains
    """
    length = len(header) if image_len is None else image_len
    res: Dict[str, str] = {
        "plausible": "no",
        "reason": "",
        "start_address": f"0x{start_address:08X}",
        "image_len": str(length),
    }
    if len(header) < VECTOR_TABLE_HEADER:
        res["reason"] = "image too small to contain a vector table"
        return res

    sp, reset = struct.unpack_from("<II", header, 0)
    reset_addr = reset & ~1
    res["sp"] = f"0x{sp:08X}"
    res["reset"] = f"0x{reset:08X}"
    res["reset_thumb"] = "yes" if (reset & 1) else "no"

    if not SRAM_START <= sp <= SRAM_END:
        res["reason"] = f"initial SP not in expected SRAM range (0x{SRAM_START:08X}..0x{SRAM_END:08X})"
        return res

    if (reset & 1) == 0:
        res["reason"] = "reset handler is not Thumb (LSB is 0)"
        return res

    span = length if flash_limit is None else min(length, flash_limit)
    high = start_address + span
    if not start_address <= reset_addr < high:
        res["reason"] = f"reset handler not within [{start_address:#010x}, {high:#010x})"
        return res

    res["plausible"] = "yes"
    res["reason"] = "vector table looks consistent for start address"
    return res
