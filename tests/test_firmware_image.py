import hashlib
import io
import struct

import pytest

from stm32_dfu_flasher.firmware_image import (
    FirmwareImage,
    analyze_vector_table,
    read_image_header,
)
from stm32_dfu_flasher.protocol.errors import FirmwareImageError


class _TrickleStream(io.RawIOBase):
    """Returns at most 100 bytes per read, like a pipe."""

    def __init__(self, data: bytes):
        self._data = data
        self._pos = 0
        self.seeks = 0

    def readable(self):
        return True

    def read(self, size=-1):
        chunk = self._data[self._pos:self._pos + min(size, 100)]
        self._pos += len(chunk)
        return chunk

    def seek(self, *args):
        self.seeks += 1
        raise io.UnsupportedOperation("seek")


def _vector_table(sp: int, reset: int, size: int = 64) -> bytes:
    return struct.pack("<II", sp, reset) + b"\x00" * (size - 8)


def test_blocks_partition_with_short_last_block():
    image = FirmwareImage.from_bytes(b"\x01" * 5000)
    blocks = list(image.blocks())
    assert [i for i, _ in blocks] == [0, 1, 2]
    assert [len(b) for _, b in blocks] == [2048, 2048, 904]
    assert image.bytes_read == 5000


def test_exact_multiple_has_no_empty_trailing_block():
    image = FirmwareImage.from_bytes(b"\x02" * 4096)
    assert [len(b) for _, b in image.blocks()] == [2048, 2048]


def test_empty_image_yields_nothing():
    image = FirmwareImage.from_bytes(b"")
    assert list(image.blocks()) == []
    assert image.sha256 == hashlib.sha256(b"").hexdigest()


def test_short_reads_are_coalesced_without_seeking():
    data = bytes(range(256)) * 20
    stream = _TrickleStream(data)
    image = FirmwareImage(stream)

    blocks = [b for _, b in image.blocks()]

    assert [len(b) for b in blocks] == [2048, 2048, 1024]
    assert b"".join(blocks) == data
    assert stream.seeks == 0
    assert image.size_hint is None
    assert image.block_count is None


def test_second_iteration_is_rejected():
    image = FirmwareImage.from_bytes(b"\x00" * 10)
    list(image.blocks())
    with pytest.raises(FirmwareImageError):
        list(image.blocks())


def test_sha256_covers_consumed_bytes():
    data = b"firmware" * 1000
    image = FirmwareImage.from_bytes(data)
    list(image.blocks())
    assert image.sha256 == hashlib.sha256(data).hexdigest()


def test_from_path(tmp_path):
    path = tmp_path / "app.bin"
    path.write_bytes(b"\xAB" * 3000)

    with FirmwareImage.from_path(path) as image:
        assert image.size_hint == 3000
        assert image.block_count == 2
        assert image.name == str(path)
        assert sum(len(b) for _, b in image.blocks()) == 3000


def test_from_missing_path_raises(tmp_path):
    with pytest.raises(FirmwareImageError):
        FirmwareImage.from_path(tmp_path / "missing.bin")


def test_read_image_header(tmp_path):
    path = tmp_path / "app.bin"
    path.write_bytes(b"\x00\x10\x00\x20\x01\x02\x00\x08rest")
    assert read_image_header(path) == b"\x00\x10\x00\x20\x01\x02\x00\x08"


class TestAnalyzeVectorTable:
    def test_plausible_image(self):
        header = _vector_table(0x20020000, 0x08000189)
        info = analyze_vector_table(header, start_address=0x08000000, image_len=0x4000)
        assert info["plausible"] == "yes"
        assert info["sp"] == "0x20020000"
        assert info["reset_thumb"] == "yes"

    def test_too_small(self):
        info = analyze_vector_table(b"\x00" * 4, start_address=0x08000000)
        assert info["plausible"] == "no"
        assert "too small" in info["reason"]

    def test_sp_outside_sram(self):
        info = analyze_vector_table(_vector_table(0x08000000, 0x08000101), start_address=0x08000000)
        assert info["plausible"] == "no"
        assert "SRAM" in info["reason"]

    def test_reset_not_thumb(self):
        info = analyze_vector_table(_vector_table(0x20001000, 0x08000100), start_address=0x08000000)
        assert info["plausible"] == "no"
        assert "Thumb" in info["reason"]

    def test_reset_linked_for_other_address(self):
        header = _vector_table(0x20001000, 0x08004101)
        info = analyze_vector_table(header, start_address=0x08000000, image_len=0x1000)
        assert info["plausible"] == "no"
        assert "reset handler not within" in info["reason"]

    def test_flash_limit_caps_span(self):
        header = _vector_table(0x20001000, 0x08002001)
        info = analyze_vector_table(
            header, start_address=0x08000000, image_len=0x10000, flash_limit=0x1000
        )
        assert info["plausible"] == "no"
