"""
Flash target registry for STM32 DfuSe bootloaders.

Provides a single source of truth for:
- Memory regions the flasher may address (base address, size)
- Block-to-address arithmetic used by the flash programmer
- Parsing of DfuSe memory-layout strings reported in iInterface descriptors

Usage:
    from stm32_dfu_flasher.targets import list_targets, get_target

    target = get_target("stm32f405-internal")
    target.address_of(3)  # 0x08001800
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .config import BLOCK_SIZE

# "@Internal Flash  /0x08000000/04*016Kg,01*064Kg,07*128Kg"
STM32F405_FLASH_LAYOUT = "@Internal Flash  /0x08000000/04*016Kg,01*064Kg,07*128Kg"
STM32F4_OPTION_BYTES_LAYOUT = "@Option Bytes  /0x1FFFC000/01*016 e"

_SECTOR_RE = re.compile(r"^(\d+)\*(\d+)([ KM]?)([a-g])$")
_UNIT_MULTIPLIER = {"": 1, " ": 1, "K": 1024, "M": 1024 * 1024}

# Sector type letter: a..g encodes a bitmask of the three access bits
_READABLE = 0x1
_ERASABLE = 0x2
_WRITABLE = 0x4


@dataclass(frozen=True)
class Sector:
    """One contiguous sector of a DfuSe memory segment."""
    address: int
    size: int
    kind: str = "g"

    @property
    def _bits(self) -> int:
        return ord(self.kind) - ord("a") + 1

    @property
    def readable(self) -> bool:
        return bool(self._bits & _READABLE)

    @property
    def erasable(self) -> bool:
        return bool(self._bits & _ERASABLE)

    @property
    def writable(self) -> bool:
        return bool(self._bits & _WRITABLE)

    @property
    def end_address(self) -> int:
        return self.address + self.size


@dataclass(frozen=True)
class MemoryLayout:
    """Parsed DfuSe memory layout (one alternate setting)."""
    name: str
    sectors: Tuple[Sector, ...]

    @property
    def start_address(self) -> int:
        return self.sectors[0].address if self.sectors else 0

    @property
    def total_size(self) -> int:
        return sum(s.size for s in self.sectors)

    @property
    def end_address(self) -> int:
        return self.sectors[-1].end_address if self.sectors else 0

    def sector_at(self, address: int) -> Optional[Sector]:
        for sector in self.sectors:
            if sector.address <= address < sector.end_address:
                return sector
        return None


def parse_memory_layout(text: str) -> MemoryLayout:
    """
    Parse a DfuSe layout string.

    Format: "@<name>/<addr>/<count>*<size><unit><type>[,...][/<addr>/...]"
    where unit is ' ', 'K' or 'M' and type is a letter a..g.

    Raises:
        ValueError: If the string is not a DfuSe layout
    """
    if not text or not text.startswith("@"):
        raise ValueError(f"Not a DfuSe memory layout: {text!r}")

    parts = text[1:].split("/")
    if len(parts) < 3 or len(parts) % 2 != 1:
        raise ValueError(f"Malformed DfuSe memory layout: {text!r}")

    name = parts[0].strip()
    sectors: List[Sector] = []
    for addr_text, spec_text in zip(parts[1::2], parts[2::2]):
        try:
            address = int(addr_text.strip(), 16)
        except ValueError:
            raise ValueError(f"Invalid segment address {addr_text!r} in {text!r}")
        for item in spec_text.split(","):
            match = _SECTOR_RE.match(item.strip())
            if match is None:
                raise ValueError(f"Invalid sector description {item!r} in {text!r}")
            count, size, unit, kind = match.groups()
            sector_size = int(size) * _UNIT_MULTIPLIER[unit]
            for _ in range(int(count)):
                sectors.append(Sector(address=address, size=sector_size, kind=kind))
                address += sector_size

    return MemoryLayout(name=name, sectors=tuple(sectors))


@dataclass(frozen=True)
class FlashTarget:
    """
    Addressable memory region for flashing and read-out.

    Attributes:
        name: Registry key
        base_address: Address of image block 0
        size: Region length in bytes
        description: Human-readable summary
        layout: Sector layout, when known
        writable: False for regions the flasher must only read
    """
    name: str
    base_address: int
    size: int
    description: str = ""
    layout: Optional[MemoryLayout] = field(default=None, compare=False)
    writable: bool = True

    @property
    def end_address(self) -> int:
        return self.base_address + self.size

    def address_of(self, block_index: int, block_size: int = BLOCK_SIZE) -> int:
        """Absolute address of an image-relative block."""
        if block_index < 0:
            raise ValueError(f"Block index must be non-negative: {block_index}")
        return self.base_address + block_index * block_size

    def contains(self, address: int, length: int = 1) -> bool:
        """Whether [address, address + length) lies inside the region."""
        if length < 0:
            return False
        return self.base_address <= address and address + length <= self.end_address


def target_from_layout(name: str, layout_string: str, description: str = "", writable: bool = True) -> FlashTarget:
    """Build a FlashTarget spanning a whole DfuSe layout."""
    layout = parse_memory_layout(layout_string)
    return FlashTarget(
        name=name,
        base_address=layout.start_address,
        size=layout.total_size,
        description=description or layout.name,
        layout=layout,
        writable=writable,
    )


TARGETS: Dict[str, FlashTarget] = {
    "stm32f405-internal": target_from_layout(
        "stm32f405-internal",
        STM32F405_FLASH_LAYOUT,
        description="STM32F405 internal flash (4x16K, 1x64K, 7x128K)",
    ),
    "stm32f4-option-bytes": target_from_layout(
        "stm32f4-option-bytes",
        STM32F4_OPTION_BYTES_LAYOUT,
        description="STM32F4 option bytes (read-out only)",
        writable=False,
    ),
}


def list_targets() -> List[str]:
    """Get list of all registered target names."""
    return list(TARGETS.keys())


def get_target(name: str) -> Optional[FlashTarget]:
    """
    Get target by name (case-insensitive).

    Returns:
        FlashTarget or None if not found
    """
    return TARGETS.get(name.strip().lower())


def get_all_targets() -> Dict[str, FlashTarget]:
    return dict(TARGETS)
