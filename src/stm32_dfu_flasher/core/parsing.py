"""
Centralized parsing helpers for addresses, sizes and device IDs.

The CLI and any scripted caller must use these rather than re-implement.
"""

from typing import Optional, Tuple

_SIZE_SUFFIXES = {"K": 1024, "M": 1024 * 1024}


def parse_address(value: Optional[str]) -> Optional[int]:
    """
    Parse an address or offset.

    Accepts:
        - Decimal: "4096"
        - Hex with 0x prefix: "0x08000000" or "0X08000000"
        - Hex with h suffix: "8000000h"
        - None or "" for "use the default"

    Raises:
        ValueError: If the value cannot be parsed or is outside 32 bits
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        if value.lower().startswith("0x"):
            result = int(value, 16)
        elif value.lower().endswith("h"):
            result = int(value[:-1], 16)
        else:
            result = int(value)
    except ValueError:
        raise ValueError(
            f"Invalid address '{value}'. Use decimal (4096), hex (0x1000), or suffix (1000h)."
        )

    if not 0 <= result <= 0xFFFFFFFF:
        raise ValueError(f"Address '{value}' is outside the 32-bit range.")
    return result


def parse_size(value: Optional[str]) -> Optional[int]:
    """
    Parse a byte count with an optional K/M (binary) suffix.

    Accepts "16384", "0x4000", "16K" and "1M"; fractions are rejected.

    Raises:
        ValueError: If the value is malformed or negative
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    multiplier = 1
    number = value
    suffix = value[-1].upper()
    if suffix in _SIZE_SUFFIXES:
        multiplier = _SIZE_SUFFIXES[suffix]
        number = value[:-1].strip()

    try:
        base = parse_address(number)
    except ValueError:
        raise ValueError(f"Invalid size '{value}'. Use bytes (4096), hex (0x1000), 16K or 1M.")
    if base is None:
        raise ValueError(f"Invalid size '{value}'.")
    return base * multiplier


def parse_device_id(value: str) -> Tuple[int, int]:
    """
    Parse "VID:PID" (hex, with or without 0x) into a tuple.

    Example:
        parse_device_id("0483:df11") -> (0x0483, 0xDF11)

    Raises:
        ValueError: If the value is not two 16-bit hex numbers
    """
    parts = value.strip().split(":")
    if len(parts) != 2:
        raise ValueError(f"Invalid device ID '{value}'. Use VID:PID like 0483:DF11.")

    ids = []
    for part in parts:
        part = part.strip()
        if part.lower().startswith("0x"):
            part = part[2:]
        try:
            number = int(part, 16)
        except ValueError:
            raise ValueError(f"Invalid device ID '{value}'. Use VID:PID like 0483:DF11.")
        if not 0 <= number <= 0xFFFF:
            raise ValueError(f"Device ID component '{part}' exceeds 16 bits.")
        ids.append(number)

    return ids[0], ids[1]


def format_region(start: int, length: int) -> str:
    """Half-open address range label, e.g. "0x08000000-0x08004000"."""
    return f"0x{start:08X}-0x{start + length:08X}"
