import pytest

from stm32_dfu_flasher.targets import (
    FlashTarget,
    STM32F405_FLASH_LAYOUT,
    get_target,
    list_targets,
    parse_memory_layout,
)


class TestParseMemoryLayout:
    def test_stm32f405_internal_flash(self):
        layout = parse_memory_layout(STM32F405_FLASH_LAYOUT)

        assert layout.name == "Internal Flash"
        assert len(layout.sectors) == 12
        assert layout.start_address == 0x08000000
        assert layout.total_size == 1024 * 1024
        assert layout.end_address == 0x08100000
        assert [s.size // 1024 for s in layout.sectors[:6]] == [16, 16, 16, 16, 64, 128]
        assert layout.sectors[4].address == 0x08010000
        assert layout.sectors[5].address == 0x08020000

    def test_sector_access_letters(self):
        layout = parse_memory_layout("@Option Bytes  /0x1FFFC000/01*016 e")
        sector = layout.sectors[0]
        assert sector.size == 16
        assert sector.readable and sector.writable
        assert not sector.erasable

        flash = parse_memory_layout(STM32F405_FLASH_LAYOUT).sectors[0]
        assert flash.readable and flash.erasable and flash.writable

    def test_multiple_segments(self):
        layout = parse_memory_layout("@SRAM /0x20000000/02*001Kg/0x20010000/01*002Kg")
        assert [s.address for s in layout.sectors] == [0x20000000, 0x20000400, 0x20010000]
        assert layout.total_size == 4096

    def test_sector_at(self):
        layout = parse_memory_layout(STM32F405_FLASH_LAYOUT)
        assert layout.sector_at(0x08000000).size == 16 * 1024
        assert layout.sector_at(0x08011000).size == 64 * 1024
        assert layout.sector_at(0x08100000) is None

    @pytest.mark.parametrize("text", [
        "",
        "Internal Flash /0x08000000/04*016Kg",
        "@Internal Flash",
        "@Internal Flash /zz/04*016Kg",
        "@Internal Flash /0x08000000/04x016Kg",
        "@Internal Flash /0x08000000/04*016Kz",
    ])
    def test_malformed(self, text):
        with pytest.raises(ValueError):
            parse_memory_layout(text)


class TestFlashTarget:
    def test_address_of(self):
        target = FlashTarget(name="t", base_address=0x08000000, size=0x10000)
        assert target.address_of(0) == 0x08000000
        assert target.address_of(3) == 0x08001800
        with pytest.raises(ValueError):
            target.address_of(-1)

    def test_contains(self):
        target = FlashTarget(name="t", base_address=0x08000000, size=0x1000)
        assert target.contains(0x08000000, 0x1000)
        assert target.contains(0x08000FFF)
        assert not target.contains(0x08000FFF, 2)
        assert not target.contains(0x07FFFFFF)
        assert target.contains(0x08001000, 0)
        assert not target.contains(0x08000000, -1)


class TestRegistry:
    def test_known_targets(self):
        assert list_targets() == ["stm32f405-internal", "stm32f4-option-bytes"]

    def test_internal_flash_target(self):
        target = get_target("stm32f405-internal")
        assert target.base_address == 0x08000000
        assert target.size == 1024 * 1024
        assert target.writable
        assert target.layout is not None

    def test_option_bytes_target(self):
        target = get_target("STM32F4-Option-Bytes")
        assert target.base_address == 0x1FFFC000
        assert target.size == 16
        assert not target.writable

    def test_unknown_target(self):
        assert get_target("nrf52") is None
