"""
STM32 DFU Flasher - firmware programming for STM32 DfuSe bootloaders over USB

Erase, write with read-back verification, and read-out of STM32 flash using
the USB DFU 1.1 class protocol with ST's DfuSe extensions.
"""

__version__ = "0.1.0"

from stm32_dfu_flasher.protocol import DfuProtocol, PyUSBTransport
from stm32_dfu_flasher.flasher import FlashProgrammer
from stm32_dfu_flasher.session import DfuSession

__all__ = [
    "DfuProtocol",
    "PyUSBTransport",
    "FlashProgrammer",
    "DfuSession",
    "__version__",
]
