import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent))

from fake_device import FakeDfuDevice  # noqa: E402

from stm32_dfu_flasher import session as session_module  # noqa: E402


@pytest.fixture
def device():
    return FakeDfuDevice()


@pytest.fixture
def protocol(device):
    return device.protocol()


@pytest.fixture(autouse=True)
def _no_leaked_sessions():
    yield
    with session_module._registry_lock:
        session_module._active_sessions.clear()
