"""Shared fixtures for tests that drive the real worker thread."""

import time
from typing import Callable, Iterator

import pytest

from cux_lib import ECUController
from fakes.fake_link import FakeDeviceLink


def wait_until(condition: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``condition`` until it is true or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()


@pytest.fixture
def fake_link() -> FakeDeviceLink:
    """FakeDeviceLink with a small per-read delay so polling does not spin."""
    return FakeDeviceLink(read_delay_s=0.001)


@pytest.fixture
def controller(fake_link) -> Iterator[ECUController]:
    """Controller bound to ``fake_link``; the worker is shut down afterwards."""
    ctrl = ECUController(lambda: fake_link, address="/dev/fake")
    yield ctrl
    ctrl.shutdown()
