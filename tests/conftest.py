import pytest

from fakes import Capture, FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def capture():
    return Capture()
