import pytest

from tinycheck import DeviceSession


@pytest.fixture(autouse=True)
def device_session():
    with DeviceSession("native:0") as session:
        yield session
