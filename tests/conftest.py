import pytest


@pytest.fixture
def anyio_backend():
    # Pipeline timers are plain asyncio tasks
    return "asyncio"
