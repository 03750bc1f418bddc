import os

# Keep tests from installing global instrumentation
os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest

from utils import RetryHelper


class RecordingSleeper:
    """Stands in for asyncio.sleep and remembers requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def sleeper():
    return RecordingSleeper()


@pytest.fixture
def retry_helper(sleeper):
    return RetryHelper(verbose=True, sleeper=sleeper)
