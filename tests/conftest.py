"""
Shared fixtures for wageflow tests.

Provides:
 - FakeClock: injectable clock so hour-long sessions and expiry run instantly
 - In-memory StorageManager
 - A LedgerSimulator and an EngineConfig with zero polling delays
"""

import pytest
import pytest_asyncio

from wageflow.config import HOUR_SEC, EngineConfig
from wageflow.ledger_simulator import LedgerSimulator
from wageflow.storage import StorageManager

# 2023-11-15 09:00:00 UTC, nine hours after a UTC midnight
START_TIME = 1_700_006_400.0 + 9 * HOUR_SEC


class FakeClock:
    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return EngineConfig(
        verify_attempts=3,
        verify_interval_sec=0.0,
        read_retry_attempts=2,
        read_retry_base_delay=0.0,
    )


@pytest_asyncio.fixture
async def storage():
    sm = StorageManager(":memory:")
    await sm.initialize()
    yield sm
    await sm.close()


@pytest.fixture
def ledger():
    return LedgerSimulator()
