"""
Engine fixtures for integration tests.

Wires the channel service, tracker, negotiator and reconciler over one
in-memory database and one LedgerSimulator, all sharing a FakeClock.
"""

import pytest
import pytest_asyncio

from wageflow.channels import ChannelService
from wageflow.closure import ClosureNegotiator
from wageflow.ledger_gateway import RetryingLedgerGateway
from wageflow.reconciler import ReconciliationScheduler
from wageflow.tracker import WorkSessionTracker

SPONSOR = "acme-corp"
WORKER = "alice"


@pytest.fixture
def gateway(ledger, config):
    return RetryingLedgerGateway(ledger, attempts=config.read_retry_attempts, base_delay=0.0)


@pytest.fixture
def channels(storage, gateway, config, clock):
    return ChannelService(storage, gateway, config, clock=clock)


@pytest.fixture
def tracker(storage, config, clock):
    return WorkSessionTracker(storage, config, clock=clock)


@pytest.fixture
def negotiator(storage, gateway, tracker, config, clock):
    return ClosureNegotiator(storage, gateway, tracker, config, clock=clock)


@pytest.fixture
def reconciler(storage, gateway, negotiator, config, clock):
    return ReconciliationScheduler(storage, gateway, negotiator, config, clock=clock)


@pytest_asyncio.fixture
async def make_channel(channels, ledger):
    """Factory: fund a ledger channel and return the confirmed (Active) record."""

    async def _make(escrow: float = 240.0, rate: float = 15.0, **kwargs) -> dict:
        ledger_id = ledger.fund_channel(SPONSOR, WORKER, escrow)
        return await channels.create_channel(
            SPONSOR, WORKER, rate, escrow, ledger_channel_id=ledger_id, **kwargs,
        )

    return _make


@pytest.fixture
def work(tracker, clock):
    """Clock in, let ``seconds`` pass, clock out."""

    async def _work(channel_id: str, seconds: float, worker_id: str = WORKER) -> dict:
        session = await tracker.clock_in(worker_id, channel_id)
        clock.advance(seconds)
        return await tracker.clock_out(worker_id, session["session_id"])

    return _work
