"""
test_balance_writers.py - Single-writer rule for the dual balance

Tests:
 - Each writer refuses balance columns it does not own (InvariantViolation)
 - Accrual clamps to remaining escrow and only touches Active channels
 - Payout zeroes off_ledger_balance only on Closing -> Closed
 - Ledger mirror never changes off_ledger_balance
"""

import pytest

from wageflow.errors import InvariantViolation
from wageflow.storage import AccrualWriter, LedgerMirrorWriter, PayoutWriter

pytestmark = pytest.mark.asyncio

NOW = 1_700_000_000.0


async def _active_channel(storage, channel_id="ch-1", escrow=240.0, rate=15.0):
    async with storage.transaction():
        await storage.channels.create_draft(channel_id, "acme", "alice", rate, escrow, 8.0, NOW)
        await storage.channels.activate(channel_id, "L" + channel_id, NOW)
    return await storage.channels.get(channel_id)


class TestColumnOwnership:

    async def test_accrual_cannot_touch_mirror(self, storage):
        """Accrual writes never reach the ledger mirror column."""
        await _active_channel(storage)
        writer = storage.accrual_writer()
        with pytest.raises(InvariantViolation):
            async with storage.transaction():
                await writer._assign("ch-1", {"on_ledger_balance": 5.0})
        assert (await storage.channels.get("ch-1"))["on_ledger_balance"] == 0.0

    async def test_mirror_cannot_touch_accrual(self, storage):
        """The mirror writer is refused the accrual column and tells the caller to contact support."""
        await _active_channel(storage)
        writer = storage.mirror_writer()
        with pytest.raises(InvariantViolation) as exc:
            async with storage.transaction():
                await writer._assign("ch-1", {"off_ledger_balance": 5.0})
        assert exc.value.action == "contact_support"

    async def test_payout_cannot_touch_mirror_or_hours(self, storage):
        """Payout owns only the off-ledger balance."""
        await _active_channel(storage)
        writer = storage.payout_writer()
        for column in ("on_ledger_balance", "hours_accumulated"):
            with pytest.raises(InvariantViolation):
                async with storage.transaction():
                    await writer._assign("ch-1", {column: 0.0})

    async def test_declared_ownership(self):
        """Owned columns per writer."""
        assert AccrualWriter.owned_columns == {"off_ledger_balance", "hours_accumulated"}
        assert PayoutWriter.owned_columns == {"off_ledger_balance"}
        assert LedgerMirrorWriter.owned_columns == {"on_ledger_balance"}


class TestAccrual:

    async def test_credit(self, storage):
        """One hour at 15/h moves balance, hours and remaining escrow together."""
        await _active_channel(storage)
        async with storage.transaction():
            credited = await storage.accrual_writer().credit("ch-1", 15.0, 1.0)
        channel = await storage.channels.get("ch-1")
        assert credited == 15.0
        assert channel["off_ledger_balance"] == 15.0
        assert channel["hours_accumulated"] == 1.0
        assert channel["remaining_escrow"] == 225.0

    async def test_clamped_to_escrow(self, storage):
        """Credit stops at the funded amount."""
        await _active_channel(storage, escrow=20.0)
        async with storage.transaction():
            await storage.accrual_writer().credit("ch-1", 15.0, 1.0)
            credited = await storage.accrual_writer().credit("ch-1", 15.0, 1.0)
        channel = await storage.channels.get("ch-1")
        assert credited == 5.0
        assert channel["off_ledger_balance"] == channel["escrow_funded_amount"]

    async def test_negative_credit(self, storage):
        """Balances never decrease through accrual."""
        await _active_channel(storage)
        with pytest.raises(InvariantViolation):
            async with storage.transaction():
                await storage.accrual_writer().credit("ch-1", -1.0, 0.0)

    async def test_not_active(self, storage):
        """Drafts accrue nothing."""
        async with storage.transaction():
            await storage.channels.create_draft("ch-2", "acme", "alice", 15.0, 240.0, 8.0, NOW)
        with pytest.raises(InvariantViolation):
            async with storage.transaction():
                await storage.accrual_writer().credit("ch-2", 15.0, 1.0)


class TestPayoutAndMirror:

    async def test_settle_requires_closing(self, storage):
        """Settlement is a no-op unless the channel is closing."""
        await _active_channel(storage)
        async with storage.transaction():
            await storage.accrual_writer().credit("ch-1", 15.0, 1.0)
            assert await storage.payout_writer().settle("ch-1", "TX", NOW) is False
        assert (await storage.channels.get("ch-1"))["off_ledger_balance"] == 15.0

    async def test_settle_zeroes_balance(self, storage):
        """Closing -> Closed zeroes the accrual and clears the submission slot."""
        await _active_channel(storage)
        async with storage.transaction():
            await storage.accrual_writer().credit("ch-1", 15.0, 1.0)
            await storage.channels.begin_closing("ch-1", "tok", NOW, NOW + 3600)
            assert await storage.payout_writer().settle("ch-1", "TX", NOW + 5) is True
        channel = await storage.channels.get("ch-1")
        assert channel["state"] == "closed"
        assert channel["off_ledger_balance"] == 0.0
        assert channel["settlement_tx_ref"] == "TX"
        assert channel["submission_token"] is None

    async def test_mirror_leaves_off_ledger_alone(self, storage):
        """Mirroring rounds the ledger figure and leaves accrual untouched."""
        await _active_channel(storage)
        async with storage.transaction():
            await storage.accrual_writer().credit("ch-1", 15.0, 1.0)
            await storage.mirror_writer().record("ch-1", 99.1234567, NOW)
        channel = await storage.channels.get("ch-1")
        assert channel["on_ledger_balance"] == 99.123457
        assert channel["off_ledger_balance"] == 15.0
        assert channel["last_ledger_sync"] == NOW
