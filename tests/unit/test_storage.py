"""
test_storage.py - SQLite schema, constraints and migrations

Tests:
 - Partial unique indexes: one Open session per (worker, channel),
   one Pending closure request per channel
 - CHECK constraint off_ledger_balance <= escrow
 - transaction() rolls back on error
 - Compare-and-swap lifecycle updates report rowcount
 - Older schemas gain the new channel columns on open
 - Submission slot: stale takeover and startup release
"""

import aiosqlite
import pytest

from wageflow.storage import SCHEMA_VERSION, StorageManager

pytestmark = pytest.mark.asyncio

NOW = 1_700_000_000.0


async def _channel(storage, channel_id="ch-1", state="active"):
    async with storage.transaction():
        await storage.channels.create_draft(channel_id, "acme", "alice", 15.0, 240.0, 8.0, NOW)
        if state != "draft":
            await storage.channels.activate(channel_id, "L-" + channel_id, NOW)


class TestConstraints:

    async def test_one_open_session_per_pair(self, storage):
        """The partial unique index allows one open session per worker and channel."""
        await _channel(storage)
        async with storage.transaction():
            await storage.sessions.create("s1", "ch-1", "alice", 15.0, NOW)
        with pytest.raises(aiosqlite.IntegrityError):
            async with storage.transaction():
                await storage.sessions.create("s2", "ch-1", "alice", 15.0, NOW + 1)
        assert len(await storage.sessions.list_open(channel_id="ch-1")) == 1

    async def test_new_session_after_close(self, storage):
        """A closed session frees the pair for a new one."""
        await _channel(storage)
        async with storage.transaction():
            await storage.sessions.create("s1", "ch-1", "alice", 15.0, NOW)
            assert await storage.sessions.close("s1", "completed", NOW + 60, 1 / 60, 0.25)
            await storage.sessions.create("s2", "ch-1", "alice", 15.0, NOW + 120)
        assert await storage.sessions.hours_since("alice", "ch-1", NOW - 1) == pytest.approx(1 / 60)

    async def test_session_close_is_compare_and_swap(self, storage):
        """Only the first close of a session reports success."""
        await _channel(storage)
        async with storage.transaction():
            await storage.sessions.create("s1", "ch-1", "alice", 15.0, NOW)
            assert await storage.sessions.close("s1", "completed", NOW + 60, 0.01, 0.15) is True
            assert await storage.sessions.close("s1", "completed", NOW + 90, 0.02, 0.3) is False
        assert (await storage.sessions.get("s1"))["earnings"] == 0.15

    async def test_one_pending_request_per_channel(self, storage):
        """A second pending request on the channel violates the index."""
        await _channel(storage)
        async with storage.transaction():
            await storage.closure_requests.create("r1", "ch-1", "alice", "worker", 15.0, NOW)
        with pytest.raises(aiosqlite.IntegrityError):
            async with storage.transaction():
                await storage.closure_requests.create("r2", "ch-1", "alice", "worker", 15.0, NOW)

    async def test_balance_cannot_exceed_escrow(self, storage):
        """The CHECK constraint catches writes that bypass the writers."""
        await _channel(storage)
        with pytest.raises(aiosqlite.IntegrityError):
            async with storage.transaction():
                await storage._db.execute(
                    "UPDATE channels SET off_ledger_balance = 241 WHERE channel_id = 'ch-1'"
                )

    async def test_transaction_rolls_back(self, storage):
        """An exception inside the block undoes its writes."""
        await _channel(storage)
        with pytest.raises(RuntimeError):
            async with storage.transaction():
                await storage.sessions.create("s1", "ch-1", "alice", 15.0, NOW)
                raise RuntimeError("abort")
        assert await storage.sessions.get("s1") is None


class TestLifecycleUpdates:

    async def test_activate_only_from_draft(self, storage):
        """Activation is compare-and-swap on the draft state."""
        await _channel(storage, state="draft")
        async with storage.transaction():
            assert await storage.channels.activate("ch-1", "L-1", NOW) is True
            assert await storage.channels.activate("ch-1", "L-2", NOW) is False
        assert (await storage.channels.get_by_ledger_id("L-1"))["state"] == "active"

    async def test_begin_closing_once(self, storage):
        """The first closer owns the slot and sets the deadline."""
        await _channel(storage)
        async with storage.transaction():
            assert await storage.channels.begin_closing("ch-1", "t1", NOW, NOW + 3600) is True
            assert await storage.channels.begin_closing("ch-1", "t2", NOW, NOW + 3600) is False
        channel = await storage.channels.get("ch-1")
        assert channel["submission_token"] == "t1"
        assert channel["expires_at"] == NOW + 3600

    async def test_submission_slot(self, storage):
        """A held slot must be released before anyone else claims it."""
        await _channel(storage)
        async with storage.transaction():
            await storage.channels.begin_closing("ch-1", "t1", NOW, NOW + 3600)
            assert await storage.channels.claim_submission("ch-1", "t2", NOW) is False
            assert await storage.channels.release_submission("ch-1", "t1", NOW) is True
            assert await storage.channels.claim_submission("ch-1", "t2", NOW) is True

    async def test_stale_slot_can_be_taken_over(self, storage):
        """A slot claimed before the staleness cutoff is free for a new submitter."""
        await _channel(storage)
        async with storage.transaction():
            await storage.channels.begin_closing("ch-1", "t1", NOW, NOW + 3600)
            assert await storage.channels.claim_submission("ch-1", "t2", NOW + 10, stale_before=NOW) is False
            assert await storage.channels.claim_submission("ch-1", "t2", NOW + 400, stale_before=NOW + 100) is True
            # The old holder can no longer release it
            assert await storage.channels.release_submission("ch-1", "t1", NOW + 400) is False
        channel = await storage.channels.get("ch-1")
        assert channel["submission_token"] == "t2"
        assert channel["submission_claimed_at"] == NOW + 400

    async def test_release_all_submissions(self, storage):
        """Startup clears every held slot and leaves the channel Closing."""
        await _channel(storage)
        await _channel(storage, "ch-2")
        async with storage.transaction():
            await storage.channels.begin_closing("ch-1", "t1", NOW, NOW + 3600)
            assert await storage.channels.release_all_submissions(NOW + 1) == 1
        channel = await storage.channels.get("ch-1")
        assert channel["state"] == "closing"
        assert channel["submission_token"] is None
        assert channel["submission_claimed_at"] is None

    async def test_mark_expired_after_deadline_only(self, storage):
        """The flag is refused until the deadline has passed."""
        await _channel(storage)
        async with storage.transaction():
            await storage.channels.begin_closing("ch-1", "t1", NOW, NOW + 3600)
            assert await storage.channels.mark_expired("ch-1", NOW + 3599) is False
            assert await storage.channels.mark_expired("ch-1", NOW + 3601) is True
        assert (await storage.channels.get("ch-1"))["expired"] is True

    async def test_rollback_clears_closing_fields(self, storage):
        """Back to Active forgets the settlement reference and deadline."""
        await _channel(storage)
        async with storage.transaction():
            await storage.channels.begin_closing("ch-1", "t1", NOW, NOW + 3600)
            await storage.channels.record_settlement_ref("ch-1", "TX", NOW)
            assert await storage.channels.rollback_to_active("ch-1", NOW) is True
        channel = await storage.channels.get("ch-1")
        assert channel["state"] == "active"
        assert channel["settlement_tx_ref"] is None
        assert channel["expires_at"] is None

    async def test_discard_draft_only(self, storage):
        """Only drafts can be deleted."""
        await _channel(storage)
        async with storage.transaction():
            assert await storage.channels.discard_draft("ch-1") is False
        await _channel(storage, "ch-2", state="draft")
        async with storage.transaction():
            assert await storage.channels.discard_draft("ch-2") is True
        assert await storage.channels.get("ch-2") is None


class TestMigrations:

    async def test_fresh_database_is_current(self, storage):
        """A new file starts at the current schema version."""
        async with storage._db.execute("SELECT MAX(version) FROM schema_version") as cursor:
            assert (await cursor.fetchone())[0] == SCHEMA_VERSION

    async def test_v1_database_gains_columns(self, tmp_path):
        """A v1 file is upgraded in place with defaults for the new columns."""
        path = str(tmp_path / "v1.db")
        async with aiosqlite.connect(path) as db:
            await db.executescript("""
                CREATE TABLE schema_version (version INTEGER NOT NULL, applied_at REAL NOT NULL);
                INSERT INTO schema_version VALUES (1, 0);
                CREATE TABLE channels (
                    channel_id TEXT PRIMARY KEY, ledger_channel_id TEXT UNIQUE,
                    sponsor_id TEXT NOT NULL, worker_id TEXT NOT NULL,
                    hourly_rate REAL NOT NULL, escrow_funded_amount REAL NOT NULL,
                    off_ledger_balance REAL NOT NULL DEFAULT 0.0,
                    on_ledger_balance REAL NOT NULL DEFAULT 0.0,
                    hours_accumulated REAL NOT NULL DEFAULT 0.0,
                    state TEXT NOT NULL DEFAULT 'draft', expired INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL, activated_at REAL, closing_initiated_at REAL,
                    expires_at REAL, closed_at REAL, settlement_tx_ref TEXT,
                    submission_token TEXT, validation_attempts INTEGER NOT NULL DEFAULT 0,
                    updated_at REAL NOT NULL
                );
                INSERT INTO channels (channel_id, sponsor_id, worker_id, hourly_rate,
                    escrow_funded_amount, state, created_at, updated_at)
                    VALUES ('old', 'acme', 'alice', 15.0, 240.0, 'active', 0, 0);
            """)
            await db.commit()

        sm = StorageManager(path)
        await sm.initialize()
        try:
            channel = await sm.channels.get("old")
            assert channel["max_daily_hours"] == 8.0
            assert channel["last_ledger_sync"] is None
            assert channel["submission_claimed_at"] is None
        finally:
            await sm.close()
