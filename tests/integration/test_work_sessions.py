"""
test_work_sessions.py - Clock-in / clock-out accrual

Tests:
 - One hour at 15/h credits exactly 15 to off_ledger_balance
 - Zero elapsed time leaves the balance unchanged
 - Clock-in guards: channel state, duplicate session, escrow, daily cap
 - Retry inside the window returns the open session
 - Concurrent clock-out: exactly one succeeds
 - Timeout sweep closes sessions at the boundary
"""

import asyncio

import pytest

from wageflow.config import HOUR_SEC
from wageflow.errors import (
    ChannelNotActive,
    DailyLimitExceeded,
    InsufficientEscrow,
    NotAuthorized,
    SessionAlreadyOpen,
    SessionNotFound,
    SessionNotOpen,
)

pytestmark = pytest.mark.asyncio

SPONSOR = "acme-corp"
WORKER = "alice"


class TestAccrual:

    async def test_one_hour(self, make_channel, work, channels):
        """One hour at 15/h credits exactly 15 off-ledger."""
        channel = await make_channel(escrow=240.0, rate=15.0)
        session = await work(channel["channel_id"], HOUR_SEC)
        assert session["status"] == "completed"
        assert session["hours_worked"] == 1.0
        assert session["earnings"] == 15.0
        status = await channels.get_channel_status(channel["channel_id"])
        assert status["off_ledger_balance"] == 15.0
        assert status["hours_accumulated"] == 1.0
        assert status["on_ledger_balance"] == 0.0

    async def test_zero_elapsed(self, make_channel, work, channels):
        """Clocking out immediately earns nothing."""
        channel = await make_channel()
        session = await work(channel["channel_id"], 0)
        assert session["earnings"] == 0.0
        assert (await channels.get_channel_status(channel["channel_id"]))["off_ledger_balance"] == 0.0

    async def test_rate_fixed_at_clock_in(self, make_channel, tracker, clock, storage):
        """Earnings use the rate recorded on the session."""
        channel = await make_channel(rate=15.0)
        session = await tracker.clock_in(WORKER, channel["channel_id"])
        assert session["hourly_rate"] == 15.0
        clock.advance(HOUR_SEC / 2)
        done = await tracker.clock_out(WORKER, session["session_id"])
        assert done["earnings"] == 7.5

    async def test_earnings_clamped_to_escrow(self, make_channel, work, channels):
        """Earnings past the escrow are cut at the funded amount."""
        channel = await make_channel(escrow=20.0, rate=15.0)
        session = await work(channel["channel_id"], 2 * HOUR_SEC)
        assert session["earnings"] == 20.0
        status = await channels.get_channel_status(channel["channel_id"])
        assert status["off_ledger_balance"] == 20.0
        assert status["remaining_escrow"] == 0.0

    async def test_balance_monotonic_and_bounded(self, make_channel, work, channels):
        """The balance only grows and never passes the escrow."""
        channel = await make_channel(escrow=100.0, rate=15.0, max_daily_hours=24)
        previous = 0.0
        for seconds in (600, 3600, 0, 1234, 5400, 7200):
            try:
                await work(channel["channel_id"], seconds)
            except InsufficientEscrow:
                break
            balance = (await channels.get_channel_status(channel["channel_id"]))["off_ledger_balance"]
            assert previous <= balance <= 100.0
            previous = balance


class TestClockInGuards:

    async def test_draft_channel(self, channels, tracker):
        """Drafts cannot be worked on."""
        draft = await channels.create_channel(SPONSOR, WORKER, 15.0, 240.0)
        with pytest.raises(ChannelNotActive):
            await tracker.clock_in(WORKER, draft["channel_id"])

    async def test_sponsor_cannot_clock_in(self, make_channel, tracker):
        """Only the channel's worker clocks in."""
        channel = await make_channel()
        with pytest.raises(NotAuthorized):
            await tracker.clock_in(SPONSOR, channel["channel_id"])

    async def test_outsider_cannot_clock_in(self, make_channel, tracker):
        """Non-parties cannot clock in."""
        channel = await make_channel()
        with pytest.raises(NotAuthorized):
            await tracker.clock_in("mallory", channel["channel_id"])

    async def test_retry_returns_open_session(self, make_channel, tracker, clock):
        """A retried clock-in inside the window is idempotent."""
        channel = await make_channel()
        first = await tracker.clock_in(WORKER, channel["channel_id"])
        clock.advance(3)
        again = await tracker.clock_in(WORKER, channel["channel_id"])
        assert again["session_id"] == first["session_id"]

    async def test_second_session_after_window(self, make_channel, tracker, clock, config):
        """Outside the window a duplicate names the open session."""
        channel = await make_channel()
        first = await tracker.clock_in(WORKER, channel["channel_id"])
        clock.advance(config.clock_in_retry_window_sec + 1)
        with pytest.raises(SessionAlreadyOpen) as exc:
            await tracker.clock_in(WORKER, channel["channel_id"])
        assert exc.value.details["session_id"] == first["session_id"]

    async def test_concurrent_clock_in_single_session(self, make_channel, tracker, storage):
        """Two simultaneous clock-ins share one session."""
        channel = await make_channel()
        results = await asyncio.gather(
            tracker.clock_in(WORKER, channel["channel_id"]),
            tracker.clock_in(WORKER, channel["channel_id"]),
        )
        assert results[0]["session_id"] == results[1]["session_id"]
        assert len(await storage.sessions.list_open(WORKER, channel["channel_id"])) == 1

    async def test_insufficient_escrow(self, make_channel, work, tracker):
        """No clock-in once less than an hour of pay remains."""
        channel = await make_channel(escrow=20.0, rate=15.0)
        await work(channel["channel_id"], HOUR_SEC)
        with pytest.raises(InsufficientEscrow) as exc:
            await tracker.clock_in(WORKER, channel["channel_id"])
        assert exc.value.details["remaining_escrow"] == 5.0

    async def test_daily_limit(self, make_channel, work, tracker, clock):
        """The cap applies per UTC day."""
        channel = await make_channel(max_daily_hours=2)
        await work(channel["channel_id"], 2 * HOUR_SEC)
        with pytest.raises(DailyLimitExceeded):
            await tracker.clock_in(WORKER, channel["channel_id"])

        # 11:00 -> 01:00 the next UTC day
        clock.advance(14 * HOUR_SEC)
        session = await tracker.clock_in(WORKER, channel["channel_id"])
        assert session["status"] == "open"


class TestClockOut:

    async def test_unknown_session(self, tracker):
        """Clock-out of an unknown id raises SessionNotFound."""
        with pytest.raises(SessionNotFound):
            await tracker.clock_out(WORKER, "nope")

    async def test_other_worker(self, make_channel, tracker):
        """Only the session's worker can clock out."""
        channel = await make_channel()
        session = await tracker.clock_in(WORKER, channel["channel_id"])
        with pytest.raises(NotAuthorized):
            await tracker.clock_out("bob", session["session_id"])

    async def test_twice(self, make_channel, work, tracker):
        """A completed session cannot be clocked out again."""
        channel = await make_channel()
        session = await work(channel["channel_id"], 60)
        with pytest.raises(SessionNotOpen):
            await tracker.clock_out(WORKER, session["session_id"])

    async def test_concurrent_clock_out(self, make_channel, tracker, clock, channels):
        """Two simultaneous clock-outs credit once."""
        channel = await make_channel()
        session = await tracker.clock_in(WORKER, channel["channel_id"])
        clock.advance(HOUR_SEC)
        results = await asyncio.gather(
            tracker.clock_out(WORKER, session["session_id"]),
            tracker.clock_out(WORKER, session["session_id"]),
            return_exceptions=True,
        )
        succeeded = [r for r in results if isinstance(r, dict)]
        failed = [r for r in results if isinstance(r, SessionNotOpen)]
        assert len(succeeded) == 1 and len(failed) == 1
        assert (await channels.get_channel_status(channel["channel_id"]))["off_ledger_balance"] == 15.0

    async def test_clock_out_past_max_duration(self, make_channel, tracker, clock, config):
        """A late clock-out is capped at the maximum session length."""
        channel = await make_channel(max_daily_hours=24)
        session = await tracker.clock_in(WORKER, channel["channel_id"])
        clock.advance(config.max_session_sec + HOUR_SEC)
        done = await tracker.clock_out(WORKER, session["session_id"])
        assert done["status"] == "timed_out"
        assert done["hours_worked"] == 8.0
        assert done["clock_out"] == session["clock_in"] + config.max_session_sec


class TestSweep:

    async def test_sweep_times_out_at_boundary(self, make_channel, tracker, clock, config, channels):
        """The sweep credits up to the boundary, not up to now."""
        channel = await make_channel()
        session = await tracker.clock_in(WORKER, channel["channel_id"])
        clock.advance(config.max_session_sec + 60)
        assert await tracker.sweep_timed_out_sessions() == 1
        swept = await channels.list_sessions(channel["channel_id"])
        assert swept[0]["session_id"] == session["session_id"]
        assert swept[0]["status"] == "timed_out"
        assert swept[0]["earnings"] == 120.0
        assert (await channels.get_channel_status(channel["channel_id"]))["off_ledger_balance"] == 120.0

    async def test_sweep_ignores_recent_sessions(self, make_channel, tracker, clock):
        """Sessions under the maximum length are left open."""
        channel = await make_channel()
        await tracker.clock_in(WORKER, channel["channel_id"])
        clock.advance(HOUR_SEC)
        assert await tracker.sweep_timed_out_sessions() == 0

    async def test_active_sessions_view(self, make_channel, tracker, clock):
        """Running earnings are computed from the clock without writing."""
        channel = await make_channel()
        await tracker.clock_in(WORKER, channel["channel_id"])
        clock.advance(HOUR_SEC / 2)
        [active] = await tracker.list_active_sessions(WORKER)
        assert active["elapsed_sec"] == 1800.0
        assert active["running_earnings"] == 7.5
