"""
tracker.py - Work session tracker.

Records clock-in/clock-out per (worker, channel) and credits earnings into
the channel's off-ledger balance through the AccrualWriter, in the same
transaction that closes the session. Open sessions left past the maximum
session duration are swept to TimedOut with the timeout boundary as their
effective clock-out.
"""

import logging
import time
import uuid
from typing import TYPE_CHECKING, Callable, List, Optional

import aiosqlite

from wageflow.config import DAY_SEC, HOUR_SEC, EngineConfig, round_amount
from wageflow.errors import (
    ChannelNotActive,
    ChannelNotFound,
    DailyLimitExceeded,
    InsufficientEscrow,
    NotAuthorized,
    SessionAlreadyOpen,
    SessionNotFound,
    SessionNotOpen,
)
from wageflow.state_machine import ChannelState, Role, SessionStatus, party_role

if TYPE_CHECKING:
    from wageflow.storage import StorageManager

logger = logging.getLogger("sessions")


class WorkSessionTracker:
    """Clock-in/clock-out and the session timeout sweep."""

    def __init__(
        self,
        storage: "StorageManager",
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._storage = storage
        self._config = config or EngineConfig()
        self._clock = clock

    # -------------------------------------------------------------------
    # Clock in / out
    # -------------------------------------------------------------------

    async def clock_in(self, worker_id: str, channel_id: str, notes: str = "") -> dict:
        """Open a session. A retry within the retry window returns the session already open."""
        async with self._storage.transaction():
            now = self._clock()
            channel = await self._storage.channels.get(channel_id)
            if channel is None:
                raise ChannelNotFound(f"Channel '{channel_id}' not found")
            if party_role(channel, worker_id) != Role.WORKER:
                raise NotAuthorized("Only the channel's worker can clock in")
            if channel["state"] != ChannelState.ACTIVE.value:
                raise ChannelNotActive(
                    "Channel is not active",
                    details={"channel_id": channel_id, "state": channel["state"]},
                )

            existing = await self._storage.sessions.get_open(worker_id, channel_id)
            if existing is not None:
                if now - existing["clock_in"] <= self._config.clock_in_retry_window_sec:
                    logger.debug("Duplicate clock-in for %s on %s; returning session %s",
                                 worker_id, channel_id, existing["session_id"])
                    return existing
                raise SessionAlreadyOpen(
                    "A session is already open on this channel",
                    details={"session_id": existing["session_id"]},
                )

            if channel["remaining_escrow"] < channel["hourly_rate"]:
                raise InsufficientEscrow(
                    "Remaining escrow does not cover one hour of work",
                    details={"remaining_escrow": channel["remaining_escrow"],
                             "hourly_rate": channel["hourly_rate"]},
                )

            day_start = now - (now % DAY_SEC)
            worked = await self._storage.sessions.hours_since(worker_id, channel_id, day_start)
            if worked >= channel["max_daily_hours"]:
                raise DailyLimitExceeded(
                    "Daily hour limit reached for this channel",
                    details={"hours_today": round(worked, 4),
                             "max_daily_hours": channel["max_daily_hours"]},
                )

            try:
                session = await self._storage.sessions.create(
                    uuid.uuid4().hex, channel_id, worker_id, channel["hourly_rate"], now, notes,
                )
            except aiosqlite.IntegrityError:
                raise SessionAlreadyOpen("A session is already open on this channel")

        logger.info("Clock-in: session=%s worker=%s channel=%s rate=%.6f",
                    session["session_id"], worker_id, channel_id, session["hourly_rate"])
        return session

    async def clock_out(self, worker_id: str, session_id: str) -> dict:
        async with self._storage.transaction():
            session = await self._storage.sessions.get(session_id)
            if session is None:
                raise SessionNotFound(f"Session '{session_id}' not found")
            if session["worker_id"] != worker_id:
                raise NotAuthorized("Session belongs to another worker")
            if session["status"] != SessionStatus.OPEN.value:
                raise SessionNotOpen("Session is not open", details={"status": session["status"]})
            credited = await self._close_session(session, self._clock())
        result = await self._storage.sessions.get(session_id)
        logger.info("Clock-out: session=%s worker=%s hours=%.4f earnings=%.6f",
                    session_id, worker_id, result["hours_worked"], credited)
        return result

    async def _close_session(self, session: dict, clock_out: float) -> float:
        """Close one open session and credit its earnings. Caller holds the transaction."""
        current = await self._storage.sessions.get(session["session_id"])
        if current is None or current["status"] != SessionStatus.OPEN.value:
            raise SessionNotOpen("Session is not open", details={"session_id": session["session_id"]})
        boundary = session["clock_in"] + self._config.max_session_sec
        status = SessionStatus.COMPLETED
        if clock_out > boundary:
            clock_out, status = boundary, SessionStatus.TIMED_OUT
        seconds = max(clock_out - session["clock_in"], 0.0)
        hours = seconds / HOUR_SEC
        earnings = round_amount(hours * session["hourly_rate"])

        credited = await self._storage.accrual_writer().credit(session["channel_id"], earnings, hours)
        if credited < earnings:
            logger.warning("Session %s earnings %.6f clamped to remaining escrow (%.6f credited)",
                           session["session_id"], earnings, credited)
        closed = await self._storage.sessions.close(
            session["session_id"], status.value, clock_out, round(hours, 6), credited,
        )
        if not closed:
            raise SessionNotOpen("Session is not open", details={"session_id": session["session_id"]})
        return credited

    # -------------------------------------------------------------------
    # Sweeps
    # -------------------------------------------------------------------

    async def sweep_timed_out_sessions(self, now: Optional[float] = None) -> int:
        """Close every Open session past the maximum duration as TimedOut."""
        now = now if now is not None else self._clock()
        cutoff = now - self._config.max_session_sec
        swept = 0
        for session in await self._storage.sessions.list_open_started_before(cutoff):
            try:
                async with self._storage.transaction():
                    credited = await self._close_session(session, now)
            except SessionNotOpen:
                continue
            swept += 1
            logger.info("Session timed out: %s worker=%s channel=%s credited=%.6f",
                        session["session_id"], session["worker_id"], session["channel_id"], credited)
        return swept

    async def complete_open_sessions_for_channel(self, channel_id: str, now: float) -> float:
        """Credit every session still open on a channel about to close.

        Must be called inside the transaction that moves the channel to Closing,
        so the quoted balance includes them.
        """
        total = 0.0
        for session in await self._storage.sessions.list_open(channel_id=channel_id):
            total += await self._close_session(session, now)
            logger.info("Session %s completed by channel closure", session["session_id"])
        return round_amount(total)

    # -------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------

    async def list_active_sessions(self, worker_id: str) -> List[dict]:
        """Open sessions with live elapsed time and running (uncredited) earnings."""
        now = self._clock()
        sessions = []
        for session in await self._storage.sessions.list_open(worker_id=worker_id):
            elapsed = min(max(now - session["clock_in"], 0.0), self._config.max_session_sec)
            session["elapsed_sec"] = round(elapsed, 3)
            session["running_earnings"] = round_amount(elapsed / HOUR_SEC * session["hourly_rate"])
            sessions.append(session)
        return sessions
