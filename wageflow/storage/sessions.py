from typing import List, Optional

import aiosqlite

_COLUMNS = (
    "session_id", "channel_id", "worker_id", "hourly_rate", "clock_in", "clock_out",
    "hours_worked", "earnings", "status", "notes",
)
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM work_sessions"


class SessionRepo:
    """CRUD operations for the work_sessions table."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def create(
        self,
        session_id: str,
        channel_id: str,
        worker_id: str,
        hourly_rate: float,
        clock_in: float,
        notes: str = "",
    ) -> dict:
        await self._db.execute(
            "INSERT INTO work_sessions (session_id, channel_id, worker_id, hourly_rate, "
            "clock_in, status, notes) VALUES (?, ?, ?, ?, ?, 'open', ?)",
            (session_id, channel_id, worker_id, hourly_rate, clock_in, notes),
        )
        return {
            "session_id": session_id,
            "channel_id": channel_id,
            "worker_id": worker_id,
            "hourly_rate": hourly_rate,
            "clock_in": clock_in,
            "clock_out": None,
            "hours_worked": None,
            "earnings": None,
            "status": "open",
            "notes": notes,
        }

    async def get(self, session_id: str) -> Optional[dict]:
        async with self._db.execute(f"{_SELECT} WHERE session_id = ?", (session_id,)) as cursor:
            row = await cursor.fetchone()
        return dict(zip(_COLUMNS, row)) if row else None

    async def get_open(self, worker_id: str, channel_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"{_SELECT} WHERE worker_id = ? AND channel_id = ? AND status = 'open'",
            (worker_id, channel_id),
        ) as cursor:
            row = await cursor.fetchone()
        return dict(zip(_COLUMNS, row)) if row else None

    async def close(
        self,
        session_id: str,
        status: str,
        clock_out: float,
        hours_worked: float,
        earnings: float,
    ) -> bool:
        """Open -> completed/timed_out. False if the session was no longer open."""
        cursor = await self._db.execute(
            "UPDATE work_sessions SET status = ?, clock_out = ?, hours_worked = ?, earnings = ? "
            "WHERE session_id = ? AND status = 'open'",
            (status, clock_out, hours_worked, earnings, session_id),
        )
        return cursor.rowcount == 1

    async def hours_since(self, worker_id: str, channel_id: str, since: float) -> float:
        """Hours of finished sessions that started at or after ``since``."""
        async with self._db.execute(
            "SELECT COALESCE(SUM(hours_worked), 0) FROM work_sessions "
            "WHERE worker_id = ? AND channel_id = ? AND clock_in >= ? AND status != 'open'",
            (worker_id, channel_id, since),
        ) as cursor:
            row = await cursor.fetchone()
        return float(row[0]) if row else 0.0

    async def list_open(
        self, worker_id: Optional[str] = None, channel_id: Optional[str] = None,
    ) -> List[dict]:
        query = f"{_SELECT} WHERE status = 'open'"
        params: tuple = ()
        if worker_id:
            query += " AND worker_id = ?"
            params += (worker_id,)
        if channel_id:
            query += " AND channel_id = ?"
            params += (channel_id,)
        query += " ORDER BY clock_in DESC"
        async with self._db.execute(query, params) as cursor:
            return [dict(zip(_COLUMNS, row)) async for row in cursor]

    async def list_open_started_before(self, cutoff: float) -> List[dict]:
        async with self._db.execute(
            f"{_SELECT} WHERE status = 'open' AND clock_in < ? ORDER BY clock_in", (cutoff,)
        ) as cursor:
            return [dict(zip(_COLUMNS, row)) async for row in cursor]

    async def list_for_channel(self, channel_id: str, limit: int = 50, offset: int = 0) -> List[dict]:
        async with self._db.execute(
            f"{_SELECT} WHERE channel_id = ? ORDER BY clock_in DESC LIMIT ? OFFSET ?",
            (channel_id, limit, offset),
        ) as cursor:
            return [dict(zip(_COLUMNS, row)) async for row in cursor]

    async def count_open(self) -> int:
        async with self._db.execute(
            "SELECT COUNT(*) FROM work_sessions WHERE status = 'open'"
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0
