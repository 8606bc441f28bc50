from typing import List, Optional

import aiosqlite

_COLUMNS = (
    "request_id", "channel_id", "requester_id", "requester_role", "requested_payout",
    "message", "status", "rejection_reason", "settlement_tx_ref", "created_at",
    "approved_at", "rejected_at", "completed_at", "cancelled_at",
)
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM closure_requests"

# Status -> timestamp column written on entering it
_STATUS_TIMESTAMPS = {
    "approved": "approved_at",
    "rejected": "rejected_at",
    "completed": "completed_at",
    "cancelled": "cancelled_at",
}


class ClosureRequestRepo:
    """CRUD operations for the closure_requests table."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def create(
        self,
        request_id: str,
        channel_id: str,
        requester_id: str,
        requester_role: str,
        requested_payout: float,
        now: float,
        message: str = "",
    ) -> dict:
        await self._db.execute(
            "INSERT INTO closure_requests (request_id, channel_id, requester_id, requester_role, "
            "requested_payout, message, status, created_at) VALUES (?, ?, ?, ?, ?, ?, 'pending', ?)",
            (request_id, channel_id, requester_id, requester_role, requested_payout, message, now),
        )
        return await self.get(request_id)

    async def get(self, request_id: str) -> Optional[dict]:
        async with self._db.execute(f"{_SELECT} WHERE request_id = ?", (request_id,)) as cursor:
            row = await cursor.fetchone()
        return dict(zip(_COLUMNS, row)) if row else None

    async def get_pending(self, channel_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"{_SELECT} WHERE channel_id = ? AND status = 'pending'", (channel_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return dict(zip(_COLUMNS, row)) if row else None

    async def transition(
        self,
        request_id: str,
        from_statuses: tuple,
        to_status: str,
        now: float,
        rejection_reason: str = "",
        settlement_tx_ref: Optional[str] = None,
    ) -> bool:
        placeholders = ", ".join("?" for _ in from_statuses)
        ts_column = _STATUS_TIMESTAMPS[to_status]
        cursor = await self._db.execute(
            f"UPDATE closure_requests SET status = ?, {ts_column} = ?, "
            "rejection_reason = CASE WHEN ? != '' THEN ? ELSE rejection_reason END, "
            "settlement_tx_ref = COALESCE(?, settlement_tx_ref) "
            f"WHERE request_id = ? AND status IN ({placeholders})",
            (to_status, now, rejection_reason, rejection_reason, settlement_tx_ref,
             request_id, *from_statuses),
        )
        return cursor.rowcount == 1

    async def transition_for_channel(
        self,
        channel_id: str,
        from_statuses: tuple,
        to_status: str,
        now: float,
        settlement_tx_ref: Optional[str] = None,
    ) -> int:
        placeholders = ", ".join("?" for _ in from_statuses)
        ts_column = _STATUS_TIMESTAMPS[to_status]
        cursor = await self._db.execute(
            f"UPDATE closure_requests SET status = ?, {ts_column} = ?, "
            "settlement_tx_ref = COALESCE(?, settlement_tx_ref) "
            f"WHERE channel_id = ? AND status IN ({placeholders})",
            (to_status, now, settlement_tx_ref, channel_id, *from_statuses),
        )
        return cursor.rowcount

    async def list_for_channel(self, channel_id: str) -> List[dict]:
        async with self._db.execute(
            f"{_SELECT} WHERE channel_id = ? ORDER BY created_at DESC", (channel_id,)
        ) as cursor:
            return [dict(zip(_COLUMNS, row)) async for row in cursor]

    async def list_pending_for_sponsor(self, sponsor_id: str) -> List[dict]:
        cols = ", ".join(f"r.{c}" for c in _COLUMNS)
        async with self._db.execute(
            f"SELECT {cols} FROM closure_requests r "
            "JOIN channels c ON c.channel_id = r.channel_id "
            "WHERE c.sponsor_id = ? AND r.status = 'pending' ORDER BY r.created_at DESC",
            (sponsor_id,),
        ) as cursor:
            return [dict(zip(_COLUMNS, row)) async for row in cursor]

    async def list_for_requester(self, requester_id: str) -> List[dict]:
        async with self._db.execute(
            f"{_SELECT} WHERE requester_id = ? ORDER BY created_at DESC", (requester_id,)
        ) as cursor:
            return [dict(zip(_COLUMNS, row)) async for row in cursor]
