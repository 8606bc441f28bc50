from typing import List, Optional

import aiosqlite

_COLUMNS = (
    "channel_id", "ledger_channel_id", "sponsor_id", "worker_id", "hourly_rate",
    "escrow_funded_amount", "max_daily_hours", "off_ledger_balance", "on_ledger_balance",
    "hours_accumulated", "state", "expired", "created_at", "activated_at",
    "closing_initiated_at", "expires_at", "closed_at", "settlement_tx_ref",
    "submission_token", "submission_claimed_at", "validation_attempts", "last_ledger_sync", "updated_at",
)
_SELECT = f"SELECT {', '.join(_COLUMNS)} FROM channels"


def _to_dict(row) -> dict:
    channel = dict(zip(_COLUMNS, row))
    channel["expired"] = bool(channel["expired"])
    channel["remaining_escrow"] = round(
        channel["escrow_funded_amount"] - channel["off_ledger_balance"], 6
    )
    return channel


class ChannelRepo:
    """Channel rows and their lifecycle compare-and-swap updates.

    Balance columns are not written here; see storage.balances.
    Mutating methods must run inside StorageManager.transaction().
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def create_draft(
        self,
        channel_id: str,
        sponsor_id: str,
        worker_id: str,
        hourly_rate: float,
        escrow_funded_amount: float,
        max_daily_hours: float,
        now: float,
    ):
        await self._db.execute(
            "INSERT INTO channels (channel_id, sponsor_id, worker_id, hourly_rate, "
            "escrow_funded_amount, max_daily_hours, state, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, 'draft', ?, ?)",
            (channel_id, sponsor_id, worker_id, hourly_rate, escrow_funded_amount,
             max_daily_hours, now, now),
        )

    async def get(self, channel_id: str) -> Optional[dict]:
        async with self._db.execute(f"{_SELECT} WHERE channel_id = ?", (channel_id,)) as cursor:
            row = await cursor.fetchone()
        return _to_dict(row) if row else None

    async def get_by_ledger_id(self, ledger_channel_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"{_SELECT} WHERE ledger_channel_id = ?", (ledger_channel_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _to_dict(row) if row else None

    async def discard_draft(self, channel_id: str) -> bool:
        cursor = await self._db.execute(
            "DELETE FROM channels WHERE channel_id = ? AND state = 'draft'", (channel_id,)
        )
        return cursor.rowcount == 1

    async def activate(self, channel_id: str, ledger_channel_id: str, now: float) -> bool:
        cursor = await self._db.execute(
            "UPDATE channels SET state = 'active', ledger_channel_id = ?, activated_at = ?, "
            "updated_at = ? WHERE channel_id = ? AND state = 'draft'",
            (ledger_channel_id, now, now, channel_id),
        )
        return cursor.rowcount == 1

    async def begin_closing(
        self, channel_id: str, submission_token: str, now: float, expires_at: float,
    ) -> bool:
        cursor = await self._db.execute(
            "UPDATE channels SET state = 'closing', closing_initiated_at = ?, expires_at = ?, "
            "expired = 0, submission_token = ?, submission_claimed_at = ?, "
            "settlement_tx_ref = NULL, updated_at = ? "
            "WHERE channel_id = ? AND state = 'active'",
            (now, expires_at, submission_token, now, now, channel_id),
        )
        return cursor.rowcount == 1

    async def claim_submission(
        self, channel_id: str, submission_token: str, now: float, stale_before: Optional[float] = None,
    ) -> bool:
        """Take the submission slot of a closing channel (expired finalization).

        A slot claimed before ``stale_before`` belonged to a submitter that
        never finished and may be taken over.
        """
        cursor = await self._db.execute(
            "UPDATE channels SET submission_token = ?, submission_claimed_at = ?, updated_at = ? "
            "WHERE channel_id = ? AND state = 'closing' "
            "AND (submission_token IS NULL OR COALESCE(submission_claimed_at, 0) < ?)",
            (submission_token, now, now, channel_id, stale_before if stale_before is not None else 0),
        )
        return cursor.rowcount == 1

    async def release_submission(self, channel_id: str, submission_token: str, now: float) -> bool:
        cursor = await self._db.execute(
            "UPDATE channels SET submission_token = NULL, submission_claimed_at = NULL, updated_at = ? "
            "WHERE channel_id = ? AND submission_token = ?",
            (now, channel_id, submission_token),
        )
        return cursor.rowcount == 1

    async def release_all_submissions(self, now: float) -> int:
        """Clear every submission slot. Only valid when no submitter is running (startup)."""
        cursor = await self._db.execute(
            "UPDATE channels SET submission_token = NULL, submission_claimed_at = NULL, updated_at = ? "
            "WHERE submission_token IS NOT NULL",
            (now,),
        )
        return cursor.rowcount

    async def record_settlement_ref(self, channel_id: str, tx_ref: str, now: float) -> bool:
        cursor = await self._db.execute(
            "UPDATE channels SET settlement_tx_ref = ?, updated_at = ? "
            "WHERE channel_id = ? AND state = 'closing'",
            (tx_ref, now, channel_id),
        )
        return cursor.rowcount == 1

    async def record_validation_attempt(self, channel_id: str):
        await self._db.execute(
            "UPDATE channels SET validation_attempts = validation_attempts + 1 WHERE channel_id = ?",
            (channel_id,),
        )

    async def rollback_to_active(self, channel_id: str, now: float) -> bool:
        cursor = await self._db.execute(
            "UPDATE channels SET state = 'active', closing_initiated_at = NULL, expires_at = NULL, "
            "expired = 0, submission_token = NULL, submission_claimed_at = NULL, "
            "settlement_tx_ref = NULL, updated_at = ? "
            "WHERE channel_id = ? AND state = 'closing'",
            (now, channel_id),
        )
        return cursor.rowcount == 1

    async def mark_expired(self, channel_id: str, now: float) -> bool:
        cursor = await self._db.execute(
            "UPDATE channels SET expired = 1, updated_at = ? "
            "WHERE channel_id = ? AND state = 'closing' AND expired = 0 "
            "AND expires_at IS NOT NULL AND expires_at < ?",
            (now, channel_id, now),
        )
        return cursor.rowcount == 1

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    async def list_all(
        self,
        state: Optional[str] = None,
        party_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[dict]:
        query = _SELECT
        conditions, params = [], []
        if state:
            conditions.append("state = ?")
            params.append(state)
        if party_id:
            conditions.append("(sponsor_id = ? OR worker_id = ?)")
            params.extend([party_id, party_id])
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        async with self._db.execute(query, tuple(params)) as cursor:
            return [_to_dict(row) async for row in cursor]

    async def list_unsettled(self) -> List[dict]:
        """Active and closing channels: everything the ledger still holds."""
        async with self._db.execute(
            f"{_SELECT} WHERE state IN ('active', 'closing') ORDER BY created_at"
        ) as cursor:
            return [_to_dict(row) async for row in cursor]

    async def list_closed_unsynced(self) -> List[dict]:
        async with self._db.execute(
            f"{_SELECT} WHERE state = 'closed' "
            "AND (last_ledger_sync IS NULL OR last_ledger_sync < closed_at)"
        ) as cursor:
            return [_to_dict(row) async for row in cursor]

    async def list_stale_drafts(self, older_than: float) -> List[dict]:
        async with self._db.execute(
            f"{_SELECT} WHERE state = 'draft' AND created_at < ?", (older_than,)
        ) as cursor:
            return [_to_dict(row) async for row in cursor]

    async def count(self, state: Optional[str] = None) -> int:
        if state:
            async with self._db.execute(
                "SELECT COUNT(*) FROM channels WHERE state = ?", (state,)
            ) as cursor:
                row = await cursor.fetchone()
        else:
            async with self._db.execute("SELECT COUNT(*) FROM channels") as cursor:
                row = await cursor.fetchone()
        return row[0] if row else 0
