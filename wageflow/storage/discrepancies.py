import time
from typing import List, Optional

import aiosqlite

_COLUMNS = (
    "id", "channel_id", "kind", "off_ledger_balance", "on_ledger_balance", "detail", "created_at",
)


class DiscrepancyRepo:
    """Insert + read-only queries for the discrepancies audit log."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def record(
        self,
        channel_id: str,
        kind: str,
        off_ledger_balance: float,
        on_ledger_balance: float,
        detail: str = "",
        now: Optional[float] = None,
    ):
        await self._db.execute(
            "INSERT INTO discrepancies (channel_id, kind, off_ledger_balance, on_ledger_balance, "
            "detail, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (channel_id, kind, off_ledger_balance, on_ledger_balance, detail,
             now if now is not None else time.time()),
        )

    async def latest_for_channel(self, channel_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM discrepancies WHERE channel_id = ? "
            "ORDER BY id DESC LIMIT 1",
            (channel_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return dict(zip(_COLUMNS, row)) if row else None

    async def list_all(self, channel_id: Optional[str] = None, limit: int = 100) -> List[dict]:
        query = f"SELECT {', '.join(_COLUMNS)} FROM discrepancies"
        params: tuple = ()
        if channel_id:
            query += " WHERE channel_id = ?"
            params = (channel_id,)
        query += " ORDER BY id DESC LIMIT ?"
        params += (limit,)
        async with self._db.execute(query, params) as cursor:
            return [dict(zip(_COLUMNS, row)) async for row in cursor]

    async def count(self) -> int:
        async with self._db.execute("SELECT COUNT(*) FROM discrepancies") as cursor:
            row = await cursor.fetchone()
        return row[0] if row else 0
