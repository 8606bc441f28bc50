import time
from typing import Optional

import aiosqlite

_COLUMNS = ("actor_id", "role", "api_key", "created_at")


class ActorRepo:
    """CRUD operations for the actors table."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def create(self, actor_id: str, role: str, api_key: str) -> dict:
        await self._db.execute(
            "INSERT INTO actors (actor_id, role, api_key, created_at) VALUES (?, ?, ?, ?)",
            (actor_id, role, api_key, time.time()),
        )
        return {"actor_id": actor_id, "role": role, "api_key": api_key}

    async def get(self, actor_id: str) -> Optional[dict]:
        async with self._db.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM actors WHERE actor_id = ?",
            (actor_id,),
        ) as cursor:
            row = await cursor.fetchone()
        return dict(zip(_COLUMNS, row)) if row else None

    async def get_by_api_key(self, api_key: str) -> Optional[dict]:
        if not api_key:
            return None
        async with self._db.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM actors WHERE api_key = ?",
            (api_key,),
        ) as cursor:
            row = await cursor.fetchone()
        return dict(zip(_COLUMNS, row)) if row else None

    async def set_api_key(self, actor_id: str, api_key: str):
        await self._db.execute(
            "UPDATE actors SET api_key = ? WHERE actor_id = ?",
            (api_key, actor_id),
        )
