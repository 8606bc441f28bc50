"""
auth.py - API key authentication for sponsors and workers.

Flow:
  POST /api/actors/register {actor_id, role} -> api_key
  Every later call passes X-API-Key.

resolve_actor() maps a key to Actor(id, role). The admin key configured at
start-up resolves to the admin role and can run reconciliation on demand.
"""

import logging
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from fastapi import Header, HTTPException

from wageflow.errors import InvalidInput, StateConflict
from wageflow.state_machine import Role

if TYPE_CHECKING:
    from wageflow.storage import StorageManager

logger = logging.getLogger("auth")

DEFAULT_ADMIN_KEY = "admin-test-key-do-not-use-in-production"
ADMIN_ACTOR_ID = "_admin"


@dataclass(frozen=True)
class Actor:
    id: str
    role: Role


class AuthService:
    """API key authentication and role checks."""

    def __init__(self, storage: "StorageManager", admin_key: str = DEFAULT_ADMIN_KEY):
        self._storage = storage
        self._admin_key = admin_key

    @staticmethod
    def generate_api_key() -> str:
        return secrets.token_hex(16)

    async def register(self, actor_id: str, role: str) -> dict:
        if not actor_id or actor_id == ADMIN_ACTOR_ID:
            raise InvalidInput("actor_id is required")
        if role not in (Role.SPONSOR.value, Role.WORKER.value):
            raise InvalidInput("Role must be 'sponsor' or 'worker'")
        api_key = self.generate_api_key()
        async with self._storage.transaction():
            if await self._storage.actors.get(actor_id) is not None:
                raise StateConflict(f"Actor '{actor_id}' already exists")
            actor = await self._storage.actors.create(actor_id, role, api_key)
        logger.info("Registered actor %s role=%s", actor_id, role)
        return actor

    async def rotate_key(self, actor_id: str) -> str:
        api_key = self.generate_api_key()
        async with self._storage.transaction():
            if await self._storage.actors.get(actor_id) is None:
                raise InvalidInput(f"Actor '{actor_id}' not found")
            await self._storage.actors.set_api_key(actor_id, api_key)
        logger.info("Rotated API key for %s", actor_id)
        return api_key

    # -------------------------------------------------------------------
    # FastAPI dependencies
    # -------------------------------------------------------------------

    async def resolve_actor(self, x_api_key: str = Header(default="")) -> Optional[Actor]:
        """Resolve an API key to an actor. Returns None if no credentials."""
        if not x_api_key:
            return None
        if secrets.compare_digest(x_api_key, self._admin_key):
            return Actor(id=ADMIN_ACTOR_ID, role=Role.ADMIN)
        row = await self._storage.actors.get_by_api_key(x_api_key)
        if row is None:
            return None
        return Actor(id=row["actor_id"], role=Role(row["role"]))

    async def get_current_actor(self, x_api_key: str = Header(default="")) -> Actor:
        actor = await self.resolve_actor(x_api_key)
        if actor is None:
            raise HTTPException(
                status_code=401,
                detail="Missing or invalid credentials. Pass the X-API-Key header.",
            )
        return actor

    async def require_admin(self, x_api_key: str = Header(default="")) -> Actor:
        actor = await self.get_current_actor(x_api_key)
        if actor.role != Role.ADMIN:
            raise HTTPException(status_code=403, detail="Admin access required")
        return actor
