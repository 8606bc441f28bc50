import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import aiosqlite

from ._migrate import run_migrations
from .actors import ActorRepo
from .balances import AccrualWriter, LedgerMirrorWriter, PayoutWriter
from .channels import ChannelRepo
from .closure_requests import ClosureRequestRepo
from .discrepancies import DiscrepancyRepo
from .sessions import SessionRepo

logger = logging.getLogger("storage")


class StorageManager:
    """Top-level manager: opens the database, runs migrations, exposes repos.

    Repositories never commit. Every write goes through ``transaction()``,
    which serializes writers on the single connection and wraps them in
    ``BEGIN IMMEDIATE`` ... ``COMMIT``. Reads outside a transaction share
    that connection and can see another writer's uncommitted rows, so
    state checks that gate a write belong inside the transaction.
    """

    def __init__(self, db_path: str = "wageflow.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._write_lock = asyncio.Lock()
        self.actors: Optional[ActorRepo] = None
        self.channels: Optional[ChannelRepo] = None
        self.sessions: Optional[SessionRepo] = None
        self.closure_requests: Optional[ClosureRequestRepo] = None
        self.discrepancies: Optional[DiscrepancyRepo] = None

    async def initialize(self):
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await run_migrations(self._db, logger)

        self.actors = ActorRepo(self._db)
        self.channels = ChannelRepo(self._db)
        self.sessions = SessionRepo(self._db)
        self.closure_requests = ClosureRequestRepo(self._db)
        self.discrepancies = DiscrepancyRepo(self._db)

        logger.info("Storage initialized: %s", self.db_path)

    # -------------------------------------------------------------------
    # Balance writers: one per owner, each limited to its own field
    # -------------------------------------------------------------------

    def accrual_writer(self) -> AccrualWriter:
        return AccrualWriter(self._db)

    def payout_writer(self) -> PayoutWriter:
        return PayoutWriter(self._db)

    def mirror_writer(self) -> LedgerMirrorWriter:
        return LedgerMirrorWriter(self._db)

    # -------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self):
        async with self._write_lock:
            await self._db.execute("BEGIN IMMEDIATE")
            try:
                yield self._db
            except BaseException:
                await self._db.rollback()
                raise
            else:
                await self._db.commit()

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("Storage closed")
