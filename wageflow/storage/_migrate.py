import logging
import time

from ._schema import SCHEMA_SQL, SCHEMA_VERSION

logger = logging.getLogger("storage")


async def _current_version(db) -> int:
    async with db.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
    ) as cursor:
        if await cursor.fetchone() is None:
            return 0
    async with db.execute("SELECT MAX(version) FROM schema_version") as cursor:
        row = await cursor.fetchone()
    return row[0] if row and row[0] is not None else 0


async def _column_names(db, table: str) -> set:
    async with db.execute(f"PRAGMA table_info({table})") as cursor:
        return {row[1] async for row in cursor}


async def run_migrations(db, logger_override=None):
    log = logger_override or logger
    current_version = await _current_version(db)

    if current_version >= SCHEMA_VERSION:
        log.debug("Database schema up to date (v%d)", current_version)
        return

    log.info("Migrating database from v%d to v%d", current_version, SCHEMA_VERSION)

    # v1 databases predate the per-channel daily cap and ledger sync tracking,
    # v2 the submission claim time; add the columns before the schema script
    # builds indexes over them.
    if 0 < current_version < SCHEMA_VERSION:
        existing = await _column_names(db, "channels")
        added = [
            ("max_daily_hours", "REAL NOT NULL DEFAULT 8.0"),
            ("last_ledger_sync", "REAL"),
            ("submission_claimed_at", "REAL"),
        ]
        for col, typedef in added:
            if col not in existing:
                await db.execute(f"ALTER TABLE channels ADD COLUMN {col} {typedef}")

    await db.executescript(SCHEMA_SQL)
    await db.execute(
        "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
        (SCHEMA_VERSION, time.time()),
    )
    await db.commit()
    log.info("Migration complete (v%d)", SCHEMA_VERSION)
