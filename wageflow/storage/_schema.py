SCHEMA_VERSION = 3

SCHEMA_SQL = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied_at REAL NOT NULL
);

-- Actors: sponsors, workers and admins resolved from API keys
CREATE TABLE IF NOT EXISTS actors (
    actor_id    TEXT PRIMARY KEY,
    role        TEXT NOT NULL CHECK (role IN ('sponsor', 'worker', 'admin')),
    api_key     TEXT NOT NULL DEFAULT '',
    created_at  REAL NOT NULL
);

-- Channels: escrow-backed payment relationship, one per engagement.
-- off_ledger_balance is authoritative for payout; on_ledger_balance is
-- the last value mirrored from the ledger and is audit-only.
CREATE TABLE IF NOT EXISTS channels (
    channel_id           TEXT PRIMARY KEY,
    ledger_channel_id    TEXT UNIQUE,
    sponsor_id           TEXT NOT NULL,
    worker_id            TEXT NOT NULL,
    hourly_rate          REAL NOT NULL CHECK (hourly_rate > 0),
    escrow_funded_amount REAL NOT NULL CHECK (escrow_funded_amount > 0),
    max_daily_hours      REAL NOT NULL DEFAULT 8.0 CHECK (max_daily_hours > 0 AND max_daily_hours <= 24),
    off_ledger_balance   REAL NOT NULL DEFAULT 0.0
        CHECK (off_ledger_balance >= 0 AND off_ledger_balance <= escrow_funded_amount + 0.000000001),
    on_ledger_balance    REAL NOT NULL DEFAULT 0.0,
    hours_accumulated    REAL NOT NULL DEFAULT 0.0,
    state                TEXT NOT NULL DEFAULT 'draft'
        CHECK (state IN ('draft', 'active', 'closing', 'closed')),
    expired              INTEGER NOT NULL DEFAULT 0,
    created_at           REAL NOT NULL,
    activated_at         REAL,
    closing_initiated_at REAL,
    expires_at           REAL,
    closed_at            REAL,
    settlement_tx_ref    TEXT,
    submission_token     TEXT,
    submission_claimed_at REAL,
    validation_attempts  INTEGER NOT NULL DEFAULT 0,
    last_ledger_sync     REAL,
    updated_at           REAL NOT NULL
);

-- Work sessions: one continuous interval of work against a channel
CREATE TABLE IF NOT EXISTS work_sessions (
    session_id   TEXT PRIMARY KEY,
    channel_id   TEXT NOT NULL,
    worker_id    TEXT NOT NULL,
    hourly_rate  REAL NOT NULL,
    clock_in     REAL NOT NULL,
    clock_out    REAL,
    hours_worked REAL,
    earnings     REAL,
    status       TEXT NOT NULL DEFAULT 'open'
        CHECK (status IN ('open', 'completed', 'timed_out')),
    notes        TEXT NOT NULL DEFAULT '',
    FOREIGN KEY (channel_id) REFERENCES channels(channel_id) ON DELETE CASCADE
);

-- Closure requests: approval workflow when the requester cannot sign
CREATE TABLE IF NOT EXISTS closure_requests (
    request_id        TEXT PRIMARY KEY,
    channel_id        TEXT NOT NULL,
    requester_id      TEXT NOT NULL,
    requester_role    TEXT NOT NULL CHECK (requester_role IN ('sponsor', 'worker')),
    requested_payout  REAL NOT NULL,
    message           TEXT NOT NULL DEFAULT '',
    status            TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'approved', 'rejected', 'completed', 'cancelled')),
    rejection_reason  TEXT NOT NULL DEFAULT '',
    settlement_tx_ref TEXT,
    created_at        REAL NOT NULL,
    approved_at       REAL,
    rejected_at       REAL,
    completed_at      REAL,
    cancelled_at      REAL,
    FOREIGN KEY (channel_id) REFERENCES channels(channel_id) ON DELETE CASCADE
);

-- Discrepancies: audit trail of ledger mirror mismatches, never corrective
CREATE TABLE IF NOT EXISTS discrepancies (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_id         TEXT NOT NULL,
    kind               TEXT NOT NULL CHECK (kind IN ('balance_mismatch', 'entry_missing', 'external_closure')),
    off_ledger_balance REAL NOT NULL,
    on_ledger_balance  REAL NOT NULL,
    detail             TEXT NOT NULL DEFAULT '',
    created_at         REAL NOT NULL
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_channels_state ON channels(state);
CREATE INDEX IF NOT EXISTS idx_channels_sponsor ON channels(sponsor_id);
CREATE INDEX IF NOT EXISTS idx_channels_worker ON channels(worker_id);
CREATE INDEX IF NOT EXISTS idx_channels_closing ON channels(state, expires_at) WHERE state = 'closing';
CREATE INDEX IF NOT EXISTS idx_sessions_channel ON work_sessions(channel_id);
CREATE INDEX IF NOT EXISTS idx_sessions_open ON work_sessions(status) WHERE status = 'open';
CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_worker_channel_open
    ON work_sessions(worker_id, channel_id) WHERE status = 'open';
CREATE INDEX IF NOT EXISTS idx_requests_channel ON closure_requests(channel_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_requests_channel_pending
    ON closure_requests(channel_id) WHERE status = 'pending';
CREATE INDEX IF NOT EXISTS idx_discrepancies_channel ON discrepancies(channel_id, created_at);
CREATE INDEX IF NOT EXISTS idx_actors_api_key ON actors(api_key);
"""
