"""Database schema creation and versioning.

All CREATE TABLE statements for the identity store.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("timebridge.db")

SCHEMA_VERSION = 2

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Identity mapping (platform tag ↔ tracker issue) ────────────
CREATE TABLE IF NOT EXISTS identity_mapping (
    platform_tag_id    TEXT PRIMARY KEY,
    tracker_issue_key  TEXT NOT NULL,
    updated_at         TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_mapping_issue ON identity_mapping(tracker_issue_key);

-- ── 2. Per-direction cursors ───────────────────────────────────────
CREATE TABLE IF NOT EXISTS sync_cursor (
    direction     TEXT PRIMARY KEY,
    cursor_value  TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);

-- ── 3. Record outcome ledger ───────────────────────────────────────
CREATE TABLE IF NOT EXISTS record_outcome (
    record_id      TEXT NOT NULL,
    direction      TEXT NOT NULL,
    outcome        TEXT NOT NULL,
    attempt_count  INTEGER NOT NULL DEFAULT 0,
    reason         TEXT DEFAULT '',
    updated_at     TEXT NOT NULL,
    PRIMARY KEY (record_id, direction)
);

CREATE INDEX IF NOT EXISTS idx_outcome_state ON record_outcome(direction, outcome);

-- ── 4. Created work logs, keyed by idempotency key ─────────────────
CREATE TABLE IF NOT EXISTS worklog_ledger (
    idempotency_key     TEXT PRIMARY KEY,
    record_id           TEXT NOT NULL,
    platform_tag_id     TEXT NOT NULL,
    tracker_issue_key   TEXT NOT NULL,
    tracker_worklog_id  TEXT DEFAULT '',
    created_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_ledger_record ON worklog_ledger(record_id);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    # Check current schema version
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    # Execute all CREATE TABLE statements
    await db.executescript(_TABLES)

    # v2: change detection for discovered tags
    await _ensure_column(db, "identity_mapping", "tag_fingerprint", "TEXT DEFAULT ''")

    # Record schema version
    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
