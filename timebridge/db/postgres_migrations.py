"""PostgreSQL schema creation and versioning for the identity store."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("timebridge.db")

SCHEMA_VERSION = 2

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS identity_mapping (
    platform_tag_id    TEXT PRIMARY KEY,
    tracker_issue_key  TEXT NOT NULL UNIQUE,
    tag_fingerprint    TEXT DEFAULT '',
    updated_at         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_cursor (
    direction     TEXT PRIMARY KEY,
    cursor_value  TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);

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


async def run_migrations(pool: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(_TABLES)
            current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
            if current_version >= SCHEMA_VERSION:
                logger.info(f"Schema is up to date (version {current_version})")
                return
            await conn.execute(
                "ALTER TABLE identity_mapping ADD COLUMN IF NOT EXISTS tag_fingerprint TEXT DEFAULT ''"
            )
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
