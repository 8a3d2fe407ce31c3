"""Database connection factory.

Provides the async connection handle for the identity store: a single SQLite
connection in WAL mode (default) or an asyncpg pool.
Backend selection via TIMEBRIDGE_DB_BACKEND env var.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Union, Any

import aiosqlite
try:
    import asyncpg
except ImportError:
    asyncpg = None  # type: ignore

from timebridge import config

logger = logging.getLogger("timebridge.db")

# Type alias for DB connection/pool
DbConnection = Union[aiosqlite.Connection, Any]  # Any to support asyncpg.Pool

_connection: DbConnection | None = None

_DSN_RE = re.compile(r"^(?P<scheme>[^:]+)://(?:(?P<user>[^:@/]+)(?::[^@/]*)?@)?(?P<host>[^:/?]+)?(?::(?P<port>\d+))?(?:/(?P<db>[^?]+))?")


def describe_dsn(dsn: str) -> str:
    """Describe a database URL for logging, without credentials."""
    match = _DSN_RE.match(dsn or "")
    if not match:
        return "host: UNKNOWN, port: UNKNOWN, database name: UNKNOWN"
    return "host: {}, port: {}, database name: {}".format(
        match.group("host") or "UNKNOWN",
        match.group("port") or "DEFAULT",
        match.group("db") or "UNKNOWN",
    )


async def open_sqlite(path: str) -> aiosqlite.Connection:
    """Open a SQLite connection configured for the identity store."""
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(path)
    conn.row_factory = aiosqlite.Row
    # Enable WAL mode for better concurrent read performance
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")
    return conn


async def get_connection() -> DbConnection:
    """Return the process-wide database connection/pool, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    if config.DB_BACKEND == "postgres":
        if not asyncpg:
            raise ImportError("asyncpg is required for Postgres backend.")

        logger.info("Connecting to PostgreSQL (%s)", describe_dsn(config.DATABASE_URL))
        _connection = await asyncpg.create_pool(
            config.DATABASE_URL,
            min_size=1,
            max_size=10,
            command_timeout=config.DB_COMMAND_TIMEOUT_SECONDS,
        )
        return _connection

    _connection = await open_sqlite(config.DB_PATH)
    logger.info("Database connection established: %s", config.DB_PATH)
    return _connection


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()  # asyncpg Pool and aiosqlite Connection both have close()
        _connection = None
        logger.info("Database connection closed")
