"""Identity store factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any

import aiosqlite

from timebridge.db.identity_store import (
    IdentityStore,
    PostgresIdentityStore,
    SqliteIdentityStore,
)


def get_identity_store(db: Any) -> IdentityStore:
    if isinstance(db, aiosqlite.Connection):
        return SqliteIdentityStore(db)
    return PostgresIdentityStore(db)
