"""SQLite implementation of the identity store tables.

These repositories never commit: the identity store wraps every call in
its own transaction so related writes land together.
"""
from __future__ import annotations

import aiosqlite


class SqliteMappingRepository:
    """Platform tag id ↔ tracker issue key."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, platform_tag_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM identity_mapping WHERE platform_tag_id = ?", (platform_tag_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def get_by_issue(self, tracker_issue_key: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM identity_mapping WHERE tracker_issue_key = ?", (tracker_issue_key,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def upsert(self, platform_tag_id: str, tracker_issue_key: str, fingerprint: str, now: str) -> None:
        await self.db.execute(
            """INSERT INTO identity_mapping (platform_tag_id, tracker_issue_key, tag_fingerprint, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(platform_tag_id) DO UPDATE SET
                 tracker_issue_key=excluded.tracker_issue_key,
                 tag_fingerprint=excluded.tag_fingerprint,
                 updated_at=excluded.updated_at""",
            (platform_tag_id, tracker_issue_key, fingerprint, now),
        )

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM identity_mapping") as cur:
            row = await cur.fetchone()
            return int(row[0]) if row else 0


class SqliteCursorRepository:
    """Durable per-direction cursors."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, direction: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM sync_cursor WHERE direction = ?", (direction,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def put(self, direction: str, cursor_value: str, now: str) -> None:
        await self.db.execute(
            """INSERT INTO sync_cursor (direction, cursor_value, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(direction) DO UPDATE SET
                 cursor_value=excluded.cursor_value, updated_at=excluded.updated_at""",
            (direction, cursor_value, now),
        )

    async def delete(self, direction: str) -> None:
        await self.db.execute("DELETE FROM sync_cursor WHERE direction = ?", (direction,))

    async def list_all(self) -> list[dict]:
        async with self.db.execute("SELECT * FROM sync_cursor ORDER BY direction") as cur:
            return [dict(r) for r in await cur.fetchall()]


class SqliteOutcomeRepository:
    """Per (record, direction) outcome ledger."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, record_id: str, direction: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM record_outcome WHERE record_id = ? AND direction = ?",
            (record_id, direction),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def upsert(
        self,
        record_id: str,
        direction: str,
        outcome: str,
        attempt_count: int,
        reason: str,
        now: str,
    ) -> None:
        await self.db.execute(
            """INSERT INTO record_outcome (record_id, direction, outcome, attempt_count, reason, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(record_id, direction) DO UPDATE SET
                 outcome=excluded.outcome, attempt_count=excluded.attempt_count,
                 reason=excluded.reason, updated_at=excluded.updated_at""",
            (record_id, direction, outcome, attempt_count, reason, now),
        )

    async def list(
        self,
        direction: str | None = None,
        outcome: str | None = None,
        limit: int = 100,
    ) -> list[dict]:
        clauses = []
        params: list = []
        if direction:
            clauses.append("direction = ?")
            params.append(direction)
        if outcome:
            clauses.append("outcome = ?")
            params.append(outcome)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        async with self.db.execute(
            f"SELECT * FROM record_outcome {where} ORDER BY updated_at DESC, record_id LIMIT ?",
            tuple(params),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]


class SqliteWorklogLedgerRepository:
    """Work logs this connector has created, keyed by idempotency key."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, idempotency_key: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM worklog_ledger WHERE idempotency_key = ?", (idempotency_key,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def insert(self, entry: dict) -> None:
        await self.db.execute(
            """INSERT OR IGNORE INTO worklog_ledger (
                idempotency_key, record_id, platform_tag_id, tracker_issue_key,
                tracker_worklog_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)""",
            (
                entry["idempotency_key"], entry["record_id"],
                entry["platform_tag_id"], entry["tracker_issue_key"],
                entry.get("tracker_worklog_id", ""), entry["created_at"],
            ),
        )

    async def list_for_record(self, record_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM worklog_ledger WHERE record_id = ? ORDER BY created_at",
            (record_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]
