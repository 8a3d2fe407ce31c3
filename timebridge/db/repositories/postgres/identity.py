"""PostgreSQL implementation of the identity store tables."""
from __future__ import annotations

import asyncpg


class PostgresMappingRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def get(self, platform_tag_id: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM identity_mapping WHERE platform_tag_id = $1", platform_tag_id
        )
        return dict(row) if row else None

    async def get_by_issue(self, tracker_issue_key: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM identity_mapping WHERE tracker_issue_key = $1", tracker_issue_key
        )
        return dict(row) if row else None

    async def upsert(self, platform_tag_id: str, tracker_issue_key: str, fingerprint: str, now: str) -> None:
        await self.db.execute(
            """INSERT INTO identity_mapping (platform_tag_id, tracker_issue_key, tag_fingerprint, updated_at)
               VALUES ($1, $2, $3, $4)
               ON CONFLICT(platform_tag_id) DO UPDATE SET
                 tracker_issue_key=EXCLUDED.tracker_issue_key,
                 tag_fingerprint=EXCLUDED.tag_fingerprint,
                 updated_at=EXCLUDED.updated_at""",
            platform_tag_id, tracker_issue_key, fingerprint, now,
        )

    async def count(self) -> int:
        return int(await self.db.fetchval("SELECT COUNT(*) FROM identity_mapping") or 0)


class PostgresCursorRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def get(self, direction: str) -> dict | None:
        # Row lock keeps concurrent advances serialized across processes
        row = await self.db.fetchrow(
            "SELECT * FROM sync_cursor WHERE direction = $1 FOR UPDATE", direction
        )
        return dict(row) if row else None

    async def put(self, direction: str, cursor_value: str, now: str) -> None:
        await self.db.execute(
            """INSERT INTO sync_cursor (direction, cursor_value, updated_at)
               VALUES ($1, $2, $3)
               ON CONFLICT(direction) DO UPDATE SET
                 cursor_value=EXCLUDED.cursor_value, updated_at=EXCLUDED.updated_at""",
            direction, cursor_value, now,
        )

    async def delete(self, direction: str) -> None:
        await self.db.execute("DELETE FROM sync_cursor WHERE direction = $1", direction)

    async def list_all(self) -> list[dict]:
        rows = await self.db.fetch("SELECT * FROM sync_cursor ORDER BY direction")
        return [dict(r) for r in rows]


class PostgresOutcomeRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def get(self, record_id: str, direction: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM record_outcome WHERE record_id = $1 AND direction = $2 FOR UPDATE",
            record_id, direction,
        )
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
               VALUES ($1, $2, $3, $4, $5, $6)
               ON CONFLICT(record_id, direction) DO UPDATE SET
                 outcome=EXCLUDED.outcome, attempt_count=EXCLUDED.attempt_count,
                 reason=EXCLUDED.reason, updated_at=EXCLUDED.updated_at""",
            record_id, direction, outcome, attempt_count, reason, now,
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
            params.append(direction)
            clauses.append(f"direction = ${len(params)}")
        if outcome:
            params.append(outcome)
            clauses.append(f"outcome = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = await self.db.fetch(
            f"SELECT * FROM record_outcome {where} ORDER BY updated_at DESC, record_id LIMIT ${len(params)}",
            *params,
        )
        return [dict(r) for r in rows]


class PostgresWorklogLedgerRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def get(self, idempotency_key: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM worklog_ledger WHERE idempotency_key = $1", idempotency_key
        )
        return dict(row) if row else None

    async def insert(self, entry: dict) -> None:
        await self.db.execute(
            """INSERT INTO worklog_ledger (
                idempotency_key, record_id, platform_tag_id, tracker_issue_key,
                tracker_worklog_id, created_at
            ) VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT(idempotency_key) DO NOTHING""",
            entry["idempotency_key"], entry["record_id"],
            entry["platform_tag_id"], entry["tracker_issue_key"],
            entry.get("tracker_worklog_id", ""), entry["created_at"],
        )

    async def list_for_record(self, record_id: str) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM worklog_ledger WHERE record_id = $1 ORDER BY created_at", record_id
        )
        return [dict(r) for r in rows]
