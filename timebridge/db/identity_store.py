"""Identity store: tag mappings, sync cursors and the record outcome ledger.

Every public method runs inside its own transaction (acquire -> use ->
commit or roll back -> release). The store is the only component that
touches the database, and it never holds a transaction open across a
network call made by its callers.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable

import aiosqlite

from timebridge.db.repositories.identity import (
    SqliteCursorRepository,
    SqliteMappingRepository,
    SqliteOutcomeRepository,
    SqliteWorklogLedgerRepository,
)
from timebridge.errors import IntegrityViolation
from timebridge.models import (
    CursorRecord,
    Direction,
    LedgerEntry,
    MappingRecord,
    Outcome,
    OutcomeRecord,
)

logger = logging.getLogger("timebridge.store")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _cursor_sort_key(value: str) -> tuple[int, Any]:
    token = (value or "").strip()
    if token.isdigit():
        return (0, int(token))
    try:
        parsed = datetime.fromisoformat(token.replace("Z", "+00:00"))
    except ValueError:
        return (2, token)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return (1, parsed)


def cursor_precedes(candidate: str, current: str) -> bool:
    """True when ``candidate`` is strictly behind ``current``."""
    candidate_key = _cursor_sort_key(candidate)
    current_key = _cursor_sort_key(current)
    if candidate_key[0] != current_key[0]:
        raise IntegrityViolation(
            f"Cursor value {candidate!r} is not comparable with stored value {current!r}"
        )
    return candidate_key[1] < current_key[1]


@dataclass
class _Repositories:
    mappings: Any
    cursors: Any
    outcomes: Any
    ledger: Any


class IdentityStore:
    """Backend-agnostic transactional API over the identity tables."""

    def _transaction(self):
        """Async context manager yielding repositories bound to one transaction."""
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError

    # ── Identity mapping ─────────────────────────────────────────

    async def lookup_mapping(self, platform_tag_id: str) -> MappingRecord | None:
        """Return the mapping for a platform tag, or None when unknown."""
        async with self._transaction() as repos:
            row = await repos.mappings.get(platform_tag_id)
        return MappingRecord(**row) if row else None

    async def upsert_mapping(
        self,
        platform_tag_id: str,
        tracker_issue_key: str,
        fingerprint: str = "",
    ) -> MappingRecord:
        """Create or overwrite the mapping for ``platform_tag_id``.

        Raises IntegrityViolation when another tag already maps to the issue.
        """
        now = _now()
        async with self._transaction() as repos:
            owner = await repos.mappings.get_by_issue(tracker_issue_key)
            if owner and owner["platform_tag_id"] != platform_tag_id:
                raise IntegrityViolation(
                    f"Issue {tracker_issue_key} is already mapped to tag {owner['platform_tag_id']}"
                )
            await repos.mappings.upsert(platform_tag_id, tracker_issue_key, fingerprint, now)
        return MappingRecord(
            platform_tag_id=platform_tag_id,
            tracker_issue_key=tracker_issue_key,
            tag_fingerprint=fingerprint,
            updated_at=now,
        )

    async def mapping_count(self) -> int:
        async with self._transaction() as repos:
            return await repos.mappings.count()

    # ── Cursors ──────────────────────────────────────────────────

    async def get_cursor(self, direction: Direction) -> str | None:
        async with self._transaction() as repos:
            row = await repos.cursors.get(direction.value)
        return row["cursor_value"] if row else None

    async def advance_cursor(self, direction: Direction, value: str) -> CursorRecord:
        """Move a cursor forward. Regression raises IntegrityViolation."""
        value = str(value)
        now = _now()
        async with self._transaction() as repos:
            row = await repos.cursors.get(direction.value)
            if row:
                current = row["cursor_value"]
                if cursor_precedes(value, current):
                    raise IntegrityViolation(
                        f"Refusing to move {direction.value} cursor back from {current} to {value}"
                    )
                if value == current:
                    return CursorRecord(**row)
            await repos.cursors.put(direction.value, value, now)
        logger.debug("Cursor %s advanced to %s", direction.value, value)
        return CursorRecord(direction=direction, cursor_value=value, updated_at=now)

    async def reset_cursor(self, direction: Direction) -> None:
        """Drop a cursor so the direction starts over. Used for refresh wrap-around."""
        async with self._transaction() as repos:
            await repos.cursors.delete(direction.value)
        logger.info("Cursor %s reset", direction.value)

    async def list_cursors(self) -> list[CursorRecord]:
        async with self._transaction() as repos:
            rows = await repos.cursors.list_all()
        return [CursorRecord(**row) for row in rows]

    # ── Outcomes ─────────────────────────────────────────────────

    async def get_outcome(self, record_id: str, direction: Direction) -> OutcomeRecord | None:
        async with self._transaction() as repos:
            row = await repos.outcomes.get(record_id, direction.value)
        return OutcomeRecord(**row) if row else None

    async def record_outcome(
        self,
        record_id: str,
        direction: Direction,
        outcome: Outcome,
        reason: str = "",
        worklogs: Iterable[LedgerEntry] = (),
    ) -> OutcomeRecord:
        """Record one attempt for ``(record_id, direction)``.

        Ledger rows for work logs created during the attempt are written in
        the same transaction as the outcome.
        """
        now = _now()
        async with self._transaction() as repos:
            row = await repos.outcomes.get(record_id, direction.value)
            attempt_count = (int(row["attempt_count"]) if row else 0) + 1
            for entry in worklogs:
                payload = entry.model_dump()
                payload["created_at"] = payload["created_at"] or now
                await repos.ledger.insert(payload)
            await repos.outcomes.upsert(
                record_id, direction.value, outcome.value, attempt_count, reason, now
            )
        return OutcomeRecord(
            record_id=record_id,
            direction=direction,
            outcome=outcome,
            attempt_count=attempt_count,
            reason=reason,
            updated_at=now,
        )

    async def list_outcomes(
        self,
        direction: Direction | None = None,
        outcome: Outcome | None = None,
        limit: int = 100,
    ) -> list[OutcomeRecord]:
        async with self._transaction() as repos:
            rows = await repos.outcomes.list(
                direction.value if direction else None,
                outcome.value if outcome else None,
                limit,
            )
        return [OutcomeRecord(**row) for row in rows]

    # ── Work log ledger ──────────────────────────────────────────

    async def find_worklog(self, idempotency_key: str) -> LedgerEntry | None:
        async with self._transaction() as repos:
            row = await repos.ledger.get(idempotency_key)
        return LedgerEntry(**row) if row else None

    async def worklogs_for_record(self, record_id: str) -> list[LedgerEntry]:
        async with self._transaction() as repos:
            rows = await repos.ledger.list_for_record(record_id)
        return [LedgerEntry(**row) for row in rows]


class SqliteIdentityStore(IdentityStore):
    """Single aiosqlite connection; a lock serializes transactions on it."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self._lock = asyncio.Lock()
        self._repos = _Repositories(
            mappings=SqliteMappingRepository(db),
            cursors=SqliteCursorRepository(db),
            outcomes=SqliteOutcomeRepository(db),
            ledger=SqliteWorklogLedgerRepository(db),
        )

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[_Repositories]:
        async with self._lock:
            try:
                yield self._repos
            except BaseException:
                await self.db.rollback()
                raise
            else:
                await self.db.commit()

    async def ping(self) -> bool:
        try:
            async with self.db.execute("SELECT 1") as cur:
                await cur.fetchone()
            return True
        except (aiosqlite.Error, ValueError) as exc:
            logger.warning("Identity store ping failed: %s", exc)
            return False


class PostgresIdentityStore(IdentityStore):
    """asyncpg pool; each transaction runs on its own pooled connection."""

    def __init__(self, pool: Any):
        self.pool = pool

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[_Repositories]:
        from timebridge.db.repositories.postgres.identity import (
            PostgresCursorRepository,
            PostgresMappingRepository,
            PostgresOutcomeRepository,
            PostgresWorklogLedgerRepository,
        )

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield _Repositories(
                    mappings=PostgresMappingRepository(conn),
                    cursors=PostgresCursorRepository(conn),
                    outcomes=PostgresOutcomeRepository(conn),
                    ledger=PostgresWorklogLedgerRepository(conn),
                )

    async def ping(self) -> bool:
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception as exc:  # noqa: BLE001
            logger.warning("Identity store ping failed: %s", exc)
            return False
