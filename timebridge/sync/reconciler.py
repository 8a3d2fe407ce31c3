"""Batch reconciler: runs discovery, refresh and posting cycles.

Each cycle moves through ``idle -> fetching -> processing -> committing ->
idle``. Per-item failures are classified by the pipelines and recorded in
the identity store; anything that escapes them aborts the cycle with the
cursor untouched, so the next cycle re-fetches the same window.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from timebridge.db.identity_store import IdentityStore, cursor_precedes
from timebridge.errors import CycleError
from timebridge.models import (
    CycleSummary,
    CyclePhase,
    Direction,
    Outcome,
    PublishResult,
    RecordResult,
    TimeRecord,
)
from timebridge.observability import record_cycle, record_item_outcome, start_span
from timebridge.sync.discovery import TagDiscoveryPipeline
from timebridge.sync.posting import TimePostingPipeline
from timebridge.sync.retry_policy import classify
from timebridge.worklog_format import ellipsize

logger = logging.getLogger("timebridge.reconciler")

_PUBLISH_OUTCOMES = {
    "created": Outcome.PROCESSED,
    "updated": Outcome.PROCESSED,
    "retrying": Outcome.TRANSIENT_FAILURE,
    "failed": Outcome.PERMANENT_FAILURE,
}


def _parse_cursor_datetime(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class _CycleAborted(Exception):
    """Stop requested between items."""


class BatchReconciler:
    """Orchestrates the discovery and posting pipelines per invocation cycle."""

    def __init__(
        self,
        store: IdentityStore,
        platform: Any,
        discovery: TagDiscoveryPipeline,
        posting: TimePostingPipeline,
        *,
        discovery_start: str = "1970-01-01T00:00:00Z",
        posting_batch_size: int = 25,
        tag_sync_interval_minutes: int = 5,
        tag_upsert_batch_size: int = 200,
        stop_event: asyncio.Event | None = None,
    ):
        self.store = store
        self.platform = platform
        self.discovery = discovery
        self.posting = posting
        self.discovery_start = discovery_start
        self.posting_batch_size = posting_batch_size
        self.tag_sync_interval_minutes = tag_sync_interval_minutes
        self.tag_upsert_batch_size = tag_upsert_batch_size
        self.stop_event = stop_event or asyncio.Event()
        self._locks = {direction: asyncio.Lock() for direction in Direction}
        self._phases = {direction: CyclePhase.IDLE for direction in Direction}
        self._running = {direction: 0 for direction in Direction}
        self._posting_in_flight: set[str] = set()
        self._last_summaries: dict[Direction, CycleSummary] = {}
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 40

    # ── Status ───────────────────────────────────────────────────

    def phase(self, direction: Direction) -> CyclePhase:
        return self._phases[direction]

    def last_summary(self, direction: Direction) -> CycleSummary | None:
        return self._last_summaries.get(direction)

    def request_stop(self) -> None:
        """Abort running cycles at the next item boundary."""
        self.stop_event.set()

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            return copy.deepcopy(op) if op else None

    async def get_status_snapshot(self) -> dict[str, Any]:
        """Phases, last summaries and live operations for the status API."""
        async with self._ops_lock:
            active = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order
                if op_id in self._active_operation_ids and op_id in self._operations
            ]
        return {
            "phases": {direction.value: phase.value for direction, phase in self._phases.items()},
            "lastCycles": {
                direction.value: summary.model_dump(mode="json", exclude={"results"})
                for direction, summary in self._last_summaries.items()
            },
            "activeOperationCount": len(active),
            "activeOperations": active,
            "stopRequested": self.stop_event.is_set(),
        }

    # ── Operations history ───────────────────────────────────────

    async def _start_operation(self, kind: str, trigger: str, metadata: dict[str, Any]) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": op_id,
            "kind": kind,
            "trigger": trigger,
            "status": "running",
            "phase": CyclePhase.IDLE.value,
            "message": "",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "counters": {},
            "metadata": metadata,
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history :]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (trigger=%s)", op_id, kind, trigger)
        return op_id

    async def _update_operation(
        self,
        operation_id: str,
        *,
        phase: CyclePhase | None = None,
        message: str | None = None,
        counters: dict[str, Any] | None = None,
    ) -> None:
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            if phase is not None:
                operation["phase"] = phase.value
            if message is not None:
                operation["message"] = message
            if counters:
                operation.setdefault("counters", {}).update(counters)
            operation["updatedAt"] = datetime.now(timezone.utc).isoformat()
        if message:
            logger.debug("Operation update [%s] %s", operation_id, message)

    async def _finish_operation(self, operation_id: str, summary: CycleSummary) -> None:
        now = datetime.now(timezone.utc).isoformat()
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = summary.status
            operation["phase"] = CyclePhase.IDLE.value
            operation["updatedAt"] = now
            operation["finishedAt"] = now
            operation["durationMs"] = summary.duration_ms
            operation["counters"].update(
                {
                    "processed": summary.processed,
                    "failed": summary.failed,
                    "skipped": summary.skipped,
                    "retrying": summary.retrying,
                }
            )
            if summary.cursor is not None:
                operation["counters"]["cursor"] = summary.cursor
            if summary.status == "failed" and summary.errors:
                operation["error"] = summary.errors[-1]
            self._active_operation_ids.discard(operation_id)

        if summary.status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, operation["error"])
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, summary.status)

    # ── Cycle plumbing ───────────────────────────────────────────

    async def _set_phase(self, summary: CycleSummary, phase: CyclePhase, message: str | None = None) -> None:
        self._phases[summary.direction] = phase
        await self._update_operation(
            summary.operation_id,
            phase=phase,
            message=message,
            counters={
                "processed": summary.processed,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "retrying": summary.retrying,
            },
        )

    def _check_stop(self) -> None:
        if self.stop_event.is_set():
            raise _CycleAborted()

    async def _advance_if_ahead(self, direction: Direction, value: str) -> str:
        """Advance a cursor only when ``value`` moves it forward; return the stored value.

        Cycles of one direction may overlap, so only this read-compare-write
        step runs under the direction's lock.
        """
        async with self._locks[direction]:
            current = await self.store.get_cursor(direction)
            if current is not None and not cursor_precedes(current, value):
                return current
            record = await self.store.advance_cursor(direction, value)
            return record.cursor_value

    async def _run_cycle(self, direction: Direction, trigger: str, body, metadata: dict[str, Any] | None = None) -> CycleSummary:
        op_id = await self._start_operation(direction.value, trigger, metadata or {})
        summary = CycleSummary(direction=direction, operation_id=op_id)
        self._running[direction] += 1
        t0 = time.monotonic()
        error: BaseException | None = None
        try:
            with start_span(f"timebridge.cycle.{direction.value}", {"trigger": trigger}):
                await body(summary)
        except _CycleAborted:
            summary.status = "aborted"
            logger.warning("%s cycle aborted on stop request", direction.value.capitalize())
        except asyncio.CancelledError:
            summary.status = "aborted"
            raise
        except Exception as exc:
            summary.status = "failed"
            summary.errors.append(f"{type(exc).__name__}: {exc}")
            error = exc
        finally:
            summary.duration_ms = int((time.monotonic() - t0) * 1000)
            self._running[direction] -= 1
            if not self._running[direction]:
                self._phases[direction] = CyclePhase.IDLE
            self._last_summaries[direction] = summary
            await self._finish_operation(op_id, summary)
            record_cycle(direction.value, summary.status, summary.duration_ms)

        if error is not None:
            raise CycleError(
                f"{direction.value} cycle aborted: {error}", summary=summary, cause=error
            ) from error
        return summary

    @staticmethod
    def _tally_publish(summary: CycleSummary, result: PublishResult) -> None:
        if result.action == "unchanged":
            summary.skipped += 1
            return
        outcome = _PUBLISH_OUTCOMES.get(result.action, Outcome.PERMANENT_FAILURE)
        record_item_outcome(summary.direction.value, outcome.value)
        if outcome == Outcome.PROCESSED:
            summary.processed += 1
        elif outcome == Outcome.TRANSIENT_FAILURE:
            summary.retrying += 1
            summary.errors.append(f"{result.tag}: {result.message}")
        else:
            summary.failed += 1
            summary.errors.append(f"{result.tag}: {result.message}")

    @staticmethod
    def _tally_record(summary: CycleSummary, result: RecordResult) -> None:
        record_item_outcome(summary.direction.value, result.outcome.value)
        summary.results.append(result)
        if result.outcome == Outcome.PROCESSED:
            summary.processed += 1
        elif result.outcome == Outcome.TRANSIENT_FAILURE:
            summary.retrying += 1
            summary.errors.append(f"{result.record_id}: {result.message}")
        else:
            summary.failed += 1
            summary.errors.append(f"{result.record_id}: {result.message}")

    # ── Discovery ────────────────────────────────────────────────

    async def run_discovery_cycle(self, trigger: str = "scheduler") -> CycleSummary:
        """Publish tags for issues updated since the discovery cursor."""
        return await self._run_cycle(Direction.DISCOVERY, trigger, self._discovery_body)

    async def _discovery_body(self, summary: CycleSummary) -> None:
        await self._set_phase(summary, CyclePhase.FETCHING, "Retrying pending tag upserts")
        for result in await self.discovery.retry_pending(self.tag_upsert_batch_size):
            self._tally_publish(summary, result)

        stored = await self.store.get_cursor(Direction.DISCOVERY)
        since = _parse_cursor_datetime(stored or self.discovery_start)
        summary.cursor = stored
        token = None
        while True:
            self._check_stop()
            await self._set_phase(summary, CyclePhase.FETCHING, f"Fetching issues updated since {since.isoformat()}")
            page = await self.discovery.fetch_page(since, token)

            await self._set_phase(summary, CyclePhase.PROCESSING, f"Processing {len(page.issues)} issues")
            max_seen: datetime | None = None
            for issue in page.issues:
                self._check_stop()
                tag = self.discovery.to_tag(issue)
                if tag is None:
                    summary.skipped += 1
                else:
                    self._tally_publish(summary, await self.discovery.publish(tag))
                if issue.updated is not None and (max_seen is None or issue.updated > max_seen):
                    max_seen = issue.updated

            await self._set_phase(summary, CyclePhase.COMMITTING)
            if max_seen is not None:
                value = max_seen.astimezone(timezone.utc).isoformat()
                summary.cursor = await self._advance_if_ahead(Direction.DISCOVERY, value)
            if page.is_last:
                break
            token = page.next_page_token

        logger.info(
            "Discovery cycle done: %s published, %s unchanged or filtered, %s failed, %s retrying",
            summary.processed, summary.skipped, summary.failed, summary.retrying,
        )

    # ── Refresh ──────────────────────────────────────────────────

    async def run_refresh_cycle(self, trigger: str = "scheduler") -> CycleSummary:
        """Re-send one batch of already known issues, walking issue ids."""
        return await self._run_cycle(Direction.REFRESH, trigger, self._refresh_body)

    async def _refresh_body(self, summary: CycleSummary) -> None:
        await self._set_phase(summary, CyclePhase.FETCHING)
        batch_size = await self.discovery.refresh_size(self.tag_sync_interval_minutes, self.tag_upsert_batch_size)
        stored = await self.store.get_cursor(Direction.REFRESH)
        after_id = int(stored) if stored else 0
        summary.cursor = stored
        issues = await self.discovery.refresh_batch(after_id, batch_size)

        if not issues:
            await self._set_phase(summary, CyclePhase.COMMITTING, "Refresh pass complete, starting over")
            if stored is not None:
                async with self._locks[Direction.REFRESH]:
                    await self.store.reset_cursor(Direction.REFRESH)
            summary.cursor = None
            return

        logger.info("Refreshing %s %s: %s",
                    len(issues), "tags" if len(issues) > 1 else "tag", ellipsize([i.key for i in issues]))
        await self._set_phase(summary, CyclePhase.PROCESSING)
        for issue in issues:
            self._check_stop()
            tag = self.discovery.to_tag(issue)
            if tag is None:
                summary.skipped += 1
                continue
            self._tally_publish(summary, await self.discovery.publish(tag, force=True))

        await self._set_phase(summary, CyclePhase.COMMITTING)
        summary.cursor = await self._advance_if_ahead(Direction.REFRESH, str(max(i.id for i in issues)))

    # ── Posting ──────────────────────────────────────────────────

    async def run_posting_cycle(
        self,
        batch: Iterable[TimeRecord] | None = None,
        trigger: str = "scheduler",
    ) -> CycleSummary:
        """Post a batch of time records.

        With ``batch=None`` pending records are pulled from the platform and
        every terminal outcome is acknowledged through its API. A batch
        handed in by the webhook is acknowledged by the webhook response, so
        terminal results are only marked as acknowledged.
        """
        records = list(batch) if batch is not None else None

        async def body(summary: CycleSummary) -> None:
            await self._posting_body(summary, records)

        return await self._run_cycle(
            Direction.POSTING,
            trigger,
            body,
            {"source": "webhook" if records is not None else "platform"},
        )

    async def _posting_body(self, summary: CycleSummary, records: list[TimeRecord] | None) -> None:
        await self._set_phase(summary, CyclePhase.FETCHING)
        poll = records is None
        if poll:
            records = await self.platform.fetch_posted_time(self.posting_batch_size)
        summary.cursor = await self.store.get_cursor(Direction.POSTING)

        await self._set_phase(summary, CyclePhase.PROCESSING, f"Posting {len(records)} time records")
        latest: datetime | None = None
        for record in records:
            self._check_stop()
            if record.record_id in self._posting_in_flight:
                logger.info("Posted time %s is being posted by another cycle, skipping", record.record_id)
                summary.skipped += 1
                summary.results.append(
                    RecordResult(
                        record_id=record.record_id,
                        outcome=Outcome.TRANSIENT_FAILURE,
                        message="already being posted by another cycle",
                    )
                )
                continue
            self._posting_in_flight.add(record.record_id)
            try:
                result = await self.posting.post_record(record)
                if result.outcome.is_terminal:
                    result.acknowledged = await self._acknowledge(result) if poll else True
            finally:
                self._posting_in_flight.discard(record.record_id)
            self._tally_record(summary, result)
            if record.posted_at is not None and (latest is None or record.posted_at > latest):
                latest = record.posted_at

        await self._set_phase(summary, CyclePhase.COMMITTING)
        if latest is not None:
            value = latest.astimezone(timezone.utc).isoformat()
            summary.cursor = await self._advance_if_ahead(Direction.POSTING, value)

    async def _acknowledge(self, result: RecordResult) -> bool:
        try:
            await self.platform.acknowledge(result.record_id, result.outcome, result.message)
        except Exception as exc:
            if classify(exc) is None:
                raise
            logger.warning("Acknowledging %s failed, the platform will redeliver it: %s", result.record_id, exc)
            return False
        return True
