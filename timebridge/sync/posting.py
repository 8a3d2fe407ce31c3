"""Time posting: platform time records -> tracker work logs."""
from __future__ import annotations

import logging
from typing import Any, Iterable

from timebridge.db.identity_store import IdentityStore
from timebridge.models import (
    Direction,
    ErrorClass,
    LedgerEntry,
    MappingRecord,
    Outcome,
    RecordResult,
    TagRef,
    TimeRecord,
    WorkLogEntry,
)
from timebridge.sync.retry_policy import RetryPolicy, classify
from timebridge.worklog_format import (
    activity_start,
    ellipsize,
    format_comment,
    idempotency_key,
    parse_issue_key,
    tag_duration_secs,
)

logger = logging.getLogger("timebridge.posting")


class _RecordFailure(Exception):
    def __init__(self, error_class: ErrorClass, reason: str):
        super().__init__(reason)
        self.error_class = error_class
        self.reason = reason


class TimePostingPipeline:
    """Turns each posted time record into one tracker work log per relevant tag."""

    def __init__(
        self,
        store: IdentityStore,
        tracker: Any,
        *,
        caller_key: str = "",
        upsert_path: str = "/Jira/",
        project_keys: list[str] | None = None,
        retry_policy: RetryPolicy | None = None,
        unknown_tag_grace_attempts: int = 0,
    ):
        self.store = store
        self.tracker = tracker
        self.caller_key = caller_key
        self.upsert_path = upsert_path
        self.project_keys = list(project_keys or [])
        self.retry_policy = retry_policy or RetryPolicy()
        self.unknown_tag_grace_attempts = max(0, unknown_tag_grace_attempts)

    # ── Tag filters ──────────────────────────────────────────────

    def created_by_connector(self, tag: TagRef) -> bool:
        return tag.path in (
            self.upsert_path,
            self.upsert_path + tag.name,
            self.upsert_path.strip("/"),  # legacy format
        )

    def relevant_project(self, tag: TagRef) -> bool:
        issue_key = parse_issue_key(tag.name)
        if issue_key is None:
            return False
        return not self.project_keys or issue_key[0] in self.project_keys

    def relevant_tags(self, record: TimeRecord) -> list[TagRef]:
        seen: set[str] = set()
        tags = []
        for tag in record.tags:
            if tag.name in seen or not self.created_by_connector(tag) or not self.relevant_project(tag):
                continue
            seen.add(tag.name)
            tags.append(tag)
        return tags

    # ── Posting ──────────────────────────────────────────────────

    async def post_batch(self, records: Iterable[TimeRecord]) -> list[RecordResult]:
        """Post records in input order; per-record failures never stop the batch."""
        return [await self.post_record(record) for record in records]

    async def post_record(self, record: TimeRecord) -> RecordResult:
        previous = await self.store.get_outcome(record.record_id, Direction.POSTING)
        if previous and previous.outcome.is_terminal:
            logger.info("Posted time %s already %s, skipping", record.record_id, previous.outcome.value)
            return RecordResult(
                record_id=record.record_id,
                outcome=previous.outcome,
                message=previous.reason or f"Already {previous.outcome.value}",
            )
        attempts = (previous.attempt_count if previous else 0) + 1

        logger.info("Posted time received: %s", record.record_id)
        if self.caller_key and record.caller_key != self.caller_key:
            return await self._finish(record, Outcome.PERMANENT_FAILURE, "Invalid caller key in posted time")

        if not record.tags:
            return await self._finish(
                record, Outcome.PROCESSED, "Time group has no tags. There is nothing to post to Jira."
            )

        tags = self.relevant_tags(record)
        if not tags:
            return await self._finish(
                record,
                Outcome.PROCESSED,
                "There is nothing to post to Jira. The time group has no Jira tags or its tags don't match "
                "the configured project keys filter. Tags were: " + ", ".join(t.name for t in record.tags),
            )

        mappings: list[MappingRecord] = []
        for tag in tags:
            mapping = await self.store.lookup_mapping(tag.name)
            if mapping is None:
                return await self._unknown_tag(record, tag, attempts)
            mappings.append(mapping)

        try:
            started = activity_start(record)
        except ValueError as exc:
            return await self._finish(
                record, Outcome.PERMANENT_FAILURE, f"Invalid activity hour in posted time: {exc}"
            )
        if started is None:
            return await self._finish(record, Outcome.PERMANENT_FAILURE, "Cannot post time group with no time rows")

        created: list[LedgerEntry] = []
        try:
            author = await self._call(
                self.tracker.find_user(record.user.external_id, record.user.email)
            )
            if not author:
                return await self._finish(record, Outcome.PERMANENT_FAILURE, "User does not exist in Jira")

            duration = tag_duration_secs(record)
            if duration <= 0:
                return await self._finish(record, Outcome.PROCESSED, "Worked time rounds to zero. Nothing to post.")

            comment = format_comment(record)
            for mapping in mappings:
                entry = WorkLogEntry(
                    issue_key=mapping.tracker_issue_key,
                    duration_secs=duration,
                    comment=comment,
                    author=author,
                    started=started,
                    idempotency_key=idempotency_key(record.record_id, mapping.platform_tag_id),
                )
                ledger_entry = await self._submit(record, mapping, entry)
                if ledger_entry is not None:
                    created.append(ledger_entry)
        except _RecordFailure as failure:
            if failure.error_class == ErrorClass.TRANSIENT and not self.retry_policy.should_escalate(attempts):
                outcome = Outcome.TRANSIENT_FAILURE
            else:
                outcome = Outcome.PERMANENT_FAILURE
            return await self._finish(record, outcome, failure.reason, created)

        issue_keys = [m.tracker_issue_key for m in mappings]
        return await self._finish(
            record,
            Outcome.PROCESSED,
            f"Posted time to {ellipsize(issue_keys)}",
            created,
        )

    async def _submit(self, record: TimeRecord, mapping: MappingRecord, entry: WorkLogEntry) -> LedgerEntry | None:
        """Create the work log unless it already exists locally or in the tracker."""
        if await self.store.find_worklog(entry.idempotency_key):
            logger.info("Work log %s for %s already recorded", entry.idempotency_key, entry.issue_key)
            return None

        worklog_id = await self._call(
            self.tracker.find_worklog_by_idempotency_key(entry.issue_key, entry.idempotency_key)
        )
        if worklog_id:
            logger.info("Work log %s already exists on %s, adopting it", entry.idempotency_key, entry.issue_key)
        else:
            worklog_id = await self._call(self.tracker.create_worklog(entry))
            logger.info("Posted time %s to Jira issue %s", record.record_id, entry.issue_key)
        return LedgerEntry(
            idempotency_key=entry.idempotency_key,
            record_id=record.record_id,
            platform_tag_id=mapping.platform_tag_id,
            tracker_issue_key=entry.issue_key,
            tracker_worklog_id=str(worklog_id),
        )

    async def _call(self, awaitable):
        try:
            return await awaitable
        except Exception as exc:
            error_class = classify(exc)
            if error_class is None:
                raise
            raise _RecordFailure(error_class, str(exc)) from exc

    async def _unknown_tag(self, record: TimeRecord, tag: TagRef, attempts: int) -> RecordResult:
        if attempts <= self.unknown_tag_grace_attempts:
            return await self._finish(
                record, Outcome.TRANSIENT_FAILURE, f"unknown tag {tag.name}, waiting for tag discovery"
            )
        return await self._finish(record, Outcome.PERMANENT_FAILURE, f"unknown tag {tag.name}")

    async def _finish(
        self,
        record: TimeRecord,
        outcome: Outcome,
        reason: str,
        worklogs: list[LedgerEntry] | None = None,
    ) -> RecordResult:
        stored = await self.store.record_outcome(
            record.record_id, Direction.POSTING, outcome, reason, worklogs or ()
        )
        if outcome != Outcome.PROCESSED:
            logger.warning(
                "Can't post time %s to Jira (%s, attempt %s): %s",
                record.record_id, outcome.value, stored.attempt_count, reason,
            )
        return RecordResult(
            record_id=record.record_id,
            outcome=outcome,
            message=reason,
            worklogs_created=len(worklogs or ()),
        )
