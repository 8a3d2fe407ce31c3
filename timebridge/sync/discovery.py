"""Tag discovery: tracker issues -> platform tags."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from timebridge.db.identity_store import IdentityStore
from timebridge.models import Direction, ErrorClass, Issue, IssuePage, Outcome, PublishResult, Tag
from timebridge.sync.retry_policy import RetryPolicy, classify
from timebridge.worklog_format import ellipsize

logger = logging.getLogger("timebridge.discovery")

_MINUTES_PER_FORTNIGHT = 14 * 24 * 60
_MIN_REFRESH_BATCH = 10


def refresh_batch_size(issue_count: int, tag_sync_interval_minutes: int, max_batch_size: int) -> int:
    """Batch size that refreshes every tag about once a fortnight."""
    runs_per_fortnight = max(1, _MINUTES_PER_FORTNIGHT // max(1, tag_sync_interval_minutes))
    wanted = issue_count // runs_per_fortnight
    if wanted > max_batch_size:
        return max_batch_size
    return max(wanted, _MIN_REFRESH_BATCH)


class TagDiscoveryPipeline:
    """Maps tracker issues to tags and publishes them to the platform."""

    def __init__(
        self,
        store: IdentityStore,
        tracker: Any,
        platform: Any,
        *,
        upsert_path: str = "/Jira/",
        project_keys: list[str] | None = None,
        excluded_statuses: list[str] | None = None,
        issue_url_base: str = "",
        page_size: int = 100,
        retry_policy: RetryPolicy | None = None,
    ):
        self.store = store
        self.tracker = tracker
        self.platform = platform
        self.upsert_path = upsert_path
        self.project_keys = list(project_keys or [])
        self.excluded_statuses = {s.strip().lower() for s in (excluded_statuses or []) if s.strip()}
        self.issue_url_base = issue_url_base.rstrip("/")
        self.page_size = page_size
        self.retry_policy = retry_policy or RetryPolicy()

    def to_tag(self, issue: Issue) -> Tag | None:
        """Tag for ``issue``, or None when the issue fails the discovery filter."""
        if self.project_keys and issue.project_key not in self.project_keys:
            return None
        if issue.status.lower() in self.excluded_statuses:
            return None
        if issue.status_category and issue.status_category.lower() in self.excluded_statuses:
            return None
        return Tag(
            name=issue.key,
            path=self.upsert_path,
            description=issue.summary,
            additional_keywords=[issue.key],
            external_id=issue.key,
            url=f"{self.issue_url_base}/browse/{issue.key}" if self.issue_url_base else "",
        )

    async def fetch_page(self, since: datetime, page_token: str | None = None) -> IssuePage:
        return await self.tracker.issues_updated_since(
            since,
            self.project_keys,
            page_token=page_token,
            max_results=self.page_size,
        )

    async def discover(self, since: datetime) -> list[Tag]:
        """All tags derived from issues updated at or after ``since``."""
        tags: list[Tag] = []
        token = None
        while True:
            page = await self.fetch_page(since, token)
            tags.extend(tag for tag in map(self.to_tag, page.issues) if tag is not None)
            if page.is_last:
                return tags
            token = page.next_page_token

    async def publish(self, tag: Tag, *, force: bool = False) -> PublishResult:
        """Push ``tag`` when it is new or changed and keep the mapping current.

        Classified push failures are recorded as a discovery outcome keyed by
        the tag name and returned; unclassified errors propagate.
        """
        fingerprint = tag.fingerprint()
        mapping = await self.store.lookup_mapping(tag.name)
        if mapping and mapping.tag_fingerprint == fingerprint and not force:
            return PublishResult(tag=tag.name, action="unchanged")

        action = "updated" if mapping else "created"
        try:
            await self.platform.upsert_tag(tag)
        except Exception as exc:
            error_class = classify(exc)
            if error_class is None:
                raise
            return await self._record_failure(tag.name, error_class, str(exc))

        await self.store.upsert_mapping(tag.name, tag.external_id or tag.name, fingerprint)
        previous = await self.store.get_outcome(tag.name, Direction.DISCOVERY)
        if previous and previous.outcome != Outcome.PROCESSED:
            await self.store.record_outcome(tag.name, Direction.DISCOVERY, Outcome.PROCESSED)
        return PublishResult(tag=tag.name, action=action)

    async def _record_failure(self, tag_name: str, error_class: ErrorClass, reason: str) -> PublishResult:
        previous = await self.store.get_outcome(tag_name, Direction.DISCOVERY)
        attempts = (previous.attempt_count if previous else 0) + 1
        if error_class == ErrorClass.TRANSIENT and not self.retry_policy.should_escalate(attempts):
            outcome = Outcome.TRANSIENT_FAILURE
        else:
            outcome = Outcome.PERMANENT_FAILURE
        await self.store.record_outcome(tag_name, Direction.DISCOVERY, outcome, reason)
        logger.warning("Tag %s upsert failed (%s, attempt %s): %s", tag_name, outcome.value, attempts, reason)
        action = "retrying" if outcome == Outcome.TRANSIENT_FAILURE else "failed"
        return PublishResult(tag=tag_name, action=action, message=reason)

    async def retry_pending(self, limit: int = 200) -> list[PublishResult]:
        """Re-publish tags whose last push failed transiently."""
        pending = await self.store.list_outcomes(Direction.DISCOVERY, Outcome.TRANSIENT_FAILURE, limit)
        if not pending:
            return []
        logger.info("Retrying %s pending tag %s: %s",
                    len(pending), "upserts" if len(pending) > 1 else "upsert",
                    ellipsize([p.record_id for p in pending]))
        results = []
        for entry in pending:
            try:
                issue = await self.tracker.get_issue(entry.record_id)
            except Exception as exc:
                error_class = classify(exc)
                if error_class is None:
                    raise
                results.append(await self._record_failure(entry.record_id, error_class, str(exc)))
                continue
            if issue is None:
                await self.store.record_outcome(
                    entry.record_id, Direction.DISCOVERY, Outcome.PERMANENT_FAILURE, "issue not found"
                )
                results.append(PublishResult(tag=entry.record_id, action="failed", message="issue not found"))
                continue
            tag = self.to_tag(issue)
            if tag is None:
                await self.store.record_outcome(
                    entry.record_id, Direction.DISCOVERY, Outcome.PROCESSED, "no longer matches the discovery filter"
                )
                results.append(PublishResult(tag=entry.record_id, action="unchanged"))
                continue
            results.append(await self.publish(tag, force=True))
        return results

    async def refresh_batch(self, after_id: int, batch_size: int) -> list[Issue]:
        """Next batch of issues for the freshness pass, ordered by id."""
        return await self.tracker.issues_after_id(after_id, batch_size, self.project_keys)

    async def refresh_size(self, tag_sync_interval_minutes: int, max_batch_size: int) -> int:
        issue_count = await self.tracker.count_issues(self.project_keys)
        return refresh_batch_size(issue_count, tag_sync_interval_minutes, max_batch_size)
