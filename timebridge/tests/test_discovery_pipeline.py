import unittest
from datetime import datetime, timezone

from timebridge.errors import PermanentError, TransientError
from timebridge.models import Direction, Outcome
from timebridge.sync.discovery import TagDiscoveryPipeline, refresh_batch_size
from timebridge.sync.retry_policy import RetryPolicy
from timebridge.tests.fakes import FakePlatform, FakeTracker, make_issue, open_store

SINCE = datetime(2026, 10, 1, tzinfo=timezone.utc)


class RefreshBatchSizeTests(unittest.TestCase):
    def test_targets_a_fortnightly_full_refresh(self) -> None:
        # 4032 runs per fortnight at a 5 minute interval
        self.assertEqual(refresh_batch_size(403_200, 5, 200), 100)

    def test_clamped_to_bounds(self) -> None:
        self.assertEqual(refresh_batch_size(50, 5, 200), 10)
        self.assertEqual(refresh_batch_size(10_000_000, 5, 200), 200)


class TagDiscoveryPipelineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db, self.store = await open_store()
        self.tracker = FakeTracker(
            [
                make_issue(1, "PROJ-42", summary="Fix login"),
                make_issue(2, "OTHER-1"),
                make_issue(3, "PROJ-43", status="Done", status_category="done"),
            ]
        )
        self.platform = FakePlatform()
        self.pipeline = TagDiscoveryPipeline(
            self.store,
            self.tracker,
            self.platform,
            project_keys=["PROJ"],
            excluded_statuses=["Done", "Closed"],
            issue_url_base="https://example.atlassian.net/",
            retry_policy=RetryPolicy(max_attempts=3),
        )

    async def asyncTearDown(self) -> None:
        await self.db.close()

    def test_to_tag_maps_issue(self) -> None:
        tag = self.pipeline.to_tag(make_issue(1, "PROJ-42", summary="Fix login"))

        self.assertEqual(tag.name, "PROJ-42")
        self.assertEqual(tag.path, "/Jira/")
        self.assertEqual(tag.description, "Fix login")
        self.assertEqual(tag.additional_keywords, ["PROJ-42"])
        self.assertEqual(tag.url, "https://example.atlassian.net/browse/PROJ-42")

    def test_to_tag_applies_filters(self) -> None:
        self.assertIsNone(self.pipeline.to_tag(make_issue(2, "OTHER-1")))
        self.assertIsNone(self.pipeline.to_tag(make_issue(3, "PROJ-43", status="Closed")))
        self.assertIsNone(self.pipeline.to_tag(make_issue(4, "PROJ-44", status="Released", status_category="done")))
        self.assertIsNotNone(self.pipeline.to_tag(make_issue(5, "PROJ-45", status="In Review")))

    async def test_discover_returns_filtered_tags(self) -> None:
        tags = await self.pipeline.discover(SINCE)
        self.assertEqual([tag.name for tag in tags], ["PROJ-42"])

    async def test_publish_creates_then_skips_unchanged(self) -> None:
        tag = self.pipeline.to_tag(self.tracker.issues["PROJ-42"])

        created = await self.pipeline.publish(tag)
        unchanged = await self.pipeline.publish(tag)

        self.assertEqual(created.action, "created")
        self.assertEqual(unchanged.action, "unchanged")
        self.assertEqual(self.platform.upserts, ["PROJ-42"])
        mapping = await self.store.lookup_mapping("PROJ-42")
        self.assertEqual(mapping.tracker_issue_key, "PROJ-42")
        self.assertEqual(mapping.tag_fingerprint, tag.fingerprint())

    async def test_publish_pushes_changed_attributes(self) -> None:
        await self.pipeline.publish(self.pipeline.to_tag(self.tracker.issues["PROJ-42"]))
        renamed = self.pipeline.to_tag(make_issue(1, "PROJ-42", summary="Fix login on Safari"))

        result = await self.pipeline.publish(renamed)

        self.assertEqual(result.action, "updated")
        self.assertEqual(self.platform.tags["PROJ-42"].description, "Fix login on Safari")
        self.assertEqual(len(self.platform.upserts), 2)

    async def test_transient_push_failure_is_recorded_and_retried(self) -> None:
        self.platform.failures["upsert_tag"] = [TransientError("Platform: Too many requests.", 429)]
        tag = self.pipeline.to_tag(self.tracker.issues["PROJ-42"])

        failed = await self.pipeline.publish(tag)

        self.assertEqual(failed.action, "retrying")
        self.assertIsNone(await self.store.lookup_mapping("PROJ-42"))
        outcome = await self.store.get_outcome("PROJ-42", Direction.DISCOVERY)
        self.assertEqual(outcome.outcome, Outcome.TRANSIENT_FAILURE)

        retried = await self.pipeline.retry_pending()

        self.assertEqual([r.action for r in retried], ["created"])
        self.assertIsNotNone(await self.store.lookup_mapping("PROJ-42"))
        outcome = await self.store.get_outcome("PROJ-42", Direction.DISCOVERY)
        self.assertEqual(outcome.outcome, Outcome.PROCESSED)
        self.assertIn("get_issue", self.tracker.calls)

    async def test_push_failures_escalate_at_retry_ceiling(self) -> None:
        self.platform.failures["upsert_tag"] = [TransientError("Platform: Service unavailable.", 503)] * 3
        tag = self.pipeline.to_tag(self.tracker.issues["PROJ-42"])

        actions = [(await self.pipeline.publish(tag)).action for _ in range(3)]

        self.assertEqual(actions, ["retrying", "retrying", "failed"])
        outcome = await self.store.get_outcome("PROJ-42", Direction.DISCOVERY)
        self.assertEqual(outcome.outcome, Outcome.PERMANENT_FAILURE)
        self.assertEqual(outcome.attempt_count, 3)
        self.assertEqual(await self.pipeline.retry_pending(), [])

    async def test_permanent_push_failure_is_not_retried(self) -> None:
        self.platform.failures["upsert_tag"] = [PermanentError("Platform: Request rejected as invalid.", 400)]

        result = await self.pipeline.publish(self.pipeline.to_tag(self.tracker.issues["PROJ-42"]))

        self.assertEqual(result.action, "failed")
        self.assertEqual(await self.pipeline.retry_pending(), [])

    async def test_later_successful_push_clears_permanent_failure(self) -> None:
        self.platform.failures["upsert_tag"] = [PermanentError("Platform: Request rejected as invalid.", 400)]
        tag = self.pipeline.to_tag(self.tracker.issues["PROJ-42"])

        self.assertEqual((await self.pipeline.publish(tag)).action, "failed")
        self.assertEqual((await self.pipeline.publish(tag)).action, "created")

        outcome = await self.store.get_outcome("PROJ-42", Direction.DISCOVERY)
        self.assertEqual(outcome.outcome, Outcome.PROCESSED)
        self.assertEqual(await self.store.list_outcomes(Direction.DISCOVERY, Outcome.PERMANENT_FAILURE), [])

    async def test_unclassified_push_failure_propagates(self) -> None:
        self.platform.failures["upsert_tag"] = [RuntimeError("serializer bug")]
        with self.assertRaises(RuntimeError):
            await self.pipeline.publish(self.pipeline.to_tag(self.tracker.issues["PROJ-42"]))

    async def test_retry_pending_for_deleted_issue(self) -> None:
        await self.store.record_outcome("PROJ-99", Direction.DISCOVERY, Outcome.TRANSIENT_FAILURE, "503")

        results = await self.pipeline.retry_pending()

        self.assertEqual([(r.tag, r.action) for r in results], [("PROJ-99", "failed")])
        outcome = await self.store.get_outcome("PROJ-99", Direction.DISCOVERY)
        self.assertEqual(outcome.outcome, Outcome.PERMANENT_FAILURE)

    async def test_refresh_helpers(self) -> None:
        issues = await self.pipeline.refresh_batch(0, 10)
        self.assertEqual([i.key for i in issues], ["PROJ-42", "PROJ-43"])
        self.assertEqual(await self.pipeline.refresh_size(5, 200), 10)


if __name__ == "__main__":
    unittest.main()
