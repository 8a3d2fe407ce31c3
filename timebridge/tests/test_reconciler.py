import asyncio
import unittest
from datetime import datetime, timedelta, timezone

from timebridge.errors import AuthenticationError, CycleError, TransientError
from timebridge.models import CyclePhase, Direction, Outcome
from timebridge.sync.discovery import TagDiscoveryPipeline
from timebridge.sync.posting import TimePostingPipeline
from timebridge.sync.reconciler import BatchReconciler
from timebridge.sync.retry_policy import RetryPolicy
from timebridge.tests.fakes import (
    FakePlatform,
    FakeTracker,
    make_issue,
    make_record,
    open_store,
    with_activity_hour,
)

T0 = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


class BatchReconcilerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db, self.store = await open_store()
        self.tracker = FakeTracker()
        self.platform = FakePlatform()
        policy = RetryPolicy(max_attempts=3)
        self.discovery = TagDiscoveryPipeline(
            self.store,
            self.tracker,
            self.platform,
            project_keys=["PROJ"],
            excluded_statuses=["Done"],
            page_size=2,
            retry_policy=policy,
        )
        self.posting = TimePostingPipeline(self.store, self.tracker, project_keys=["PROJ"], retry_policy=policy)
        self.reconciler = BatchReconciler(
            self.store,
            self.platform,
            self.discovery,
            self.posting,
            discovery_start="2026-01-01T00:00:00+00:00",
        )

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_end_to_end_issue_to_worklog(self) -> None:
        self.tracker.add_issue(make_issue(42, "PROJ-42", summary="Login fails", updated=T0))

        discovery = await self.reconciler.run_discovery_cycle()

        self.assertEqual(discovery.status, "completed")
        self.assertEqual(discovery.processed, 1)
        self.assertIn("PROJ-42", self.platform.tags)
        mapping = await self.store.lookup_mapping("PROJ-42")
        self.assertEqual(mapping.tracker_issue_key, "PROJ-42")

        self.platform.pending = [make_record("r1", ["PROJ-42"], duration_secs=90 * 60, narrative="fixed bug 🐛")]
        posting = await self.reconciler.run_posting_cycle()

        self.assertEqual(posting.status, "completed")
        logs = self.tracker.worklogs["PROJ-42"]
        self.assertEqual(len(logs), 1)
        self.assertEqual(logs[0]["duration_secs"], 5400)
        self.assertEqual(logs[0]["comment"], "fixed bug")
        outcome = await self.store.get_outcome("r1", Direction.POSTING)
        self.assertEqual(outcome.outcome, Outcome.PROCESSED)
        self.assertEqual(self.platform.acks, [("r1", Outcome.PROCESSED, "Posted time to PROJ-42")])

    async def test_partial_failure_is_isolated(self) -> None:
        self.tracker.add_issue(make_issue(42, "PROJ-42", updated=T0))
        await self.reconciler.run_discovery_cycle()
        records = [make_record(f"r{i}", ["PROJ-42"] if i != 3 else ["PROJ-404"]) for i in range(1, 6)]

        summary = await self.reconciler.run_posting_cycle(records, trigger="webhook")

        self.assertEqual(summary.status, "completed")
        self.assertEqual(summary.processed, 4)
        self.assertEqual(summary.failed, 1)
        outcomes = {r.record_id: r.outcome for r in summary.results}
        self.assertEqual(outcomes["r3"], Outcome.PERMANENT_FAILURE)
        self.assertEqual({outcomes[k] for k in ("r1", "r2", "r4", "r5")}, {Outcome.PROCESSED})
        self.assertTrue(all(r.acknowledged for r in summary.results))
        self.assertEqual(self.platform.acks, [])

    async def test_replayed_batch_creates_no_duplicates(self) -> None:
        self.tracker.add_issue(make_issue(42, "PROJ-42", updated=T0))
        await self.reconciler.run_discovery_cycle()
        records = [make_record("r1"), make_record("r2")]

        await self.reconciler.run_posting_cycle(records, trigger="webhook")
        calls_before = len(self.tracker.calls)
        replay = await self.reconciler.run_posting_cycle(records, trigger="webhook")

        self.assertEqual(len(self.tracker.worklogs["PROJ-42"]), 2)
        self.assertEqual(len(self.tracker.calls), calls_before)
        self.assertEqual([r.outcome for r in replay.results], [Outcome.PROCESSED, Outcome.PROCESSED])

    async def test_transient_records_stay_unacknowledged(self) -> None:
        self.tracker.add_issue(make_issue(42, "PROJ-42", updated=T0))
        await self.reconciler.run_discovery_cycle()
        self.platform.pending = [make_record("r1"), make_record("r2")]
        self.tracker.failures["create_worklog"] = [TransientError("Jira: Too many requests.", 429)]

        first = await self.reconciler.run_posting_cycle()

        self.assertEqual(first.retrying, 1)
        self.assertEqual([ack[0] for ack in self.platform.acks], ["r2"])
        self.assertEqual([r.record_id for r in self.platform.pending], ["r1"])

        second = await self.reconciler.run_posting_cycle()

        self.assertEqual(second.processed, 1)
        self.assertEqual(self.platform.pending, [])
        self.assertEqual(len(self.tracker.worklogs["PROJ-42"]), 2)

    async def test_filter_correctness(self) -> None:
        self.tracker.add_issue(make_issue(1, "PROJ-1", updated=T0))
        self.tracker.add_issue(make_issue(2, "PROJ-2", status="Done", updated=T0))
        self.tracker.add_issue(make_issue(3, "OTHER-3", updated=T0))

        summary = await self.reconciler.run_discovery_cycle()

        self.assertEqual(set(self.platform.tags), {"PROJ-1"})
        self.assertIsNone(await self.store.lookup_mapping("OTHER-3"))
        self.assertIsNone(await self.store.lookup_mapping("PROJ-2"))
        self.assertEqual(summary.skipped, 1)

    async def test_discovery_commits_cursor_per_page(self) -> None:
        for i in range(1, 6):
            self.tracker.add_issue(make_issue(i, f"PROJ-{i}", updated=T0 + timedelta(minutes=i)))

        summary = await self.reconciler.run_discovery_cycle()

        self.assertEqual(summary.processed, 5)
        self.assertEqual(summary.cursor, (T0 + timedelta(minutes=5)).isoformat())
        self.assertEqual(await self.store.get_cursor(Direction.DISCOVERY), (T0 + timedelta(minutes=5)).isoformat())
        self.assertEqual(self.tracker.calls.count("issues_updated_since"), 3)

        again = await self.reconciler.run_discovery_cycle()
        self.assertEqual(again.processed, 0)
        self.assertEqual(again.skipped, 1)

    async def test_cursor_never_moves_backwards(self) -> None:
        later = (T0 + timedelta(hours=1, seconds=30)).isoformat()
        await self.store.advance_cursor(Direction.DISCOVERY, later)
        self.tracker.add_issue(make_issue(2, "PROJ-2", updated=T0 + timedelta(hours=1)))
        search = self.tracker.issues_updated_since

        async def _minute_precision(since, project_keys, page_token=None, max_results=100):
            return await search(since.replace(second=0), project_keys, page_token, max_results)

        self.tracker.issues_updated_since = _minute_precision

        summary = await self.reconciler.run_discovery_cycle()

        self.assertEqual(summary.processed, 1)
        self.assertEqual(summary.cursor, later)
        self.assertEqual(await self.store.get_cursor(Direction.DISCOVERY), later)

    async def test_unclassified_error_aborts_without_advancing(self) -> None:
        self.tracker.add_issue(make_issue(1, "PROJ-1", updated=T0))
        self.tracker.add_issue(make_issue(2, "PROJ-2", updated=T0 + timedelta(minutes=1)))
        self.platform.failures["upsert_tag"] = [AuthenticationError("Platform: Authentication failed.", 401)]

        with self.assertRaises(CycleError) as ctx:
            await self.reconciler.run_discovery_cycle()

        self.assertEqual(ctx.exception.summary.status, "failed")
        self.assertIsInstance(ctx.exception.cause, AuthenticationError)
        self.assertIsNone(await self.store.get_cursor(Direction.DISCOVERY))
        self.assertEqual(self.reconciler.phase(Direction.DISCOVERY), CyclePhase.IDLE)
        operations = await self.reconciler.list_operations()
        self.assertEqual(operations[0]["status"], "failed")

        retry = await self.reconciler.run_discovery_cycle()
        self.assertEqual(retry.processed, 2)
        self.assertIsNotNone(await self.store.get_cursor(Direction.DISCOVERY))

    async def test_stop_request_aborts_between_items(self) -> None:
        self.platform.pending = [make_record("r1"), make_record("r2")]
        self.reconciler.request_stop()

        summary = await self.reconciler.run_posting_cycle()

        self.assertEqual(summary.status, "aborted")
        self.assertEqual(summary.results, [])
        self.assertIsNone(await self.store.get_cursor(Direction.POSTING))

    async def test_posting_cursor_tracks_latest_posted_at(self) -> None:
        self.tracker.add_issue(make_issue(42, "PROJ-42", updated=T0))
        await self.reconciler.run_discovery_cycle()
        self.platform.pending = [
            make_record("r1", posted_at=T0 + timedelta(hours=2)),
            make_record("r2", posted_at=T0 + timedelta(hours=1)),
        ]

        summary = await self.reconciler.run_posting_cycle()

        self.assertEqual(summary.cursor, (T0 + timedelta(hours=2)).isoformat())

    async def test_refresh_walks_ids_and_wraps_around(self) -> None:
        for i in range(1, 13):
            self.tracker.add_issue(make_issue(i, f"PROJ-{i}", updated=T0))

        first = await self.reconciler.run_refresh_cycle()
        second = await self.reconciler.run_refresh_cycle()
        third = await self.reconciler.run_refresh_cycle()

        self.assertEqual((first.processed, first.cursor), (10, "10"))
        self.assertEqual((second.processed, second.cursor), (2, "12"))
        self.assertEqual((third.processed, third.cursor), (0, None))
        self.assertIsNone(await self.store.get_cursor(Direction.REFRESH))
        self.assertEqual(len(self.platform.upserts), 12)

    async def test_status_snapshot(self) -> None:
        await self.reconciler.run_refresh_cycle(trigger="api")

        snapshot = await self.reconciler.get_status_snapshot()

        self.assertEqual(snapshot["phases"]["refresh"], "idle")
        self.assertEqual(snapshot["lastCycles"]["refresh"]["status"], "completed")
        self.assertEqual(snapshot["activeOperationCount"], 0)
        self.assertIsNone(self.reconciler.last_summary(Direction.POSTING))
        self.assertEqual(self.reconciler.last_summary(Direction.REFRESH).operation_id, snapshot["lastCycles"]["refresh"]["operation_id"])
        operations = await self.reconciler.list_operations(limit=5)
        self.assertEqual(operations[0]["trigger"], "api")
        self.assertEqual(await self.reconciler.get_operation(operations[0]["id"]), operations[0])

    async def test_overlapping_posting_cycles_post_once(self) -> None:
        self.tracker.add_issue(make_issue(42, "PROJ-42", updated=T0))
        await self.reconciler.run_discovery_cycle()
        records = [make_record("r1")]

        first, second = await asyncio.gather(
            self.reconciler.run_posting_cycle(records, trigger="webhook"),
            self.reconciler.run_posting_cycle(records, trigger="webhook"),
        )

        self.assertEqual(len(self.tracker.worklogs["PROJ-42"]), 1)
        self.assertGreaterEqual(first.processed + second.processed, 1)
        self.assertEqual(first.processed + second.processed + first.skipped + second.skipped, 2)

    async def test_webhook_cycle_runs_while_poll_cycle_waits_on_platform(self) -> None:
        self.tracker.add_issue(make_issue(42, "PROJ-42", updated=T0))
        await self.reconciler.run_discovery_cycle()
        self.platform.pending = [make_record("r2", posted_at=T0)]
        gate = asyncio.Event()
        fetch = self.platform.fetch_posted_time

        async def slow_fetch(limit: int = 25):
            await gate.wait()
            return await fetch(limit)

        self.platform.fetch_posted_time = slow_fetch
        poll = asyncio.create_task(self.reconciler.run_posting_cycle())
        await asyncio.sleep(0)

        webhook = await asyncio.wait_for(
            self.reconciler.run_posting_cycle([make_record("r1")], trigger="webhook"), 5
        )

        self.assertEqual(webhook.processed, 1)
        self.assertFalse(poll.done())
        gate.set()
        polled = await asyncio.wait_for(poll, 5)
        self.assertEqual(polled.processed, 1)
        self.assertEqual(len(self.tracker.worklogs["PROJ-42"]), 2)
        self.assertEqual(await self.store.get_cursor(Direction.POSTING), T0.isoformat())

    async def test_invalid_activity_hour_does_not_block_poll_batch(self) -> None:
        self.tracker.add_issue(make_issue(42, "PROJ-42", updated=T0))
        await self.reconciler.run_discovery_cycle()
        self.platform.pending = [with_activity_hour(make_record("r-bad"), 2026133109), make_record("r-good")]

        summary = await self.reconciler.run_posting_cycle()

        self.assertEqual(summary.status, "completed")
        self.assertEqual((summary.processed, summary.failed), (1, 1))
        self.assertEqual(len(self.tracker.worklogs["PROJ-42"]), 1)
        self.assertEqual(
            [(record_id, outcome) for record_id, outcome, _ in self.platform.acks],
            [("r-bad", Outcome.PERMANENT_FAILURE), ("r-good", Outcome.PROCESSED)],
        )
        self.assertEqual(self.platform.pending, [])


if __name__ == "__main__":
    unittest.main()
