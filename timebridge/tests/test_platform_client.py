import json
import unittest
from datetime import datetime, timezone

import httpx
from pydantic import ValidationError

from timebridge.clients.platform import PlatformClient, parse_time_group
from timebridge.errors import TransientError
from timebridge.models import DurationSplitStrategy, Outcome, Tag

_GROUP = {
    "groupId": "r1",
    "callerKey": "caller-1",
    "groupName": "Bug fixing",
    "description": "fixed bug",
    "totalDurationSecs": 5400,
    "durationSplitStrategy": "WHOLE_DURATION_TO_EACH_TAG",
    "tags": [{"name": "PROJ-42", "path": "/Jira/PROJ-42"}],
    "user": {"name": "Dev", "email": "dev@example.com", "externalId": "", "experienceWeightingPercent": 80},
    "timeRows": [
        {"activityHour": 2026101909, "firstObservedInHour": 5, "durationSecs": 5400, "activity": "Editor"},
    ],
    "postedAt": "2026-10-19T11:00:00Z",
}


class ParseTimeGroupTests(unittest.TestCase):
    def test_maps_camel_case_payload(self) -> None:
        record = parse_time_group(_GROUP)

        self.assertEqual(record.record_id, "r1")
        self.assertEqual(record.caller_key, "caller-1")
        self.assertEqual(record.tags[0].name, "PROJ-42")
        self.assertEqual(record.duration_split_strategy, DurationSplitStrategy.WHOLE_DURATION_TO_EACH_TAG)
        self.assertEqual(record.user.experience_weighting_percent, 80)
        self.assertEqual(record.time_rows[0].title, "Editor")
        self.assertEqual(record.time_rows[0].first_observed_in_hour, 5)
        self.assertEqual(record.posted_at, datetime(2026, 10, 19, 11, tzinfo=timezone.utc))

    def test_defaults_for_sparse_payload(self) -> None:
        record = parse_time_group({"groupId": "r2", "durationSplitStrategy": "SOMETHING_NEW", "postedAt": 0})

        self.assertEqual(record.tags, ())
        self.assertEqual(record.duration_split_strategy, DurationSplitStrategy.DIVIDE_BETWEEN_TAGS)
        self.assertEqual(record.user.experience_weighting_percent, 100)
        self.assertEqual(record.posted_at, datetime(1970, 1, 1, tzinfo=timezone.utc))

    def test_rejects_rows_without_activity_hour(self) -> None:
        with self.assertRaises(ValidationError):
            parse_time_group({**_GROUP, "timeRows": [{"durationSecs": 600, "activity": "Editor"}]})
        with self.assertRaises(ValidationError):
            parse_time_group({**_GROUP, "timeRows": [{"activityHour": 20261019, "durationSecs": 600}]})


class PlatformClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.posted_groups: list[dict] = [_GROUP, {"groupId": ""}]
        self.client = PlatformClient(
            "https://platform.example.com/connect",
            "api-key-1",
            transport=httpx.MockTransport(self._handle),
        )

    async def asyncTearDown(self) -> None:
        await self.client.close()

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code)
        if request.url.path.endswith("/postedtime"):
            return httpx.Response(200, json={"timeGroups": self.posted_groups})
        return httpx.Response(200, json={})

    async def test_upsert_tag_sends_api_key_and_payload(self) -> None:
        await self.client.upsert_tag(
            Tag(name="PROJ-42", description="Fix login", additional_keywords=["PROJ-42"], external_id="PROJ-42")
        )

        request = self.requests[0]
        self.assertEqual(request.url.path, "/connect/tag/upsert")
        self.assertEqual(request.headers["x-api-key"], "api-key-1")
        body = json.loads(request.content)
        self.assertEqual(body["path"], "/Jira/")
        self.assertEqual(body["additionalKeywords"], ["PROJ-42"])

    async def test_fetch_posted_time_skips_groups_without_id(self) -> None:
        records = await self.client.fetch_posted_time(limit=10)

        self.assertEqual([r.record_id for r in records], ["r1"])
        self.assertEqual(self.requests[0].url.params["limit"], "10")

    async def test_fetch_posted_time_rejects_malformed_groups(self) -> None:
        self.posted_groups = [
            {**_GROUP, "groupId": "bad", "user": {"experienceWeightingPercent": "n/a"}},
            _GROUP,
        ]

        with self.assertLogs("timebridge.platform", "WARNING"):
            records = await self.client.fetch_posted_time()

        self.assertEqual([r.record_id for r in records], ["r1"])
        status_requests = [r for r in self.requests if r.url.path.endswith("/postedtime/status")]
        self.assertEqual(len(status_requests), 1)
        body = json.loads(status_requests[0].content)
        self.assertEqual(body["groupId"], "bad")
        self.assertEqual(body["status"], "PERMANENT_FAILURE")
        self.assertTrue(body["message"].startswith("Invalid posted time"))

    async def test_acknowledge_terminal_outcomes(self) -> None:
        await self.client.acknowledge("r1", Outcome.PERMANENT_FAILURE, "unknown tag PROJ-9")

        body = json.loads(self.requests[0].content)
        self.assertEqual(body, {"groupId": "r1", "status": "PERMANENT_FAILURE", "message": "unknown tag PROJ-9"})
        with self.assertRaises(ValueError):
            await self.client.acknowledge("r1", Outcome.TRANSIENT_FAILURE)

    async def test_rate_limit_is_transient(self) -> None:
        self.status_code = 429
        with self.assertRaises(TransientError):
            await self.client.ping()


if __name__ == "__main__":
    unittest.main()
