"""Jira Cloud REST client (API v3) used as the tracker.

Jira has no native idempotency key for work logs, so each work log created
by the connector carries a worklog entity property holding the key. Before
creating a work log the connector looks for that property on the issue's
existing work logs (compare-and-create).
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

import httpx

from timebridge.clients.http import json_body, send
from timebridge.errors import PermanentError
from timebridge.models import Issue, IssuePage, WorkLogEntry

logger = logging.getLogger("timebridge.jira")

SERVICE = "Jira"
WORKLOG_PROPERTY_KEY = "timebridge"
_ISSUE_FIELDS = ["summary", "project", "status", "updated", "timespent"]


def _parse_jira_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    token = str(value).strip()
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
        try:
            return datetime.strptime(token, fmt)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(token.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _format_jira_datetime(value: datetime) -> str:
    """Jira's work log timestamp format, e.g. 2026-10-19T09:00:00.000+0000."""
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.000%z")


def _quote_jql(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def project_clause(project_keys: list[str]) -> str:
    if not project_keys:
        return ""
    return "project in (" + ", ".join(_quote_jql(key) for key in project_keys) + ")"


def _adf_document(text: str) -> dict:
    """Plain text as an Atlassian Document Format document, one paragraph per block."""
    paragraphs = []
    for block in (text or "").split("\n\n"):
        lines = [line for line in block.split("\n") if line.strip()]
        if not lines:
            continue
        content: list[dict] = []
        for idx, line in enumerate(lines):
            if idx:
                content.append({"type": "hardBreak"})
            content.append({"type": "text", "text": line})
        paragraphs.append({"type": "paragraph", "content": content})
    return {"type": "doc", "version": 1, "content": paragraphs}


def parse_issue(raw: dict) -> Issue:
    fields = raw.get("fields") or {}
    project = fields.get("project") or {}
    status = fields.get("status") or {}
    key = str(raw.get("key") or "")
    return Issue(
        id=int(raw.get("id") or 0),
        key=key,
        project_key=str(project.get("key") or key.split("-")[0]),
        summary=str(fields.get("summary") or ""),
        status=str(status.get("name") or ""),
        status_category=str((status.get("statusCategory") or {}).get("key") or ""),
        updated=_parse_jira_datetime(fields.get("updated")),
        time_spent_seconds=int(fields.get("timespent") or 0),
    )


class JiraClient:
    """Async client for the subset of the Jira REST API the connector needs."""

    API_PREFIX = "/rest/api/3"

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        *,
        timeout: float = 30.0,
        jql_timezone: str = "UTC",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.jql_timezone = ZoneInfo(jql_timezone or "UTC")
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}{self.API_PREFIX}",
            auth=(email, api_token),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await send(self._client, SERVICE, method, path, **kwargs)
        return json_body(response)

    # ── Issues ───────────────────────────────────────────────────

    async def search_issues(
        self,
        jql: str,
        page_token: str | None = None,
        max_results: int = 100,
    ) -> IssuePage:
        body: dict[str, Any] = {"jql": jql, "fields": _ISSUE_FIELDS, "maxResults": max_results}
        if page_token:
            body["nextPageToken"] = page_token
        data = await self._request("POST", "/search/jql", json=body)
        issues = [parse_issue(raw) for raw in data.get("issues") or []]
        next_token = None if data.get("isLast", True) else data.get("nextPageToken")
        return IssuePage(issues=issues, next_page_token=next_token)

    def updated_since_jql(self, since: datetime, project_keys: list[str]) -> str:
        # JQL dates are evaluated in the API user's timezone and have minute precision
        local = since.astimezone(self.jql_timezone)
        clauses = [c for c in (project_clause(project_keys), f'updated >= "{local:%Y/%m/%d %H:%M}"') if c]
        return " AND ".join(clauses) + " ORDER BY updated ASC, key ASC"

    async def issues_updated_since(
        self,
        since: datetime,
        project_keys: list[str],
        page_token: str | None = None,
        max_results: int = 100,
    ) -> IssuePage:
        return await self.search_issues(self.updated_since_jql(since, project_keys), page_token, max_results)

    async def issues_after_id(self, after_id: int, limit: int, project_keys: list[str]) -> list[Issue]:
        """Issues with an id above ``after_id``, oldest first."""
        clauses = [c for c in (project_clause(project_keys), f"id > {int(after_id)}") if c]
        page = await self.search_issues(" AND ".join(clauses) + " ORDER BY created ASC", max_results=limit)
        return sorted(page.issues, key=lambda issue: issue.id)

    async def get_issue(self, issue_key: str) -> Issue | None:
        try:
            raw = await self._request("GET", f"/issue/{issue_key}", params={"fields": ",".join(_ISSUE_FIELDS)})
        except PermanentError as exc:
            if exc.status_code == 404:
                return None
            raise
        return parse_issue(raw)

    async def count_issues(self, project_keys: list[str]) -> int:
        jql = project_clause(project_keys) or "created IS NOT EMPTY"
        data = await self._request("POST", "/search/approximate-count", json={"jql": jql})
        return int(data.get("count") or 0)

    # ── Users ────────────────────────────────────────────────────

    async def _find_user_by_email(self, email: str) -> str | None:
        users = await self._request("GET", "/user/search", params={"query": email})
        wanted = email.strip().lower()
        for user in users or []:
            if str(user.get("emailAddress") or "").lower() == wanted:
                return user.get("accountId")
        # Jira hides email addresses for most privacy settings; a single hit with a hidden address is a match
        if users and len(users) == 1 and not users[0].get("emailAddress"):
            logger.warning(
                "Email address of Jira user %s is hidden, accepting the only search hit for %s",
                users[0].get("accountId"), email,
            )
            return users[0].get("accountId")
        return None

    async def find_user(self, external_id: str = "", email: str = "") -> str | None:
        """Resolve a platform user to a Jira account id."""
        if external_id:
            try:
                user = await self._request("GET", "/user", params={"accountId": external_id})
                if user.get("accountId"):
                    return user["accountId"]
            except PermanentError as exc:
                if exc.status_code not in (400, 404):
                    raise
            if "@" in external_id:
                return await self._find_user_by_email(external_id)
            return None
        if email:
            return await self._find_user_by_email(email)
        return None

    # ── Work logs ────────────────────────────────────────────────

    async def find_worklog_by_idempotency_key(self, issue_key: str, idempotency_key: str) -> str | None:
        """Id of the work log on ``issue_key`` carrying ``idempotency_key``, if any."""
        start_at = 0
        while True:
            data = await self._request(
                "GET",
                f"/issue/{issue_key}/worklog",
                params={"startAt": start_at, "maxResults": 1000, "expand": "properties"},
            )
            worklogs = data.get("worklogs") or []
            for worklog in worklogs:
                for prop in worklog.get("properties") or []:
                    value = prop.get("value") or {}
                    if prop.get("key") == WORKLOG_PROPERTY_KEY and value.get("idempotencyKey") == idempotency_key:
                        return str(worklog.get("id"))
            start_at += len(worklogs)
            if not worklogs or start_at >= int(data.get("total") or 0):
                return None

    async def create_worklog(self, entry: WorkLogEntry) -> str:
        body = {
            "timeSpentSeconds": entry.duration_secs,
            "started": _format_jira_datetime(entry.started),
            "comment": _adf_document(entry.comment),
            "properties": [
                {
                    "key": WORKLOG_PROPERTY_KEY,
                    "value": {"idempotencyKey": entry.idempotency_key, "author": entry.author},
                }
            ],
        }
        data = await self._request(
            "POST",
            f"/issue/{entry.issue_key}/worklog",
            params={"notifyUsers": "false", "adjustEstimate": "auto"},
            json=body,
        )
        return str(data.get("id") or "")

    async def ping(self) -> bool:
        await self._request("GET", "/myself")
        return True
