"""Time-tracking platform REST client."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from timebridge.clients.http import json_body, send
from timebridge.errors import ApiError, AuthenticationError
from timebridge.models import (
    DurationSplitStrategy,
    Outcome,
    PlatformUser,
    Tag,
    TagRef,
    TimeRecord,
    TimeRow,
)

logger = logging.getLogger("timebridge.platform")

SERVICE = "Platform"
_ACK_STATUS = {
    Outcome.PROCESSED: "SUCCESS",
    Outcome.PERMANENT_FAILURE: "PERMANENT_FAILURE",
}


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        # epoch milliseconds
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _parse_split_strategy(value: Any) -> DurationSplitStrategy:
    try:
        return DurationSplitStrategy(str(value or DurationSplitStrategy.DIVIDE_BETWEEN_TAGS.value).upper())
    except ValueError:
        return DurationSplitStrategy.DIVIDE_BETWEEN_TAGS


def parse_time_group(payload: dict) -> TimeRecord:
    """Map the platform's camelCase time group payload to a TimeRecord."""
    user = payload.get("user") or {}
    return TimeRecord(
        record_id=str(payload.get("groupId") or payload.get("record_id") or ""),
        caller_key=str(payload.get("callerKey") or ""),
        tags=tuple(
            TagRef(name=str(tag.get("name") or ""), path=str(tag.get("path") or ""))
            for tag in payload.get("tags") or []
        ),
        total_duration_secs=int(payload.get("totalDurationSecs") or 0),
        duration_split_strategy=_parse_split_strategy(payload.get("durationSplitStrategy")),
        narrative=str(payload.get("description") or ""),
        user=PlatformUser(
            name=str(user.get("name") or ""),
            email=str(user.get("email") or ""),
            external_id=str(user.get("externalId") or ""),
            experience_weighting_percent=int(
                100 if user.get("experienceWeightingPercent") is None else user.get("experienceWeightingPercent")
            ),
        ),
        time_rows=tuple(
            TimeRow(
                activity_hour=int(row.get("activityHour") or 0),
                first_observed_in_hour=int(row.get("firstObservedInHour") or 0),
                duration_secs=int(row.get("durationSecs") or 0),
                title=str(row.get("activity") or ""),
                description=str(row.get("description") or ""),
                modifier=str(row.get("modifier") or ""),
            )
            for row in payload.get("timeRows") or []
        ),
        posted_at=_parse_timestamp(payload.get("postedAt")),
    )


def tag_payload(tag: Tag) -> dict:
    return {
        "name": tag.name,
        "path": tag.path,
        "description": tag.description,
        "additionalKeywords": list(tag.additional_keywords),
        "externalId": tag.external_id,
        "url": tag.url,
    }


class PlatformClient:
    """Async client for the platform's connector API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"x-api-key": api_key, "Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def upsert_tag(self, tag: Tag) -> None:
        await send(self._client, SERVICE, "POST", "/tag/upsert", json=tag_payload(tag))

    async def fetch_posted_time(self, limit: int = 25) -> list[TimeRecord]:
        """Posted time groups not yet acknowledged, oldest first."""
        response = await send(self._client, SERVICE, "GET", "/postedtime", params={"limit": limit})
        data = json_body(response)
        records = []
        for group in data.get("timeGroups") or []:
            if not group.get("groupId"):
                logger.warning("Skipping posted time group without a group id")
                continue
            try:
                records.append(parse_time_group(group))
            except (ValidationError, ValueError, TypeError) as exc:
                logger.warning("Rejecting malformed posted time group %s: %s", group["groupId"], exc)
                await self._reject(str(group["groupId"]), f"Invalid posted time: {exc}")
        return records

    async def _reject(self, record_id: str, message: str) -> None:
        try:
            await self.acknowledge(record_id, Outcome.PERMANENT_FAILURE, message)
        except AuthenticationError:
            raise
        except ApiError as exc:
            logger.warning("Could not reject posted time group %s: %s", record_id, exc)

    async def acknowledge(self, record_id: str, outcome: Outcome, message: str = "") -> None:
        """Report a terminal outcome so the platform stops redelivering the record."""
        if outcome not in _ACK_STATUS:
            raise ValueError(f"Only terminal outcomes can be acknowledged, got {outcome.value}")
        await send(
            self._client,
            SERVICE,
            "POST",
            "/postedtime/status",
            json={"groupId": record_id, "status": _ACK_STATUS[outcome], "message": message},
        )

    async def ping(self) -> bool:
        await send(self._client, SERVICE, "GET", "/team/info")
        return True
