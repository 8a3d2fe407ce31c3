"""Pydantic models for the connector's domain and API payloads."""
from __future__ import annotations

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Direction(str, Enum):
    DISCOVERY = "discovery"
    REFRESH = "refresh"
    POSTING = "posting"


class Outcome(str, Enum):
    PROCESSED = "processed"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"

    @property
    def is_terminal(self) -> bool:
        return self is not Outcome.TRANSIENT_FAILURE


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class CyclePhase(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PROCESSING = "processing"
    COMMITTING = "committing"


class DurationSplitStrategy(str, Enum):
    DIVIDE_BETWEEN_TAGS = "DIVIDE_BETWEEN_TAGS"
    WHOLE_DURATION_TO_EACH_TAG = "WHOLE_DURATION_TO_EACH_TAG"


# ── Tracker side ────────────────────────────────────────────────────

class Issue(BaseModel):
    id: int
    key: str
    project_key: str
    summary: str = ""
    status: str = ""
    status_category: str = ""
    updated: Optional[datetime] = None
    time_spent_seconds: int = 0


class IssuePage(BaseModel):
    issues: list[Issue] = Field(default_factory=list)
    next_page_token: Optional[str] = None

    @property
    def is_last(self) -> bool:
        return not self.next_page_token


class WorkLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    issue_key: str
    duration_secs: int
    comment: str
    author: str
    started: datetime
    idempotency_key: str


# ── Platform side ───────────────────────────────────────────────────

class Tag(BaseModel):
    name: str
    path: str = "/Jira/"
    description: str = ""
    additional_keywords: list[str] = Field(default_factory=list)
    external_id: str = ""
    url: str = ""

    def fingerprint(self) -> str:
        """Stable digest of the attributes pushed to the platform."""
        payload = json.dumps(
            {
                "name": self.name,
                "path": self.path,
                "description": self.description,
                "keywords": sorted(self.additional_keywords),
                "external_id": self.external_id,
                "url": self.url,
            },
            sort_keys=True,
        )
        return hashlib.sha1(payload.encode("utf-8")).hexdigest()


class TagRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    path: str = ""


class PlatformUser(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = ""
    email: str = ""
    external_id: str = ""
    experience_weighting_percent: int = 100


class TimeRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    activity_hour: int  # yyyyMMddHH
    first_observed_in_hour: int = 0
    duration_secs: int = 0
    title: str = ""
    description: str = ""
    modifier: str = ""

    @field_validator("activity_hour")
    @classmethod
    def _check_activity_hour(cls, value: int) -> int:
        if len(str(value)) != 10:
            raise ValueError(f"activity hour {value} is not in yyyyMMddHH form")
        datetime.strptime(str(value), "%Y%m%d%H")
        return value


class TimeRecord(BaseModel):
    """A unit of posted time. Never mutated after receipt."""

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(..., min_length=1)
    caller_key: str = ""
    tags: tuple[TagRef, ...] = ()
    total_duration_secs: int = 0
    duration_split_strategy: DurationSplitStrategy = DurationSplitStrategy.DIVIDE_BETWEEN_TAGS
    narrative: str = ""
    user: PlatformUser = Field(default_factory=PlatformUser)
    time_rows: tuple[TimeRow, ...] = ()
    posted_at: Optional[datetime] = None


# ── Identity store rows ─────────────────────────────────────────────

class MappingRecord(BaseModel):
    platform_tag_id: str
    tracker_issue_key: str
    tag_fingerprint: str = ""
    updated_at: str = ""


class CursorRecord(BaseModel):
    direction: Direction
    cursor_value: str
    updated_at: str = ""


class OutcomeRecord(BaseModel):
    record_id: str
    direction: Direction
    outcome: Outcome
    attempt_count: int = 0
    reason: str = ""
    updated_at: str = ""


class LedgerEntry(BaseModel):
    idempotency_key: str
    record_id: str
    platform_tag_id: str
    tracker_issue_key: str
    tracker_worklog_id: str = ""
    created_at: str = ""


# ── Engine results ──────────────────────────────────────────────────

class RecordResult(BaseModel):
    record_id: str
    outcome: Outcome
    message: str = ""
    worklogs_created: int = 0
    acknowledged: bool = False


class PublishResult(BaseModel):
    tag: str
    action: str  # "created" | "updated" | "unchanged" | "retrying" | "failed"
    message: str = ""


class CycleSummary(BaseModel):
    direction: Direction
    status: str = "completed"  # "completed" | "aborted" | "failed"
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    retrying: int = 0
    cursor: Optional[str] = None
    operation_id: str = ""
    duration_ms: int = 0
    errors: list[str] = Field(default_factory=list)
    results: list[RecordResult] = Field(default_factory=list)
