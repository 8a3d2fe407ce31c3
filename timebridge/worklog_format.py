"""Helpers that turn a posted time record into work log fields."""
from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone

import emoji

from timebridge.models import DurationSplitStrategy, TimeRecord

_ISSUE_KEY_RE = re.compile(r"^(?P<project>[A-Za-z][A-Za-z0-9_]*)-(?P<number>\d+)$")
_PRESENTATION_RE = re.compile("[\u200d\ufe0e\ufe0f\u20e3]")
_SPACES_RE = re.compile(r"[ \t]{2,}")


def strip_emoji(text: str) -> str:
    """Remove emoji and tidy the whitespace they leave behind."""
    cleaned = _PRESENTATION_RE.sub("", emoji.replace_emoji(text or "", replace=""))
    lines = [_SPACES_RE.sub(" ", line).strip() for line in cleaned.splitlines()]
    return "\n".join(lines).strip()


def parse_issue_key(tag_name: str) -> tuple[str, int] | None:
    """Split ``PROJ-42`` into ``("PROJ", 42)``; None for anything else."""
    match = _ISSUE_KEY_RE.match((tag_name or "").strip())
    if not match:
        return None
    return match.group("project"), int(match.group("number"))


def idempotency_key(record_id: str, platform_tag_id: str) -> str:
    """Deterministic key for the work log created from one record and one tag."""
    digest = hashlib.sha256(f"{record_id}\x1f{platform_tag_id}".encode("utf-8")).hexdigest()
    return f"tb-{digest[:32]}"


def activity_start(record: TimeRecord) -> datetime | None:
    """Start of the earliest activity hour in the record (UTC)."""
    if not record.time_rows:
        return None
    earliest = min(row.activity_hour for row in record.time_rows)
    return datetime.strptime(str(earliest), "%Y%m%d%H").replace(tzinfo=timezone.utc)


def tag_duration_secs(record: TimeRecord) -> int:
    """Seconds to log against each tag of the record."""
    if not record.tags:
        return 0
    weighted = record.total_duration_secs * record.user.experience_weighting_percent / 100.0
    if record.duration_split_strategy == DurationSplitStrategy.WHOLE_DURATION_TO_EACH_TAG:
        return int(round(weighted))
    return int(round(weighted / len(record.tags)))


def format_comment(record: TimeRecord) -> str:
    """Work log comment: the narrative followed by titled activity rows, emoji removed."""
    parts = []
    if record.narrative.strip():
        parts.append(record.narrative.strip())

    activity_lines = []
    for row in sorted(record.time_rows, key=lambda r: (r.activity_hour, r.first_observed_in_hour)):
        if not row.title.strip():
            continue
        line = f"- {row.title.strip()}"
        if row.description.strip():
            line += f": {row.description.strip()}"
        activity_lines.append(line)
    if activity_lines:
        parts.append("\n".join(activity_lines))

    return strip_emoji("\n\n".join(parts))


def ellipsize(items: list[str]) -> str:
    if len(items) < 6:
        return ", ".join(items)
    return f"{items[0]}, ... , {items[-1]}"
