"""Transient/permanent classification of tracker and platform failures.

There is no in-process backoff: a transient failure is retried by the next
scheduled cycle, so the scheduler cadence is the backoff.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass

import httpx

from timebridge.errors import ApiError, AuthenticationError, PermanentError, TransientError
from timebridge.models import ErrorClass

_TRANSIENT_STATUS_CODES = {408, 409, 423, 425, 429}


def classify_status(status_code: int) -> ErrorClass:
    """Classify an HTTP status code returned by a tracker or platform call."""
    if status_code in _TRANSIENT_STATUS_CODES or status_code >= 500:
        return ErrorClass.TRANSIENT
    return ErrorClass.PERMANENT


def classify(exc: BaseException) -> ErrorClass | None:
    """Return the error class, or None when the error must abort the cycle.

    AuthenticationError is deliberately unclassified: expired credentials
    affect every item, so the cycle stops instead of failing each record.
    """
    if isinstance(exc, AuthenticationError):
        return None
    if isinstance(exc, TransientError):
        return ErrorClass.TRANSIENT
    if isinstance(exc, PermanentError):
        return ErrorClass.PERMANENT
    if isinstance(exc, ApiError) and exc.status_code is not None:
        return classify_status(exc.status_code)
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError, TimeoutError)):
        return ErrorClass.TRANSIENT
    return None


@dataclass(frozen=True)
class RetryPolicy:
    """Retry ceiling for items that keep failing transiently."""

    max_attempts: int = 5

    def should_escalate(self, attempt_count: int) -> bool:
        """True once an item has used up its attempts and must become permanent."""
        return attempt_count >= max(1, self.max_attempts)
