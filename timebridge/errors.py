"""Error taxonomy shared by the clients, the identity store and the sync engine."""
from __future__ import annotations

from typing import Any


class TimebridgeError(Exception):
    """Base class for connector errors."""


class ConfigurationError(TimebridgeError):
    """Settings are missing or invalid. Fatal at startup."""


class IntegrityViolation(TimebridgeError):
    """Persisted state would become inconsistent (cursor regression, duplicate mapping)."""


class CycleError(TimebridgeError):
    """A sync cycle was aborted before committing."""

    def __init__(self, message: str, *, summary: Any = None, cause: BaseException | None = None):
        super().__init__(message)
        self.summary = summary
        self.cause = cause


class ApiError(TimebridgeError):
    """An external API call failed."""

    def __init__(self, message: str, status_code: int | None = None, service: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.service = service


class TransientError(ApiError):
    """Retry on the next scheduled cycle."""


class PermanentError(ApiError):
    """Never retried."""


class AuthenticationError(ApiError):
    """Credentials rejected. Aborts the whole cycle."""
