"""Shared HTTP error mapping for the tracker and platform clients."""
from __future__ import annotations

import logging
from typing import Any

import httpx

from timebridge.errors import AuthenticationError, PermanentError, TransientError
from timebridge.models import ErrorClass
from timebridge.sync.retry_policy import classify_status

logger = logging.getLogger("timebridge.clients")


def describe_status(response: httpx.Response, service: str) -> str:
    """Convert HTTP errors to operator-friendly messages."""
    status = response.status_code

    messages = {
        400: f"{service}: Request rejected as invalid.",
        401: f"{service}: Authentication failed. Check your API token!",
        403: f"{service}: Access denied. Check your permissions or API token!",
        404: f"{service}: Resource not found.",
        409: f"{service}: Conflicting update, will retry.",
        429: f"{service}: Too many requests. Will retry on the next cycle.",
        500: f"{service}: Server error. The service may be temporarily unavailable.",
        502: f"{service}: Bad gateway. The service may be temporarily unavailable.",
        503: f"{service}: Service unavailable. Try again later.",
    }

    message = messages.get(status, f"{service}: HTTP {status} - {response.reason_phrase}")
    body = (response.text or "")[:300].strip()
    if body and status < 500:
        message = f"{message} {body}"
    return message


def raise_for_response(response: httpx.Response, service: str) -> None:
    """Raise the connector error matching a non-2xx response."""
    if response.is_success:
        return
    message = describe_status(response, service)
    if response.status_code == 401:
        raise AuthenticationError(message, response.status_code, service)
    if classify_status(response.status_code) == ErrorClass.TRANSIENT:
        raise TransientError(message, response.status_code, service)
    raise PermanentError(message, response.status_code, service)


async def send(client: httpx.AsyncClient, service: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
    """Send a request, mapping transport failures to TransientError."""
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransientError(f"{service}: Connection timed out. The server may be slow.", service=service) from exc
    except httpx.TransportError as exc:
        raise TransientError(f"{service}: Cannot connect ({exc}). Check your network!", service=service) from exc
    raise_for_response(response, service)
    return response


def json_body(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    return response.json()
