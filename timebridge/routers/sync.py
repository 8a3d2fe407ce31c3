"""Sync triggers, posted-time webhook and identity store inspection API."""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, HTTPException, Query, Request
from pydantic import BaseModel, ValidationError

from timebridge.clients.platform import parse_time_group
from timebridge.errors import CycleError
from timebridge.models import CycleSummary, Direction, Outcome
from timebridge.scheduler import scheduler

logger = logging.getLogger("timebridge.api")

sync_router = APIRouter(prefix="/api/sync", tags=["sync"])
posted_time_router = APIRouter(prefix="/api", tags=["posted-time"])


class TriggerRequest(BaseModel):
    trigger: str = "api"


def _get_reconciler(request: Request):
    reconciler = getattr(request.app.state, "reconciler", None)
    if not reconciler:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return reconciler


def _get_store(request: Request):
    store = getattr(request.app.state, "identity_store", None)
    if not store:
        raise HTTPException(status_code=503, detail="Identity store not initialized")
    return store


def _summary_payload(summary: CycleSummary) -> dict[str, Any]:
    return summary.model_dump(mode="json")


def _cycle_failed(exc: CycleError) -> HTTPException:
    detail: dict[str, Any] = {"message": str(exc)}
    if isinstance(exc.summary, CycleSummary):
        detail["summary"] = _summary_payload(exc.summary)
    return HTTPException(status_code=502, detail=detail)


@posted_time_router.post("/posted-time")
async def receive_posted_time(request: Request, payload: Any = Body(...)):
    """Webhook: the platform posts one time group or a list of them."""
    reconciler = _get_reconciler(request)
    groups = payload if isinstance(payload, list) else [payload]
    try:
        records = [parse_time_group(group) for group in groups if isinstance(group, dict)]
    except (ValidationError, ValueError, TypeError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid posted time payload: {exc}") from exc
    if len(records) != len(groups):
        raise HTTPException(status_code=400, detail="Posted time groups must be JSON objects")

    try:
        summary = await reconciler.run_posting_cycle(records, trigger="webhook")
    except CycleError as exc:
        raise _cycle_failed(exc) from exc
    return {
        "status": summary.status,
        "results": [result.model_dump(mode="json") for result in summary.results],
    }


@sync_router.post("/discovery")
async def trigger_discovery(request: Request, body: Optional[TriggerRequest] = None):
    """Run a tag discovery cycle now."""
    reconciler = _get_reconciler(request)
    try:
        summary = await reconciler.run_discovery_cycle(trigger=(body or TriggerRequest()).trigger)
    except CycleError as exc:
        raise _cycle_failed(exc) from exc
    return _summary_payload(summary)


@sync_router.post("/refresh")
async def trigger_refresh(request: Request, body: Optional[TriggerRequest] = None):
    """Run one tag refresh batch now."""
    reconciler = _get_reconciler(request)
    try:
        summary = await reconciler.run_refresh_cycle(trigger=(body or TriggerRequest()).trigger)
    except CycleError as exc:
        raise _cycle_failed(exc) from exc
    return _summary_payload(summary)


@sync_router.post("/posting")
async def trigger_posting(request: Request, body: Optional[TriggerRequest] = None):
    """Pull pending posted time from the platform and post it now."""
    reconciler = _get_reconciler(request)
    try:
        summary = await reconciler.run_posting_cycle(trigger=(body or TriggerRequest()).trigger)
    except CycleError as exc:
        raise _cycle_failed(exc) from exc
    return _summary_payload(summary)


@sync_router.get("/status")
async def get_sync_status(request: Request):
    """Cycle phases, last summaries and live operations."""
    reconciler = _get_reconciler(request)
    snapshot = await reconciler.get_status_snapshot()
    return {
        "status": "active",
        "scheduler": "running" if scheduler.is_running else "stopped",
        **snapshot,
    }


@sync_router.get("/operations")
async def list_sync_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    """List recent sync cycles."""
    reconciler = _get_reconciler(request)
    operations = await reconciler.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@sync_router.get("/operations/{operation_id}")
async def get_sync_operation(request: Request, operation_id: str):
    reconciler = _get_reconciler(request)
    operation = await reconciler.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation


@sync_router.get("/cursors")
async def list_cursors(request: Request):
    store = _get_store(request)
    cursors = await store.list_cursors()
    return {"items": [cursor.model_dump(mode="json") for cursor in cursors]}


@sync_router.get("/outcomes")
async def list_outcomes(
    request: Request,
    outcome: Optional[Outcome] = Query(None),
    direction: Optional[Direction] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
):
    """Recorded outcomes, e.g. ``?outcome=permanent_failure`` for records needing attention."""
    store = _get_store(request)
    items = await store.list_outcomes(direction=direction, outcome=outcome, limit=limit)
    return {"count": len(items), "items": [item.model_dump(mode="json") for item in items]}


@sync_router.get("/mappings/{tag_name}")
async def get_mapping(request: Request, tag_name: str):
    store = _get_store(request)
    mapping = await store.lookup_mapping(tag_name)
    if not mapping:
        raise HTTPException(status_code=404, detail=f"No mapping for tag {tag_name}")
    return mapping.model_dump(mode="json")
