"""Observability helpers."""

from timebridge.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_cycle,
    record_item_outcome,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_cycle",
    "record_item_outcome",
]
