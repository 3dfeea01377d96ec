"""Observability helpers."""

from rollup.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_cascade,
    record_change_event,
    record_recompute,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_cascade",
    "record_change_event",
    "record_recompute",
]
