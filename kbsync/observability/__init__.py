"""Observability helpers."""

from kbsync.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_sync_run,
    record_parser_failure,
    record_event_published,
    record_event_dropped,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_sync_run",
    "record_parser_failure",
    "record_event_published",
    "record_event_dropped",
]
