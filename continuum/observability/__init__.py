"""Observability helpers."""

from continuum.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_cache_event,
    record_resolution,
    record_scan,
    record_scan_failure,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_cache_event",
    "record_resolution",
    "record_scan",
    "record_scan_failure",
]
