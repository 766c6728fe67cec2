"""Observability helpers."""

from backend.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_recompute,
    record_override,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_recompute",
    "record_override",
]
