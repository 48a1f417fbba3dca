"""Observability helpers."""

from session_tracker.observability.otel import (
    initialize,
    shutdown,
    snapshot,
    start_span,
    record_ingestion,
    record_parser_failure,
    record_tool_result,
    record_token_cost,
)

__all__ = [
    "initialize",
    "shutdown",
    "snapshot",
    "start_span",
    "record_ingestion",
    "record_parser_failure",
    "record_tool_result",
    "record_token_cost",
]
