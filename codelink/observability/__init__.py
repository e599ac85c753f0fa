"""Observability helpers."""

from codelink.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_auto_links,
    record_github_call,
    record_github_retry,
    record_sync,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_auto_links",
    "record_github_call",
    "record_github_retry",
    "record_sync",
]
