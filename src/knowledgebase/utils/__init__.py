"""Utility helpers shared across services."""

from .retry import exponential_backoff
from .tracing import get_current_trace_ids, traced

__all__ = [
    "exponential_backoff",
    "get_current_trace_ids",
    "traced",
]
