"""Tracing helper utilities."""

from __future__ import annotations

from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from typing import TypedDict, cast

from opentelemetry import trace
from opentelemetry.trace import INVALID_SPAN, Span, SpanContext, get_current_span

_TRACER_NAME = "knowledgebase"


class TraceContext(TypedDict, total=False):
    trace_id: str
    span_id: str


def _format_span_ids(span: Span) -> TraceContext:
    context: MutableMapping[str, str] = {}

    span_context: SpanContext = span.get_span_context()
    if span_context == INVALID_SPAN.get_span_context() or not span_context.is_valid:
        return cast(TraceContext, {})

    context["trace_id"] = f"{span_context.trace_id:032x}"
    context["span_id"] = f"{span_context.span_id:016x}"
    return cast(TraceContext, context)


def get_current_trace_ids() -> TraceContext:
    """Return the active trace/span identifiers if present."""

    return _format_span_ids(get_current_span())


@contextmanager
def traced(name: str, **attributes: str | int | float | bool) -> Iterator[Span]:
    """Run the enclosed block inside a span carrying ``attributes``."""

    tracer = trace.get_tracer(_TRACER_NAME)
    with tracer.start_as_current_span(name) as span:
        for key, value in attributes.items():
            span.set_attribute(key, value)
        yield span
