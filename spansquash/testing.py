"""Testing utilities for spansquash."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.id_generator import IdGenerator
from opentelemetry.sdk.util.instrumentation import InstrumentationScope
from opentelemetry.trace import SpanContext, SpanKind
from opentelemetry.trace.status import Status, StatusCode

from ._internal.exporters.test import TestExporter

__all__ = [
    'IncrementalIdGenerator',
    'TestExporter',
    'build_span',
]


@dataclass(repr=True)
class IncrementalIdGenerator(IdGenerator):
    """Generate sequentially incrementing span/trace IDs for testing.

    Trace IDs start at 1 and increment by 1 each time.
    Span IDs start at 1 and increment by 1 each time.
    """

    trace_id_counter = 0
    span_id_counter = 0

    def generate_span_id(self) -> int:
        """Generates a span id."""
        self.span_id_counter += 1
        if self.span_id_counter > 2**64 - 1:  # pragma: no branch
            raise OverflowError('Span ID overflow')  # pragma: no cover
        return self.span_id_counter

    def generate_trace_id(self) -> int:
        """Generates a trace id."""
        self.trace_id_counter += 1
        if self.trace_id_counter > 2**128 - 1:  # pragma: no branch
            raise OverflowError('Trace ID overflow')  # pragma: no cover
        return self.trace_id_counter


def build_span(
    name: str,
    *,
    trace_id: int = 1,
    span_id: int,
    parent_id: int | None = None,
    remote_parent: bool = False,
    start_time: int | None = 0,
    end_time: int | None = 1,
    status_code: StatusCode = StatusCode.UNSET,
    attributes: Mapping[str, Any] | None = None,
) -> ReadableSpan:
    """Build a finished span directly, without a tracer.

    A span without a `parent_id` is a root span. So is a span with `remote_parent=True`.
    """
    parent = None
    if parent_id is not None:
        parent = SpanContext(trace_id=trace_id, span_id=parent_id, is_remote=remote_parent)
    return ReadableSpan(
        name=name,
        context=SpanContext(trace_id=trace_id, span_id=span_id, is_remote=False),
        parent=parent,
        resource=Resource.create({'service.name': 'test'}),
        attributes=dict(attributes or {}),
        events=[],
        links=[],
        kind=SpanKind.INTERNAL,
        instrumentation_scope=InstrumentationScope('test'),
        status=Status(status_code),
        start_time=start_time,
        end_time=end_time,
    )
