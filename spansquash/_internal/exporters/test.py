from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Mapping

from opentelemetry import trace
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult


class TestExporter(SpanExporter):
    """A SpanExporter that stores exported spans in a list for asserting in tests."""

    # NOTE: Avoid test discovery by pytest.
    __test__ = False

    def __init__(self) -> None:
        self.exported_spans: list[ReadableSpan] = []
        self.batches: list[list[ReadableSpan]] = []
        self.is_shutdown = False

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        """Exports a batch of telemetry data."""
        self.exported_spans.extend(spans)
        self.batches.append(list(spans))
        return SpanExportResult.SUCCESS

    def clear(self) -> None:
        """Clears the collected spans."""
        self.exported_spans = []
        self.batches = []

    def shutdown(self) -> None:
        self.is_shutdown = True

    def exported_spans_as_dict(self) -> list[dict[str, Any]]:
        """The exported spans as a list of dicts.

        Returns:
            A list of dicts representing the exported spans.
        """

        def build_context(context: trace.SpanContext) -> dict[str, Any]:
            return {'trace_id': context.trace_id, 'span_id': context.span_id, 'is_remote': context.is_remote}

        def build_span(span: ReadableSpan) -> dict[str, Any]:
            context = span.context or trace.INVALID_SPAN_CONTEXT
            return {
                'name': span.name,
                'context': build_context(context),
                'parent': build_context(span.parent) if span.parent else None,
                'start_time': span.start_time,
                'end_time': span.end_time,
                'attributes': build_attributes(span.attributes),
            }

        return [build_span(span) for span in self.exported_spans]


def build_attributes(attributes: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if attributes is None:  # pragma: no cover
        return None
    return {k: list(v) if isinstance(v, tuple) else v for k, v in attributes.items()}
