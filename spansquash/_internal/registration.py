from __future__ import annotations

from typing import Iterable

from opentelemetry import context, trace
from opentelemetry.sdk.trace import ReadableSpan, Span, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter

from spansquash.exceptions import SpansquashConfigError

from .config import SquashingOptions
from .constants import DEFAULT_THRESHOLD
from .exporters.squashing import SquashingSpanExporter
from .exporters.wrapper import WrapperSpanProcessor
from .utils import logger


class UnregisterableSpanProcessor(WrapperSpanProcessor):
    """A span processor that stops passing on spans once it has been unregistered.

    OpenTelemetry has no way to remove a processor from a `TracerProvider`, so this is the next best thing.
    """

    registered: bool = True

    def on_start(self, span: Span, parent_context: context.Context | None = None) -> None:
        if self.registered:
            super().on_start(span, parent_context)

    def on_end(self, span: ReadableSpan) -> None:
        if self.registered:
            super().on_end(span)

    def unregister(self) -> None:
        if self.registered:
            self.registered = False
            self.shutdown()


class SquashingTraceExporter:
    """Creates a squashing exporter in front of `delegate` and registers it with a tracer provider.

    Spans go through a `BatchSpanProcessor`, then a
    [`SquashingSpanExporter`][spansquash.SquashingSpanExporter], and finally to `delegate`.
    The registration is named after the class of the delegate exporter.
    """

    def __init__(
        self,
        delegate: SpanExporter,
        threshold: int = DEFAULT_THRESHOLD,
        allowed_names: Iterable[str] | None = None,
        *,
        options: SquashingOptions | None = None,
        tracer_provider: trace.TracerProvider | None = None,
    ) -> None:
        """Register the squashing exporter.

        Args:
            delegate: The exporter to send spans to after squashing.
            threshold: The number of identical spans to detect in a trace before squashing them.
            allowed_names: Span names that may be squashed. If `None`, any span may be squashed.
            options: Full options, overriding `threshold` and `allowed_names`.
            tracer_provider: The SDK tracer provider to register with. Defaults to the global one.
        """
        tracer_provider = tracer_provider or trace.get_tracer_provider()
        if not isinstance(tracer_provider, TracerProvider):
            raise SpansquashConfigError(
                f'Spans can only be squashed with an OpenTelemetry SDK TracerProvider, got {tracer_provider!r}'
            )

        self.name = f'{type(delegate).__module__}.{type(delegate).__qualname__}'
        self.exporter = SquashingSpanExporter(
            delegate,
            options or SquashingOptions(threshold=threshold, allowed_names=allowed_names),  # type: ignore
        )
        self.processor = UnregisterableSpanProcessor(BatchSpanProcessor(self.exporter))
        tracer_provider.add_span_processor(self.processor)
        logger.debug('Registered squashing exporter for %s', self.name)

    @classmethod
    def create_and_register(
        cls,
        delegate: SpanExporter,
        threshold: int = DEFAULT_THRESHOLD,
        allowed_names: Iterable[str] | None = None,
        *,
        tracer_provider: trace.TracerProvider | None = None,
    ) -> SquashingTraceExporter:
        """Create a `SquashingTraceExporter`, see `__init__` for the arguments."""
        return cls(delegate, threshold, allowed_names, tracer_provider=tracer_provider)

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        """Export queued spans, wait for them to be squashed, and flush `delegate`."""
        return self.processor.force_flush(timeout_millis) and self.exporter.force_flush(timeout_millis)

    def unregister(self) -> None:
        """Stop squashing and exporting new spans.

        Pending spans and buffered traces are still exported, then `delegate` is shut down.
        """
        self.processor.unregister()
        logger.debug('Unregistered squashing exporter for %s', self.name)
