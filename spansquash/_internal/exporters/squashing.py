from __future__ import annotations

import os
import time
import weakref
from concurrent.futures import Future, ThreadPoolExecutor, wait
from threading import Lock, RLock
from typing import Callable, Sequence

from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult

from ..buffer import SpanBuffer
from ..config import SquashingOptions
from ..constants import EvictionCause
from ..squash import squash_trace
from ..utils import handle_internal_errors, is_root_span, is_valid_span, logger
from .wrapper import WrapperSpanExporter


class SquashingSpanExporter(WrapperSpanExporter):
    """A SpanExporter that collapses groups of identical sibling spans before passing them to the wrapped exporter.

    Spans are held back per trace until the trace's root span arrives. The whole trace is then squashed:
    each group of at least `threshold` spans sharing a parent, name and status is replaced by one span
    covering the whole group, and the descendants of the replaced spans are removed.

    Traces whose root never arrives are eventually exported as they are, see `SquashingOptions.buffer_ttl`
    and `SquashingOptions.buffer_max_traces`.

    Exporting to the wrapped exporter is fire-and-forget: failures are logged and not retried.
    """

    def __init__(
        self,
        exporter: SpanExporter,
        options: SquashingOptions | None = None,
        *,
        background: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Create a squashing exporter.

        Args:
            exporter: The exporter to pass squashed traces to.
            options: Squashing and buffering options. Defaults to `SquashingOptions()`.
            background: If True, `export` hands the work to a background thread and returns immediately,
                and expired traces are checked for periodically in another background thread.
                If False, the work happens during `export`, and expired traces are only checked for
                when spans are buffered or on `force_flush`.
            clock: Monotonic clock in seconds used to expire buffered traces.
        """
        super().__init__(exporter)
        self.options = options or SquashingOptions()
        self.background = background
        self.buffer = SpanBuffer(
            self._export_evicted,
            ttl=self.options.buffer_ttl,
            max_traces=self.options.buffer_max_traces,
            clock=clock,
        )

        # Protects _executor, _pending and _is_shutdown. Done callbacks can run while it is held.
        self._lock = RLock()
        self._executor: ThreadPoolExecutor | None = None
        self._pending: set[Future[None]] = set()
        self._is_shutdown = False

        # The wrapped exporter is called from the worker, the sweeper and shutdown. Only one at a time.
        self._export_lock = Lock()

        if background and not self.options.passthrough:
            # Must run before the buffer's hook restarts the sweeper in a forked child.
            if hasattr(os, 'register_at_fork'):  # pragma: no branch
                weak_reinit = weakref.WeakMethod(self._at_fork_reinit)
                os.register_at_fork(after_in_child=lambda: weak_reinit()())  # type: ignore
            self.buffer.start_sweeper(self.options.sweep_interval)

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        if self.options.passthrough:
            # Nothing will ever be squashed, so there's no point buffering.
            return super().export(spans)

        traces = split_traces(spans)
        with self._lock:
            if self._is_shutdown:
                logger.warning('Exporter has been shut down, dropping %s span(s)', len(spans))
                return SpanExportResult.FAILURE
            if self.background:
                self._submit(traces)
                return SpanExportResult.SUCCESS

        self._process(traces)
        return SpanExportResult.SUCCESS

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        """Wait for pending background work and flush the wrapped exporter.

        Traces still waiting for their root span stay buffered, unless they've expired.
        """
        with self._lock:
            pending = list(self._pending)
        _done, not_done = wait(pending, timeout=timeout_millis / 1000)
        self.buffer.expire()
        # `SpanExporter.force_flush` returns None unless overridden, which isn't a failure.
        return not not_done and super().force_flush(timeout_millis) is not False

    def shutdown(self) -> None:
        """Finish pending work, export all buffered traces unsquashed, and shut down the wrapped exporter."""
        with self._lock:
            if self._is_shutdown:
                return
            self._is_shutdown = True
            executor = self._executor

        if executor is not None:
            executor.shutdown(wait=True)
        self.buffer.close()
        super().shutdown()

    def _submit(self, traces: dict[int, list[ReadableSpan]]) -> None:
        # A single worker keeps batches in arrival order.
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='spansquash')
        future = self._executor.submit(self._process, traces)
        self._pending.add(future)
        future.add_done_callback(self._on_done)

    def _at_fork_reinit(self) -> None:
        # The worker thread doesn't survive a fork, and work queued in the parent belongs to the parent.
        self._lock = RLock()
        self._export_lock = Lock()
        self._executor = None
        self._pending = set()

    def _on_done(self, future: Future[None]) -> None:
        with self._lock:
            self._pending.discard(future)
        exc = future.exception()
        if exc is not None:
            logger.error('Error squashing spans in the background', exc_info=exc)

    def _process(self, traces: dict[int, list[ReadableSpan]]) -> None:
        for trace_id, spans in traces.items():
            # One broken trace shouldn't affect the others.
            with handle_internal_errors:
                self._buffer_or_export(trace_id, spans)

    def _buffer_or_export(self, trace_id: int, new_spans: list[ReadableSpan]) -> None:
        if not any(is_root_span(span) for span in new_spans):
            self.buffer.merge(trace_id, new_spans)
            return

        # The root has arrived, so the trace is hopefully complete.
        spans = self.buffer.take_and_clear(trace_id) + new_spans
        squashed = squash_trace(spans, self.options.threshold, self.options.allowed_names)
        if len(squashed) < len(spans):
            logger.debug('Squashed trace %032x from %s to %s span(s)', trace_id, len(spans), len(squashed))
        self._forward(squashed)

    def _export_evicted(self, trace_id: int, spans: list[ReadableSpan], cause: EvictionCause) -> None:
        # No root span was seen, so there's no way to know if the trace is complete. Don't squash.
        self._forward(spans)

    def _forward(self, spans: list[ReadableSpan]) -> None:
        if not spans:  # pragma: no cover
            return
        try:
            with self._export_lock:
                result = self.wrapped_exporter.export(spans)
        except Exception:
            logger.exception('Error exporting %s span(s), they will not be retried', len(spans))
            return
        if result is not SpanExportResult.SUCCESS:
            logger.warning('Failed to export %s span(s), they will not be retried', len(spans))


def split_traces(spans: Sequence[ReadableSpan]) -> dict[int, list[ReadableSpan]]:
    """Group spans by trace ID in order of arrival, leaving out spans without valid IDs."""
    traces: dict[int, list[ReadableSpan]] = {}
    rejected = 0
    for span in spans:
        if not is_valid_span(span):
            logger.debug('Ignoring span %r without a valid trace ID and span ID', span.name)
            rejected += 1
            continue
        traces.setdefault(span.context.trace_id, []).append(span)  # type: ignore
    if rejected:
        logger.warning('Ignored %s malformed span(s) without a valid trace ID and span ID', rejected)
    return traces
