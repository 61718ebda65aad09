from __future__ import annotations

import os
import threading
import time
from collections import Counter
from typing import Sequence

import pytest
from inline_snapshot import snapshot
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult

from spansquash import SquashingOptions, SquashingSpanExporter
from spansquash._internal.exporters import squashing as squashing_module
from spansquash._internal.exporters.squashing import split_traces
from spansquash.testing import TestExporter, build_span
from tests.utils import FakeClock, make_trace


class ExceptionExporter(SpanExporter):
    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        raise Exception('Bad, bad exporter')


class FailureExporter(SpanExporter):
    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        return SpanExportResult.FAILURE


class BlockingExporter(TestExporter):
    """Blocks every export until `release` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        assert self.release.wait(timeout=5)
        return super().export(spans)


class ConcurrencyCheckingExporter(TestExporter):
    """Records how many exports run at the same time."""

    def __init__(self) -> None:
        super().__init__()
        self.lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        with self.lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        time.sleep(0.05)
        with self.lock:
            self.in_flight -= 1
            return super().export(spans)


def make_exporter(exporter: SpanExporter, clock: FakeClock, **options: object) -> SquashingSpanExporter:
    return SquashingSpanExporter(
        exporter,
        SquashingOptions(**{'threshold': 5, 'buffer_ttl': 10, **options}),  # type: ignore
        background=False,
        clock=clock,
    )


def test_root_in_batch_squashes_and_exports(exporter: TestExporter, clock: FakeClock):
    squashing = make_exporter(exporter, clock)

    assert squashing.export(make_trace(5)) is SpanExportResult.SUCCESS

    assert len(exporter.batches) == 1
    assert exporter.exported_spans_as_dict() == snapshot(
        [
            {
                'name': 'root',
                'context': {'trace_id': 1, 'span_id': 1, 'is_remote': False},
                'parent': None,
                'start_time': 0,
                'end_time': 1000,
                'attributes': {},
            },
            {
                'name': 'child',
                'context': {'trace_id': 1, 'span_id': 2, 'is_remote': False},
                'parent': {'trace_id': 1, 'span_id': 1, 'is_remote': False},
                'start_time': 1,
                'end_time': 15,
                'attributes': {'trace.squashed': True, 'trace.squash_count': 5},
            },
        ]
    )
    assert len(squashing.buffer) == 0


def test_below_threshold_exports_everything(exporter: TestExporter, clock: FakeClock):
    squashing = make_exporter(exporter, clock)

    squashing.export(make_trace(4))

    assert [span.context.span_id for span in exporter.exported_spans] == [1, 2, 3, 4, 5]


def test_spans_are_buffered_until_root_arrives(exporter: TestExporter, clock: FakeClock):
    squashing = make_exporter(exporter, clock)
    root, *children = make_trace(6)

    squashing.export(children[:3])
    squashing.export(children[3:])
    assert exporter.exported_spans == []
    assert 1 in squashing.buffer

    squashing.export([root])

    assert len(exporter.batches) == 1
    assert [(span.name, (span.attributes or {}).get('trace.squash_count')) for span in exporter.exported_spans] == [
        ('child', 6),
        ('root', None),
    ]
    assert 1 not in squashing.buffer


def test_continuation_and_root_in_same_batch(exporter: TestExporter, clock: FakeClock):
    squashing = make_exporter(exporter, clock)
    root, *children = make_trace(5)

    squashing.export(children[:2])
    squashing.export([*children[2:], root])

    assert len(exporter.batches) == 1
    assert [span.name for span in exporter.exported_spans] == ['child', 'root']
    assert exporter.exported_spans[0].attributes['trace.squash_count'] == 5


def test_remote_parent_is_a_root(exporter: TestExporter, clock: FakeClock):
    squashing = make_exporter(exporter, clock)
    server_span = build_span('server', span_id=1, parent_id=12345, remote_parent=True)
    children = [build_span('query', span_id=i, parent_id=1, start_time=i) for i in range(2, 7)]

    squashing.export(children)
    assert exporter.exported_spans == []
    squashing.export([server_span])

    assert [span.name for span in exporter.exported_spans] == ['query', 'server']


def test_batches_are_split_by_trace(exporter: TestExporter, clock: FakeClock):
    squashing = make_exporter(exporter, clock)
    trace1 = make_trace(5, trace_id=1)
    trace2 = make_trace(5, trace_id=2)

    squashing.export([*trace1[1:], *trace2])

    assert len(exporter.batches) == 1
    assert [(span.context.trace_id, span.name) for span in exporter.exported_spans] == [(2, 'root'), (2, 'child')]
    assert list(squashing.buffer.traces) == [1]

    squashing.export(trace1[:1])
    assert len(exporter.batches) == 2
    assert [(span.context.trace_id, span.name) for span in exporter.batches[1]] == [(1, 'child'), (1, 'root')]


def test_expired_trace_is_exported_unsquashed_once(exporter: TestExporter, clock: FakeClock):
    squashing = make_exporter(exporter, clock)
    children = make_trace(8)[1:]

    squashing.export(children)
    clock.advance(10)
    assert squashing.force_flush()
    assert squashing.force_flush()

    assert len(exporter.batches) == 1
    assert exporter.batches[0] == children
    assert not any('trace.squashed' in (span.attributes or {}) for span in exporter.exported_spans)


def test_late_root_after_eviction(exporter: TestExporter, clock: FakeClock):
    squashing = make_exporter(exporter, clock)
    root, *children = make_trace(8)

    squashing.export(children)
    clock.advance(10)
    squashing.force_flush()
    squashing.export([root])

    assert [len(batch) for batch in exporter.batches] == [8, 1]


def test_capacity_eviction_exports_oldest(exporter: TestExporter, clock: FakeClock):
    squashing = make_exporter(exporter, clock, buffer_max_traces=2)

    for trace_id in (1, 2, 3):
        squashing.export(make_trace(5, trace_id=trace_id)[1:])
        clock.advance(1)

    assert len(exporter.batches) == 1
    assert {span.context.trace_id for span in exporter.batches[0]} == {1}
    assert list(squashing.buffer.traces) == [2, 3]


def test_passthrough_when_no_names_allowed(exporter: TestExporter, clock: FakeClock):
    squashing = make_exporter(exporter, clock, allowed_names=())
    children = make_trace(100)[1:]
    other_trace = make_trace(100, trace_id=2)

    assert squashing.export(children) is SpanExportResult.SUCCESS
    squashing.export(other_trace)

    assert exporter.batches == [children, other_trace]
    assert len(squashing.buffer) == 0


def test_passthrough_returns_wrapped_result(clock: FakeClock):
    squashing = make_exporter(FailureExporter(), clock, allowed_names=set())
    assert squashing.export(make_trace(1)) is SpanExportResult.FAILURE


def test_allowed_names(exporter: TestExporter, clock: FakeClock):
    squashing = make_exporter(exporter, clock, allowed_names={'test'})
    trace = make_trace(5, name='test') + [
        build_span('other', span_id=i, parent_id=1, start_time=i) for i in range(10, 15)
    ]

    squashing.export(trace)

    assert [span.name for span in exporter.exported_spans] == ['root', 'test'] + ['other'] * 5


def test_malformed_spans_are_ignored(exporter: TestExporter, clock: FakeClock, caplog: pytest.LogCaptureFixture):
    squashing = make_exporter(exporter, clock)
    no_span_id = build_span('no span id', span_id=0)
    no_trace_id = build_span('no trace id', trace_id=0, span_id=3)
    no_context = ReadableSpan(name='no context', context=None)

    squashing.export([no_span_id, *make_trace(5), no_trace_id, no_context])

    assert [span.name for span in exporter.exported_spans] == ['root', 'child']
    assert caplog.messages == ['Ignored 3 malformed span(s) without a valid trace ID and span ID']


def test_split_traces_keeps_arrival_order():
    spans = [
        build_span('a', trace_id=2, span_id=1),
        build_span('b', trace_id=1, span_id=2),
        build_span('c', trace_id=2, span_id=3),
    ]
    assert {trace_id: [span.name for span in trace] for trace_id, trace in split_traces(spans).items()} == {
        2: ['a', 'c'],
        1: ['b'],
    }


def test_internal_exception_only_affects_its_trace(
    exporter: TestExporter, clock: FakeClock, caplog: pytest.LogCaptureFixture, monkeypatch: pytest.MonkeyPatch
):
    original_squash_trace = squashing_module.squash_trace

    def squash_trace(trace: list[ReadableSpan], threshold: int, allowed_names: object = None) -> list[ReadableSpan]:
        if trace[0].context.trace_id == 1:
            raise ValueError('boom')
        return original_squash_trace(trace, threshold, allowed_names)  # type: ignore

    monkeypatch.setattr(squashing_module, 'squash_trace', squash_trace)
    squashing = make_exporter(exporter, clock)

    assert squashing.export([*make_trace(5, trace_id=1), *make_trace(5, trace_id=2)]) is SpanExportResult.SUCCESS

    assert {span.context.trace_id for span in exporter.exported_spans} == {2}
    assert caplog.messages == [
        'Caught an internal error in spansquash. '
        'Your code should still be running fine, some spans may just not have been squashed. '
        'This is just logging the internal error.'
    ]


def test_downstream_exception_is_not_raised(clock: FakeClock, caplog: pytest.LogCaptureFixture):
    squashing = make_exporter(ExceptionExporter(), clock)

    assert squashing.export(make_trace(5)) is SpanExportResult.SUCCESS

    assert caplog.messages == ['Error exporting 2 span(s), they will not be retried']
    assert caplog.records[0].exc_info is not None


def test_downstream_failure_is_logged(clock: FakeClock, caplog: pytest.LogCaptureFixture):
    squashing = make_exporter(FailureExporter(), clock)

    assert squashing.export(make_trace(1)) is SpanExportResult.SUCCESS

    assert caplog.messages == ['Failed to export 2 span(s), they will not be retried']


def test_shutdown_exports_buffered_traces(exporter: TestExporter, clock: FakeClock):
    squashing = make_exporter(exporter, clock)
    children = make_trace(8)[1:]
    squashing.export(children)

    squashing.shutdown()
    squashing.shutdown()

    assert exporter.batches == [children]
    assert exporter.is_shutdown


def test_export_after_shutdown(exporter: TestExporter, clock: FakeClock, caplog: pytest.LogCaptureFixture):
    squashing = make_exporter(exporter, clock)
    squashing.shutdown()

    assert squashing.export(make_trace(5)) is SpanExportResult.FAILURE
    assert exporter.exported_spans == []
    assert caplog.messages == ['Exporter has been shut down, dropping 6 span(s)']


def test_background_export_does_not_block():
    exporter = BlockingExporter()
    squashing = SquashingSpanExporter(exporter, SquashingOptions(threshold=5))
    try:
        assert squashing.export(make_trace(5)) is SpanExportResult.SUCCESS
        assert squashing.export(make_trace(3, trace_id=2)) is SpanExportResult.SUCCESS
        assert exporter.exported_spans == []

        exporter.release.set()
        assert squashing.force_flush()

        assert [(span.context.trace_id, len(batch)) for batch in exporter.batches for span in batch[:1]] == [
            (1, 2),
            (2, 4),
        ]
    finally:
        exporter.release.set()
        squashing.shutdown()


def test_background_shutdown_waits_for_pending_work():
    exporter = TestExporter()
    squashing = SquashingSpanExporter(exporter, SquashingOptions(threshold=5))
    root, *children = make_trace(5)

    squashing.export(children)
    squashing.export([root])
    squashing.export(make_trace(5, trace_id=2)[1:])
    squashing.shutdown()

    assert [len(batch) for batch in exporter.batches] == [2, 5]
    assert [span.name for span in exporter.batches[0]] == ['child', 'root']
    assert exporter.batches[0][0].attributes == {'trace.squashed': True, 'trace.squash_count': 5}
    assert exporter.is_shutdown


def test_background_eviction_by_sweeper():
    exporter = TestExporter()
    evicted = threading.Event()
    original_export = exporter.export

    def export(spans: Sequence[ReadableSpan]) -> SpanExportResult:
        result = original_export(spans)
        evicted.set()
        return result

    exporter.export = export  # type: ignore
    squashing = SquashingSpanExporter(exporter, SquashingOptions(threshold=5, buffer_ttl=0.01, sweep_interval=0.01))
    try:
        squashing.export(make_trace(5)[1:])
        assert evicted.wait(timeout=5)
        assert [len(batch) for batch in exporter.batches] == [5]
    finally:
        squashing.shutdown()


def test_force_flush_with_default_wrapped_force_flush(exporter: TestExporter, clock: FakeClock):
    # TestExporter doesn't override `SpanExporter.force_flush`, which returns None.
    assert 'force_flush' not in vars(TestExporter)
    squashing = make_exporter(exporter, clock)
    squashing.export(make_trace(5))

    assert squashing.force_flush() is True


def test_background_force_flush_returns_true():
    squashing = SquashingSpanExporter(TestExporter(), SquashingOptions(threshold=5))
    try:
        squashing.export(make_trace(5))
        assert squashing.force_flush() is True
    finally:
        squashing.shutdown()


def test_wrapped_exporter_is_never_called_concurrently():
    exporter = ConcurrencyCheckingExporter()
    squashing = SquashingSpanExporter(
        exporter, SquashingOptions(threshold=5, buffer_ttl=0.01, sweep_interval=0.01, buffer_max_traces=100)
    )
    try:
        for trace_id in range(1, 4):
            squashing.export(make_trace(5, trace_id=trace_id)[1:])
        time.sleep(0.05)
        for trace_id in range(10, 14):
            squashing.export(make_trace(5, trace_id=trace_id))
        assert squashing.force_flush()
    finally:
        squashing.shutdown()

    assert {span.context.trace_id for span in exporter.exported_spans} == {1, 2, 3, 10, 11, 12, 13}
    assert exporter.max_in_flight == 1


def test_concurrent_eviction_and_root_flush_export_each_span_once():
    exporter = TestExporter()
    squashing = SquashingSpanExporter(
        exporter, SquashingOptions(threshold=5, buffer_ttl=0.002, sweep_interval=0.001, buffer_max_traces=1000)
    )
    trace_ids = range(1, 51)
    try:
        for trace_id in trace_ids:
            root, *children = make_trace(5, trace_id=trace_id)
            squashing.export(children)
            time.sleep(0.001 * (trace_id % 4))
            squashing.export([root])
    finally:
        squashing.shutdown()

    exported: dict[int, Counter[int]] = {}
    for span in exporter.exported_spans:
        exported.setdefault(span.context.trace_id, Counter())[span.context.span_id] += 1

    assert set(exported) == set(trace_ids)
    for span_ids in exported.values():
        assert set(span_ids.values()) == {1}
        # Either the children were squashed together with the root, or evicted before it arrived.
        assert set(span_ids) in ({1, 2}, {1, 2, 3, 4, 5, 6})


@pytest.mark.skipif(not hasattr(os, 'fork'), reason='requires os.fork')
def test_background_export_in_forked_child():
    exporter = TestExporter()
    squashing = SquashingSpanExporter(exporter, SquashingOptions(threshold=5))
    try:
        # Start the worker thread in the parent.
        squashing.export(make_trace(5))
        assert squashing.force_flush()

        read_fd, write_fd = os.pipe()
        pid = os.fork()
        if pid == 0:  # pragma: no cover
            try:
                os.close(read_fd)
                exporter.clear()
                squashing.export(make_trace(5, trace_id=2))
                flushed = squashing.force_flush(5000)
                os.write(write_fd, f'{flushed} {len(exporter.exported_spans)}'.encode())
            finally:
                os._exit(0)

        os.close(write_fd)
        os.waitpid(pid, 0)
        with os.fdopen(read_fd) as f:
            assert f.read() == 'True 2'
    finally:
        squashing.shutdown()
