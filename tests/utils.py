from __future__ import annotations

from opentelemetry.sdk.trace import ReadableSpan

from spansquash.testing import build_span


class FakeClock:
    """A monotonic clock in seconds that only moves when told to."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_trace(num_children: int, *, trace_id: int = 1, name: str = 'child') -> list[ReadableSpan]:
    """A root span with span ID 1 followed by `num_children` identical children with span IDs 2, 3, ...

    Child `i` (counting from 1) starts at `i` and ends at `i + 10`.
    """
    root = build_span('root', trace_id=trace_id, span_id=1, start_time=0, end_time=1000)
    children = [
        build_span(name, trace_id=trace_id, span_id=i + 1, parent_id=1, start_time=i, end_time=i + 10)
        for i in range(1, num_children + 1)
    ]
    return [root, *children]
