from __future__ import annotations

import os
import threading
import time
import weakref
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Iterable

from opentelemetry.sdk.trace import ReadableSpan

from .constants import DEFAULT_BUFFER_MAX_TRACES, DEFAULT_BUFFER_TTL, EvictionCause
from .utils import handle_internal_errors, logger

EvictionCallback = Callable[[int, list[ReadableSpan], EvictionCause], None]


@dataclass
class TraceEntry:
    """Spans received so far for a trace whose root span hasn't arrived yet."""

    spans: list[ReadableSpan] = field(default_factory=list)
    last_touched: float = 0.0


class SpanBuffer:
    """Holds spans of incomplete traces until their root span arrives.

    Traces that don't receive new spans for `ttl` seconds, and the least recently touched traces
    beyond `max_traces`, are evicted: their spans are passed to `on_evict` rather than discarded.
    """

    def __init__(
        self,
        on_evict: EvictionCallback,
        ttl: float = DEFAULT_BUFFER_TTL,
        max_traces: int = DEFAULT_BUFFER_MAX_TRACES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.on_evict = on_evict
        self.ttl = ttl
        self.max_traces = max_traces
        self.clock = clock

        # Ordered from least to most recently touched, so eviction candidates are always at the front.
        self.traces: OrderedDict[int, TraceEntry] = OrderedDict()

        # Code that touches self.traces and its contents should be protected by this lock.
        # Entries are only ever removed while holding it, so a trace can't be both taken and evicted.
        self.lock = threading.Lock()

        self._sweep_interval: float | None = None
        self._sweeper: threading.Thread | None = None
        self._closed = threading.Event()

    def __len__(self) -> int:
        with self.lock:
            return len(self.traces)

    def __contains__(self, trace_id: object) -> bool:
        with self.lock:
            return trace_id in self.traces

    def merge(self, trace_id: int, spans: Iterable[ReadableSpan]) -> None:
        """Append spans to the buffered trace, creating it if needed."""
        with self.lock:
            now = self.clock()
            entry = self.traces.pop(trace_id, None) or TraceEntry()
            entry.spans.extend(spans)
            entry.last_touched = now
            self.traces[trace_id] = entry
            evicted = self._pop_expired(now) + self._pop_excess()

        # Calling the callback may take a while (it usually exports), so it happens outside the lock.
        self._evict(evicted)

    def take_and_clear(self, trace_id: int) -> list[ReadableSpan]:
        """Remove the buffered trace and return its spans, or an empty list if there's nothing buffered."""
        with self.lock:
            entry = self.traces.pop(trace_id, None)
        return entry.spans if entry else []

    def expire(self) -> int:
        """Evict all traces that haven't been touched for `ttl` seconds. Returns how many were evicted."""
        with self.lock:
            evicted = self._pop_expired(self.clock())
        self._evict(evicted)
        return len(evicted)

    def start_sweeper(self, interval: float) -> None:
        """Start a daemon thread that calls `expire` every `interval` seconds until `close` is called."""
        self._sweep_interval = interval
        self._start_sweeper_thread()
        if hasattr(os, 'register_at_fork'):
            weak_reinit = weakref.WeakMethod(self._at_fork_reinit)
            os.register_at_fork(after_in_child=lambda: weak_reinit()())  # type: ignore

    def close(self) -> int:
        """Stop the sweeper and evict everything still buffered. Returns how many traces were evicted."""
        self._closed.set()
        sweeper = self._sweeper
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join()

        with self.lock:
            evicted: list[tuple[int, TraceEntry, EvictionCause]] = [
                (trace_id, entry, 'shutdown') for trace_id, entry in self.traces.items()
            ]
            self.traces.clear()
        self._evict(evicted)
        return len(evicted)

    def _start_sweeper_thread(self) -> None:
        self._sweeper = threading.Thread(name='SpansquashBufferSweeper', target=self._sweep, daemon=True)
        self._sweeper.start()

    def _at_fork_reinit(self) -> None:
        # Locks and threads don't survive a fork.
        self.lock = threading.Lock()
        if not self._closed.is_set():
            self._closed = threading.Event()
            self._start_sweeper_thread()

    def _sweep(self) -> None:
        assert self._sweep_interval is not None
        while not self._closed.wait(self._sweep_interval):
            with handle_internal_errors:
                self.expire()

    def _pop_expired(self, now: float) -> list[tuple[int, TraceEntry, EvictionCause]]:
        evicted: list[tuple[int, TraceEntry, EvictionCause]] = []
        while self.traces:
            trace_id, entry = next(iter(self.traces.items()))
            if now - entry.last_touched < self.ttl:
                break
            del self.traces[trace_id]
            evicted.append((trace_id, entry, 'expired'))
        return evicted

    def _pop_excess(self) -> list[tuple[int, TraceEntry, EvictionCause]]:
        evicted: list[tuple[int, TraceEntry, EvictionCause]] = []
        while len(self.traces) > self.max_traces:
            trace_id, entry = self.traces.popitem(last=False)
            evicted.append((trace_id, entry, 'size'))
        return evicted

    def _evict(self, evicted: list[tuple[int, TraceEntry, EvictionCause]]) -> None:
        for trace_id, entry, cause in evicted:
            logger.debug('Evicting %s buffered span(s) of trace %032x (%s)', len(entry.spans), trace_id, cause)
            self.on_evict(trace_id, entry.spans, cause)
