from __future__ import annotations

from typing import AbstractSet, Hashable, Iterable, Sequence

from opentelemetry.sdk.trace import ReadableSpan

from .constants import ATTRIBUTES_SQUASH_COUNT_KEY, ATTRIBUTES_SQUASHED_KEY
from .utils import parent_span_id, span_to_dict

GroupKey = tuple[int | None, str, tuple[Hashable, str | None]]
"""Spans with the same parent, name and status share a key and may be squashed together."""


def group_key(span: ReadableSpan) -> GroupKey:
    # Status doesn't define equality, so compare its parts.
    return parent_span_id(span), span.name, (span.status.status_code, span.status.description)


def squash_trace(
    trace: Sequence[ReadableSpan],
    threshold: int,
    allowed_names: AbstractSet[str] | None = None,
) -> list[ReadableSpan]:
    """Collapse each large enough group of identical sibling spans in a trace into a single span.

    Args:
        trace: All the spans collected for one trace.
        threshold: Groups with at least this many spans are squashed.
        allowed_names: If not `None`, only groups with one of these names are squashed.
            An empty set disables squashing entirely.

    Returns:
        The spans that survive: untouched spans, one squashed span per squashed group,
        and nothing that descends from a span that was squashed away.
    """
    if allowed_names is not None and not allowed_names:
        return list(trace)

    groups: dict[GroupKey, list[ReadableSpan]] = {}
    for span in trace:
        groups.setdefault(group_key(span), []).append(span)

    kept: list[ReadableSpan] = []
    dropped: set[int] = set()
    for group in groups.values():
        skip_squash = allowed_names is not None and group[0].name not in allowed_names
        if skip_squash or len(group) < threshold:
            kept.extend(group)
            continue

        squashed = squash_spans(group)
        kept.append(squashed)
        squashed_id = squashed.context.span_id  # type: ignore
        dropped.update(span.context.span_id for span in group if span.context.span_id != squashed_id)  # type: ignore

    return drop_children(kept, dropped)


def squash_spans(group: Sequence[ReadableSpan]) -> ReadableSpan:
    """Build a single span standing in for all the spans in `group`.

    It's a copy of the earliest starting span, stretched to end when the last span ended,
    and marked with the number of spans it replaces.
    """
    # min() returns the first of several equal minimums, keeping this stable for a given input order.
    earliest = min(group, key=lambda span: span.start_time or 0)
    end_times = [span.end_time for span in group if span.end_time is not None]

    span_dict = span_to_dict(earliest)
    span_dict['end_time'] = max(end_times) if end_times else None
    span_dict['attributes'] = {
        **span_dict['attributes'],
        ATTRIBUTES_SQUASHED_KEY: True,
        ATTRIBUTES_SQUASH_COUNT_KEY: len(group),
    }
    return ReadableSpan(**span_dict)


def drop_children(spans: Iterable[ReadableSpan], dropped_ids: AbstractSet[int]) -> list[ReadableSpan]:
    """Remove every span that descends from a span whose ID is in `dropped_ids`.

    Each round removes the direct children of the current dropped set,
    and the removed spans become the dropped set of the next round.
    Spans whose parent isn't in `spans` at all are never removed.
    """
    kept = list(spans)
    while dropped_ids:
        next_dropped: set[int] = set()
        remaining: list[ReadableSpan] = []
        for span in kept:
            if parent_span_id(span) in dropped_ids:
                next_dropped.add(span.context.span_id)  # type: ignore
            else:
                remaining.append(span)
        kept = remaining
        dropped_ids = next_dropped
    return kept
