from __future__ import annotations

from typing import Literal

SQUASH_ATTRIBUTES_NAMESPACE = 'trace'
"""Namespace within OTEL attributes used to mark squashed spans."""

ATTRIBUTES_SQUASHED_KEY = f'{SQUASH_ATTRIBUTES_NAMESPACE}.squashed'
"""Set to `True` on a span that stands in for a group of identical sibling spans."""

ATTRIBUTES_SQUASH_COUNT_KEY = f'{SQUASH_ATTRIBUTES_NAMESPACE}.squash_count'
"""The number of spans that were collapsed into a squashed span, including itself."""

DEFAULT_THRESHOLD = 50
"""Minimum size of a group of identical sibling spans before it gets squashed."""

DEFAULT_BUFFER_TTL = 120.0
"""Seconds a trace without a root span may stay buffered without receiving new spans."""

DEFAULT_BUFFER_MAX_TRACES = 1000
"""Maximum number of incomplete traces held in the buffer at once."""

DEFAULT_SWEEP_INTERVAL = 1.0
"""Seconds between background checks for expired buffered traces."""

EvictionCause = Literal['expired', 'size', 'shutdown']
"""Why a buffered trace was forwarded without its root span."""
