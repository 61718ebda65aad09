"""**spansquash** collapses repetitive spans in OpenTelemetry traces before they are exported."""

from __future__ import annotations

from ._internal.config import SquashingOptions, load_options
from ._internal.constants import ATTRIBUTES_SQUASH_COUNT_KEY, ATTRIBUTES_SQUASHED_KEY
from ._internal.exporters.squashing import SquashingSpanExporter
from ._internal.registration import SquashingTraceExporter
from ._internal.squash import drop_children, squash_trace
from .exceptions import SpansquashConfigError
from .version import VERSION

__version__ = VERSION

__all__ = (
    'ATTRIBUTES_SQUASHED_KEY',
    'ATTRIBUTES_SQUASH_COUNT_KEY',
    'SpansquashConfigError',
    'SquashingOptions',
    'SquashingSpanExporter',
    'SquashingTraceExporter',
    'drop_children',
    'load_options',
    'squash_trace',
)
