from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import AbstractSet, Iterable

from spansquash.exceptions import SpansquashConfigError

from .config_params import ParamManager
from .constants import DEFAULT_BUFFER_MAX_TRACES, DEFAULT_BUFFER_TTL, DEFAULT_SWEEP_INTERVAL, DEFAULT_THRESHOLD


@dataclass(frozen=True)
class SquashingOptions:
    """Options for [`SquashingSpanExporter`][spansquash.SquashingSpanExporter]."""

    threshold: int = DEFAULT_THRESHOLD
    """Squash a group of identical sibling spans once it has at least this many spans."""

    allowed_names: AbstractSet[str] | None = None
    """
    Span names that may be squashed.
    If None, any span name may be squashed.
    If empty, nothing is squashed and spans are passed straight through to the wrapped exporter.
    """

    buffer_ttl: float = DEFAULT_BUFFER_TTL
    """Seconds a trace without a root span may go without new spans before it's exported unsquashed."""

    buffer_max_traces: int = DEFAULT_BUFFER_MAX_TRACES
    """Maximum number of incomplete traces to buffer. The least recently touched are exported unsquashed first."""

    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    """Seconds between background checks for traces that have exceeded `buffer_ttl`."""

    def __post_init__(self) -> None:
        if self.allowed_names is not None:
            if isinstance(self.allowed_names, str):
                raise SpansquashConfigError('allowed_names must be a collection of span names, not a single string')
            object.__setattr__(self, 'allowed_names', frozenset(self.allowed_names))
        if self.threshold < 1:
            raise SpansquashConfigError(f'threshold must be at least 1, got {self.threshold!r}')
        if self.buffer_ttl <= 0:
            raise SpansquashConfigError(f'buffer_ttl must be positive, got {self.buffer_ttl!r}')
        if self.buffer_max_traces < 1:
            raise SpansquashConfigError(f'buffer_max_traces must be at least 1, got {self.buffer_max_traces!r}')
        if self.sweep_interval <= 0:
            raise SpansquashConfigError(f'sweep_interval must be positive, got {self.sweep_interval!r}')

    @property
    def passthrough(self) -> bool:
        """True if squashing is disabled, i.e. `allowed_names` is an empty set."""
        return self.allowed_names is not None and not self.allowed_names


def load_options(
    *,
    threshold: int | None = None,
    allowed_names: Iterable[str] | None = None,
    enabled: bool | None = None,
    buffer_ttl: float | None = None,
    buffer_max_traces: int | None = None,
    sweep_interval: float | None = None,
    config_dir: Path | None = None,
) -> SquashingOptions:
    """Build `SquashingOptions` from arguments, environment variables and `pyproject.toml`.

    Each option is taken from the first of these that provides it:

    1. The argument to this function.
    2. Its `SPANSQUASH_*` environment variable, e.g. `SPANSQUASH_THRESHOLD`.
    3. The `[tool.spansquash]` table in `pyproject.toml` in `config_dir`,
       which defaults to the `SPANSQUASH_CONFIG_DIR` environment variable or the current directory.
    4. The default.

    `enabled=False` turns off squashing entirely, equivalent to an empty `allowed_names`.
    """
    params = ParamManager.create(config_dir)
    names = params.load_param('allowed_names', None if allowed_names is None else set(allowed_names))
    if not params.load_param('enabled', enabled):
        names = set()
    return SquashingOptions(
        threshold=params.load_param('threshold', threshold),
        allowed_names=names,
        buffer_ttl=params.load_param('buffer_ttl', buffer_ttl),
        buffer_max_traces=params.load_param('buffer_max_traces', buffer_max_traces),
        sweep_interval=params.load_param('sweep_interval', sweep_interval),
    )
