from __future__ import annotations as _annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Set, TypeVar

from typing_extensions import get_args, get_origin

from spansquash.exceptions import SpansquashConfigError

from .constants import DEFAULT_BUFFER_MAX_TRACES, DEFAULT_BUFFER_TTL, DEFAULT_SWEEP_INTERVAL, DEFAULT_THRESHOLD
from .utils import read_toml_file

T = TypeVar('T')

slots_true = {'slots': True} if sys.version_info >= (3, 10) else {}


@dataclass(**slots_true)
class ConfigParam:
    """A parameter that can be configured for the squashing exporter."""

    env_vars: list[str]
    """Environment variables to check for the parameter."""
    allow_file_config: bool = False
    """Whether the parameter can be set in the config file."""
    default: Any = None
    """Default value if no other value is found."""
    tp: Any = str
    """Type of the parameter."""


# fmt: off
THRESHOLD = ConfigParam(env_vars=['SPANSQUASH_THRESHOLD'], allow_file_config=True, default=DEFAULT_THRESHOLD, tp=int)
"""Minimum number of identical sibling spans in a trace before they are squashed."""
ALLOWED_NAMES = ConfigParam(env_vars=['SPANSQUASH_ALLOWED_NAMES'], allow_file_config=True, default=None, tp=Set[str])
"""Span names that may be squashed. If unset, any span name may be squashed."""
ENABLED = ConfigParam(env_vars=['SPANSQUASH_ENABLED'], allow_file_config=True, default=True, tp=bool)
"""Whether to squash at all. When disabled, spans are passed straight through to the wrapped exporter."""
BUFFER_TTL = ConfigParam(env_vars=['SPANSQUASH_BUFFER_TTL'], allow_file_config=True, default=DEFAULT_BUFFER_TTL, tp=float)
"""Seconds an incomplete trace may stay buffered without receiving new spans."""
BUFFER_MAX_TRACES = ConfigParam(env_vars=['SPANSQUASH_BUFFER_MAX_TRACES'], allow_file_config=True, default=DEFAULT_BUFFER_MAX_TRACES, tp=int)
"""Maximum number of incomplete traces to buffer."""
SWEEP_INTERVAL = ConfigParam(env_vars=['SPANSQUASH_SWEEP_INTERVAL'], allow_file_config=True, default=DEFAULT_SWEEP_INTERVAL, tp=float)
"""Seconds between background checks for expired traces."""
# fmt: on

CONFIG_PARAMS = {
    'threshold': THRESHOLD,
    'allowed_names': ALLOWED_NAMES,
    'enabled': ENABLED,
    'buffer_ttl': BUFFER_TTL,
    'buffer_max_traces': BUFFER_MAX_TRACES,
    'sweep_interval': SWEEP_INTERVAL,
}


@dataclass
class ParamManager:
    """Manage configuration parameters for the squashing exporter."""

    config_from_file: dict[str, Any]
    """Config loaded from the config file."""

    @classmethod
    def create(cls, config_dir: Path | None = None) -> ParamManager:
        config_dir = Path(config_dir or os.getenv('SPANSQUASH_CONFIG_DIR') or '.')
        config_from_file = _load_config_from_file(config_dir)
        return ParamManager(config_from_file=config_from_file)

    def load_param(self, name: str, runtime: Any = None) -> Any:
        """Load a parameter given its name.

        The parameter is loaded in the following order:
        1. From the runtime argument, if provided.
        2. From the environment variables.
        3. From the config file, if allowed.

        If none of the above is found, the default value is returned.

        Args:
            name: Name of the parameter.
            runtime: Value provided at runtime.

        Returns:
            The value of the parameter.
        """
        if runtime is not None:
            return runtime

        param = CONFIG_PARAMS[name]
        for env_var in param.env_vars:
            value = os.getenv(env_var)
            # `None` (unset) and `''` (empty string) are generally considered the same
            if value:
                return self._cast(value, name, param.tp)

        if param.allow_file_config:
            value = self.config_from_file.get(name)
            if value is not None:
                return self._cast(value, name, param.tp)

        return self._cast(param.default, name, param.tp)

    def _cast(self, value: Any, name: str, tp: type[T]) -> T | None:
        if value is None:
            return None
        if tp is str:
            return value
        if tp is bool:
            return _check_bool(value, name)  # type: ignore
        if tp is int:
            return _check_number(value, name, int)  # type: ignore
        if tp is float:
            return _check_number(value, name, float)  # type: ignore
        if get_origin(tp) is set and get_args(tp) == (str,):  # pragma: no branch
            return _extract_set_of_str(value, name)  # type: ignore
        raise RuntimeError(f'Unexpected type {tp}')  # pragma: no cover


def _check_bool(value: Any, name: str) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        if value.lower() in ('1', 'true', 't'):
            return True
        if value.lower() in ('0', 'false', 'f'):
            return False
    raise SpansquashConfigError(f'Expected {name} to be a boolean, got {value!r}')


def _check_number(value: Any, name: str, tp: type[int] | type[float]) -> int | float:
    if isinstance(value, bool):
        raise SpansquashConfigError(f'Expected {name} to be a number, got {value!r}')
    try:
        return tp(value)
    except (TypeError, ValueError) as exc:
        raise SpansquashConfigError(f'Expected {name} to be of type {tp.__name__}, got {value!r}') from exc


def _extract_set_of_str(value: str | list[str] | set[str], name: str) -> set[str]:
    if isinstance(value, str):
        return {item for item in map(str.strip, value.split(',')) if item}
    if isinstance(value, (list, tuple, set, frozenset)) and all(isinstance(item, str) for item in value):
        return set(value)
    raise SpansquashConfigError(f'Expected {name} to be a list of strings, got {value!r}')


def _load_config_from_file(config_dir: Path) -> dict[str, Any]:
    config_file = config_dir / 'pyproject.toml'
    if not config_file.exists():
        return {}
    try:
        data = read_toml_file(config_file)
        return data.get('tool', {}).get('spansquash', {})
    except Exception as exc:
        raise SpansquashConfigError(f'Invalid config file: {config_file}') from exc
