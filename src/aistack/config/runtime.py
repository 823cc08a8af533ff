"""
Typed accessors for AISTACK_* settings.

Lookup order for every accessor: the process environment, then the first
``.env`` file that defines the name, then the caller's ``or_value``. Blank
values count as unset at every level.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Optional, Sequence, TypeVar

from .errors import ConfigurationError

_TRUE_VALUES = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSE_VALUES = frozenset({"0", "false", "f", "no", "n", "off"})

_DOTENV_CANDIDATES = (Path(".env"), Path.home() / ".aistack.env")

_dotenv_cache: Optional[dict[str, str]] = None

T = TypeVar("T")


def _dotenv_values() -> dict[str, str]:
    from .runtime_helpers import DotenvLoader

    global _dotenv_cache
    if _dotenv_cache is None:
        merged: dict[str, str] = {}
        for path in _DOTENV_CANDIDATES:
            for key, value in DotenvLoader.load_from_file(path).items():
                # Earlier candidates take precedence
                merged.setdefault(key, value)
        _dotenv_cache = merged
    return _dotenv_cache


def clear_default_values() -> None:
    """Forget cached .env defaults so the next lookup re-reads the files."""
    global _dotenv_cache
    _dotenv_cache = None


def _lookup(name: str) -> Optional[str]:
    for source in (os.environ.get(name), _dotenv_values().get(name)):
        if source is not None and source.strip():
            return source.strip()
    return None


def _required_missing(name: str) -> ConfigurationError:
    return ConfigurationError(f"Required environment variable {name!r} is not set")


def env_str(name: str, or_value: str | None = None, *, required: bool = False) -> str | None:
    """Fetch a setting as a stripped string."""
    value = _lookup(name)
    if value is not None:
        return value
    if required and or_value is None:
        raise _required_missing(name)
    return or_value


def _coerced(name: str, or_value: T | None, required: bool, kind: str, convert: Callable[[str], T]) -> T | None:
    raw = _lookup(name)
    if raw is None:
        if required and or_value is None:
            raise _required_missing(name)
        return or_value
    try:
        return convert(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Environment variable {name!r} must be {kind} (got {raw!r})") from exc


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(raw)


def env_int(name: str, or_value: int | None = None, *, required: bool = False) -> int | None:
    """Fetch a setting and coerce it to ``int``."""
    return _coerced(name, or_value, required, "an integer", int)


def env_float(name: str, or_value: float | None = None, *, required: bool = False) -> float | None:
    return _coerced(name, or_value, required, "a float", float)


def env_bool(name: str, or_value: bool | None = None, *, required: bool = False) -> bool | None:
    """Fetch a setting and coerce it to ``bool`` (1/0, true/false, yes/no, on/off)."""
    return _coerced(name, or_value, required, "a boolean", _parse_bool)


def env_seconds(name: str, or_value: float | None = None, *, required: bool = False) -> float | None:
    """Fetch a non-negative duration in (possibly fractional) seconds."""
    value = env_float(name, or_value=or_value, required=required)
    if value is not None and value < 0:
        raise ConfigurationError(f"Environment variable {name!r} must be non-negative (got {value})")
    return value


def env_list(
    name: str,
    *,
    or_value: Sequence[str] | None = None,
    separator: str = os.pathsep,
) -> tuple[str, ...] | None:
    """
    Fetch a delimited list, ``os.pathsep`` separated by default.

    Items are stripped; blanks and repeats are dropped, first occurrence wins.
    """
    raw = _lookup(name)
    if raw is None:
        return None if or_value is None else tuple(or_value)
    parts = raw.split(separator) if separator else [raw]
    return tuple(dict.fromkeys(part.strip() for part in parts if part.strip()))
