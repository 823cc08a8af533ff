"""Configuration failures; the CLI reports these and exits with status 2."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Union


class ConfigurationError(RuntimeError):
    """Raised when a setting is missing, malformed or unusable."""

    @classmethod
    def missing_value(cls, setting: str) -> "ConfigurationError":
        return cls(f"{setting} must be set to a value")

    @classmethod
    def invalid_value(cls, setting: str, value: Any, hint: str = "") -> "ConfigurationError":
        """Create error for a value that parsed but is out of range or unknown."""
        message = f"{setting} = {value!r} is not valid"
        return cls(f"{message}. {hint}" if hint else message)

    @classmethod
    def directory_unavailable(cls, path: Union[str, Path], reason: str = "") -> "ConfigurationError":
        """Create error for a directory that cannot be created or used."""
        message = f"Directory {path} could not be created"
        return cls(f"{message}: {reason}" if reason else message)


__all__ = ["ConfigurationError"]
