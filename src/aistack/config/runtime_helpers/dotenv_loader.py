"""Reader for the optional ``.env`` files that seed AISTACK_* defaults."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

_EXPORT_PREFIX = "export "
_QUOTES = ("'", '"')


class DotenvLoader:
    """Loads ``KEY=value`` pairs from shell-style env files."""

    @staticmethod
    def load_from_file(path: Path) -> Dict[str, str]:
        """
        Load key-value pairs from an env file.

        A missing file yields an empty mapping. Lines may be written as
        ``export KEY=value`` so the file can also be sourced from a shell.
        Unquoted values end at a `` #`` comment; quoted values are taken
        verbatim between matching quotes. Lines that are not assignments are
        skipped.

        Raises:
            ConfigurationError: If the file exists but cannot be read
        """
        if not path.is_file():
            return {}
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Failed to load configuration from {path}") from exc

        values: Dict[str, str] = {}
        for number, line in enumerate(text.splitlines(), start=1):
            pair = DotenvLoader.parse_line(line)
            if pair is None:
                if line.strip() and not line.strip().startswith("#"):
                    logger.debug("Skipping %s:%d (not an assignment)", path, number)
                continue
            key, value = pair
            values[key] = value
        return values

    @staticmethod
    def parse_line(line: str) -> Optional[Tuple[str, str]]:
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            return None
        if stripped.startswith(_EXPORT_PREFIX):
            stripped = stripped[len(_EXPORT_PREFIX) :].lstrip()
        key, raw_value = stripped.split("=", 1)
        key = key.strip()
        if not key or " " in key:
            return None
        return key, _unquote(raw_value.strip())


def _unquote(raw_value: str) -> str:
    if len(raw_value) >= 2 and raw_value[0] in _QUOTES and raw_value[-1] == raw_value[0]:
        return raw_value[1:-1]
    if " #" in raw_value:
        raw_value = raw_value.split(" #", 1)[0].rstrip()
    return raw_value
