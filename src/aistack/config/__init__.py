"""Configuration loading for the supervised stack."""

from .errors import ConfigurationError
from .runtime import (
    clear_default_values,
    env_bool,
    env_float,
    env_int,
    env_list,
    env_seconds,
    env_str,
)
from .settings import (
    INFERENCE_SERVICE,
    SERVICE_NAMES,
    WEBUI_SERVICE,
    StackSettings,
    ensure_directories,
    load_settings,
)

__all__ = [
    "INFERENCE_SERVICE",
    "SERVICE_NAMES",
    "WEBUI_SERVICE",
    "ConfigurationError",
    "StackSettings",
    "clear_default_values",
    "ensure_directories",
    "env_bool",
    "env_float",
    "env_int",
    "env_list",
    "env_seconds",
    "env_str",
    "load_settings",
]
