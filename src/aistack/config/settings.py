"""Immutable settings for the supervised stack, resolved once per invocation."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from ..models import ServiceDescriptor
from .errors import ConfigurationError
from .runtime import env_int, env_list, env_seconds, env_str


INFERENCE_SERVICE = "ollama"
WEBUI_SERVICE = "webui"
SERVICE_NAMES = (INFERENCE_SERVICE, WEBUI_SERVICE)

DEFAULT_DATA_ROOT = Path.home() / ".aistack"
DEFAULT_INFERENCE_PORT = 11434
DEFAULT_WEBUI_PORT = 8080
DEFAULT_HOST = "127.0.0.1"
DEFAULT_INFERENCE_STARTUP_TIMEOUT = 60.0
DEFAULT_WEBUI_STARTUP_TIMEOUT = 120.0
DEFAULT_SHUTDOWN_TIMEOUT = 30.0
DEFAULT_HEALTH_TIMEOUT = 5.0
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_PROGRESS_INTERVAL = 10.0
DEFAULT_SETTLE_DELAY = 3.0
DEFAULT_COMPANION_SETTLE_DELAY = 2.0


@dataclass(frozen=True)
class StackSettings:
    data_root: Path
    log_dir: Path
    state_dir: Path
    inference: ServiceDescriptor
    webui: ServiceDescriptor
    health_timeout: float = DEFAULT_HEALTH_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL
    settle_delay: float = DEFAULT_SETTLE_DELAY
    companion_settle_delay: float = DEFAULT_COMPANION_SETTLE_DELAY

    @property
    def services(self) -> Tuple[ServiceDescriptor, ServiceDescriptor]:
        """Descriptors in dependency order (inference server first)."""
        return (self.inference, self.webui)

    def descriptor(self, name: str) -> ServiceDescriptor:
        for service in self.services:
            if service.name == name:
                return service
        raise ConfigurationError.invalid_value("service", name, f"Known services: {', '.join(SERVICE_NAMES)}")


def load_settings(data_root: Optional[Path] = None) -> StackSettings:
    """
    Build settings from ``AISTACK_*`` environment variables and .env defaults.

    Args:
        data_root: Explicit data root; overrides ``AISTACK_DATA_ROOT``

    Returns:
        Frozen StackSettings

    Raises:
        ConfigurationError: If a value is malformed or out of range
    """
    root = Path(data_root) if data_root is not None else Path(env_str("AISTACK_DATA_ROOT", or_value=str(DEFAULT_DATA_ROOT)))
    root = root.expanduser()
    log_dir = Path(env_str("AISTACK_LOG_DIR", or_value=str(root / "logs"))).expanduser()
    state_dir = Path(env_str("AISTACK_STATE_DIR", or_value=str(root / "run"))).expanduser()

    inference = _inference_descriptor(root, log_dir)
    webui = _webui_descriptor(root, log_dir, inference)
    if inference.port == webui.port and _same_host(inference.host, webui.host):
        raise ConfigurationError(f"ollama and webui cannot share port {inference.port}")

    return StackSettings(
        data_root=root,
        log_dir=log_dir,
        state_dir=state_dir,
        inference=inference,
        webui=webui,
        health_timeout=_seconds("AISTACK_HEALTH_TIMEOUT", DEFAULT_HEALTH_TIMEOUT),
        poll_interval=_seconds("AISTACK_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        progress_interval=_seconds("AISTACK_PROGRESS_INTERVAL", DEFAULT_PROGRESS_INTERVAL),
        settle_delay=_seconds("AISTACK_SETTLE_DELAY", DEFAULT_SETTLE_DELAY),
        companion_settle_delay=_seconds("AISTACK_COMPANION_SETTLE_DELAY", DEFAULT_COMPANION_SETTLE_DELAY),
    )


def ensure_directories(settings: StackSettings, *, include_services: bool = True) -> None:
    """
    Create the data, log and state directories.

    With ``include_services`` every service's own directories are created as
    well.
    """
    targets = [settings.data_root, settings.log_dir, settings.state_dir]
    if include_services:
        for service in settings.services:
            targets.extend(service.required_directories)
    for path in targets:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigurationError.directory_unavailable(path, str(exc)) from exc


def _inference_descriptor(root: Path, log_dir: Path) -> ServiceDescriptor:
    host = env_str("AISTACK_OLLAMA_HOST", or_value=DEFAULT_HOST)
    port = _port("AISTACK_OLLAMA_PORT", DEFAULT_INFERENCE_PORT)
    models_dir = Path(env_str("AISTACK_OLLAMA_MODELS", or_value=str(root / "models"))).expanduser()
    return ServiceDescriptor(
        name=INFERENCE_SERVICE,
        display_name="Ollama",
        process_names=("ollama",),
        companion_names=("ollama app",),
        executable_names=("ollama",),
        executable_override=_optional_path("AISTACK_OLLAMA_EXECUTABLE"),
        install_locations=_extra_locations("AISTACK_OLLAMA_PATHS") + _inference_install_locations(),
        launch_args=("serve",),
        environment={
            "OLLAMA_HOST": f"{host}:{port}",
            "OLLAMA_MODELS": str(models_dir),
        },
        host=host,
        port=port,
        liveness_path="/api/tags",
        startup_timeout=_seconds("AISTACK_OLLAMA_STARTUP_TIMEOUT", DEFAULT_INFERENCE_STARTUP_TIMEOUT),
        shutdown_timeout=_seconds("AISTACK_OLLAMA_SHUTDOWN_TIMEOUT", DEFAULT_SHUTDOWN_TIMEOUT),
        required_directories=(models_dir,),
        log_file=log_dir / "ollama.log",
    )


def _webui_descriptor(root: Path, log_dir: Path, inference: ServiceDescriptor) -> ServiceDescriptor:
    host = env_str("AISTACK_WEBUI_HOST", or_value=DEFAULT_HOST)
    port = _port("AISTACK_WEBUI_PORT", DEFAULT_WEBUI_PORT)
    data_dir = Path(env_str("AISTACK_WEBUI_DATA_DIR", or_value=str(root / "webui"))).expanduser()
    return ServiceDescriptor(
        name=WEBUI_SERVICE,
        display_name="Open WebUI",
        # Launched either through the console script or the interpreter
        process_names=("open-webui",),
        cmdline_patterns=("open-webui serve", "open_webui"),
        executable_names=("open-webui",),
        executable_override=_optional_path("AISTACK_WEBUI_EXECUTABLE"),
        install_locations=_extra_locations("AISTACK_WEBUI_PATHS") + _webui_install_locations(root),
        launch_args=("serve", "--host", host, "--port", str(port)),
        environment={
            "OLLAMA_BASE_URL": inference.base_url,
            "DATA_DIR": str(data_dir),
            "PORT": str(port),
        },
        host=host,
        port=port,
        liveness_path="/api/version",
        startup_timeout=_seconds("AISTACK_WEBUI_STARTUP_TIMEOUT", DEFAULT_WEBUI_STARTUP_TIMEOUT),
        shutdown_timeout=_seconds("AISTACK_WEBUI_SHUTDOWN_TIMEOUT", DEFAULT_SHUTDOWN_TIMEOUT),
        required_directories=(data_dir,),
        log_file=log_dir / "webui.log",
    )


def _inference_install_locations() -> Tuple[Path, ...]:
    if sys.platform == "win32":
        local_app_data = os.environ.get("LOCALAPPDATA")
        candidates = []
        if local_app_data:
            candidates.append(Path(local_app_data) / "Programs" / "Ollama" / "ollama.exe")
        candidates.extend(
            [
                Path("C:/Program Files/Ollama/ollama.exe"),
                Path("C:/Program Files (x86)/Ollama/ollama.exe"),
            ]
        )
        return tuple(candidates)
    if sys.platform == "darwin":
        return (
            Path("/usr/local/bin/ollama"),
            Path("/opt/homebrew/bin/ollama"),
            Path("/Applications/Ollama.app/Contents/Resources/ollama"),
        )
    return (
        Path("/usr/local/bin/ollama"),
        Path("/usr/bin/ollama"),
        Path.home() / ".local" / "bin" / "ollama",
    )


def _webui_install_locations(root: Path) -> Tuple[Path, ...]:
    if sys.platform == "win32":
        return (
            root / "venv" / "Scripts" / "open-webui.exe",
            Path.home() / ".local" / "bin" / "open-webui.exe",
        )
    return (
        root / "venv" / "bin" / "open-webui",
        Path.home() / ".local" / "bin" / "open-webui",
    )


def _extra_locations(name: str) -> Tuple[Path, ...]:
    values = env_list(name) or ()
    return tuple(Path(value).expanduser() for value in values)


def _optional_path(name: str) -> Optional[Path]:
    value = env_str(name)
    if value is None:
        return None
    return Path(value).expanduser()


def _port(name: str, default: int) -> int:
    value = env_int(name, or_value=default)
    if value is None or not 1 <= value <= 65535:
        raise ConfigurationError.invalid_value(name, value, "Ports must be between 1 and 65535")
    return value


def _seconds(name: str, default: float) -> float:
    value = env_seconds(name, or_value=default)
    if value is None:
        raise ConfigurationError.missing_value(name)
    return value


def _same_host(first: str, second: str) -> bool:
    wildcard = {"0.0.0.0", "::", ""}
    return first == second or first in wildcard or second in wildcard
