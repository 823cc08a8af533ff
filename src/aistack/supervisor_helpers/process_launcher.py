"""Launch service processes detached from the calling session."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from ..models import ServiceDescriptor

logger = logging.getLogger(__name__)


def build_environment(overrides: Mapping[str, str], base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Return the inherited environment with the service's bindings applied on top."""
    env = dict(os.environ if base is None else base)
    env.update({key: str(value) for key, value in overrides.items()})
    return env


def _detach_options() -> Dict[str, Any]:
    if sys.platform == "win32":
        flags = (
            getattr(subprocess, "DETACHED_PROCESS", 0)
            | getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
            | getattr(subprocess, "CREATE_NO_WINDOW", 0)
        )
        return {"creationflags": flags}
    # New session: no controlling terminal, immune to the launcher's SIGHUP/SIGINT
    return {"start_new_session": True}


def launch_detached(executable: Path, descriptor: ServiceDescriptor) -> subprocess.Popen:
    """
    Start the service so that it outlives this process.

    Output goes to the descriptor's log file (appended) or is discarded.

    Args:
        executable: Resolved executable path
        descriptor: Service being launched (arguments and environment bindings)

    Returns:
        The Popen handle of the launched child

    Raises:
        OSError: If the executable cannot be started or the log file cannot be opened
    """
    argv = [str(executable), *descriptor.launch_args]
    env = build_environment(descriptor.environment)
    logger.debug("Launching %s: %s", descriptor.name, " ".join(argv))

    if descriptor.log_file is None:
        return subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            env=env,
            close_fds=True,
            **_detach_options(),
        )

    descriptor.log_file.parent.mkdir(parents=True, exist_ok=True)
    # The child keeps its own copy of the descriptor
    with open(descriptor.log_file, "ab") as log_handle:
        return subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=log_handle,
            stderr=subprocess.STDOUT,
            env=env,
            close_fds=True,
            **_detach_options(),
        )
