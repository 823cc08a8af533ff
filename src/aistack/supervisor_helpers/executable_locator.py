"""Executable discovery: explicit override, then PATH, then well-known install locations."""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ..models import ServiceDescriptor

logger = logging.getLogger(__name__)

SOURCE_OVERRIDE = "override"
SOURCE_PATH = "PATH"
SOURCE_INSTALL_LOCATION = "install location"


@dataclass(frozen=True)
class ExecutableResolution:
    path: Path
    source: str


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def locate_executable(
    descriptor: ServiceDescriptor,
    *,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> Optional[ExecutableResolution]:
    """
    Resolve the service executable in priority order.

    An override that does not point at an executable is logged and skipped so
    the remaining strategies still get a chance.

    Args:
        descriptor: Service to resolve
        which: PATH lookup function

    Returns:
        The first resolution found, or None when nothing resolves
    """
    override = descriptor.executable_override
    if override is not None:
        if _is_executable(override):
            return ExecutableResolution(override, SOURCE_OVERRIDE)
        logger.warning("Configured %s executable %s is not an executable file; searching elsewhere", descriptor.name, override)

    for name in descriptor.executable_names:
        found = which(name)
        if found:
            return ExecutableResolution(Path(found), SOURCE_PATH)

    for candidate in descriptor.install_locations:
        if _is_executable(candidate):
            return ExecutableResolution(candidate, SOURCE_INSTALL_LOCATION)

    logger.debug(
        "No %s executable found (names=%s, locations=%s)",
        descriptor.name,
        ", ".join(descriptor.executable_names),
        ", ".join(str(path) for path in descriptor.install_locations),
    )
    return None
