"""Helper modules for the ServiceSupervisor slim coordinator."""

from .executable_locator import ExecutableResolution, locate_executable
from .launch_registry import LaunchRecord, LaunchRegistry
from .process_launcher import launch_detached
from .process_terminator import ProcessTerminator, TerminationReport

__all__ = [
    "ExecutableResolution",
    "LaunchRecord",
    "LaunchRegistry",
    "ProcessTerminator",
    "TerminationReport",
    "launch_detached",
    "locate_executable",
]
