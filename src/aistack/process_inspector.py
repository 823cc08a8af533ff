"""
Process table inspection for managed services.

Single responsibility: "which processes look like this service right now?"
Every call scans the OS process table afresh; nothing is cached between
calls.
"""

from __future__ import annotations

import logging
import os
from typing import Iterable, List, Optional, Sequence

import psutil

from .models import ProcessRecord, ServiceDescriptor

logger = logging.getLogger(__name__)

_SCAN_ATTRS = ["pid", "name", "cmdline", "memory_info", "create_time", "status"]
PSUTIL_SKIP_ERRORS = (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess)


def _lowered(patterns: Iterable[str]) -> List[str]:
    return [pattern.lower() for pattern in patterns if pattern]


def _record_from_info(info: dict) -> ProcessRecord:
    name_value = info.get("name")
    cmdline_value = info.get("cmdline")
    cmdline: tuple[str, ...] = ()
    if isinstance(cmdline_value, (list, tuple)):
        cmdline = tuple(str(arg) for arg in cmdline_value)
    memory = info.get("memory_info")
    return ProcessRecord(
        pid=int(info["pid"]),
        name="" if name_value is None else str(name_value),
        cmdline=cmdline,
        memory_bytes=getattr(memory, "rss", None),
        started_at=info.get("create_time"),
    )


class ProcessInspector:
    """Finds OS processes by name or command-line substring."""

    def __init__(self, *, exclude_pids: Optional[Sequence[int]] = None):
        """
        Initialize inspector.

        Args:
            exclude_pids: PIDs never reported as matches; defaults to the current process
        """
        self._exclude_pids = set(exclude_pids) if exclude_pids is not None else {os.getpid()}

    def find(self, descriptor: ServiceDescriptor) -> List[ProcessRecord]:
        """
        Return every process matching the service, oldest first.

        Companion processes are excluded; see find_companions. Absence is an
        empty list, never an error.
        """
        return self.find_matching(
            descriptor.process_names,
            descriptor.cmdline_patterns,
            exclude_names=descriptor.companion_names,
        )

    def find_companions(self, descriptor: ServiceDescriptor) -> List[ProcessRecord]:
        """Return auxiliary processes that may relaunch the service."""
        if not descriptor.companion_names:
            return []
        return self.find_matching(descriptor.companion_names, ())

    def find_matching(
        self,
        names: Iterable[str],
        cmdline_patterns: Iterable[str] = (),
        *,
        exclude_names: Iterable[str] = (),
    ) -> List[ProcessRecord]:
        """
        Scan the process table for substring matches.

        Args:
            names: Case-insensitive substrings matched against the process name
            cmdline_patterns: Case-insensitive substrings matched against the joined command line
            exclude_names: Name substrings that disqualify an otherwise matching process

        Returns:
            Matching ProcessRecords sorted by start time
        """
        name_patterns = _lowered(names)
        line_patterns = _lowered(cmdline_patterns)
        excluded = _lowered(exclude_names)
        if not name_patterns and not line_patterns:
            return []

        matches: List[ProcessRecord] = []
        for proc in psutil.process_iter(_SCAN_ATTRS):
            try:
                if proc.info.get("status") == psutil.STATUS_ZOMBIE:
                    # Exited but not yet reaped by its parent
                    continue
                record = _record_from_info(proc.info)
            except PSUTIL_SKIP_ERRORS:
                continue
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping unreadable process entry: %r", getattr(proc, "info", None))
                continue
            if record.pid in self._exclude_pids:
                continue
            if self._matches(record, name_patterns, line_patterns, excluded):
                matches.append(record)

        matches.sort(key=lambda record: (record.started_at or 0.0, record.pid))
        return matches

    def get(self, pid: int) -> Optional[ProcessRecord]:
        """Return the record for one PID, or None if it no longer exists."""
        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                info = proc.as_dict(attrs=_SCAN_ATTRS)
                zombie = info.get("status") == psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return None
        except psutil.AccessDenied:
            # Alive but not inspectable by this user
            return ProcessRecord(pid=pid, name="")
        if zombie:
            return None
        return _record_from_info(info)

    def is_alive(self, pid: int) -> bool:
        return self.get(pid) is not None

    @staticmethod
    def _matches(
        record: ProcessRecord,
        name_patterns: List[str],
        line_patterns: List[str],
        excluded: List[str],
    ) -> bool:
        name = record.name.lower()
        if any(pattern in name for pattern in excluded):
            return False
        if any(pattern in name for pattern in name_patterns):
            return True
        if not line_patterns or not record.cmdline:
            return False
        cmdline = " ".join(record.cmdline).lower()
        return any(pattern in cmdline for pattern in line_patterns)
