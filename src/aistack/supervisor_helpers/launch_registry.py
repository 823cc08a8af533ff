"""
Launch registry: remembers which PID this tool launched for each service.

One JSON file per service under the state directory. The record is advisory:
it lets status and stop prefer the process we started when several candidates
match, and a stale or unreadable record is simply discarded.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from ..process_inspector import ProcessInspector

logger = logging.getLogger(__name__)

# create_time values are floats rounded differently across platforms
_START_TIME_TOLERANCE_SECONDS = 1.0


@dataclass(frozen=True)
class LaunchRecord:
    service: str
    pid: int
    executable: str
    started_at: Optional[float] = None
    launched_at: float = 0.0


class LaunchRegistry:
    """Persist and verify launch records under ``state_dir``."""

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)

    def path_for(self, service: str) -> Path:
        return self.state_dir / f"{service}.json"

    def record(self, service: str, pid: int, executable: str, started_at: Optional[float] = None) -> Optional[LaunchRecord]:
        """Write the launch record; a write failure is logged and ignored."""
        entry = LaunchRecord(
            service=service,
            pid=pid,
            executable=executable,
            started_at=started_at,
            launched_at=time.time(),
        )
        path = self.path_for(service)
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(asdict(entry), indent=2), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as exc:
            logger.warning("Could not write launch record %s: %s", path, exc)
            return None
        return entry

    def load(self, service: str, *, clear_invalid: bool = True) -> Optional[LaunchRecord]:
        path = self.path_for(service)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Discarding unreadable launch record %s: %s", path, exc)
            if clear_invalid:
                self.clear(service)
            return None

        try:
            return LaunchRecord(
                service=str(payload["service"]),
                pid=int(payload["pid"]),
                executable=str(payload.get("executable", "")),
                started_at=payload.get("started_at"),
                launched_at=float(payload.get("launched_at", 0.0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding malformed launch record %s: %s", path, exc)
            if clear_invalid:
                self.clear(service)
            return None

    def clear(self, service: str) -> None:
        path = self.path_for(service)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            logger.warning("Could not remove launch record %s: %s", path, exc)

    def live_pid(self, service: str, inspector: ProcessInspector, *, clear_stale: bool = True) -> Optional[int]:
        """
        Return the recorded PID if that process is still the one we launched.

        A dead PID, or a live PID whose start time differs from the recorded
        one (PID reuse), yields None and clears the record unless
        ``clear_stale`` is False.
        """
        entry = self.load(service, clear_invalid=clear_stale)
        if entry is None:
            return None
        current = inspector.get(entry.pid)
        if current is None:
            logger.debug("Launch record for %s points at exited PID %s", service, entry.pid)
            if clear_stale:
                self.clear(service)
            return None
        if entry.started_at is not None and current.started_at is not None:
            if abs(current.started_at - entry.started_at) > _START_TIME_TOLERANCE_SECONDS:
                logger.debug("PID %s was reused since %s was launched", entry.pid, service)
                if clear_stale:
                    self.clear(service)
                return None
        return entry.pid
