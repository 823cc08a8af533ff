"""Terminate service processes: graceful request, bounded wait, then force kill."""

from __future__ import annotations

import asyncio
import logging
import subprocess
import sys
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import psutil

from ..events import EventKind, EventSink, LoggingEventSink, SupervisorEvent
from ..waits import pause

logger = logging.getLogger(__name__)

FORCE_KILL_TIMEOUT_SECONDS = 5.0
_TASKKILL_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class TerminationReport:
    """What happened to each targeted PID."""

    graceful: bool
    forced_pids: Tuple[int, ...] = ()
    companions_killed: Tuple[int, ...] = ()
    survivors: Tuple[int, ...] = ()
    denied_pids: Tuple[int, ...] = ()


def _is_alive(proc: Any) -> bool:
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        return True


class ProcessTerminator:
    """Stops a set of processes belonging to one service."""

    def __init__(
        self,
        *,
        poll_interval: float,
        progress_interval: float,
        companion_settle_delay: float,
        force_timeout: float = FORCE_KILL_TIMEOUT_SECONDS,
        events: Optional[EventSink] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.poll_interval = poll_interval
        self.progress_interval = progress_interval
        self.companion_settle_delay = companion_settle_delay
        self.force_timeout = force_timeout
        self._events = events or LoggingEventSink()
        self._cancel_event = cancel_event

    async def terminate(
        self,
        service: str,
        pids: Sequence[int],
        *,
        graceful_timeout: float,
        companion_pids: Sequence[int] = (),
    ) -> TerminationReport:
        """
        Ask every process to exit, then escalate for whatever outlives the timeout.

        Companion processes are killed before the survivors so they cannot
        relaunch the service while it is being killed.

        Args:
            service: Service name for events
            pids: Service PIDs to stop
            graceful_timeout: Seconds to wait after the graceful request
            companion_pids: Auxiliary PIDs killed ahead of the force phase

        Returns:
            TerminationReport; ``survivors`` lists PIDs still alive after force kill

        Raises:
            OperationCancelledError: If the cancel event is set during a wait
        """
        procs = self._attach(pids)
        if not procs:
            return TerminationReport(graceful=True)

        denied: List[int] = []
        for proc in procs:
            if not self._request_close(service, proc):
                denied.append(proc.pid)
        self._emit(
            EventKind.TERMINATE_REQUESTED,
            service,
            f"Requested shutdown of PID(s) {', '.join(str(proc.pid) for proc in procs)}; waiting up to {graceful_timeout:.0f}s",
            pids=[proc.pid for proc in procs],
        )

        survivors = await self._wait_for_exit(service, procs, graceful_timeout, report_progress=True)
        if not survivors:
            return TerminationReport(graceful=True, denied_pids=tuple(denied))

        companions = self._kill_companions(service, companion_pids)
        if companions:
            await pause(self.companion_settle_delay, self._cancel_event, "companion settle")

        forced = tuple(proc.pid for proc in survivors)
        self._emit(
            EventKind.FORCE_KILL,
            service,
            f"PID(s) {', '.join(str(pid) for pid in forced)} still running after {graceful_timeout:.0f}s; forcing termination",
            pids=list(forced),
        )
        for proc in survivors:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                logger.debug("%s process %s exited before force kill", service, proc.pid)
            except psutil.AccessDenied:
                logger.warning("Access denied while force killing %s process %s", service, proc.pid)
                denied.append(proc.pid)

        remaining = await self._wait_for_exit(service, survivors, self.force_timeout, report_progress=False)
        return TerminationReport(
            graceful=False,
            forced_pids=forced,
            companions_killed=tuple(companions),
            survivors=tuple(proc.pid for proc in remaining),
            denied_pids=tuple(dict.fromkeys(denied)),
        )

    @staticmethod
    def _attach(pids: Sequence[int]) -> List[Any]:
        procs = []
        for pid in dict.fromkeys(pids):
            try:
                procs.append(psutil.Process(pid))
            except (psutil.NoSuchProcess, psutil.ZombieProcess):
                logger.debug("Process %s vanished before termination", pid)
        return procs

    def _request_close(self, service: str, proc: Any) -> bool:
        if sys.platform == "win32":
            return self._request_close_windows(service, proc)
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            return True
        except psutil.AccessDenied:
            logger.warning("Access denied while stopping %s process %s", service, proc.pid)
            return False
        return True

    @staticmethod
    def _request_close_windows(service: str, proc: Any) -> bool:
        # taskkill without /F posts WM_CLOSE, giving the process a chance to exit cleanly
        try:
            completed = subprocess.run(
                ["taskkill", "/PID", str(proc.pid)],
                capture_output=True,
                timeout=_TASKKILL_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("taskkill for %s process %s failed: %s", service, proc.pid, exc)
            return True
        if completed.returncode != 0:
            logger.debug("taskkill for %s process %s exited with %s", service, proc.pid, completed.returncode)
        return True

    async def _wait_for_exit(self, service: str, procs: List[Any], timeout: float, *, report_progress: bool) -> List[Any]:
        loop = asyncio.get_running_loop()
        started = loop.time()
        next_progress = self.progress_interval
        while True:
            alive = [proc for proc in procs if _is_alive(proc)]
            if not alive:
                return []
            elapsed = loop.time() - started
            if elapsed >= timeout:
                return alive
            if report_progress and self.progress_interval > 0 and elapsed >= next_progress:
                self._emit(
                    EventKind.SHUTDOWN_PROGRESS,
                    service,
                    f"Waiting for {len(alive)} process(es) to exit ({elapsed:.0f}s of {timeout:.0f}s)",
                    elapsed=elapsed,
                    remaining=[proc.pid for proc in alive],
                )
                next_progress += self.progress_interval
            await pause(min(self.poll_interval, timeout - elapsed), self._cancel_event, "shutdown wait")

    def _kill_companions(self, service: str, pids: Sequence[int]) -> List[int]:
        killed = []
        for proc in self._attach(pids):
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                self._emit(EventKind.WARNING, service, f"Access denied killing companion PID {proc.pid}", pid=proc.pid)
                continue
            killed.append(proc.pid)
            self._emit(EventKind.COMPANION_KILLED, service, f"Killed companion process PID {proc.pid}", pid=proc.pid)
        return killed

    def _emit(self, kind: EventKind, service: str, message: str, **data: Any) -> None:
        self._events.emit(SupervisorEvent(kind=kind, service=service, message=message, data=data))
