"""
Service lifecycle supervisor.

Start, stop and inspect one service at a time. The supervisor owns no
long-lived state about the services themselves: every decision is made from a
fresh look at the process table, the socket table and the liveness endpoint.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .config import StackSettings
from .errors import DirectoryCreationError, ExecutableNotFoundError, ServiceBusyError
from .events import EventKind, EventSink, LoggingEventSink, SupervisorEvent
from .health_checker import HealthChecker
from .models import (
    Outcome,
    PortHolder,
    PortProbe,
    ProcessRecord,
    ServiceDescriptor,
    ServiceHandle,
    ServiceState,
    SupervisorResult,
)
from .port_prober import PortProber
from .process_inspector import ProcessInspector
from .supervisor_helpers import (
    ExecutableResolution,
    LaunchRegistry,
    ProcessTerminator,
    TerminationReport,
    launch_detached,
    locate_executable,
)
from .waits import pause

logger = logging.getLogger(__name__)

Locator = Callable[[ServiceDescriptor], Optional[ExecutableResolution]]
Launcher = Callable[[Path, ServiceDescriptor], Any]


class ServiceSupervisor:
    """Runs lifecycle operations for the services described by StackSettings."""

    def __init__(
        self,
        settings: StackSettings,
        *,
        inspector: Optional[ProcessInspector] = None,
        prober: Optional[PortProber] = None,
        health_checker: Optional[HealthChecker] = None,
        registry: Optional[LaunchRegistry] = None,
        terminator: Optional[ProcessTerminator] = None,
        locator: Locator = locate_executable,
        launcher: Launcher = launch_detached,
        events: Optional[EventSink] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        """
        Initialize supervisor.

        Args:
            settings: Immutable stack settings
            inspector: Process table access
            prober: Socket table access
            health_checker: Liveness probing
            registry: Launch record storage; defaults to the settings' state directory
            terminator: Stop sequence; built from the settings' intervals when omitted
            locator: Executable discovery strategy
            launcher: Detached process launcher
            events: Receives structured supervisor events
            cancel_event: Setting it aborts any settle, poll or shutdown wait
        """
        self.settings = settings
        self.events = events or LoggingEventSink()
        self.cancel_event = cancel_event
        self.inspector = inspector or ProcessInspector()
        self.prober = prober or PortProber()
        self.health_checker = health_checker or HealthChecker(settings.health_timeout)
        self.registry = registry or LaunchRegistry(settings.state_dir)
        self.terminator = terminator or ProcessTerminator(
            poll_interval=settings.poll_interval,
            progress_interval=settings.progress_interval,
            companion_settle_delay=settings.companion_settle_delay,
            events=self.events,
            cancel_event=cancel_event,
        )
        self._locate = locator
        self._launch = launcher
        self._locks: Dict[str, asyncio.Lock] = {}
        self._states: Dict[str, ServiceState] = {}

    def state_of(self, service: str) -> ServiceState:
        return self._states.get(service, ServiceState.UNKNOWN)

    def find_processes(self, descriptor: ServiceDescriptor) -> List[ProcessRecord]:
        """Name/command-line matches for the service, with a warning when ambiguous."""
        records = self.inspector.find(descriptor)
        self._emit(
            EventKind.INSPECTED,
            descriptor.name,
            f"Found {len(records)} matching process(es)",
            pids=[record.pid for record in records],
        )
        if len(records) > 1:
            self._emit(
                EventKind.MULTIPLE_CANDIDATES,
                descriptor.name,
                f"Name match found {len(records)} candidates: {', '.join(record.label for record in records)}",
                pids=[record.pid for record in records],
            )
        return records

    async def start(self, descriptor: ServiceDescriptor, *, wait_for_ready: bool = True) -> SupervisorResult:
        """
        Bring the service to a healthy state.

        A service that is already running and healthy is left untouched. A
        running but unhealthy instance is stopped before a fresh launch.

        Args:
            descriptor: Service to start
            wait_for_ready: Poll the liveness endpoint after launch; when False,
                STARTED is returned once the process survives the settle delay

        Returns:
            SupervisorResult with ALREADY_HEALTHY, STARTED, START_FAILED or TIMEOUT

        Raises:
            ServiceBusyError: If another operation on this service is in progress
            OperationCancelledError: If the cancel event is set during a wait
        """
        async with self._exclusive(descriptor.name):
            loop = asyncio.get_running_loop()
            started = loop.time()
            result = await self._start_locked(descriptor, wait_for_ready, lambda: loop.time() - started)
            self._report(result)
            return result

    async def stop(self, descriptor: ServiceDescriptor, *, graceful_timeout: Optional[float] = None) -> SupervisorResult:
        """
        Stop every process matching the service.

        Args:
            descriptor: Service to stop
            graceful_timeout: Seconds to wait before forcing; defaults to the
                descriptor's shutdown timeout

        Returns:
            SupervisorResult with ALREADY_STOPPED, STOPPED_GRACEFULLY,
            STOPPED_FORCIBLY or STOP_FAILED; unrelated port holders are listed
            in ``port_holders``

        Raises:
            ServiceBusyError: If another operation on this service is in progress
            OperationCancelledError: If the cancel event is set during a wait
        """
        timeout = descriptor.shutdown_timeout if graceful_timeout is None else graceful_timeout
        async with self._exclusive(descriptor.name):
            loop = asyncio.get_running_loop()
            started = loop.time()
            records = self.find_processes(descriptor)
            if not records:
                self.registry.clear(descriptor.name)
                self._states[descriptor.name] = ServiceState.NOT_RUNNING
                result = SupervisorResult(
                    service=descriptor.name,
                    outcome=Outcome.ALREADY_STOPPED,
                    elapsed_seconds=loop.time() - started,
                    port_holders=self._foreign_port_holders(descriptor, managed_pids=()),
                )
            else:
                result = await self._stop_records(descriptor, records, timeout)
                result = replace(result, elapsed_seconds=loop.time() - started)
            self._report(result)
            return result

    async def status(self, descriptor: ServiceDescriptor, *, probe_health: bool = True) -> ServiceHandle:
        """
        Observe the service without changing it.

        Process, port and health signals are gathered independently and never
        derived from one another.
        """
        records = self.find_processes(descriptor)
        probe = self.prober.probe(descriptor.port)
        healthy = False
        if probe_health:
            healthy = await self.health_checker.quick_probe(descriptor.liveness_url, cancel_event=self.cancel_event)
        managed = [record.pid for record in records]
        return ServiceHandle(
            service=descriptor.name,
            processes=tuple(records),
            running=bool(records),
            port_active=probe.listening,
            port_established=probe.established,
            healthy=healthy,
            launched_pid=self.registry.live_pid(descriptor.name, self.inspector, clear_stale=False),
            port_holders=_foreign_holders(probe, managed),
        )

    async def _start_locked(
        self,
        descriptor: ServiceDescriptor,
        wait_for_ready: bool,
        elapsed: Callable[[], float],
    ) -> SupervisorResult:
        name = descriptor.name
        existing = self.find_processes(descriptor)
        if existing:
            healthy = await self.health_checker.quick_probe(descriptor.liveness_url, cancel_event=self.cancel_event)
            self._emit(EventKind.HEALTH_PROBE, name, f"Existing instance {'healthy' if healthy else 'not healthy'}", healthy=healthy)
            if healthy:
                self._states[name] = ServiceState.HEALTHY
                pid = self._preferred_pid(name, existing)
                return SupervisorResult(name, Outcome.ALREADY_HEALTHY, pid=pid, elapsed_seconds=elapsed())

            self._states[name] = ServiceState.UNHEALTHY
            self._emit(EventKind.WARNING, name, "Running but not healthy; restarting")
            stopped = await self._stop_records(descriptor, existing, descriptor.shutdown_timeout)
            if stopped.outcome == Outcome.STOP_FAILED:
                return SupervisorResult(
                    name,
                    Outcome.START_FAILED,
                    reason=f"unhealthy instance could not be stopped: {stopped.reason}",
                    pid=stopped.pid,
                    elapsed_seconds=elapsed(),
                )

        try:
            resolution = self._resolve_executable(descriptor)
            self._ensure_directories(descriptor)
        except ExecutableNotFoundError:
            self._states[name] = ServiceState.NOT_RUNNING
            return SupervisorResult(name, Outcome.START_FAILED, reason="executable not found", elapsed_seconds=elapsed())
        except DirectoryCreationError as exc:
            logger.error("%s: %s", name, exc)
            self._states[name] = ServiceState.NOT_RUNNING
            return SupervisorResult(name, Outcome.START_FAILED, reason="directory creation failed", elapsed_seconds=elapsed())

        probe = self.prober.probe(descriptor.port)
        squatters = _foreign_holders(probe, managed_pids=())
        if squatters:
            self._emit_port_held(descriptor, squatters)
            self._states[name] = ServiceState.NOT_RUNNING
            return SupervisorResult(
                name,
                Outcome.START_FAILED,
                reason=f"port {descriptor.port} held by {', '.join(holder.label for holder in squatters)}",
                elapsed_seconds=elapsed(),
                port_holders=squatters,
            )

        self._states[name] = ServiceState.STARTING
        try:
            process = self._launch(resolution.path, descriptor)
        except OSError as exc:
            logger.error("Launching %s from %s failed: %s", name, resolution.path, exc)
            self._states[name] = ServiceState.NOT_RUNNING
            return SupervisorResult(name, Outcome.START_FAILED, reason=f"launch failed: {exc}", elapsed_seconds=elapsed())

        pid = process.pid
        launched = self.inspector.get(pid)
        self.registry.record(name, pid, str(resolution.path), launched.started_at if launched else None)
        self._emit(EventKind.LAUNCHED, name, f"Launched {resolution.path} (PID {pid})", pid=pid)

        await pause(self.settings.settle_delay, self.cancel_event, f"{name} settle")
        _reap(process)
        survivor = self._surviving_pid(descriptor, pid)
        if survivor is None:
            self.registry.clear(name)
            self._states[name] = ServiceState.NOT_RUNNING
            return SupervisorResult(
                name,
                Outcome.START_FAILED,
                reason=f"process exited immediately (see {descriptor.log_file})" if descriptor.log_file else "process exited immediately",
                pid=pid,
                elapsed_seconds=elapsed(),
            )
        if survivor != pid:
            # Launcher handed off to a child; track the process that stayed up
            record = self.inspector.get(survivor)
            self.registry.record(name, survivor, str(resolution.path), record.started_at if record else None)
            pid = survivor

        if not wait_for_ready:
            return SupervisorResult(name, Outcome.STARTED, reason="health check skipped", pid=pid, elapsed_seconds=elapsed())

        self._emit(
            EventKind.WAITING,
            name,
            f"Waiting up to {descriptor.startup_timeout:.0f}s for {descriptor.liveness_url}",
            timeout=descriptor.startup_timeout,
        )
        readiness = await self.health_checker.wait_until_ready(
            descriptor.liveness_url,
            descriptor.startup_timeout,
            self.settings.poll_interval,
            cancel_event=self.cancel_event,
        )
        if readiness.ready:
            self._states[name] = ServiceState.HEALTHY
            self._emit(EventKind.READY, name, f"Healthy after {readiness.elapsed_seconds:.1f}s", attempts=readiness.attempts)
            return SupervisorResult(name, Outcome.STARTED, pid=pid, elapsed_seconds=elapsed())

        self._states[name] = ServiceState.UNHEALTHY
        return SupervisorResult(
            name,
            Outcome.TIMEOUT,
            reason=f"not healthy after {descriptor.startup_timeout:.0f}s; process left running for diagnosis",
            pid=pid,
            elapsed_seconds=elapsed(),
        )

    async def _stop_records(
        self,
        descriptor: ServiceDescriptor,
        records: Sequence[ProcessRecord],
        graceful_timeout: float,
    ) -> SupervisorResult:
        name = descriptor.name
        self._states[name] = ServiceState.STOPPING
        companions = self.inspector.find_companions(descriptor)
        report: TerminationReport = await self.terminator.terminate(
            name,
            [record.pid for record in records],
            graceful_timeout=graceful_timeout,
            companion_pids=[record.pid for record in companions],
        )
        await pause(self.settings.settle_delay, self.cancel_event, f"{name} settle")

        remaining = self.inspector.find(descriptor)
        remaining_pids = [record.pid for record in remaining]
        holders = self._foreign_port_holders(descriptor, managed_pids=remaining_pids)
        if remaining:
            self._states[name] = ServiceState.UNHEALTHY
            reason = "process survived force-kill"
            if report.denied_pids:
                reason += f" (access denied for PID {', '.join(str(pid) for pid in report.denied_pids)})"
            return SupervisorResult(name, Outcome.STOP_FAILED, reason=reason, pid=remaining_pids[0], port_holders=holders)

        self.registry.clear(name)
        self._states[name] = ServiceState.STOPPED
        outcome = Outcome.STOPPED_GRACEFULLY if report.graceful else Outcome.STOPPED_FORCIBLY
        return SupervisorResult(name, outcome, pid=records[0].pid, port_holders=holders)

    def _resolve_executable(self, descriptor: ServiceDescriptor) -> ExecutableResolution:
        resolution = self._locate(descriptor)
        if resolution is None:
            raise ExecutableNotFoundError(f"No {descriptor.display_name} executable found", service=descriptor.name)
        self._emit(
            EventKind.EXECUTABLE_RESOLVED,
            descriptor.name,
            f"Using {resolution.path} ({resolution.source})",
            path=str(resolution.path),
            source=resolution.source,
        )
        return resolution

    @staticmethod
    def _ensure_directories(descriptor: ServiceDescriptor) -> None:
        targets = list(descriptor.required_directories)
        if descriptor.log_file is not None:
            targets.append(descriptor.log_file.parent)
        for path in targets:
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise DirectoryCreationError(f"Cannot create {path}: {exc}", path=path) from exc

    def _surviving_pid(self, descriptor: ServiceDescriptor, launched_pid: int) -> Optional[int]:
        if self.inspector.is_alive(launched_pid):
            return launched_pid
        records = self.inspector.find(descriptor)
        if records:
            return records[-1].pid
        return None

    def _preferred_pid(self, service: str, records: Sequence[ProcessRecord]) -> int:
        launched = self.registry.live_pid(service, self.inspector)
        if launched is not None and any(record.pid == launched for record in records):
            return launched
        return records[0].pid

    def _foreign_port_holders(self, descriptor: ServiceDescriptor, managed_pids: Iterable[int]) -> Tuple[PortHolder, ...]:
        holders = _foreign_holders(self.prober.probe(descriptor.port), managed_pids)
        if holders:
            self._emit_port_held(descriptor, holders)
        return holders

    def _emit_port_held(self, descriptor: ServiceDescriptor, holders: Sequence[PortHolder]) -> None:
        self._emit(
            EventKind.PORT_HELD,
            descriptor.name,
            f"Port {descriptor.port} is held by unrelated process {', '.join(holder.label for holder in holders)}; not touching it",
            port=descriptor.port,
            holders=[holder.pid for holder in holders],
        )

    def _report(self, result: SupervisorResult) -> None:
        self._emit(EventKind.RESULT, result.service, result.describe(), outcome=result.outcome.value)

    def _emit(self, kind: EventKind, service: str, message: str, **data: Any) -> None:
        self.events.emit(SupervisorEvent(kind=kind, service=service, message=message, data=data))

    @asynccontextmanager
    async def _exclusive(self, service: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(service, asyncio.Lock())
        if lock.locked():
            raise ServiceBusyError(service=service)
        async with lock:
            yield


def _foreign_holders(probe: PortProbe, managed_pids: Iterable[int]) -> Tuple[PortHolder, ...]:
    """
    Listening holders that are not managed service processes.

    A holder whose PID cannot be read is only treated as foreign when no
    managed process exists to account for it.
    """
    if not probe.listening:
        return ()
    managed = set(managed_pids)
    foreign = []
    for holder in probe.holders:
        if holder.pid is None:
            if not managed:
                foreign.append(holder)
        elif holder.pid not in managed:
            foreign.append(holder)
    return tuple(foreign)



def _reap(process: Any) -> None:
    """Collect the exit status of a launched child so it does not linger as a zombie."""
    poll = getattr(process, "poll", None)
    if callable(poll):
        exit_code = poll()
        if exit_code is not None:
            logger.debug("Launched PID %s exited with status %s", process.pid, exit_code)
