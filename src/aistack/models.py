"""
Data model shared by the supervisor, orchestrator and CLI.

Descriptors are static and immutable; handles, results and stack status are
recomputed on every call and never cached.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional, Tuple

_WILDCARD_HOSTS = {"0.0.0.0", "::", ""}


@dataclass(frozen=True)
class ServiceDescriptor:
    """Static definition of a managed service."""

    name: str
    display_name: str
    process_names: Tuple[str, ...]
    host: str
    port: int
    liveness_path: str
    startup_timeout: float
    shutdown_timeout: float
    cmdline_patterns: Tuple[str, ...] = ()
    companion_names: Tuple[str, ...] = ()
    executable_names: Tuple[str, ...] = ()
    executable_override: Optional[Path] = None
    install_locations: Tuple[Path, ...] = ()
    launch_args: Tuple[str, ...] = ()
    environment: Mapping[str, str] = field(default_factory=dict)
    required_directories: Tuple[Path, ...] = ()
    log_file: Optional[Path] = None

    @property
    def base_url(self) -> str:
        return f"http://{self._client_host}:{self.port}"

    @property
    def liveness_url(self) -> str:
        return f"{self.base_url}/{self.liveness_path.lstrip('/')}"

    @property
    def access_url(self) -> str:
        return self.base_url

    @property
    def _client_host(self) -> str:
        # Wildcard binds are reachable on loopback
        if self.host in _WILDCARD_HOSTS:
            return "localhost"
        if ":" in self.host:
            return f"[{self.host}]"
        return self.host


@dataclass(frozen=True)
class ProcessRecord:
    """One OS process observed at inspection time."""

    pid: int
    name: str
    cmdline: Tuple[str, ...] = ()
    memory_bytes: Optional[int] = None
    started_at: Optional[float] = None

    @property
    def label(self) -> str:
        return f"{self.name} (PID {self.pid})"


@dataclass(frozen=True)
class PortHolder:
    """A process owning a listening socket."""

    pid: Optional[int]
    name: str

    @property
    def label(self) -> str:
        if self.pid is None:
            return self.name
        return f"{self.name} (PID {self.pid})"


@dataclass(frozen=True)
class PortProbe:
    """Socket-table observation for a single TCP port."""

    port: int
    listening: bool
    established: bool = False
    holders: Tuple[PortHolder, ...] = ()


@dataclass(frozen=True)
class ServiceHandle:
    """
    Runtime observation of a service.

    ``running``, ``port_active`` and ``healthy`` are independent signals: a
    process may be alive before binding its port, and a bound port may not
    answer its liveness endpoint yet.
    """

    service: str
    processes: Tuple[ProcessRecord, ...]
    running: bool
    port_active: bool
    healthy: bool
    port_established: bool = False
    launched_pid: Optional[int] = None
    port_holders: Tuple[PortHolder, ...] = ()
    observed_at: float = field(default_factory=time.time)

    @property
    def primary(self) -> Optional[ProcessRecord]:
        if not self.processes:
            return None
        if self.launched_pid is not None:
            for record in self.processes:
                if record.pid == self.launched_pid:
                    return record
        return self.processes[0]

    @property
    def pid(self) -> Optional[int]:
        record = self.primary
        return record.pid if record else None

    @property
    def memory_bytes(self) -> Optional[int]:
        record = self.primary
        return record.memory_bytes if record else None

    @property
    def started_at(self) -> Optional[float]:
        record = self.primary
        return record.started_at if record else None

    @property
    def uptime_seconds(self) -> Optional[float]:
        started = self.started_at
        if started is None:
            return None
        return max(0.0, self.observed_at - started)

    @property
    def is_fully_healthy(self) -> bool:
        return self.running and self.port_active and self.healthy


class ServiceState(Enum):
    """Lifecycle state the supervisor last moved a service into."""

    UNKNOWN = "unknown"
    NOT_RUNNING = "not_running"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPING = "stopping"
    STOPPED = "stopped"


class Outcome(Enum):
    """Result of a single lifecycle operation."""

    ALREADY_HEALTHY = "already_healthy"
    STARTED = "started"
    START_FAILED = "start_failed"
    ALREADY_STOPPED = "already_stopped"
    STOPPED_GRACEFULLY = "stopped_gracefully"
    STOPPED_FORCIBLY = "stopped_forcibly"
    STOP_FAILED = "stop_failed"
    TIMEOUT = "timeout"


SUCCESS_OUTCOMES = frozenset(
    {
        Outcome.ALREADY_HEALTHY,
        Outcome.STARTED,
        Outcome.ALREADY_STOPPED,
        Outcome.STOPPED_GRACEFULLY,
        Outcome.STOPPED_FORCIBLY,
    }
)

# Outcomes after which a dependent service may be started
READY_OUTCOMES = frozenset({Outcome.ALREADY_HEALTHY, Outcome.STARTED})


@dataclass(frozen=True)
class SupervisorResult:
    """Outcome of Start or Stop for one service."""

    service: str
    outcome: Outcome
    reason: Optional[str] = None
    pid: Optional[int] = None
    elapsed_seconds: Optional[float] = None
    port_holders: Tuple[PortHolder, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.outcome in SUCCESS_OUTCOMES and not self.port_holders

    def describe(self) -> str:
        """Single human-readable status line."""
        text = f"{self.service}: {self.outcome.value.replace('_', ' ')}"
        if self.pid is not None:
            text += f" (PID {self.pid})"
        if self.elapsed_seconds is not None:
            text += f" in {self.elapsed_seconds:.1f}s"
        if self.reason:
            text += f" - {self.reason}"
        if self.port_holders:
            holders = ", ".join(holder.label for holder in self.port_holders)
            text += f"; port held by unrelated process {holders}"
        return text


class OverallState(Enum):
    """Aggregate health of the stack."""

    ALL_HEALTHY = "all_healthy"
    PARTIALLY_HEALTHY = "partially_healthy"
    ALL_DOWN = "all_down"


@dataclass(frozen=True)
class StackStatus:
    """Fresh snapshot of both services."""

    inference: ServiceHandle
    webui: ServiceHandle

    @property
    def handles(self) -> Tuple[ServiceHandle, ServiceHandle]:
        return (self.inference, self.webui)

    @property
    def overall(self) -> OverallState:
        healthy = [handle.is_fully_healthy for handle in self.handles]
        if all(healthy):
            return OverallState.ALL_HEALTHY
        if any(healthy):
            return OverallState.PARTIALLY_HEALTHY
        return OverallState.ALL_DOWN


@dataclass(frozen=True)
class StackReport:
    """Aggregated outcome of a stack-wide operation."""

    results: Tuple[SupervisorResult, ...] = ()
    skipped: Mapping[str, str] = field(default_factory=dict)
    status: Optional[StackStatus] = None
    aborted: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        if self.aborted or self.skipped:
            return False
        return all(result.succeeded for result in self.results)

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def result_for(self, service: str) -> Optional[SupervisorResult]:
        for result in self.results:
            if result.service == service:
                return result
        return None
