"""Stack-wide operations sequencing the inference server and the web UI."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

import psutil

from .config import StackSettings
from .errors import ServiceBusyError
from .events import EventKind, SupervisorEvent
from .models import READY_OUTCOMES, Outcome, ServiceDescriptor, StackReport, StackStatus, SupervisorResult
from .supervisor import ServiceSupervisor

logger = logging.getLogger(__name__)

Confirm = Callable[[str], bool]


class StackOrchestrator:
    """Starts, stops and reports on both services in dependency order."""

    def __init__(self, settings: StackSettings, supervisor: Optional[ServiceSupervisor] = None):
        self.settings = settings
        self.supervisor = supervisor or ServiceSupervisor(settings)

    async def start_all(
        self,
        *,
        force: bool = False,
        wait_for_ready: bool = True,
        confirm: Optional[Confirm] = None,
    ) -> StackReport:
        """
        Start the inference server, then the web UI once the server is usable.

        When a service already appears to be running and ``force`` is not set,
        ``confirm`` is asked whether to continue. Without a confirm callback the
        operation is aborted before anything is touched.

        Args:
            force: Skip the running-service confirmation
            wait_for_ready: Wait for each service's liveness endpoint
            confirm: Interactive yes/no prompt

        Returns:
            StackReport with per-service results and a fresh status snapshot
        """
        if not force:
            running = [descriptor.display_name for descriptor in self.settings.services if self.supervisor.find_processes(descriptor)]
            if running:
                prompt = f"{' and '.join(running)} already running. Continue with start-all?"
                if confirm is None:
                    reason = f"{' and '.join(running)} already running; re-run with --force or confirm interactively"
                    logger.warning("Aborting start-all: %s", reason)
                    return StackReport(aborted=reason)
                if not confirm(prompt):
                    return StackReport(aborted="cancelled by operator")

        inference, webui = self.settings.services
        results: List[SupervisorResult] = [await self.supervisor.start(inference, wait_for_ready=wait_for_ready)]
        skipped: Dict[str, str] = {}
        first = results[0]
        if first.outcome in READY_OUTCOMES:
            results.append(await self.supervisor.start(webui, wait_for_ready=wait_for_ready))
        else:
            skipped[webui.name] = f"{inference.display_name} {first.outcome.value.replace('_', ' ')}"
            self._emit(EventKind.WARNING, webui.name, f"Not started: {skipped[webui.name]}")

        return StackReport(results=tuple(results), skipped=skipped, status=await self.status())

    async def stop_all(self, *, graceful_timeout: Optional[float] = None) -> StackReport:
        """
        Stop the web UI, then the inference server.

        Both stops are always attempted; a failure on the first never prevents
        the second.
        """
        inference, webui = self.settings.services
        results = []
        for descriptor in (webui, inference):
            results.append(await self._stop_one(descriptor, graceful_timeout))
        return StackReport(results=tuple(results), status=await self.status())

    async def start_service(self, name: str, *, wait_for_ready: bool = True) -> StackReport:
        """Start a single service; starting the UI warns when its dependency is down."""
        descriptor = self.settings.descriptor(name)
        if descriptor is self.settings.webui:
            inference = self.settings.inference
            if not await self.supervisor.health_checker.quick_probe(
                inference.liveness_url, cancel_event=self.supervisor.cancel_event
            ):
                self._emit(
                    EventKind.WARNING,
                    descriptor.name,
                    f"{inference.display_name} is not answering at {inference.base_url}; the UI will retry on its own",
                )
        result = await self.supervisor.start(descriptor, wait_for_ready=wait_for_ready)
        return StackReport(results=(result,), status=await self.status())

    async def stop_service(self, name: str, *, graceful_timeout: Optional[float] = None) -> StackReport:
        descriptor = self.settings.descriptor(name)
        result = await self._stop_one(descriptor, graceful_timeout)
        return StackReport(results=(result,), status=await self.status())

    async def status(self, *, probe_health: bool = True) -> StackStatus:
        """Fresh read of both services; nothing is started or stopped."""
        inference, webui = self.settings.services
        return StackStatus(
            inference=await self.supervisor.status(inference, probe_health=probe_health),
            webui=await self.supervisor.status(webui, probe_health=probe_health),
        )

    def access_urls(self) -> Dict[str, str]:
        return {
            "Web UI": self.settings.webui.access_url,
            "Ollama API": self.settings.inference.access_url,
        }

    async def _stop_one(self, descriptor: ServiceDescriptor, graceful_timeout: Optional[float]) -> SupervisorResult:
        try:
            return await self.supervisor.stop(descriptor, graceful_timeout=graceful_timeout)
        except (ServiceBusyError, psutil.Error, OSError) as exc:
            logger.error("Stopping %s failed: %s", descriptor.name, exc)
            return SupervisorResult(descriptor.name, Outcome.STOP_FAILED, reason=str(exc) or type(exc).__name__)

    def _emit(self, kind: EventKind, service: str, message: str) -> None:
        self.supervisor.events.emit(SupervisorEvent(kind=kind, service=service, message=message))
