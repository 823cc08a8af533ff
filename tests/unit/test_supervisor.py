"""Tests for ServiceSupervisor lifecycle operations."""

from __future__ import annotations

import asyncio
import dataclasses
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

from aistack.errors import OperationCancelledError, ServiceBusyError
from aistack.events import EventKind
from aistack.models import Outcome, PortHolder, ServiceState
from aistack.process_inspector import ProcessInspector
from aistack.supervisor_helpers import ExecutableResolution, launch_detached
from tests.helpers.fakes import CRASH, NEVER_READY, FakeStack, make_supervisor


class TestStart:
    """Tests for ServiceSupervisor.start."""

    @pytest.mark.asyncio
    async def test_launches_when_not_running(self, supervisor, stack, settings):
        result = await supervisor.start(settings.inference)

        assert result.outcome == Outcome.STARTED
        assert result.pid == stack.pids("ollama")[0]
        assert stack.launches == ["ollama"]
        assert supervisor.state_of("ollama") == ServiceState.HEALTHY

    @pytest.mark.asyncio
    async def test_start_twice_is_idempotent(self, supervisor, stack, settings):
        first = await supervisor.start(settings.inference)
        second = await supervisor.start(settings.inference)
        third = await supervisor.start(settings.inference)

        assert first.outcome == Outcome.STARTED
        assert second.outcome == Outcome.ALREADY_HEALTHY
        assert third.outcome == Outcome.ALREADY_HEALTHY
        assert first.pid == second.pid == third.pid
        assert stack.launches == ["ollama"]

    @pytest.mark.asyncio
    async def test_already_healthy_does_not_touch_process(self, supervisor, stack, settings):
        existing = stack.add_process("ollama")

        result = await supervisor.start(settings.inference)

        assert result.outcome == Outcome.ALREADY_HEALTHY
        assert result.pid == existing.pid
        assert stack.launches == []
        assert supervisor.terminator.calls == []

    @pytest.mark.asyncio
    async def test_unhealthy_instance_is_replaced(self, supervisor, stack, settings):
        stale = stack.add_process("ollama", healthy=False)

        result = await supervisor.start(settings.inference)

        assert result.outcome == Outcome.STARTED
        assert supervisor.terminator.calls[0]["pids"] == [stale.pid]
        assert stale.pid not in stack.pids("ollama")
        assert stack.launches == ["ollama"]

    @pytest.mark.asyncio
    async def test_unstoppable_unhealthy_instance_fails_start(self, supervisor, stack, settings):
        stack.add_process("ollama", healthy=False)
        stack.ignores_terminate.add("ollama")
        stack.survives_kill.add("ollama")

        result = await supervisor.start(settings.inference)

        assert result.outcome == Outcome.START_FAILED
        assert "process survived force-kill" in result.reason
        assert stack.launches == []

    @pytest.mark.asyncio
    async def test_executable_not_found(self, supervisor, stack, settings):
        stack.missing_executables.add("ollama")

        result = await supervisor.start(settings.inference)

        assert result.outcome == Outcome.START_FAILED
        assert result.reason == "executable not found"
        assert stack.launches == []

    @pytest.mark.asyncio
    async def test_directory_creation_failure(self, supervisor, stack, settings, tmp_path):
        blocker = tmp_path / "aistack" / "models"
        blocker.parent.mkdir(parents=True, exist_ok=True)
        blocker.write_text("in the way", encoding="utf-8")

        result = await supervisor.start(settings.inference)

        assert result.outcome == Outcome.START_FAILED
        assert result.reason == "directory creation failed"
        assert stack.launches == []

    @pytest.mark.asyncio
    async def test_exited_immediately(self, supervisor, stack, settings):
        stack.launch_behaviour["ollama"] = CRASH

        result = await supervisor.start(settings.inference)

        assert result.outcome == Outcome.START_FAILED
        assert result.reason.startswith("process exited immediately")
        assert supervisor.registry.load("ollama") is None

    @pytest.mark.asyncio
    async def test_timeout_leaves_process_running(self, supervisor, stack, settings):
        stack.launch_behaviour["webui"] = NEVER_READY

        result = await supervisor.start(settings.webui)

        assert result.outcome == Outcome.TIMEOUT
        assert stack.pids("webui") == [result.pid]
        assert "left running" in result.reason
        assert supervisor.terminator.calls == []

    @pytest.mark.asyncio
    async def test_skip_health_check(self, supervisor, stack, settings):
        stack.launch_behaviour["webui"] = NEVER_READY

        result = await supervisor.start(settings.webui, wait_for_ready=False)

        assert result.outcome == Outcome.STARTED
        assert result.reason == "health check skipped"

    @pytest.mark.asyncio
    async def test_port_held_by_unrelated_process(self, supervisor, stack, settings, events):
        stack.squatters[settings.webui.port] = PortHolder(pid=555, name="nginx")

        result = await supervisor.start(settings.webui)

        assert result.outcome == Outcome.START_FAILED
        assert result.reason == f"port {settings.webui.port} held by nginx (PID 555)"
        assert result.port_holders == (PortHolder(pid=555, name="nginx"),)
        assert stack.launches == []
        assert EventKind.PORT_HELD in events.kinds("webui")

    @pytest.mark.asyncio
    async def test_records_launched_pid(self, supervisor, stack, settings):
        result = await supervisor.start(settings.inference)

        assert supervisor.registry.load("ollama").pid == result.pid

    @pytest.mark.asyncio
    async def test_launch_oserror(self, stack, settings):
        supervisor = make_supervisor(stack, launcher=MagicMock(side_effect=PermissionError("denied")))

        result = await supervisor.start(settings.inference)

        assert result.outcome == Outcome.START_FAILED
        assert result.reason.startswith("launch failed")

    @pytest.mark.asyncio
    async def test_emits_lifecycle_events(self, supervisor, settings, events):
        await supervisor.start(settings.inference)

        kinds = events.kinds("ollama")
        assert kinds.index(EventKind.EXECUTABLE_RESOLVED) < kinds.index(EventKind.LAUNCHED)
        assert kinds.index(EventKind.LAUNCHED) < kinds.index(EventKind.READY)
        assert kinds[-1] == EventKind.RESULT

    @pytest.mark.asyncio
    async def test_multiple_candidates_reported(self, supervisor, stack, settings, events):
        stack.add_process("ollama")
        stack.add_process("ollama")

        await supervisor.start(settings.inference)

        assert EventKind.MULTIPLE_CANDIDATES in events.kinds("ollama")

    @pytest.mark.asyncio
    async def test_cancel_during_settle(self, stack, settings):
        event = asyncio.Event()
        event.set()
        supervisor = make_supervisor(stack, cancel_event=event)

        with pytest.raises(OperationCancelledError):
            await supervisor.start(settings.inference)


class TestStop:
    """Tests for ServiceSupervisor.stop."""

    @pytest.mark.asyncio
    async def test_never_started_is_already_stopped(self, supervisor, settings):
        result = await supervisor.stop(settings.inference)

        assert result.outcome == Outcome.ALREADY_STOPPED
        assert result.succeeded

    @pytest.mark.asyncio
    async def test_graceful(self, supervisor, stack, settings):
        record = stack.add_process("ollama")

        result = await supervisor.stop(settings.inference)

        assert result.outcome == Outcome.STOPPED_GRACEFULLY
        assert result.pid == record.pid
        assert stack.pids("ollama") == []
        assert supervisor.state_of("ollama") == ServiceState.STOPPED

    @pytest.mark.asyncio
    async def test_forcible_leaves_port_free(self, supervisor, stack, settings):
        stack.add_process("ollama")
        stack.ignores_terminate.add("ollama")

        result = await supervisor.stop(settings.inference)

        assert result.outcome == Outcome.STOPPED_FORCIBLY
        assert stack.pids("ollama") == []
        assert not supervisor.prober.probe(settings.inference.port).listening

    @pytest.mark.asyncio
    async def test_companion_killed_first(self, supervisor, stack, settings):
        main = stack.add_process("ollama")
        companion = stack.add_companion("ollama")
        stack.ignores_terminate.add("ollama")

        await supervisor.stop(settings.inference)

        assert stack.killed.index(companion.pid) < stack.killed.index(main.pid)

    @pytest.mark.asyncio
    async def test_survived_force_kill(self, supervisor, stack, settings):
        record = stack.add_process("ollama")
        stack.ignores_terminate.add("ollama")
        stack.survives_kill.add("ollama")

        result = await supervisor.stop(settings.inference)

        assert result.outcome == Outcome.STOP_FAILED
        assert result.reason == "process survived force-kill"
        assert result.pid == record.pid

    @pytest.mark.asyncio
    async def test_uses_descriptor_shutdown_timeout(self, supervisor, stack, settings):
        stack.add_process("webui")

        await supervisor.stop(settings.webui)

        assert supervisor.terminator.calls[0]["graceful_timeout"] == settings.webui.shutdown_timeout

    @pytest.mark.asyncio
    async def test_explicit_graceful_timeout(self, supervisor, stack, settings):
        stack.add_process("webui")

        await supervisor.stop(settings.webui, graceful_timeout=0.0)

        assert supervisor.terminator.calls[0]["graceful_timeout"] == 0.0

    @pytest.mark.asyncio
    async def test_port_squatter_reported_not_killed(self, supervisor, stack, settings):
        squatter = PortHolder(pid=555, name="nginx")
        stack.squatters[settings.webui.port] = squatter

        result = await supervisor.stop(settings.webui)

        assert result.outcome == Outcome.ALREADY_STOPPED
        assert result.port_holders == (squatter,)
        assert not result.succeeded
        assert 555 not in stack.killed

    @pytest.mark.asyncio
    async def test_clears_launch_record(self, supervisor, stack, settings):
        await supervisor.start(settings.inference)

        await supervisor.stop(settings.inference)

        assert supervisor.registry.load("ollama") is None

    @pytest.mark.asyncio
    async def test_start_stop_start_leaves_port_unbound_between(self, supervisor, stack, settings):
        await supervisor.start(settings.inference)
        await supervisor.stop(settings.inference)

        assert not supervisor.prober.probe(settings.inference.port).listening
        result = await supervisor.start(settings.inference)

        assert result.outcome == Outcome.STARTED
        assert stack.port_bound_at_launch["ollama"] is False


class TestStatus:
    """Tests for ServiceSupervisor.status."""

    @pytest.mark.asyncio
    async def test_nothing_running(self, supervisor, settings):
        handle = await supervisor.status(settings.inference)

        assert not handle.running
        assert not handle.port_active
        assert not handle.healthy

    @pytest.mark.asyncio
    async def test_running_healthy(self, supervisor, stack, settings):
        record = stack.add_process("webui")

        handle = await supervisor.status(settings.webui)

        assert handle.is_fully_healthy
        assert handle.pid == record.pid
        assert handle.memory_bytes == record.memory_bytes

    @pytest.mark.asyncio
    async def test_running_but_unhealthy(self, supervisor, stack, settings):
        stack.add_process("webui", healthy=False)

        handle = await supervisor.status(settings.webui)

        assert handle.running and handle.port_active
        assert not handle.healthy

    @pytest.mark.asyncio
    async def test_launched_pid_preferred_over_older_match(self, supervisor, stack, settings):
        result = await supervisor.start(settings.inference)
        stack.processes["ollama"].insert(0, stack.add_process("ollama"))
        stack.processes["ollama"].pop()

        handle = await supervisor.status(settings.inference)

        assert handle.launched_pid == result.pid
        assert handle.pid == result.pid
        assert len(handle.processes) == 2

    @pytest.mark.asyncio
    async def test_skip_health_probe(self, supervisor, stack, settings):
        stack.add_process("ollama")

        handle = await supervisor.status(settings.inference, probe_health=False)

        assert not handle.healthy
        assert supervisor.health_checker.probed == []

    @pytest.mark.asyncio
    async def test_squatter_listed(self, supervisor, stack, settings):
        stack.squatters[settings.webui.port] = PortHolder(pid=555, name="nginx")

        handle = await supervisor.status(settings.webui)

        assert not handle.running
        assert handle.port_active
        assert handle.port_holders == (PortHolder(pid=555, name="nginx"),)

    @pytest.mark.asyncio
    async def test_status_leaves_stale_launch_record(self, supervisor, settings):
        supervisor.registry.record("ollama", 999_999, "/opt/fake/bin/ollama", started_at=1.0)

        handle = await supervisor.status(settings.inference)

        assert handle.launched_pid is None
        assert supervisor.registry.load("ollama").pid == 999_999


class TestSerialization:
    """Tests for per-service busy rejection."""

    @pytest.mark.asyncio
    async def test_concurrent_operation_rejected(self, stack, settings):
        release = asyncio.Event()
        entered = asyncio.Event()

        async def slow_probe(url, **kwargs):
            entered.set()
            await release.wait()
            return True

        checker = MagicMock()
        checker.quick_probe = AsyncMock(side_effect=slow_probe)
        supervisor = make_supervisor(stack, health_checker=checker)
        stack.add_process("ollama")

        first = asyncio.create_task(supervisor.start(settings.inference))
        await entered.wait()
        with pytest.raises(ServiceBusyError, match="ollama"):
            await supervisor.stop(settings.inference)
        release.set()

        assert (await first).outcome == Outcome.ALREADY_HEALTHY

    @pytest.mark.asyncio
    async def test_other_service_not_blocked(self, stack, settings):
        release = asyncio.Event()
        entered = asyncio.Event()

        async def slow_probe(url, **kwargs):
            entered.set()
            await release.wait()
            return True

        checker = MagicMock()
        checker.quick_probe = AsyncMock(side_effect=slow_probe)
        supervisor = make_supervisor(stack, health_checker=checker)
        stack.add_process("ollama")

        first = asyncio.create_task(supervisor.start(settings.inference))
        await entered.wait()
        result = await supervisor.stop(settings.webui)
        release.set()
        await first

        assert result.outcome == Outcome.ALREADY_STOPPED


@pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell script as the service binary")
class TestRealLaunch:
    """Tests that launch a real child process through the real inspector."""

    @pytest.fixture
    def crashing_service(self, settings, tmp_path):
        script = tmp_path / "bin" / "aistack-crasher"
        script.parent.mkdir()
        script.write_text("#!/bin/sh\nexit 3\n", encoding="utf-8")
        script.chmod(0o755)
        descriptor = dataclasses.replace(
            settings.inference,
            process_names=("aistack-crasher",),
            cmdline_patterns=(),
            companion_names=(),
        )
        return script, descriptor

    @pytest.mark.asyncio
    async def test_child_exiting_at_launch_is_start_failure(self, settings, crashing_service):
        script, descriptor = crashing_service
        stack = FakeStack(dataclasses.replace(settings, settle_delay=0.5))
        supervisor = make_supervisor(
            stack,
            inspector=ProcessInspector(),
            locator=lambda _descriptor: ExecutableResolution(script, "override"),
            launcher=launch_detached,
        )

        result = await supervisor.start(descriptor)

        assert result.outcome == Outcome.START_FAILED
        assert "exited immediately" in result.reason
        assert ProcessInspector().find(descriptor) == []
