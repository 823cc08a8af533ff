"""Tests for the graceful-then-forced stop sequence."""

from __future__ import annotations

import asyncio
import subprocess
import sys
from typing import Dict, List, Tuple
from unittest.mock import patch

import psutil
import pytest

from aistack.errors import OperationCancelledError
from aistack.events import EventKind, RecordingEventSink
from aistack.supervisor_helpers.process_terminator import ProcessTerminator


class _Proc:
    """Scriptable stand-in for psutil.Process."""

    def __init__(self, pid: int, log: List[Tuple[str, int]], *, obeys_terminate=True, obeys_kill=True, denies=False):
        self.pid = pid
        self.alive = True
        self._log = log
        self._obeys_terminate = obeys_terminate
        self._obeys_kill = obeys_kill
        self._denies = denies

    def terminate(self):
        self._log.append(("terminate", self.pid))
        if self._denies:
            raise psutil.AccessDenied(self.pid)
        if self._obeys_terminate:
            self.alive = False

    def kill(self):
        self._log.append(("kill", self.pid))
        if self._denies:
            raise psutil.AccessDenied(self.pid)
        if self._obeys_kill:
            self.alive = False

    def is_running(self):
        return self.alive

    def status(self):
        return psutil.STATUS_SLEEPING


def _patched(procs: Dict[int, _Proc]):
    def factory(pid):
        if pid not in procs:
            raise psutil.NoSuchProcess(pid)
        return procs[pid]

    return patch("aistack.supervisor_helpers.process_terminator.psutil.Process", side_effect=factory)


def _terminator(events=None, cancel_event=None, progress_interval=0.0) -> ProcessTerminator:
    return ProcessTerminator(
        poll_interval=0.01,
        progress_interval=progress_interval,
        companion_settle_delay=0.0,
        force_timeout=0.1,
        events=events or RecordingEventSink(),
        cancel_event=cancel_event,
    )


@pytest.fixture(autouse=True)
def posix_close_request(monkeypatch):
    monkeypatch.setattr("aistack.supervisor_helpers.process_terminator.sys.platform", "linux")


class TestTerminate:
    """Tests for ProcessTerminator.terminate."""

    @pytest.mark.asyncio
    async def test_nothing_to_stop(self):
        with _patched({}):
            report = await _terminator().terminate("ollama", [99], graceful_timeout=1.0)

        assert report.graceful

    @pytest.mark.asyncio
    async def test_graceful_exit(self):
        log: List[Tuple[str, int]] = []
        procs = {1: _Proc(1, log), 2: _Proc(2, log)}
        with _patched(procs):
            report = await _terminator().terminate("ollama", [1, 2], graceful_timeout=1.0)

        assert report.graceful
        assert report.forced_pids == ()
        assert log == [("terminate", 1), ("terminate", 2)]

    @pytest.mark.asyncio
    async def test_forces_after_timeout(self):
        log: List[Tuple[str, int]] = []
        events = RecordingEventSink()
        procs = {1: _Proc(1, log, obeys_terminate=False)}
        with _patched(procs):
            report = await _terminator(events).terminate("ollama", [1], graceful_timeout=0.05)

        assert not report.graceful
        assert report.forced_pids == (1,)
        assert report.survivors == ()
        assert log == [("terminate", 1), ("kill", 1)]
        assert EventKind.FORCE_KILL in events.kinds()

    @pytest.mark.asyncio
    async def test_companion_killed_before_main_process(self):
        log: List[Tuple[str, int]] = []
        events = RecordingEventSink()
        procs = {1: _Proc(1, log, obeys_terminate=False), 7: _Proc(7, log)}
        with _patched(procs):
            report = await _terminator(events).terminate("ollama", [1], graceful_timeout=0.05, companion_pids=[7])

        assert report.companions_killed == (7,)
        assert log.index(("kill", 7)) < log.index(("kill", 1))
        assert EventKind.COMPANION_KILLED in events.kinds()

    @pytest.mark.asyncio
    async def test_companion_untouched_on_graceful_exit(self):
        log: List[Tuple[str, int]] = []
        procs = {1: _Proc(1, log), 7: _Proc(7, log)}
        with _patched(procs):
            await _terminator().terminate("ollama", [1], graceful_timeout=1.0, companion_pids=[7])

        assert ("kill", 7) not in log

    @pytest.mark.asyncio
    async def test_survivor_reported(self):
        log: List[Tuple[str, int]] = []
        procs = {1: _Proc(1, log, obeys_terminate=False, obeys_kill=False)}
        with _patched(procs):
            report = await _terminator().terminate("ollama", [1], graceful_timeout=0.02)

        assert report.survivors == (1,)

    @pytest.mark.asyncio
    async def test_access_denied_recorded(self):
        log: List[Tuple[str, int]] = []
        procs = {1: _Proc(1, log, denies=True)}
        with _patched(procs):
            report = await _terminator().terminate("ollama", [1], graceful_timeout=0.02)

        assert report.survivors == (1,)
        assert report.denied_pids == (1,)

    @pytest.mark.asyncio
    async def test_progress_reported_while_waiting(self):
        log: List[Tuple[str, int]] = []
        events = RecordingEventSink()
        procs = {1: _Proc(1, log, obeys_terminate=False)}
        with _patched(procs):
            await _terminator(events, progress_interval=0.02).terminate("ollama", [1], graceful_timeout=0.1)

        assert EventKind.SHUTDOWN_PROGRESS in events.kinds()

    @pytest.mark.asyncio
    async def test_cancel_aborts_graceful_wait(self):
        log: List[Tuple[str, int]] = []
        event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, event.set)
        procs = {1: _Proc(1, log, obeys_terminate=False)}
        terminator = ProcessTerminator(
            poll_interval=30.0,
            progress_interval=0.0,
            companion_settle_delay=0.0,
            events=RecordingEventSink(),
            cancel_event=event,
        )
        with _patched(procs):
            with pytest.raises(OperationCancelledError):
                await terminator.terminate("ollama", [1], graceful_timeout=60.0)

        assert ("kill", 1) not in log


@pytest.mark.skipif(sys.platform == "win32", reason="relies on POSIX signals")
class TestRealProcess:
    """Runs the stop sequence against a throwaway child interpreter."""

    @staticmethod
    def _spawn(ignore_sigterm: bool) -> subprocess.Popen:
        code = "import signal, sys, time\n"
        if ignore_sigterm:
            code += "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        code += "print('ready', flush=True)\ntime.sleep(60)\n"
        child = subprocess.Popen([sys.executable, "-c", code], stdout=subprocess.PIPE, text=True)
        assert child.stdout.readline().strip() == "ready"
        return child

    @pytest.mark.asyncio
    async def test_graceful_stop(self):
        child = self._spawn(ignore_sigterm=False)
        try:
            report = await _terminator().terminate("test", [child.pid], graceful_timeout=5.0)
        finally:
            child.kill()
            child.wait()
            child.stdout.close()

        assert report.graceful

    @pytest.mark.asyncio
    async def test_ignored_sigterm_is_force_killed(self):
        child = self._spawn(ignore_sigterm=True)
        try:
            report = await ProcessTerminator(
                poll_interval=0.05,
                progress_interval=0.0,
                companion_settle_delay=0.0,
                force_timeout=5.0,
                events=RecordingEventSink(),
            ).terminate("test", [child.pid], graceful_timeout=0.3)
            child.wait(timeout=5)
        finally:
            if child.poll() is None:
                child.kill()
                child.wait()
            child.stdout.close()

        assert not report.graceful
        assert report.forced_pids == (child.pid,)
        assert report.survivors == ()
        assert child.returncode == -9
