"""Root pytest configuration and shared fixtures."""

from __future__ import annotations

import os

import pytest

from aistack.config import clear_default_values, load_settings
from aistack.config import runtime as config_runtime
from aistack.events import RecordingEventSink
from tests.helpers.fakes import FakeStack, fast_settings, make_supervisor


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Hide the developer's AISTACK_* variables and .env files from every test."""
    for name in list(os.environ):
        if name.startswith("AISTACK_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(config_runtime, "_DOTENV_CANDIDATES", ())
    clear_default_values()
    yield
    clear_default_values()


@pytest.fixture
def settings(tmp_path):
    return fast_settings(load_settings(tmp_path / "aistack"))


@pytest.fixture
def stack(settings):
    return FakeStack(settings)


@pytest.fixture
def events():
    return RecordingEventSink()


@pytest.fixture
def supervisor(stack, events):
    return make_supervisor(stack, events)
