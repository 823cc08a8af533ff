"""Supervisor for a local Ollama + Open WebUI stack."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("aistack")
except PackageNotFoundError:
    __version__ = "0.0.0"
