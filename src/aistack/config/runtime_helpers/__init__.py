"""Helpers behind the environment-backed settings accessors."""

from .dotenv_loader import DotenvLoader

__all__ = ["DotenvLoader"]
