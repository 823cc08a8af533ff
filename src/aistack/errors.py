"""Exception hierarchy for supervisor operations.

Lifecycle outcomes (discovery failure, timeout, termination resistance) are
reported through ``SupervisorResult`` rather than raised; these exceptions
cover conditions that abort an operation outright.

Exception classes support keyword context that is stored as attributes:
    raise ServiceBusyError(service="ollama")
"""

from typing import Any


class SupervisorError(Exception):
    """Base exception for all supervisor errors."""

    def __init__(self, message: str = "", **kwargs: Any) -> None:
        if not message:
            message = self.__class__.__doc__ or "Supervisor error occurred"
        super().__init__(message)
        for key, value in kwargs.items():
            setattr(self, key, value)


class ServiceBusyError(SupervisorError):
    """Another lifecycle operation is already in progress for this service."""

    def __init__(self, message: str = "", **kwargs: Any) -> None:
        service = kwargs.get("service")
        if not message and service:
            message = f"A lifecycle operation is already in progress for {service}"
        super().__init__(message, **kwargs)


class OperationCancelledError(SupervisorError):
    """The operation was cancelled before it completed."""


class ExecutableNotFoundError(SupervisorError):
    """No executable could be located for the service."""


class DirectoryCreationError(SupervisorError):
    """A directory required by the service could not be created."""


__all__ = [
    "DirectoryCreationError",
    "ExecutableNotFoundError",
    "OperationCancelledError",
    "ServiceBusyError",
    "SupervisorError",
]
