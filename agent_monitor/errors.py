"""Exceptions raised by the monitor."""

from typing import Any, Optional


class MonitorError(RuntimeError):
    """Base class for agent-monitor errors."""


class ConfigValidationError(MonitorError):
    """Raised when a settings value has the wrong type or range."""

    def __init__(self, field: str, value: Any, message: str):
        self.field = field
        self.value = value
        super().__init__(f"Invalid config value for '{field}': {message} (got {value!r})")


class LockError(MonitorError):
    """Raised when the project lock file cannot be read or written."""


class AlreadyRunningError(LockError):
    """Raised when a live process already holds the project lock."""

    def __init__(self, pid: int):
        self.pid = pid
        super().__init__(f"Agent already running (PID {pid})")


class NotRunningError(LockError):
    """Raised when an operation needs a live agent process and there is none."""


class ProcessControlError(MonitorError):
    """Raised when spawning or signalling the agent process fails."""

    def __init__(self, message: str, pid: Optional[int] = None):
        self.pid = pid
        super().__init__(message)
