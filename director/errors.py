"""
Exceptions raised while driving a scene.

Validation mismatches are not exceptions: they are recorded as failed
ValidationResult entries and reported in the run summary.
"""


class DirectorError(Exception):
    """Base class for scene runner errors."""


class AgentConnectionError(DirectorError, ConnectionError):
    """The Agent connection could not be opened or was lost."""


class CommandTimeout(DirectorError, TimeoutError):
    """No correlated reply arrived before the deadline."""

    def __init__(self, action: str, timeout: float):
        super().__init__(f"Timeout waiting for response to {action} ({timeout:g}s)")
        self.action = action
        self.timeout = timeout


class CommandError(DirectorError):
    """The Agent replied with ok: false."""

    def __init__(self, action: str, remote_error: str):
        super().__init__(f"{action} failed: {remote_error}")
        self.action = action
        self.remote_error = remote_error


class TargetNotFound(DirectorError, LookupError):
    """A view or view item could not be resolved to coordinates."""
