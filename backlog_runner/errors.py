"""Shared error types for the backlog runner package."""

from typing import Any


class RunnerError(Exception):
    """Base exception for backlog runner errors.

    Use this for user-facing errors that should have actionable messages.

    Attributes:
        message: Human-readable error message
        error_code: Optional error code for reference in logs
        details: Optional dictionary with additional error details
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(message)


class ConfigurationError(RunnerError):
    """Configuration is missing, malformed, or fails validation.

    Always raised before the control loop starts.
    """

    pass


class TrackerError(RunnerError):
    """An issue-tracker query or mutation failed."""

    pass


class AgentError(RunnerError):
    """The code-generation agent could not be launched or its stream broke."""

    pass


class PersistenceError(RunnerError):
    """Session or metrics storage is unrecoverable for this session."""

    pass


class WorkspaceError(RunnerError):
    """A git operation on the working checkout failed."""

    pass
