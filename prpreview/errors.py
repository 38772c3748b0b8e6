"""Error taxonomy shared by the orchestrator components and the HTTP layer."""

from __future__ import annotations

from typing import Any


class OrchestratorError(Exception):
    """Base class for errors reported to callers as a structured envelope."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(OrchestratorError):
    """Missing or invalid input; raised before any side effect."""

    code = "VALIDATION_ERROR"
    status_code = 422


class ConflictError(OrchestratorError):
    """The request is well-formed but clashes with the current session state."""

    code = "CONFLICT"
    status_code = 409


class NotFoundError(OrchestratorError):
    code = "NOT_FOUND"
    status_code = 404


class GitOperationError(OrchestratorError):
    """A git command exited non-zero; ``details`` carries its captured output."""

    code = "GIT_ERROR"
    status_code = 500


class ProcessError(OrchestratorError):
    """The app process could not be spawned, signalled, or exited unexpectedly."""

    code = "PROCESS_ERROR"
    status_code = 500


class CommandSpawnError(ProcessError):
    pass


class CommandTimeoutError(ProcessError):
    """A command outlived its timeout and its process group was killed."""

    code = "TIMEOUT"
    status_code = 504
