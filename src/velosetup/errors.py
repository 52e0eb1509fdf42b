"""Error taxonomy for deployment stages and the tool registry.

Every failure surfaced to the orchestrator or to a registry caller is one of
these classes. Callers branch on ``kind`` (a stable machine string) and may
render ``hint`` as a remediation suggestion.
"""

from __future__ import annotations

from typing import Optional


class DeploymentError(Exception):
    """Base exception for classified deployment and registry failures."""

    kind = "internal"
    hint: Optional[str] = None

    def __init__(self, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if hint is not None:
            self.hint = hint

    def to_dict(self) -> dict:
        error = {"code": self.kind, "message": self.message}
        if self.hint:
            error["hint"] = self.hint
        return error


class TransientError(DeploymentError):
    """Network or timing failure that may succeed on retry."""

    kind = "transient"
    hint = "Check network connectivity and try again."


class NotFoundError(DeploymentError):
    """A binary, path, release asset or tool does not exist."""

    kind = "not_found"


class IntegrityError(DeploymentError):
    """A downloaded or resolved artifact is corrupt or undersized."""

    kind = "integrity"
    hint = "Delete the partial download and retry."


class ConfigError(DeploymentError):
    """Invalid plan, template substitution or document shape."""

    kind = "config"


class PortConflictError(DeploymentError):
    """A configured port is already bound by another process."""

    kind = "port_conflict"
    hint = "Stop the existing instance or choose another port."

    def __init__(self, message: str, port: int, hint: Optional[str] = None) -> None:
        super().__init__(message, hint)
        self.port = port


class TimedOutError(DeploymentError):
    """The server never became ready within the allotted time."""

    kind = "timed_out"
    hint = "Inspect the server log; the GUI may need more time to start."


class AlreadyInProgressError(DeploymentError):
    """An install for the same tool is already running."""

    kind = "already_in_progress"


class CommandError(DeploymentError):
    """The server binary exited with a non-zero status."""

    kind = "command_failed"

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        stderr: str = "",
        hint: Optional[str] = None,
    ) -> None:
        super().__init__(message, hint)
        self.returncode = returncode
        self.stderr = stderr


class ProcessExitedError(DeploymentError):
    """The supervised server exited before it became ready."""

    kind = "process_exited"
    hint = "Inspect the server log for the startup failure."
