"""Error taxonomy for task orchestration.

Everything raised by the orchestration core derives from
:class:`OrchestratorError`, so transports can map the whole family onto
client-error responses in one place.
"""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for orchestration failures surfaced to callers."""


class ValidationError(OrchestratorError):
    """Malformed or missing input."""


class NotFoundError(OrchestratorError):
    """Unknown task, agent or execution record."""


class InvalidStateError(OrchestratorError):
    """Operation is not legal in the task's current state."""


class ConflictError(OrchestratorError):
    """Issue reference already bound to an active task."""

    def __init__(self, message: str, *, task_id: int | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class AgentBusyError(OrchestratorError):
    """Agent already runs a task.

    ``dispatch`` reports a busy agent as a regular result; this exception is
    for callers that need to turn that result into a hard failure.
    """


class ExecutionFailure(OrchestratorError):
    """External executor failed to produce a result."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class ExecutionTimeout(ExecutionFailure):
    """External executor exceeded its time budget and was killed."""

    def __init__(self, message: str, *, timeout_seconds: float) -> None:
        super().__init__(message, transient=True)
        self.timeout_seconds = timeout_seconds
