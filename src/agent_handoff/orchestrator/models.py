"""Domain models for task hand-off and dispatch."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from agent_handoff.orchestrator.errors import InvalidStateError, ValidationError


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    NOTIFIED = "notified"
    SENT = "sent"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.BLOCKED, TaskStatus.CANCELLED},
)
DISPATCHABLE_STATUSES = (TaskStatus.PENDING, TaskStatus.APPROVED)

TASK_STATUS_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.APPROVED, TaskStatus.NOTIFIED, TaskStatus.SENT, TaskStatus.CANCELLED},
    ),
    TaskStatus.APPROVED: frozenset(
        {TaskStatus.NOTIFIED, TaskStatus.SENT, TaskStatus.CANCELLED},
    ),
    TaskStatus.NOTIFIED: frozenset({TaskStatus.SENT, TaskStatus.CANCELLED}),
    TaskStatus.SENT: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.BLOCKED}),
    TaskStatus.COMPLETED: frozenset({TaskStatus.PENDING}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.PENDING}),
    TaskStatus.CANCELLED: frozenset({TaskStatus.PENDING}),
}


def is_valid_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TASK_STATUS_TRANSITIONS.get(current, frozenset())


def ensure_transition(*, task_id: int, current: TaskStatus, target: TaskStatus) -> None:
    """Raise InvalidStateError unless ``current -> target`` is in the transition table."""

    if not is_valid_transition(current, target):
        raise InvalidStateError(
            f"Task {task_id} cannot move from '{current.value}' to '{target.value}'.",
        )


def sources_for(target: TaskStatus) -> tuple[TaskStatus, ...]:
    """All statuses allowed to move into ``target``, in declaration order."""

    return tuple(
        status for status, allowed in TASK_STATUS_TRANSITIONS.items() if target in allowed
    )


class TaskOutcome(str, Enum):
    """Final outcome reported by an agent for a sent task."""

    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def status(self) -> TaskStatus:
        return TaskStatus(self.value)

    @classmethod
    def parse(cls, value: str | TaskOutcome) -> TaskOutcome:
        if isinstance(value, TaskOutcome):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError as error:
            allowed = ", ".join(item.value for item in cls)
            raise ValidationError(
                f"Unsupported outcome {value!r}; expected one of: {allowed}.",
            ) from error


class ResponseStatus(str, Enum):
    """Execution record states; ``in_progress`` means the agent is busy."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class ResponseResolution(str, Enum):
    """Why an execution record was closed."""

    TASK_FINISHED = "task_finished"
    EXECUTION_SUCCEEDED = "execution_succeeded"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_TIMEOUT = "execution_timeout"
    ORPHAN_COMPLETED = "orphan_completed"
    ORPHAN_RESET = "orphan_reset"
    ORPHAN_IGNORED = "orphan_ignored"


class OrphanAction(str, Enum):
    """Human decisions available for an orphaned execution record."""

    COMPLETE = "complete"
    RESET = "reset"
    IGNORE = "ignore"

    @property
    def resolution(self) -> ResponseResolution:
        return {
            OrphanAction.COMPLETE: ResponseResolution.ORPHAN_COMPLETED,
            OrphanAction.RESET: ResponseResolution.ORPHAN_RESET,
            OrphanAction.IGNORE: ResponseResolution.ORPHAN_IGNORED,
        }[self]


class DeliveryMode(str, Enum):
    """How ready tasks reach an agent."""

    PUSH = "push"
    PULL = "pull"


class DeliveryMethod(str, Enum):
    DISPATCH = "dispatch"
    PULL_API = "pull_api"


class DispatchReason(str, Enum):
    DISPATCHED = "dispatched"
    AGENT_BUSY = "agent_busy"
    NO_PENDING_TASKS = "no_pending_tasks"
    NOT_APPROVED = "not_approved"


class ExternalIssueState(str, Enum):
    """Issue tracker state for an issue reference."""

    OPEN = "open"
    CLOSED = "closed"
    NOT_FOUND = "not_found"
    ERROR = "error"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    source_agent: str | None
    target_agent: str | None
    content: str
    requires_approval: bool = True
    issue_ref: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and coordination logic."""

    task_id: int
    issue_ref: str | None
    summary: str
    created_by_agent: str | None
    target_agent: str | None
    status: TaskStatus
    requires_approval: bool
    result: str | None
    session_id: str | None
    created_at: datetime
    approved_at: datetime | None
    notified_at: datetime | None
    sent_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class AgentView:
    name: str
    label: str
    is_active: bool
    delivery_mode: DeliveryMode
    created_at: datetime


@dataclass(slots=True)
class AgentResponseView:
    """One execution attempt of an agent."""

    response_id: int
    agent_name: str
    task_id: int | None
    status: ResponseStatus
    started_at: datetime
    completed_at: datetime | None
    resolution: ResponseResolution | None
    detail: str | None


@dataclass(slots=True)
class TaskSendView:
    send_id: int
    task_id: int
    agent_name: str
    sent_at: datetime
    delivery_method: DeliveryMethod
    response: str | None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: int
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task with its audit trail, deliveries and execution records."""

    task: TaskView
    events: list[TaskEventView]
    sends: list[TaskSendView]
    responses: list[AgentResponseView]


@dataclass(slots=True)
class DispatchClaim:
    """Store-level result of atomically claiming a task for an agent."""

    task: TaskView
    response: AgentResponseView


@dataclass(slots=True)
class DispatchResult:
    """Outcome of one dispatch attempt; busy and empty queues are not errors."""

    success: bool
    reason: DispatchReason
    message: str
    agent_name: str
    task_id: int | None = None
    issue_ref: str | None = None
    summary: str | None = None
    status: TaskStatus | None = None
    agent_response_id: int | None = None
    # Set for pull agents, which get the prompt from the caller instead of a subprocess.
    prompt: str | None = None


@dataclass(slots=True)
class CompletionResult:
    """Completed task plus the auto-dispatch it triggered, if any."""

    task: TaskView
    next_dispatch: DispatchResult | None = None

    @property
    def next_task_id(self) -> int | None:
        if self.next_dispatch is None or not self.next_dispatch.success:
            return None
        return self.next_dispatch.task_id


@dataclass(slots=True)
class FetchedTask:
    """Task accepted through pull-based delivery with its prompt."""

    task: TaskView
    prompt: str


@dataclass(slots=True)
class OrphanReport:
    """Execution record left in progress by a previous process."""

    agent_response_id: int
    agent_name: str
    task_id: int | None
    issue_ref: str | None
    summary: str | None
    external_state: ExternalIssueState
    started_at: datetime


@dataclass(slots=True)
class ExecutionOutcome:
    """Terminal result of one supervised execution."""

    task_id: int
    agent_response_id: int
    agent_name: str
    success: bool
    result_text: str | None = None
    error: str | None = None
    session_id: str | None = None
    timed_out: bool = False
    exit_code: int | None = None
    cost_usd: float | None = None

    @property
    def resolution(self) -> ResponseResolution:
        if self.success:
            return ResponseResolution.EXECUTION_SUCCEEDED
        if self.timed_out:
            return ResponseResolution.EXECUTION_TIMEOUT
        return ResponseResolution.EXECUTION_FAILED


@dataclass(slots=True)
class CreateAndDispatchResult:
    """Result of issue-keyed upsert followed by dispatch."""

    action: str
    task_id: int
    dispatch: DispatchResult
