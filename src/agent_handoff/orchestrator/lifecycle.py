"""Task lifecycle: creation, approval, completion and reopen."""

from __future__ import annotations

import logging

from agent_handoff.integrations.base import NotificationSink
from agent_handoff.orchestrator.approval import ApprovalGate
from agent_handoff.orchestrator.dispatch import DispatchCoordinator
from agent_handoff.orchestrator.errors import (
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from agent_handoff.orchestrator.issue_refs import normalize_issue_ref
from agent_handoff.orchestrator.models import (
    TERMINAL_STATUSES,
    CompletionResult,
    DispatchResult,
    ExecutionOutcome,
    FetchedTask,
    ResponseResolution,
    TaskCreate,
    TaskDetails,
    TaskOutcome,
    TaskStatus,
    TaskView,
    sources_for,
)
from agent_handoff.orchestrator.registry import AgentRegistry
from agent_handoff.orchestrator.repository import TaskStore
from agent_handoff.storage.common import utc_now

logger = logging.getLogger(__name__)

_RESULT_PREVIEW_CHARS = 500


class TaskLifecycleManager:
    """Owns task status transitions and their timestamps.

    Every mutation goes through :meth:`TaskStore.transition_task`, which checks
    the transition table and guards the update with the observed status.
    """

    def __init__(  # noqa: PLR0913
        self,
        store: TaskStore,
        registry: AgentRegistry,
        dispatcher: DispatchCoordinator,
        *,
        gate: ApprovalGate | None = None,
        auto_dispatch: bool = True,
        default_repo: str | None = None,
        notifier: NotificationSink | None = None,
        notify_on_success: bool = True,
    ) -> None:
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.gate = gate or dispatcher.gate
        self.auto_dispatch = auto_dispatch
        self.default_repo = default_repo
        self.notifier = notifier
        self.notify_on_success = notify_on_success

    def create(  # noqa: PLR0913
        self,
        source_agent: str | None,
        target_agent: str | None,
        content: str,
        requires_approval: bool = True,
        issue_ref: str | None = None,
    ) -> int:
        """Create a task and return its id.

        An issue ref bound to a finished task reopens and reuses that task;
        one bound to an active task raises ConflictError.
        """

        return self.create_task(
            TaskCreate(
                source_agent=source_agent,
                target_agent=target_agent,
                content=content,
                requires_approval=requires_approval,
                issue_ref=issue_ref,
            ),
        ).task_id

    def create_task(self, payload: TaskCreate) -> TaskView:
        content = (payload.content or "").strip()
        if not content:
            raise ValidationError("Task content must not be empty.")
        normalized = TaskCreate(
            source_agent=self.registry.validate_participant(payload.source_agent, role="source"),
            target_agent=self.registry.validate_participant(payload.target_agent, role="target"),
            content=content,
            requires_approval=payload.requires_approval,
            issue_ref=normalize_issue_ref(payload.issue_ref, default_repo=self.default_repo),
        )
        task, reopened = self.store.create_task(normalized)
        logger.info(
            "%s task %s for %s (issue %s, approval %s)",
            "Reopened" if reopened else "Created",
            task.task_id,
            task.target_agent or "any agent",
            task.issue_ref or "-",
            "required" if task.requires_approval else "not required",
        )
        return task

    def approve(self, task_id: int) -> TaskView:
        task = self.store.transition_task(
            task_id=task_id,
            action="approve",
            allowed_from=(TaskStatus.PENDING,),
            target=TaskStatus.APPROVED,
            values={"approved_at": utc_now()},
        )
        logger.info("Task %s approved", task_id)
        return task

    def cancel(self, task_id: int) -> TaskView:
        task = self.store.transition_task(
            task_id=task_id,
            action="cancel",
            allowed_from=sources_for(TaskStatus.CANCELLED),
            target=TaskStatus.CANCELLED,
        )
        logger.info("Task %s cancelled", task_id)
        return task

    def reopen(self, task_id: int) -> TaskView:
        """Return a finished task to ``pending``; a pending task is left as is."""

        task = self.get(task_id)
        if task.status is TaskStatus.PENDING:
            return task
        reopened = self.store.transition_task(
            task_id=task_id,
            action="reopen",
            allowed_from=tuple(TERMINAL_STATUSES),
            target=TaskStatus.PENDING,
            values={
                "approved_at": None,
                "notified_at": None,
                "sent_at": None,
                "completed_at": None,
                "result": None,
                "session_id": None,
            },
            details={"previous_status": task.status.value},
        )
        logger.info("Task %s reopened from %s", task_id, task.status.value)
        return reopened

    def notify(self, task_id: int) -> TaskView:
        """Mark a ready task as announced to its pull-mode agent."""

        task = self.get(task_id)
        if task.status in sources_for(TaskStatus.NOTIFIED) and not self.gate.can_dispatch(task):
            raise InvalidStateError(f"Task {task_id} requires approval before notification.")
        notified = self.store.transition_task(
            task_id=task_id,
            action="notify",
            allowed_from=(TaskStatus.PENDING, TaskStatus.APPROVED),
            target=TaskStatus.NOTIFIED,
            values={"notified_at": utc_now()},
            details={"agent_name": task.target_agent},
        )
        logger.info("Task %s notified to %s", task_id, task.target_agent or "any agent")
        return notified

    def accept(self, task_id: int) -> str:
        """Move a notified task to ``sent`` and return its prompt."""

        return self.accept_task(task_id).prompt

    def accept_task(self, task_id: int) -> FetchedTask:
        return self.dispatcher.accept(task_id)

    def complete_with_result(
        self,
        task_id: int,
        result: str | None,
        outcome: TaskOutcome | str,
        *,
        auto_dispatch: bool | None = None,
    ) -> CompletionResult:
        """Finish a sent task; on success try to hand the agent its next task."""

        parsed = TaskOutcome.parse(outcome)
        task = self.store.transition_task(
            task_id=task_id,
            action="complete",
            allowed_from=(TaskStatus.SENT,),
            target=parsed.status,
            values={"completed_at": utc_now(), "result": result},
            details={"outcome": parsed.value},
            close_responses=ResponseResolution.TASK_FINISHED,
        )
        logger.info("Task %s finished with outcome %s", task_id, parsed.value)

        chain = self.auto_dispatch if auto_dispatch is None else auto_dispatch
        next_dispatch: DispatchResult | None = None
        if chain and parsed is TaskOutcome.COMPLETED and task.target_agent is not None:
            next_dispatch = self._dispatch_next(task.target_agent)
        return CompletionResult(task=task, next_dispatch=next_dispatch)

    def record_execution_outcome(self, outcome: ExecutionOutcome) -> CompletionResult | None:
        """Apply the end of a supervised execution to its record and task."""

        detail = outcome.error if not outcome.success else _preview(outcome.result_text)
        closed = self.store.finish_response(
            response_id=outcome.agent_response_id,
            resolution=outcome.resolution,
            detail=detail,
        )
        if not closed:
            logger.info(
                "Execution record %s was already closed before the outcome arrived",
                outcome.agent_response_id,
            )
        if outcome.session_id:
            self.store.set_task_session_id(task_id=outcome.task_id, session_id=outcome.session_id)

        task = self.store.get_task(outcome.task_id)
        if task is None or task.status is not TaskStatus.SENT:
            logger.info(
                "Task %s is no longer sent (%s); keeping its status",
                outcome.task_id,
                task.status.value if task is not None else "missing",
            )
            return None

        try:
            if outcome.success:
                completion = self.complete_with_result(
                    outcome.task_id,
                    outcome.result_text,
                    TaskOutcome.COMPLETED,
                )
                if self.notify_on_success:
                    self._notify(f"{outcome.agent_name} finished task: {task.summary}")
                return completion
            completion = self.complete_with_result(
                outcome.task_id,
                outcome.error or "Execution failed.",
                TaskOutcome.FAILED,
            )
        except InvalidStateError:
            logger.info("Task %s was finished concurrently", outcome.task_id)
            return None
        reason = "timed out" if outcome.timed_out else "failed"
        self._notify(f"{outcome.agent_name} {reason} on task: {task.summary}")
        return completion

    def get(self, task_id: int) -> TaskView:
        task = self.store.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return task

    def find_by_issue_ref(self, issue_ref: str) -> TaskView | None:
        normalized = normalize_issue_ref(issue_ref, default_repo=self.default_repo)
        if normalized is None:
            raise ValidationError("Issue reference must not be empty.")
        return self.store.find_task_by_issue_ref(normalized)

    def details(self, task_id: int) -> TaskDetails:
        details = self.store.get_task_details(task_id)
        if details is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return details

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        target_agent: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        return self.store.list_tasks(
            statuses=(status,) if status is not None else None,
            target_agent=target_agent,
            limit=limit,
        )

    def list_awaiting_approval(self) -> list[TaskView]:
        return [
            task
            for task in self.store.list_tasks(
                statuses=(TaskStatus.PENDING,),
                limit=None,
                oldest_first=True,
            )
            if self.gate.awaiting_approval(task)
        ]

    def list_sent(self, agent_name: str | None = None) -> list[TaskView]:
        return self.store.list_tasks(
            statuses=(TaskStatus.SENT,),
            target_agent=agent_name,
            limit=None,
            oldest_first=True,
        )

    def list_notified(self, agent_name: str | None = None) -> list[TaskView]:
        return self.store.list_notified_tasks(agent_name=agent_name)

    def _dispatch_next(self, agent_name: str) -> DispatchResult | None:
        supervisor = self.dispatcher.supervisor
        if supervisor is not None and supervisor.closed:
            logger.info("Auto-dispatch to %s skipped: shutting down", agent_name)
            return None
        try:
            result = self.dispatcher.dispatch(agent_name)
        except NotFoundError as error:
            logger.warning("Auto-dispatch to %s skipped: %s", agent_name, error)
            return None
        if result.success:
            logger.info("Auto-dispatched task %s to %s", result.task_id, agent_name)
        else:
            logger.info("Auto-dispatch to %s: %s", agent_name, result.reason.value)
        return result

    def _notify(self, message: str) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier.notify(message)
        except Exception:
            logger.exception("Notification failed")


def _preview(text: str | None) -> str | None:
    if text is None:
        return None
    return text if len(text) <= _RESULT_PREVIEW_CHARS else text[:_RESULT_PREVIEW_CHARS] + "..."
