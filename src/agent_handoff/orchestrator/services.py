"""Composition root wiring orchestration components from settings."""

from __future__ import annotations

import logging
import threading
from types import TracebackType

from agent_handoff.config import Settings
from agent_handoff.integrations.base import IssueStatusResolver, NotificationSink
from agent_handoff.integrations.github import GitHubIssueStatusResolver
from agent_handoff.integrations.notifications import (
    CompositeNotificationSink,
    HttpNotificationSink,
    LoggingNotificationSink,
)
from agent_handoff.orchestrator.approval import ApprovalGate
from agent_handoff.orchestrator.backend import CliAgentExecutor, ExternalExecutor
from agent_handoff.orchestrator.dispatch import DispatchCoordinator
from agent_handoff.orchestrator.distributor import TaskDistributor
from agent_handoff.orchestrator.errors import ConflictError, ValidationError
from agent_handoff.orchestrator.issue_refs import normalize_issue_ref
from agent_handoff.orchestrator.lifecycle import TaskLifecycleManager
from agent_handoff.orchestrator.models import (
    CreateAndDispatchResult,
    OrphanReport,
    TaskCreate,
    TaskStatus,
)
from agent_handoff.orchestrator.orphans import OrphanRecoveryScanner
from agent_handoff.orchestrator.registry import AgentRegistry
from agent_handoff.orchestrator.repository import TaskStore
from agent_handoff.orchestrator.supervisor import ExecutionSupervisor

logger = logging.getLogger(__name__)


class OrchestratorService:
    """Own one store and the components built on it for a process lifetime."""

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        store: TaskStore | None = None,
        executor: ExternalExecutor | None = None,
        issue_resolver: IssueStatusResolver | None = None,
        notifier: NotificationSink | None = None,
        run_executions: bool = True,
    ) -> None:
        self.settings = settings
        self.store = store or TaskStore(
            settings.db_path,
            sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        self.notifier = notifier or _build_notifier(settings)
        self.issue_resolver = issue_resolver
        if self.issue_resolver is None and settings.orphans.check_issue_state:
            self.issue_resolver = GitHubIssueStatusResolver(
                api_url=settings.github.api_url,
                token=settings.github.token,
                timeout_seconds=settings.github.timeout_seconds,
            )

        self.registry = AgentRegistry(self.store)
        self.gate = ApprovalGate()
        self.supervisor = (
            ExecutionSupervisor(executor or CliAgentExecutor(), settings=settings.dispatch)
            if run_executions
            else None
        )
        self.dispatcher = DispatchCoordinator(
            self.store,
            self.registry,
            self.gate,
            self.supervisor,
            default_repo=settings.github.default_repo,
        )
        self.lifecycle = TaskLifecycleManager(
            self.store,
            self.registry,
            self.dispatcher,
            gate=self.gate,
            auto_dispatch=settings.dispatch.auto_dispatch,
            default_repo=settings.github.default_repo,
            notifier=self.notifier,
            notify_on_success=settings.notifications.notify_on_success,
        )
        if self.supervisor is not None:
            self.supervisor.bind(self.lifecycle.record_execution_outcome)
        self.scanner = OrphanRecoveryScanner(
            self.store,
            issue_resolver=self.issue_resolver,
            notifier=self.notifier,
        )
        self.distributor = TaskDistributor(
            self.dispatcher,
            self.lifecycle,
            notifier=self.notifier,
        )

    def init(self) -> None:
        """Migrate the schema and seed configured agents."""

        self.store.init_schema()
        agents = self.registry.seed(self.settings.agents.agents)
        logger.info("Store ready at %s with %d agent(s)", self.settings.db_path, len(agents))

    def startup(self, stop_event: threading.Event | None = None) -> list[OrphanReport]:
        return self.scanner.run_startup_check(
            self.settings.orphans.startup_grace_seconds,
            stop_event=stop_event,
        )

    def create_and_dispatch(
        self,
        issue_ref: str,
        target_agent: str,
        *,
        summary: str | None = None,
        source_agent: str | None = None,
    ) -> CreateAndDispatchResult:
        """Upsert the task for ``issue_ref`` without approval, then dispatch it."""

        normalized = normalize_issue_ref(issue_ref, default_repo=self.settings.github.default_repo)
        if normalized is None:
            raise ValidationError("Issue reference is required.")
        agent = self.registry.resolve(target_agent)
        existing = self.store.find_task_by_issue_ref(normalized)

        if existing is not None and existing.status in (TaskStatus.PENDING, TaskStatus.APPROVED):
            action = "existing"
            task_id = existing.task_id
        else:
            if existing is not None and not existing.status.is_terminal:
                raise ConflictError(
                    f"Issue {normalized} is already {existing.status.value} "
                    f"as task {existing.task_id}.",
                    task_id=existing.task_id,
                )
            task = self.lifecycle.create_task(
                TaskCreate(
                    source_agent=source_agent,
                    target_agent=agent.name,
                    content=summary or (existing.summary if existing else f"Issue {normalized}"),
                    requires_approval=False,
                    issue_ref=normalized,
                ),
            )
            action = "reopened" if existing is not None else "created"
            task_id = task.task_id

        dispatch = self.dispatcher.dispatch(agent.name, issue_ref_filter=normalized)
        return CreateAndDispatchResult(action=action, task_id=task_id, dispatch=dispatch)

    def drain(self) -> None:
        """Block until executions, and the dispatches they chain, have finished."""

        if self.supervisor is None:
            return
        while self.supervisor.in_flight():
            self.supervisor.wait_idle()

    def close(self, *, wait: bool = True, cancel_running: bool = False) -> None:
        if self.supervisor is not None:
            self.supervisor.shutdown(wait=wait, cancel_running=cancel_running)
        for resource in (self.issue_resolver, self.notifier):
            close = getattr(resource, "close", None)
            if close is not None:
                close()
        self.store.close()

    def __enter__(self) -> OrchestratorService:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()


def _build_notifier(settings: Settings) -> NotificationSink:
    sinks: list[NotificationSink] = [LoggingNotificationSink()]
    if settings.notifications.notify_url:
        sinks.append(
            HttpNotificationSink(
                settings.notifications.notify_url,
                source=settings.notifications.source,
                timeout_seconds=settings.notifications.timeout_seconds,
            ),
        )
    return CompositeNotificationSink(sinks)
