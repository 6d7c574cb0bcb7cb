"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agent_handoff.config import Settings
from agent_handoff.orchestrator.models import (
    AgentView,
    DispatchResult,
    FetchedTask,
    OrphanReport,
    TaskStatus,
    TaskView,
)
from agent_handoff.orchestrator.services import OrchestratorService


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    target_agent: str | None
    content: str
    source_agent: str | None = None
    issue_ref: str | None = None
    requires_approval: bool = True


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for approve/cancel/reopen/notify/accept/show."""

    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class TaskCompleteCommand:
    """CLI input for reporting a task result."""

    db_path: Path | None
    task_id: int
    result: str | None
    outcome: str
    auto_dispatch: bool | None = None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    agent: str | None
    limit: int
    awaiting_approval: bool = False


@dataclass(slots=True)
class DispatchCommand:
    db_path: Path | None
    agent: str
    issue_ref: str | None = None


@dataclass(slots=True)
class FetchCommand:
    db_path: Path | None
    agent: str


@dataclass(slots=True)
class CreateAndDispatchCommand:
    """CLI input for issue-keyed upsert followed by dispatch."""

    db_path: Path | None
    issue_ref: str
    agent: str
    summary: str | None = None
    source_agent: str | None = None


@dataclass(slots=True)
class OrphanListCommand:
    db_path: Path | None


@dataclass(slots=True)
class OrphanResolveCommand:
    db_path: Path | None
    agent_response_id: int
    action: str


@dataclass(slots=True)
class AgentListCommand:
    db_path: Path | None
    active_only: bool = False


@dataclass(slots=True)
class AgentToggleCommand:
    db_path: Path | None
    name: str
    active: bool


@dataclass(slots=True)
class RunCommand:
    """CLI input for the distribution daemon."""

    db_path: Path | None
    max_cycles: int | None = None
    check_orphans: bool = True


class OrchestratorCliController:
    """Coordinates task, dispatch, orphan and agent CLI operations."""

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings, run_executions=False) as service:
            task_id = service.lifecycle.create(
                command.source_agent,
                command.target_agent,
                command.content,
                requires_approval=command.requires_approval,
                issue_ref=command.issue_ref,
            )
            task = service.lifecycle.get(task_id)
        return [f"Task created: {_task_line(task)}"]

    def approve_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings, run_executions=False) as service:
            task = service.lifecycle.approve(command.task_id)
        return [f"Task approved: {_task_line(task)}"]

    def cancel_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings, run_executions=False) as service:
            task = service.lifecycle.cancel(command.task_id)
        return [f"Task cancelled: {_task_line(task)}"]

    def reopen_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings, run_executions=False) as service:
            task = service.lifecycle.reopen(command.task_id)
        return [f"Task reopened: {_task_line(task)}"]

    def notify_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings, run_executions=False) as service:
            task = service.lifecycle.notify(command.task_id)
        return [f"Task notified: {_task_line(task)}"]

    def accept_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings, run_executions=False) as service:
            fetched = service.lifecycle.accept_task(command.task_id)
        return _fetched_lines(fetched)

    def complete_task(self, command: TaskCompleteCommand) -> list[str]:
        """Record a result; an auto-dispatched follow-up runs before returning."""

        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            completion = service.lifecycle.complete_with_result(
                command.task_id,
                command.result,
                command.outcome,
                auto_dispatch=command.auto_dispatch,
            )
            service.drain()
            lines = [f"Task finished: {_task_line(completion.task)}"]
            if completion.next_dispatch is not None:
                lines.append(f"Next: {_dispatch_line(completion.next_dispatch)}")
                lines.extend(_followup_lines(service, completion.next_dispatch))
        return lines

    def show_task(self, command: TaskMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings, run_executions=False) as service:
            details = service.lifecycle.details(command.task_id)

        task = details.task
        lines = [
            _task_line(task),
            f"summary={task.summary}",
            f"created_by={task.created_by_agent or '-'} "
            f"requires_approval={'yes' if task.requires_approval else 'no'} "
            f"session_id={task.session_id or '-'}",
            f"created_at={_iso(task.created_at)} approved_at={_iso(task.approved_at)} "
            f"notified_at={_iso(task.notified_at)} sent_at={_iso(task.sent_at)} "
            f"completed_at={_iso(task.completed_at)}",
        ]
        if task.result:
            lines.append(f"result={task.result}")
        lines.append(f"Sends: {len(details.sends)}")
        lines.extend(
            f"  {_iso(send.sent_at)} {send.agent_name} via {send.delivery_method.value}"
            f" response={send.response or '-'}"
            for send in details.sends
        )
        lines.append(f"Executions: {len(details.responses)}")
        lines.extend(
            f"  record={response.response_id} agent={response.agent_name} "
            f"status={response.status.value} "
            f"resolution={response.resolution.value if response.resolution else '-'} "
            f"started_at={_iso(response.started_at)} completed_at={_iso(response.completed_at)}"
            for response in details.responses
        )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            transition = (
                f"{event.status_from.value if event.status_from else '-'}"
                f"->{event.status_to.value if event.status_to else '-'}"
            )
            lines.append(
                f"  {_iso(event.created_at)} {event.event_type} {transition} {event.details}",
            )
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings, run_executions=False) as service:
            if command.awaiting_approval:
                tasks = service.lifecycle.list_awaiting_approval()[: command.limit]
            else:
                tasks = service.lifecycle.list_tasks(
                    status=_parse_status(command.status),
                    target_agent=command.agent.strip().lower() if command.agent else None,
                    limit=command.limit,
                )

        if not tasks:
            return ["No tasks found."]
        return [f"Tasks: {len(tasks)}", *(_task_line(task) for task in tasks)]

    def dispatch(self, command: DispatchCommand) -> list[str]:
        """Dispatch to an idle agent and wait for a push-mode execution to finish."""

        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            result = service.dispatcher.dispatch(command.agent, issue_ref_filter=command.issue_ref)
            service.drain()
            lines = [_dispatch_line(result)]
            lines.extend(_followup_lines(service, result))
        return lines

    def fetch(self, command: FetchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings, run_executions=False) as service:
            fetched = service.dispatcher.fetch(command.agent)
        if fetched is None:
            return [f"No notified tasks for {command.agent}."]
        return _fetched_lines(fetched)

    def create_and_dispatch(self, command: CreateAndDispatchCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings) as service:
            outcome = service.create_and_dispatch(
                command.issue_ref,
                command.agent,
                summary=command.summary,
                source_agent=command.source_agent,
            )
            service.drain()
            lines = [
                f"Task {outcome.action}: task_id={outcome.task_id}",
                _dispatch_line(outcome.dispatch),
            ]
            lines.extend(_followup_lines(service, outcome.dispatch))
        return lines

    def list_orphans(self, command: OrphanListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings, run_executions=False) as service:
            reports = service.scanner.find_orphans()
        if not reports:
            return ["No orphaned tasks."]
        return [f"Orphaned executions: {len(reports)}", *(_orphan_line(r) for r in reports)]

    def resolve_orphan(self, command: OrphanResolveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings, run_executions=False) as service:
            resolved = service.scanner.resolve(command.agent_response_id, command.action)
        if not resolved:
            return [f"Execution record {command.agent_response_id} was already closed."]
        return [f"Execution record {command.agent_response_id} resolved: {command.action}"]

    def seed_agents(self, command: AgentListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings, run_executions=False) as service:
            agents = service.registry.list_agents()
        return [f"Agents seeded: {len(agents)}", *(_agent_line(agent) for agent in agents)]

    def list_agents(self, command: AgentListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings, run_executions=False) as service:
            agents = service.registry.list_agents(active_only=command.active_only)
            busy = {
                agent.name: not service.dispatcher.is_idle(agent.name)
                for agent in agents
                if agent.is_active
            }
        if not agents:
            return ["No agents."]
        return [
            f"{_agent_line(agent)} busy={'yes' if busy.get(agent.name) else 'no'}"
            for agent in agents
        ]

    def set_agent_active(self, command: AgentToggleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _service(settings, run_executions=False) as service:
            agent = service.registry.set_active(command.name, is_active=command.active)
        return [f"Agent {'enabled' if agent.is_active else 'disabled'}: {_agent_line(agent)}"]

    def run(self, command: RunCommand) -> list[str]:
        """Run startup orphan check, then distribute until stopped."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        service = OrchestratorService(settings)
        try:
            service.init()
            orphans = (
                service.startup(service.distributor.stop_event) if command.check_orphans else []
            )
            summary = service.distributor.run_loop(
                poll_interval_seconds=settings.dispatch.poll_interval_seconds,
                max_cycles=command.max_cycles,
            )
            if command.max_cycles is not None:
                service.drain()
        finally:
            service.close(wait=True, cancel_running=command.max_cycles is None)

        return [
            "Distribution summary: "
            f"cycles={summary.cycles} dispatched={summary.dispatched} "
            f"notified={summary.notified} skipped={summary.skipped} errors={summary.errors} "
            f"orphans={len(orphans)}",
        ]


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


def _task_line(task: TaskView) -> str:
    return (
        f"task_id={task.task_id} status={task.status.value} "
        f"agent={task.target_agent or '-'} issue={task.issue_ref or '-'} "
        f"summary={task.summary[:80]!r}"
    )


def _dispatch_line(result: DispatchResult) -> str:
    line = f"Dispatch {result.reason.value}: {result.message}"
    if result.agent_response_id is not None:
        line += f" record={result.agent_response_id}"
    return line


def _followup_lines(service: OrchestratorService, result: DispatchResult) -> list[str]:
    if not result.success or result.task_id is None:
        return []
    task = service.lifecycle.get(result.task_id)
    lines = [f"Task now: {_task_line(task)}"]
    if result.prompt is not None:
        lines.extend(["", result.prompt])
    return lines


def _fetched_lines(fetched: FetchedTask) -> list[str]:
    return [f"Task accepted: {_task_line(fetched.task)}", "", fetched.prompt]


def _orphan_line(report: OrphanReport) -> str:
    return (
        f"  record={report.agent_response_id} agent={report.agent_name} "
        f"task={report.task_id if report.task_id is not None else '-'} "
        f"issue={report.issue_ref or '-'} state={report.external_state.value} "
        f"started_at={_iso(report.started_at)}"
    )


def _agent_line(agent: AgentView) -> str:
    return (
        f"name={agent.name} label={agent.label} mode={agent.delivery_mode.value} "
        f"active={'yes' if agent.is_active else 'no'}"
    )


@contextmanager
def _service(settings: Settings, *, run_executions: bool = True) -> Iterator[OrchestratorService]:
    settings.validate()
    service = OrchestratorService(settings, run_executions=run_executions)
    service.init()
    try:
        yield service
    finally:
        service.close()
