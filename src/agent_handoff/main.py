"""CLI entrypoint for agent-handoff."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from agent_handoff import __version__
from agent_handoff.orchestrator.controllers import (
    AgentListCommand,
    AgentToggleCommand,
    CreateAndDispatchCommand,
    DispatchCommand,
    FetchCommand,
    OrchestratorCliController,
    OrphanListCommand,
    OrphanResolveCommand,
    RunCommand,
    TaskCompleteCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskMutateCommand,
)
from agent_handoff.orchestrator.errors import OrchestratorError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OrchestratorCliController()
TASK_STATUSES = [
    "pending",
    "approved",
    "notified",
    "sent",
    "completed",
    "failed",
    "blocked",
    "cancelled",
]

CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="agent-handoff")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Log level for stderr output.",
)
def agent_handoff(log_level: str) -> None:
    """Agent task hand-off and dispatch CLI."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@agent_handoff.group()
def tasks() -> None:
    """Task lifecycle commands."""


@tasks.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--to", "target_agent", default=None, help="Target agent name.")
@click.option("--from", "source_agent", default=None, help="Creating agent name.")
@click.option("--content", required=True, help="Task summary / instructions.")
@click.option("--issue", "issue_ref", default=None, help="Issue ref: owner/repo#N or URL.")
@click.option(
    "--requires-approval/--no-approval",
    default=True,
    show_default=True,
    help="Hold the task until it is approved.",
)
def tasks_create(  # noqa: PLR0913
    db_path: Path | None,
    target_agent: str | None,
    source_agent: str | None,
    content: str,
    issue_ref: str | None,
    requires_approval: bool,
) -> None:
    """Create a task, or reopen the finished task bound to the same issue."""

    _emit_lines(
        _invoke(
            CONTROLLER.create_task,
            TaskCreateCommand(
                db_path=db_path,
                target_agent=target_agent,
                content=content,
                source_agent=source_agent,
                issue_ref=issue_ref,
                requires_approval=requires_approval,
            ),
        ),
    )


@tasks.command("approve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_approve(db_path: Path | None, task_id: int) -> None:
    """Approve a pending task."""

    _emit_lines(
        _invoke(CONTROLLER.approve_task, TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: int) -> None:
    """Cancel a task that has not finished."""

    _emit_lines(
        _invoke(CONTROLLER.cancel_task, TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@tasks.command("reopen")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_reopen(db_path: Path | None, task_id: int) -> None:
    """Return a finished task to pending."""

    _emit_lines(
        _invoke(CONTROLLER.reopen_task, TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@tasks.command("notify")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_notify(db_path: Path | None, task_id: int) -> None:
    """Mark a ready task as announced to its pull-mode agent."""

    _emit_lines(
        _invoke(CONTROLLER.notify_task, TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@tasks.command("accept")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_accept(db_path: Path | None, task_id: int) -> None:
    """Accept a notified task and print its prompt."""

    _emit_lines(
        _invoke(CONTROLLER.accept_task, TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@tasks.command("complete")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", type=int, required=True, help="Task id.")
@click.option("--result", default=None, help="Result text reported by the agent.")
@click.option(
    "--outcome",
    type=click.Choice(["completed", "failed", "blocked"], case_sensitive=False),
    default="completed",
    show_default=True,
    help="Terminal outcome.",
)
@click.option(
    "--auto-dispatch/--no-auto-dispatch",
    default=None,
    help="Override AGENT_HANDOFF_AUTO_DISPATCH for this completion.",
)
def tasks_complete(  # noqa: PLR0913
    db_path: Path | None,
    task_id: int,
    result: str | None,
    outcome: str,
    auto_dispatch: bool | None,
) -> None:
    """Finish a sent task; on success the agent's next task is dispatched."""

    _emit_lines(
        _invoke(
            CONTROLLER.complete_task,
            TaskCompleteCommand(
                db_path=db_path,
                task_id=task_id,
                result=result,
                outcome=outcome.lower(),
                auto_dispatch=auto_dispatch,
            ),
        ),
    )


@tasks.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", type=int, required=True, help="Task id.")
def tasks_show(db_path: Path | None, task_id: int) -> None:
    """Show one task with deliveries, executions and event history."""

    _emit_lines(
        _invoke(CONTROLLER.show_task, TaskMutateCommand(db_path=db_path, task_id=task_id)),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(TASK_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--agent", default=None, help="Optional target agent filter.")
@click.option(
    "--awaiting-approval",
    is_flag=True,
    default=False,
    help="Only pending tasks held by the approval gate.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    agent: str | None,
    awaiting_approval: bool,
    limit: int,
) -> None:
    """List tasks, newest first."""

    _emit_lines(
        _invoke(
            CONTROLLER.list_tasks,
            TaskListCommand(
                db_path=db_path,
                status=status,
                agent=agent,
                limit=limit,
                awaiting_approval=awaiting_approval,
            ),
        ),
    )


@agent_handoff.command("dispatch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--agent", required=True, help="Target agent name.")
@click.option("--issue", "issue_ref", default=None, help="Only dispatch the task for this issue.")
def dispatch(db_path: Path | None, agent: str, issue_ref: str | None) -> None:
    """Send the oldest eligible task to an idle agent."""

    _emit_lines(
        _invoke(
            CONTROLLER.dispatch,
            DispatchCommand(db_path=db_path, agent=agent, issue_ref=issue_ref),
        ),
    )


@agent_handoff.command("fetch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--agent", required=True, help="Pull-mode agent name.")
def fetch(db_path: Path | None, agent: str) -> None:
    """Accept the oldest notified task for a pull-mode agent."""

    _emit_lines(_invoke(CONTROLLER.fetch, FetchCommand(db_path=db_path, agent=agent)))


@agent_handoff.command("create-and-dispatch")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--issue", "issue_ref", required=True, help="Issue ref: owner/repo#N or URL.")
@click.option("--agent", required=True, help="Target agent name.")
@click.option("--summary", default=None, help="Task summary; defaults to the issue ref.")
@click.option("--from", "source_agent", default=None, help="Creating agent name.")
def create_and_dispatch(
    db_path: Path | None,
    issue_ref: str,
    agent: str,
    summary: str | None,
    source_agent: str | None,
) -> None:
    """Upsert the task for an issue without approval and dispatch it."""

    _emit_lines(
        _invoke(
            CONTROLLER.create_and_dispatch,
            CreateAndDispatchCommand(
                db_path=db_path,
                issue_ref=issue_ref,
                agent=agent,
                summary=summary,
                source_agent=source_agent,
            ),
        ),
    )


@agent_handoff.group()
def orphans() -> None:
    """Executions interrupted by a crash."""


@orphans.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def orphans_list(db_path: Path | None) -> None:
    """List execution records still marked in progress."""

    _emit_lines(_invoke(CONTROLLER.list_orphans, OrphanListCommand(db_path=db_path)))


@orphans.command("resolve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--record-id", type=int, required=True, help="Execution record id.")
@click.option(
    "--action",
    type=click.Choice(["complete", "reset", "ignore"], case_sensitive=False),
    required=True,
    help="complete: mark the task done; reset: back to pending; ignore: only close the record.",
)
def orphans_resolve(db_path: Path | None, record_id: int, action: str) -> None:
    """Resolve one orphaned execution."""

    _emit_lines(
        _invoke(
            CONTROLLER.resolve_orphan,
            OrphanResolveCommand(
                db_path=db_path,
                agent_response_id=record_id,
                action=action.lower(),
            ),
        ),
    )


@agent_handoff.group()
def agents() -> None:
    """Agent registry commands."""


@agents.command("seed")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def agents_seed(db_path: Path | None) -> None:
    """Insert or update agents from AGENT_HANDOFF_AGENTS."""

    _emit_lines(_invoke(CONTROLLER.seed_agents, AgentListCommand(db_path=db_path)))


@agents.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--active-only", is_flag=True, default=False, help="Hide disabled agents.")
def agents_list(db_path: Path | None, active_only: bool) -> None:
    """List agents with delivery mode and busy flag."""

    _emit_lines(
        _invoke(
            CONTROLLER.list_agents,
            AgentListCommand(db_path=db_path, active_only=active_only),
        ),
    )


@agents.command("enable")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("name")
def agents_enable(db_path: Path | None, name: str) -> None:
    """Enable an agent."""

    _emit_lines(
        _invoke(
            CONTROLLER.set_agent_active,
            AgentToggleCommand(db_path=db_path, name=name, active=True),
        ),
    )


@agents.command("disable")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("name")
def agents_disable(db_path: Path | None, name: str) -> None:
    """Disable an agent; its tasks stay queued."""

    _emit_lines(
        _invoke(
            CONTROLLER.set_agent_active,
            AgentToggleCommand(db_path=db_path, name=name, active=False),
        ),
    )


@agent_handoff.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after N distribution passes (default: run until SIGINT/SIGTERM).",
)
@click.option(
    "--orphan-check/--no-orphan-check",
    default=True,
    show_default=True,
    help="Report orphaned executions on startup.",
)
def run(db_path: Path | None, max_cycles: int | None, orphan_check: bool) -> None:
    """Run the distribution loop."""

    _emit_lines(
        _invoke(
            CONTROLLER.run,
            RunCommand(db_path=db_path, max_cycles=max_cycles, check_orphans=orphan_check),
        ),
    )


def _invoke(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_handoff()
