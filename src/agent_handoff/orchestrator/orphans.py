"""Startup detection and operator resolution of orphaned executions."""

from __future__ import annotations

import logging
import threading

from agent_handoff.integrations.base import IssueStatusResolver, NotificationSink
from agent_handoff.orchestrator.errors import ValidationError
from agent_handoff.orchestrator.models import (
    ExternalIssueState,
    OrphanAction,
    OrphanReport,
)
from agent_handoff.orchestrator.repository import TaskStore

logger = logging.getLogger(__name__)


class OrphanRecoveryScanner:
    """Report execution records left in progress by a crashed process.

    Nothing is resolved automatically; every resolution is an explicit
    operator action.
    """

    def __init__(
        self,
        store: TaskStore,
        *,
        issue_resolver: IssueStatusResolver | None = None,
        notifier: NotificationSink | None = None,
    ) -> None:
        self.store = store
        self.issue_resolver = issue_resolver
        self.notifier = notifier

    def find_orphans(self) -> list[OrphanReport]:
        reports: list[OrphanReport] = []
        for response in self.store.list_orphaned_responses():
            task = self.store.get_task(response.task_id) if response.task_id is not None else None
            issue_ref = task.issue_ref if task is not None else None
            reports.append(
                OrphanReport(
                    agent_response_id=response.response_id,
                    agent_name=response.agent_name,
                    task_id=response.task_id,
                    issue_ref=issue_ref,
                    summary=task.summary if task is not None else None,
                    external_state=self._issue_state(issue_ref),
                    started_at=response.started_at,
                ),
            )
        return reports

    def run_startup_check(
        self,
        grace_seconds: float = 2.0,
        *,
        stop_event: threading.Event | None = None,
    ) -> list[OrphanReport]:
        """Wait out the grace delay, then report orphans once."""

        if grace_seconds > 0:
            interrupted = (
                stop_event.wait(grace_seconds)
                if stop_event is not None
                else threading.Event().wait(grace_seconds)
            )
            if interrupted:
                return []
        try:
            reports = self.find_orphans()
        except Exception:
            logger.exception("Orphaned task scan failed")
            return []

        if not reports:
            logger.info("No orphaned tasks found")
            return reports
        for report in reports:
            logger.warning(
                "Orphaned execution %s: agent=%s task=%s issue=%s state=%s started_at=%s",
                report.agent_response_id,
                report.agent_name,
                report.task_id if report.task_id is not None else "-",
                report.issue_ref or "-",
                report.external_state.value,
                report.started_at.isoformat(),
            )
        if self.notifier is not None:
            try:
                self.notifier.notify(format_orphan_message(reports))
            except Exception:
                logger.exception("Orphan notification failed")
        return reports

    def mark_completed(self, agent_response_id: int) -> bool:
        return self.resolve(agent_response_id, OrphanAction.COMPLETE)

    def reset(self, agent_response_id: int) -> bool:
        return self.resolve(agent_response_id, OrphanAction.RESET)

    def ignore(self, agent_response_id: int) -> bool:
        return self.resolve(agent_response_id, OrphanAction.IGNORE)

    def resolve(self, agent_response_id: int, action: OrphanAction | str) -> bool:
        """Apply an operator decision; False when the record was already closed."""

        try:
            parsed = OrphanAction(action)
        except ValueError as error:
            raise ValidationError(
                f"Unsupported orphan action {action!r}; expected complete, reset or ignore.",
            ) from error
        resolved = self.store.resolve_orphan(response_id=agent_response_id, action=parsed)
        if resolved:
            logger.info("Orphaned execution %s resolved: %s", agent_response_id, parsed.value)
        else:
            logger.info(
                "Orphaned execution %s already closed; %s ignored",
                agent_response_id,
                parsed.value,
            )
        return resolved

    def _issue_state(self, issue_ref: str | None) -> ExternalIssueState:
        if issue_ref is None or self.issue_resolver is None:
            return ExternalIssueState.UNKNOWN
        try:
            return self.issue_resolver.status(issue_ref)
        except Exception:
            logger.exception("Issue lookup failed for %s", issue_ref)
            return ExternalIssueState.ERROR


def format_orphan_message(reports: list[OrphanReport]) -> str:
    if len(reports) == 1:
        report = reports[0]
        subject = report.summary or report.issue_ref or f"record {report.agent_response_id}"
        state = (
            f" Issue is {report.external_state.value}."
            if report.external_state is not ExternalIssueState.UNKNOWN
            else ""
        )
        return (
            f"{report.agent_name} was interrupted while working on: {subject}.{state} "
            "Decide whether to complete, reset or ignore it."
        )
    return (
        f"Found {len(reports)} orphaned tasks from an interrupted run. "
        "Review them with 'agent-handoff orphans list'."
    )
