from __future__ import annotations

import threading

import allure
import pytest

from agent_handoff.orchestrator.errors import NotFoundError, ValidationError
from agent_handoff.orchestrator.models import (
    DispatchReason,
    ExternalIssueState,
    OrphanAction,
    ResponseResolution,
    ResponseStatus,
    TaskStatus,
)
from agent_handoff.orchestrator.orphans import OrphanRecoveryScanner
from agent_handoff.orchestrator.services import OrchestratorService
from tests.fakes import RecordingSink, ServiceFactory, StaticIssueResolver

pytestmark = [
    allure.epic("Crash Recovery"),
    allure.feature("Orphaned Executions"),
]


def _crashed_run(service: OrchestratorService, *, issue_ref: str | None = "org/repo#150") -> int:
    """Dispatch a task without ever finishing it, as a killed process would."""

    task_id = service.lifecycle.create(
        "opencode",
        "claude",
        "fix bug #150",
        requires_approval=False,
        issue_ref=issue_ref,
    )
    result = service.dispatcher.dispatch("claude")
    assert result.success is True
    assert result.agent_response_id is not None
    return task_id


def test_startup_check_reports_orphan_with_issue_state(
    make_service: ServiceFactory,
    sink: RecordingSink,
) -> None:
    task_id = _crashed_run(make_service(run_executions=False))
    resolver = StaticIssueResolver({"org/repo#150": ExternalIssueState.CLOSED})
    restarted = make_service(run_executions=False, issue_resolver=resolver)

    reports = restarted.startup()

    assert len(reports) == 1
    report = reports[0]
    assert report.agent_name == "claude"
    assert report.task_id == task_id
    assert report.issue_ref == "org/repo#150"
    assert report.summary == "fix bug #150"
    assert report.external_state is ExternalIssueState.CLOSED
    assert resolver.calls == ["org/repo#150"]
    assert sink.messages == [
        "claude was interrupted while working on: fix bug #150. Issue is closed. "
        "Decide whether to complete, reset or ignore it.",
    ]
    # Nothing is resolved automatically.
    assert restarted.lifecycle.get(task_id).status is TaskStatus.SENT
    assert restarted.dispatcher.is_idle("claude") is False


def test_startup_check_without_orphans_is_silent(
    record_only: OrchestratorService,
    sink: RecordingSink,
) -> None:
    assert record_only.startup() == []
    assert sink.messages == []


def test_several_orphans_are_summarized(make_service: ServiceFactory, sink: RecordingSink) -> None:
    crashed = make_service(run_executions=False)
    _crashed_run(crashed)
    crashed.lifecycle.create(None, "opencode", "verify", requires_approval=False)
    crashed.dispatcher.dispatch("opencode")

    reports = make_service(run_executions=False).startup()

    assert [report.agent_name for report in reports] == ["claude", "opencode"]
    assert reports[1].external_state is ExternalIssueState.UNKNOWN
    assert sink.messages == [
        "Found 2 orphaned tasks from an interrupted run. "
        "Review them with 'agent-handoff orphans list'.",
    ]


def test_reset_returns_task_to_pending_and_frees_agent(record_only: OrchestratorService) -> None:
    task_id = _crashed_run(record_only)
    [orphan] = record_only.scanner.find_orphans()

    assert record_only.scanner.reset(orphan.agent_response_id) is True

    task = record_only.lifecycle.get(task_id)
    assert task.status is TaskStatus.PENDING
    assert task.sent_at is None
    assert task.completed_at is None
    response = record_only.store.get_response(orphan.agent_response_id)
    assert response is not None
    assert response.status is ResponseStatus.COMPLETED
    assert response.resolution is ResponseResolution.ORPHAN_RESET
    events = [event.event_type for event in record_only.lifecycle.details(task_id).events]
    assert events[-2:] == ["execution_interrupted", "orphan_reset"]
    assert record_only.scanner.find_orphans() == []

    redispatched = record_only.dispatcher.dispatch("claude")
    assert redispatched.reason is DispatchReason.DISPATCHED
    assert redispatched.task_id == task_id


def test_mark_completed_finishes_task(record_only: OrchestratorService) -> None:
    task_id = _crashed_run(record_only)
    [orphan] = record_only.scanner.find_orphans()

    assert record_only.scanner.mark_completed(orphan.agent_response_id) is True

    task = record_only.lifecycle.get(task_id)
    assert task.status is TaskStatus.COMPLETED
    assert task.result == "Marked completed during crash recovery."
    assert record_only.dispatcher.is_idle("claude") is True


def test_ignore_only_closes_record(record_only: OrchestratorService) -> None:
    task_id = _crashed_run(record_only)
    [orphan] = record_only.scanner.find_orphans()

    assert record_only.scanner.resolve(orphan.agent_response_id, "ignore") is True
    assert record_only.scanner.resolve(orphan.agent_response_id, "ignore") is False

    assert record_only.lifecycle.get(task_id).status is TaskStatus.SENT
    assert record_only.dispatcher.is_idle("claude") is True
    events = [event.event_type for event in record_only.lifecycle.details(task_id).events]
    assert events[-1] == "orphan_ignored"


def test_resolve_rejects_unknown_action_and_record(record_only: OrchestratorService) -> None:
    _crashed_run(record_only)
    [orphan] = record_only.scanner.find_orphans()

    with pytest.raises(ValidationError, match="Unsupported orphan action"):
        record_only.scanner.resolve(orphan.agent_response_id, "retry")
    with pytest.raises(NotFoundError):
        record_only.scanner.resolve(9999, OrphanAction.RESET)


def test_grace_wait_is_interrupted_by_stop(record_only: OrchestratorService) -> None:
    _crashed_run(record_only)
    stop = threading.Event()
    stop.set()

    assert record_only.scanner.run_startup_check(60, stop_event=stop) == []


def test_failing_issue_lookup_reports_error_state(record_only: OrchestratorService) -> None:
    class _BrokenResolver:
        def status(self, issue_ref: str) -> ExternalIssueState:
            raise RuntimeError(f"cannot reach tracker for {issue_ref}")

    _crashed_run(record_only)
    scanner = OrphanRecoveryScanner(record_only.store, issue_resolver=_BrokenResolver())

    [report] = scanner.run_startup_check(0)

    assert report.external_state is ExternalIssueState.ERROR
