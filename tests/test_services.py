from __future__ import annotations

import allure
import pytest

from agent_handoff.orchestrator.backend.base import ExecutionResult
from agent_handoff.orchestrator.errors import ConflictError, ExecutionTimeout, ValidationError
from agent_handoff.orchestrator.models import (
    DispatchReason,
    ExecutionOutcome,
    ResponseResolution,
    TaskStatus,
)
from agent_handoff.orchestrator.services import OrchestratorService
from tests.fakes import FakeExecutor, RecordingSink, ServiceFactory

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Supervised Dispatch"),
]


def test_push_dispatch_runs_agent_and_completes_task(
    make_service: ServiceFactory,
    sink: RecordingSink,
) -> None:
    executor = FakeExecutor(
        [ExecutionResult(success=True, session_id="sess-42", result_text="PR #7 opened")],
    )
    service = make_service(executor=executor)
    task_id = service.lifecycle.create(
        "opencode",
        "claude",
        "fix bug #150",
        requires_approval=False,
        issue_ref="org/repo#150",
    )

    result = service.dispatcher.dispatch("claude")
    service.drain()

    assert result.success is True
    task = service.lifecycle.get(task_id)
    assert task.status is TaskStatus.COMPLETED
    assert task.result == "PR #7 opened"
    assert task.session_id == "sess-42"
    [response] = service.lifecycle.details(task_id).responses
    assert response.resolution is ResponseResolution.EXECUTION_SUCCEEDED
    assert response.detail == "PR #7 opened"
    assert executor.requests[0].prompt.startswith("New task to implement: fix bug #150")
    assert sink.messages == ["claude finished task: fix bug #150"]


def test_failed_execution_fails_task_and_notifies(
    make_service: ServiceFactory,
    sink: RecordingSink,
) -> None:
    executor = FakeExecutor([ExecutionResult(success=False, error="tests red", exit_code=1)])
    service = make_service(executor=executor)
    task_id = service.lifecycle.create(None, "claude", "refactor auth", requires_approval=False)
    service.lifecycle.create(None, "claude", "next one", requires_approval=False)

    service.dispatcher.dispatch("claude")
    service.drain()

    task = service.lifecycle.get(task_id)
    assert task.status is TaskStatus.FAILED
    assert task.result == "tests red"
    assert len(executor.requests) == 1
    assert sink.messages == ["claude failed on task: refactor auth"]
    assert service.dispatcher.is_idle("claude") is True


def test_timeout_fails_task_with_timeout_resolution(
    make_service: ServiceFactory,
    sink: RecordingSink,
) -> None:
    executor = FakeExecutor([ExecutionTimeout("killed after 30s", timeout_seconds=30)])
    service = make_service(executor=executor)
    task_id = service.lifecycle.create(None, "claude", "slow job", requires_approval=False)

    service.dispatcher.dispatch("claude")
    service.drain()

    assert service.lifecycle.get(task_id).status is TaskStatus.FAILED
    [response] = service.lifecycle.details(task_id).responses
    assert response.resolution is ResponseResolution.EXECUTION_TIMEOUT
    assert response.detail == "killed after 30s"
    assert sink.messages == ["claude timed out on task: slow job"]


def test_successful_execution_chains_through_queue(make_service: ServiceFactory) -> None:
    executor = FakeExecutor()
    service = make_service(executor=executor)
    task_ids = [
        service.lifecycle.create(None, "claude", f"step {index}", requires_approval=False)
        for index in range(3)
    ]

    service.dispatcher.dispatch("claude")
    service.drain()

    assert [request.task_id for request in executor.requests] == task_ids
    assert all(
        service.lifecycle.get(task_id).status is TaskStatus.COMPLETED for task_id in task_ids
    )


def test_pull_agent_is_not_executed(make_service: ServiceFactory) -> None:
    executor = FakeExecutor()
    service = make_service(executor=executor)
    task_id = service.lifecycle.create(None, "opencode", "verify", requires_approval=False)

    result = service.dispatcher.dispatch("opencode")
    service.drain()

    assert result.success is True
    assert executor.requests == []
    assert service.lifecycle.get(task_id).status is TaskStatus.SENT
    completion = service.lifecycle.complete_with_result(task_id, "verified", "completed")
    assert completion.task.status is TaskStatus.COMPLETED


def test_late_execution_outcome_keeps_reported_result(record_only: OrchestratorService) -> None:
    lifecycle = record_only.lifecycle
    task_id = lifecycle.create(None, "claude", "hotfix", requires_approval=False)
    dispatched = record_only.dispatcher.dispatch("claude")
    assert dispatched.agent_response_id is not None
    lifecycle.complete_with_result(task_id, "verified by hand", "completed")

    late = lifecycle.record_execution_outcome(
        ExecutionOutcome(
            task_id=task_id,
            agent_response_id=dispatched.agent_response_id,
            agent_name="claude",
            success=False,
            error="exit 137",
        ),
    )

    assert late is None
    task = lifecycle.get(task_id)
    assert task.status is TaskStatus.COMPLETED
    assert task.result == "verified by hand"


def test_create_and_dispatch_creates_then_reuses_then_reopens(
    make_service: ServiceFactory,
) -> None:
    service = make_service(run_executions=False)

    created = service.create_and_dispatch("org/repo#21", "claude", summary="Add retries")
    assert created.action == "created"
    assert created.dispatch.reason is DispatchReason.DISPATCHED
    task = service.lifecycle.get(created.task_id)
    assert task.requires_approval is False
    assert task.status is TaskStatus.SENT

    with pytest.raises(ConflictError) as conflict:
        service.create_and_dispatch("https://github.com/org/repo/issues/21", "claude")
    assert conflict.value.task_id == created.task_id

    service.lifecycle.complete_with_result(created.task_id, "done", "completed")
    reopened = service.create_and_dispatch("org/repo#21", "claude")
    assert reopened.action == "reopened"
    assert reopened.task_id == created.task_id
    assert reopened.dispatch.success is True
    assert service.lifecycle.get(created.task_id).summary == "Add retries"


def test_create_and_dispatch_keeps_pending_task(make_service: ServiceFactory) -> None:
    service = make_service(run_executions=False)
    service.lifecycle.create(None, "claude", "busy work", requires_approval=False)
    service.dispatcher.dispatch("claude")
    task_id = service.lifecycle.create(
        None,
        "claude",
        "needs review",
        requires_approval=True,
        issue_ref="org/repo#5",
    )

    outcome = service.create_and_dispatch("org/repo#5", "claude")

    assert outcome.action == "existing"
    assert outcome.task_id == task_id
    assert outcome.dispatch.reason is DispatchReason.AGENT_BUSY


def test_create_and_dispatch_requires_issue(make_service: ServiceFactory) -> None:
    service = make_service(run_executions=False)

    with pytest.raises(ValidationError):
        service.create_and_dispatch("  ", "claude")
