from __future__ import annotations

import allure

from agent_handoff.orchestrator.models import TaskStatus
from agent_handoff.orchestrator.services import OrchestratorService
from tests.fakes import RecordingSink

pytestmark = [
    allure.epic("Dispatch"),
    allure.feature("Task Distributor"),
]


def test_pass_pushes_and_announces_ready_tasks(
    record_only: OrchestratorService,
    sink: RecordingSink,
) -> None:
    lifecycle = record_only.lifecycle
    gated = lifecycle.create("opencode", "claude", "needs review", requires_approval=True)
    pushed = lifecycle.create("opencode", "claude", "fix bug #150", requires_approval=False)
    queued = lifecycle.create("opencode", "claude", "write docs", requires_approval=False)
    announced = lifecycle.create("claude", "opencode", "verify", requires_approval=False)

    summary = record_only.distributor.distribute_once()

    assert (summary.cycles, summary.dispatched, summary.notified, summary.skipped) == (1, 1, 1, 1)
    assert summary.errors == 0
    assert lifecycle.get(gated).status is TaskStatus.PENDING
    assert lifecycle.get(pushed).status is TaskStatus.SENT
    assert lifecycle.get(queued).status is TaskStatus.PENDING
    assert lifecycle.get(announced).status is TaskStatus.NOTIFIED
    assert sink.messages == ["New task for OpenCode: verify"]


def test_busy_and_inactive_agents_are_left_alone(
    record_only: OrchestratorService,
    sink: RecordingSink,
) -> None:
    lifecycle = record_only.lifecycle
    lifecycle.create(None, "claude", "first", requires_approval=False)
    record_only.dispatcher.dispatch("claude")
    waiting = lifecycle.create(None, "claude", "second", requires_approval=False)
    parked = lifecycle.create(None, "opencode", "verify", requires_approval=False)
    record_only.registry.set_active("opencode", is_active=False)

    summary = record_only.distributor.distribute_once()

    assert summary.dispatched == summary.notified == 0
    assert lifecycle.get(waiting).status is TaskStatus.PENDING
    assert lifecycle.get(parked).status is TaskStatus.PENDING
    assert sink.messages == []


def test_announced_task_is_not_announced_twice(
    record_only: OrchestratorService,
    sink: RecordingSink,
) -> None:
    record_only.lifecycle.create(None, "opencode", "verify", requires_approval=False)

    first = record_only.distributor.distribute_once()
    second = record_only.distributor.distribute_once()

    assert first.notified == 1
    assert second.notified == 0
    assert len(sink.messages) == 1


def test_run_loop_stops_after_max_cycles(record_only: OrchestratorService) -> None:
    record_only.lifecycle.create(None, "claude", "fix it", requires_approval=False)

    summary = record_only.distributor.run_loop(poll_interval_seconds=0.01, max_cycles=2)

    assert summary.cycles == 2
    assert summary.dispatched == 1


def test_run_loop_exits_immediately_when_stopped(record_only: OrchestratorService) -> None:
    record_only.distributor.stop()

    summary = record_only.distributor.run_loop(poll_interval_seconds=0.01)

    assert summary.cycles == 0
    assert record_only.distributor.stop_event.is_set()
