"""Dispatch coordination: pick the next task for an idle agent and start it."""

from __future__ import annotations

import logging
import threading

from agent_handoff.orchestrator.approval import ApprovalGate
from agent_handoff.orchestrator.errors import AgentBusyError, InvalidStateError
from agent_handoff.orchestrator.issue_refs import normalize_issue_ref
from agent_handoff.orchestrator.models import (
    DISPATCHABLE_STATUSES,
    AgentView,
    DeliveryMethod,
    DeliveryMode,
    DispatchClaim,
    DispatchReason,
    DispatchResult,
    FetchedTask,
    TaskStatus,
    TaskView,
)
from agent_handoff.orchestrator.prompts import render_task_prompt
from agent_handoff.orchestrator.registry import AgentRegistry
from agent_handoff.orchestrator.repository import TaskStore
from agent_handoff.orchestrator.supervisor import ExecutionSupervisor
from agent_handoff.storage.common import utc_now

logger = logging.getLogger(__name__)


class DispatchCoordinator:
    """Claim ready tasks for agents, one active task per agent.

    The check-and-claim sequence runs under a per-agent lock; the partial
    unique index on in-progress execution records backs it up across
    processes.
    """

    def __init__(  # noqa: PLR0913
        self,
        store: TaskStore,
        registry: AgentRegistry,
        gate: ApprovalGate,
        supervisor: ExecutionSupervisor | None = None,
        *,
        default_repo: str | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.gate = gate
        self.supervisor = supervisor
        self.default_repo = default_repo
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def dispatch(self, target_agent: str, issue_ref_filter: str | None = None) -> DispatchResult:
        """Hand the oldest eligible task to ``target_agent`` if it is idle."""

        agent = self.registry.resolve(target_agent)
        issue_ref = normalize_issue_ref(issue_ref_filter, default_repo=self.default_repo)

        with self._agent_lock(agent.name):
            busy = self.store.get_in_progress_response(agent.name)
            if busy is not None:
                return _busy_result(agent, busy_task_id=busy.task_id)

            claim, gated = self._claim_next(agent, issue_ref=issue_ref)
            if isinstance(claim, DispatchResult):
                return claim

        if claim is None:
            if gated:
                return DispatchResult(
                    success=False,
                    reason=DispatchReason.NOT_APPROVED,
                    message=f"Tasks for {agent.name} are waiting for approval.",
                    agent_name=agent.name,
                )
            return DispatchResult(
                success=False,
                reason=DispatchReason.NO_PENDING_TASKS,
                message=f"No pending tasks for {agent.name}.",
                agent_name=agent.name,
            )

        task = claim.task
        logger.info(
            "Dispatched task %s (%s) to %s",
            task.task_id,
            task.issue_ref or "no issue",
            agent.name,
        )
        prompt: str | None = render_task_prompt(task, agent_name=agent.name)
        if agent.delivery_mode is DeliveryMode.PUSH:
            if self.supervisor is not None:
                self.supervisor.submit(claim, prompt)
            prompt = None
        return DispatchResult(
            success=True,
            reason=DispatchReason.DISPATCHED,
            message=f"Task {task.task_id} sent to {agent.name}.",
            agent_name=agent.name,
            task_id=task.task_id,
            issue_ref=task.issue_ref,
            summary=task.summary,
            status=task.status,
            agent_response_id=claim.response.response_id,
            prompt=prompt,
        )

    def _claim_next(
        self,
        agent: AgentView,
        *,
        issue_ref: str | None,
    ) -> tuple[DispatchClaim | DispatchResult | None, bool]:
        gated = False
        for task in self.store.list_dispatch_candidates(agent_name=agent.name, issue_ref=issue_ref):
            if not self.gate.can_dispatch(task):
                gated = True
                continue
            try:
                claim = self.store.claim_for_dispatch(
                    agent_name=agent.name,
                    task_id=task.task_id,
                    expected_status=task.status,
                )
            except AgentBusyError:
                return _busy_result(agent, busy_task_id=None), gated
            if claim is not None:
                return claim, gated
            logger.debug("Task %s was claimed concurrently; trying next", task.task_id)
        return None, gated

    def accept(self, task_id: int) -> FetchedTask:
        """Agent-initiated move of a notified task to ``sent``; returns its prompt."""

        task = self.store.get_task(task_id)
        agent_name = task.target_agent if task is not None else None
        accepted = self.store.transition_task(
            task_id=task_id,
            action="accept",
            allowed_from=(TaskStatus.NOTIFIED,),
            target=TaskStatus.SENT,
            values={"sent_at": utc_now()},
            details={"agent_name": agent_name},
            send=(agent_name or "-", DeliveryMethod.PULL_API, "Task accepted via API"),
        )
        logger.info("Task %s accepted by %s", task_id, agent_name or "unassigned agent")
        return FetchedTask(task=accepted, prompt=render_task_prompt(accepted))

    def fetch(self, agent_name: str) -> FetchedTask | None:
        """Accept the oldest notified task for a pull-mode agent."""

        agent = self.registry.resolve(agent_name)
        for task in self.store.list_notified_tasks(agent_name=agent.name):
            try:
                return self.accept(task.task_id)
            except InvalidStateError:
                logger.debug("Task %s was accepted concurrently", task.task_id)
        return None

    def is_idle(self, agent_name: str) -> bool:
        agent = self.registry.resolve(agent_name)
        return self.store.get_in_progress_response(agent.name) is None

    def ready_to_send(self) -> list[TaskView]:
        """Assigned tasks passing the approval gate whose target agent is active and idle."""

        idle: dict[str, bool] = {}
        ready: list[TaskView] = []
        for task in self.store.list_tasks(
            statuses=DISPATCHABLE_STATUSES,
            limit=None,
            oldest_first=True,
        ):
            if task.target_agent is None or not self.gate.can_dispatch(task):
                continue
            if task.target_agent not in idle:
                idle[task.target_agent] = self.registry.is_active(task.target_agent) and (
                    self.store.get_in_progress_response(task.target_agent) is None
                )
            if idle[task.target_agent]:
                ready.append(task)
        return ready

    def _agent_lock(self, agent_name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(agent_name)
            if lock is None:
                lock = threading.Lock()
                self._locks[agent_name] = lock
            return lock


def _busy_result(agent: AgentView, *, busy_task_id: int | None) -> DispatchResult:
    suffix = f" (task {busy_task_id})" if busy_task_id is not None else ""
    return DispatchResult(
        success=False,
        reason=DispatchReason.AGENT_BUSY,
        message=f"Agent {agent.name} is busy{suffix}.",
        agent_name=agent.name,
        task_id=busy_task_id,
    )
