"""Human approval gate for dispatch."""

from __future__ import annotations

from agent_handoff.orchestrator.models import TaskView


class ApprovalGate:
    """Decide whether a task may be handed to an agent."""

    def can_dispatch(self, task: TaskView) -> bool:
        return not task.requires_approval or task.approved_at is not None

    def awaiting_approval(self, task: TaskView) -> bool:
        return not self.can_dispatch(task)
