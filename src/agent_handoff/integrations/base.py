"""Protocols for collaborators consumed by the orchestration core."""

from __future__ import annotations

from typing import Protocol

from agent_handoff.orchestrator.models import ExternalIssueState


class IssueStatusResolver(Protocol):
    """Read-only lookup of an issue's state in the tracker."""

    def status(self, issue_ref: str) -> ExternalIssueState:
        """Return the tracker state; lookup problems map to ``ERROR``."""


class NotificationSink(Protocol):
    """Best-effort operator notification channel."""

    def notify(self, message: str) -> None:
        """Deliver ``message``; implementations must not raise."""
