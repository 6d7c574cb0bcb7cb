"""Executor interface for handing prompts to external agents."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from agent_handoff.config import DEFAULT_COMMAND_TEMPLATE


@dataclass(slots=True)
class ExecutionRequest:
    """Inputs required to run one dispatched task."""

    task_id: int
    agent_name: str
    prompt: str
    timeout_seconds: float
    command_template: str = DEFAULT_COMMAND_TEMPLATE
    working_directory: Path | None = None
    stop_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class ExecutionResult:
    """Execution outcome reported by an executor."""

    success: bool
    session_id: str | None = None
    result_text: str | None = None
    error: str | None = None
    exit_code: int | None = None
    cost_usd: float | None = None


class ExternalExecutor(Protocol):
    """Protocol implemented by agent executors.

    Implementations raise ``ExecutionTimeout`` when the time budget is
    exhausted and ``ExecutionFailure`` when the agent cannot be run at all.
    """

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """Run the agent on the prompt and block until it finishes."""
