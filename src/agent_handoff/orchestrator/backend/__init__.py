"""Agent executor implementations."""

from agent_handoff.orchestrator.backend.base import (
    ExecutionRequest,
    ExecutionResult,
    ExternalExecutor,
)
from agent_handoff.orchestrator.backend.cli_backend import CliAgentExecutor, parse_agent_output

__all__ = [
    "CliAgentExecutor",
    "ExecutionRequest",
    "ExecutionResult",
    "ExternalExecutor",
    "parse_agent_output",
]
