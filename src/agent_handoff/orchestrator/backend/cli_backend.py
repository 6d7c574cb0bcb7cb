"""Subprocess-based executor for headless CLI agents."""

from __future__ import annotations

import json
import logging
import os
import shlex
import signal
import subprocess
import tempfile
import time
from dataclasses import dataclass
from typing import IO, Any

from agent_handoff.orchestrator.backend.base import ExecutionRequest, ExecutionResult
from agent_handoff.orchestrator.errors import ExecutionFailure, ExecutionTimeout

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.1
_TERMINATE_GRACE_SECONDS = 2.0
_ERROR_TAIL_CHARS = 2_000


@dataclass(slots=True)
class AgentOutput:
    """Fields extracted from an agent's JSON result line."""

    result_text: str | None
    session_id: str | None
    is_error: bool
    cost_usd: float | None


class CliAgentExecutor:
    """Run the configured agent command in its own process group.

    On timeout the whole group is terminated, so helper processes spawned by
    the agent do not outlive it.
    """

    def execute(self, request: ExecutionRequest) -> ExecutionResult:
        run_args = _build_run_args(
            command_template=request.command_template,
            prompt=request.prompt,
            task_id=request.task_id,
            agent_name=request.agent_name,
        )
        cwd = request.working_directory
        if cwd is not None and not cwd.is_dir():
            logger.warning("Working directory %s does not exist; using current directory", cwd)
            cwd = None

        env = os.environ.copy()
        env["AGENT_HANDOFF_TASK_ID"] = str(request.task_id)
        env["AGENT_HANDOFF_AGENT"] = request.agent_name

        logger.info(
            "Starting %s for task %s (timeout %ss)",
            run_args[0],
            request.task_id,
            request.timeout_seconds,
        )
        try:
            with (
                tempfile.TemporaryFile("w+", encoding="utf-8") as stdout_handle,
                tempfile.TemporaryFile("w+", encoding="utf-8") as stderr_handle,
            ):
                exit_code = _run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    cwd=str(cwd) if cwd is not None else None,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    request=request,
                )
                stdout = _read_back(stdout_handle)
                stderr = _read_back(stderr_handle)
        except FileNotFoundError as error:
            raise ExecutionFailure(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise ExecutionFailure(f"Agent command failed to start: {error}", transient=True) from error

        output = parse_agent_output(stdout)
        success = exit_code == 0 and not output.is_error
        error_text = None
        if not success:
            error_text = (
                output.result_text
                or stderr.strip()[-_ERROR_TAIL_CHARS:]
                or f"Agent exited with code {exit_code}"
            )
        return ExecutionResult(
            success=success,
            session_id=output.session_id,
            result_text=output.result_text,
            error=error_text,
            exit_code=exit_code,
            cost_usd=output.cost_usd,
        )


def parse_agent_output(stdout: str) -> AgentOutput:
    """Extract the last ``{"type": "result"}`` object from agent stdout.

    Accepts a single JSON document, a JSON array of events, or JSON lines.
    Plain text output becomes the result text as-is.
    """

    text = stdout.strip()
    if not text:
        return AgentOutput(result_text=None, session_id=None, is_error=False, cost_usd=None)

    candidates: list[Any] = []
    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        for raw_line in text.splitlines():
            line = raw_line.strip()
            if not line.startswith("{"):
                continue
            try:
                candidates.append(json.loads(line))
            except json.JSONDecodeError:
                continue
    else:
        candidates = document if isinstance(document, list) else [document]

    for payload in reversed(candidates):
        if isinstance(payload, dict) and payload.get("type") == "result":
            return _output_from_payload(payload)
    return AgentOutput(result_text=text, session_id=None, is_error=False, cost_usd=None)


def _output_from_payload(payload: dict[str, Any]) -> AgentOutput:
    result = payload.get("result")
    session_id = payload.get("session_id")
    cost = payload.get("total_cost_usd")
    return AgentOutput(
        result_text=str(result) if result is not None else None,
        session_id=str(session_id) if session_id else None,
        is_error=bool(payload.get("is_error", False)),
        cost_usd=float(cost) if isinstance(cost, int | float) else None,
    )


def _build_run_args(
    *,
    command_template: str,
    prompt: str,
    task_id: int,
    agent_name: str,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ExecutionFailure("Agent command template is empty.")
    if "{prompt}" not in stripped:
        raise ExecutionFailure("Agent command template must include {prompt}.")

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            task_id=shlex.quote(str(task_id)),
            agent=shlex.quote(agent_name),
        )
    except (KeyError, IndexError) as error:
        raise ExecutionFailure(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ExecutionFailure("Agent command template rendered empty command.")
    return argv


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: str | None,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    request: ExecutionRequest,
) -> int:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
        start_new_session=os.name != "nt",
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, request.graceful_shutdown_seconds or 0)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode

        now = time.monotonic()
        if now - start_monotonic >= request.timeout_seconds:
            _terminate_process_tree(process)
            raise ExecutionTimeout(
                f"Agent {request.agent_name} exceeded {request.timeout_seconds}s "
                f"on task {request.task_id} and was killed.",
                timeout_seconds=request.timeout_seconds,
            )

        if request.stop_requested is not None and request.stop_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process_tree(process)
                raise ExecutionFailure(
                    f"Execution of task {request.task_id} cancelled by shutdown.",
                    transient=True,
                )

        time.sleep(_POLL_INTERVAL_SECONDS)


def _terminate_process_tree(process: subprocess.Popen[str]) -> None:
    if os.name == "nt":
        _terminate_process(process)
        return
    try:
        os.killpg(process.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        return
    try:
        process.wait(timeout=_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        pass
    # Children may ignore SIGTERM after the group leader has exited.
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    process.wait(timeout=_TERMINATE_GRACE_SECONDS)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=_TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=_TERMINATE_GRACE_SECONDS)


def _read_back(handle: IO[str]) -> str:
    handle.flush()
    handle.seek(0)
    return handle.read()
