from __future__ import annotations

import json
import sys
import time
from pathlib import Path

import allure
import pytest

from agent_handoff.orchestrator.backend.base import ExecutionRequest
from agent_handoff.orchestrator.backend.cli_backend import (
    CliAgentExecutor,
    _build_run_args,
    parse_agent_output,
)
from agent_handoff.orchestrator.errors import ExecutionFailure, ExecutionTimeout
from tests.fakes import ECHO_AGENT_COMMAND_TEMPLATE

pytestmark = [
    allure.epic("Execution"),
    allure.feature("CLI Agent Executor"),
]


def _request(command_template: str, **overrides: object) -> ExecutionRequest:
    values: dict[str, object] = {
        "task_id": 7,
        "agent_name": "claude",
        "prompt": "New task to implement: fix bug #150\nRun the tests.",
        "timeout_seconds": 30,
        "command_template": command_template,
    }
    values.update(overrides)
    return ExecutionRequest(**values)  # type: ignore[arg-type]


def test_build_run_args_quotes_prompt_as_single_argument() -> None:
    run_args = _build_run_args(
        command_template="claude -p {prompt} --output-format json --label {agent}-{task_id}",
        prompt="fix it; rm -rf / && echo 'done'",
        task_id=12,
        agent_name="claude",
    )

    assert run_args == [
        "claude",
        "-p",
        "fix it; rm -rf / && echo 'done'",
        "--output-format",
        "json",
        "--label",
        "claude-12",
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("claude --print", "must include"),
        ("claude {prompt} --model {model}", "Unsupported command template placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(ExecutionFailure, match=message):
        _build_run_args(command_template=template, prompt="x", task_id=1, agent_name="claude")


def test_parse_agent_output_reads_last_result_line() -> None:
    stdout = "\n".join(
        [
            json.dumps({"type": "system", "subtype": "init"}),
            "progress: editing files",
            json.dumps({"type": "result", "result": "first", "session_id": "a"}),
            json.dumps(
                {
                    "type": "result",
                    "result": "Opened PR #7",
                    "session_id": "sess-9",
                    "total_cost_usd": 0.42,
                },
            ),
        ],
    )

    output = parse_agent_output(stdout)

    assert output.result_text == "Opened PR #7"
    assert output.session_id == "sess-9"
    assert output.cost_usd == pytest.approx(0.42)
    assert output.is_error is False


def test_parse_agent_output_accepts_event_array_and_error_flag() -> None:
    stdout = json.dumps(
        [
            {"type": "assistant", "message": "working"},
            {"type": "result", "result": "rate limited", "is_error": True},
        ],
    )

    output = parse_agent_output(stdout)

    assert output.result_text == "rate limited"
    assert output.is_error is True
    assert output.session_id is None


def test_parse_agent_output_falls_back_to_plain_text() -> None:
    assert parse_agent_output("").result_text is None
    assert parse_agent_output("  all done  \n").result_text == "all done"


def test_echo_agent_success_reports_session_and_result() -> None:
    template = f"{ECHO_AGENT_COMMAND_TEMPLATE} --session-id sess-echo"

    result = CliAgentExecutor().execute(_request(template))

    assert result.success is True
    assert result.exit_code == 0
    assert result.session_id == "sess-echo"
    assert result.result_text == "echo: New task to implement: fix bug #150"
    assert result.error is None


def test_echo_agent_failure_uses_result_text_as_error() -> None:
    result = CliAgentExecutor().execute(_request(f"{ECHO_AGENT_COMMAND_TEMPLATE} --fail"))

    assert result.success is False
    assert result.exit_code == 1
    assert result.error == "echo: New task to implement: fix bug #150"


def test_missing_agent_command_is_permanent_failure(tmp_path) -> None:
    missing = tmp_path / "no-such-agent"

    with pytest.raises(ExecutionFailure, match="Agent command not found") as failure:
        CliAgentExecutor().execute(_request(f"{missing} {{prompt}}"))

    assert failure.value.transient is False


def test_timeout_kills_agent() -> None:
    request = _request(f"{ECHO_AGENT_COMMAND_TEMPLATE} --sleep 30", timeout_seconds=1)

    with pytest.raises(ExecutionTimeout, match="exceeded 1s on task 7") as timeout:
        CliAgentExecutor().execute(request)

    assert timeout.value.timeout_seconds == 1


def _process_running(pid: int) -> bool:
    try:
        stat = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8")
    except FileNotFoundError:
        return False
    # Field after the parenthesised command name is the process state.
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


@pytest.mark.skipif(not Path("/proc").is_dir(), reason="needs /proc")
def test_timeout_kills_agent_children(tmp_path) -> None:
    pid_file = tmp_path / "child.pid"
    script = tmp_path / "agent.sh"
    script.write_text(f"sleep 60 &\necho $! > {pid_file}\nwait\n", encoding="utf-8")

    with pytest.raises(ExecutionTimeout):
        CliAgentExecutor().execute(_request(f"/bin/sh {script} {{prompt}}", timeout_seconds=1))

    child_pid = int(pid_file.read_text(encoding="utf-8").strip())
    deadline = time.monotonic() + 5
    while _process_running(child_pid) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not _process_running(child_pid)


@pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")
def test_shutdown_request_stops_running_agent() -> None:
    request = _request(
        f"{ECHO_AGENT_COMMAND_TEMPLATE} --sleep 30",
        stop_requested=lambda: True,
        graceful_shutdown_seconds=0,
    )

    with pytest.raises(ExecutionFailure, match="cancelled by shutdown") as failure:
        CliAgentExecutor().execute(request)

    assert failure.value.transient is True


def test_agent_sees_task_environment(tmp_path) -> None:
    script = tmp_path / "agent.py"
    script.write_text(
        "import json, os\n"
        "print(json.dumps({'type': 'result', 'result': "
        "os.environ['AGENT_HANDOFF_AGENT'] + ':' + os.environ['AGENT_HANDOFF_TASK_ID']}))\n",
        encoding="utf-8",
    )

    result = CliAgentExecutor().execute(
        _request(f"{sys.executable} {script} {{prompt}}", working_directory=tmp_path),
    )

    assert result.success is True
    assert result.result_text == "claude:7"
