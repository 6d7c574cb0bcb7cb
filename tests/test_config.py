from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from agent_handoff.config import DEFAULT_AGENTS, DEFAULT_COMMAND_TEMPLATE, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]

_ENV_NAMES = (
    "AGENT_HANDOFF_DB_PATH",
    "AGENT_HANDOFF_AGENTS",
    "AGENT_HANDOFF_COMMAND_TEMPLATE",
    "AGENT_HANDOFF_EXECUTION_TIMEOUT_SECONDS",
    "AGENT_HANDOFF_MAX_CONCURRENT_EXECUTIONS",
    "AGENT_HANDOFF_AUTO_DISPATCH",
    "AGENT_HANDOFF_NOTIFY_URL",
    "AGENT_HANDOFF_DEFAULT_REPO",
    "AGENT_HANDOFF_WORKING_DIRECTORY",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_settings_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".agent_handoff.db")
    assert settings.agents.agents == DEFAULT_AGENTS
    assert settings.dispatch.execution_timeout_seconds == 1800
    assert settings.dispatch.max_concurrent_executions == 4
    assert settings.dispatch.command_template == DEFAULT_COMMAND_TEMPLATE
    assert settings.dispatch.auto_dispatch is True
    assert settings.dispatch.working_directory is None
    assert settings.notifications.notify_url is None
    settings.validate()


def test_explicit_db_path_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_HANDOFF_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"
    assert Settings.from_env().db_path == tmp_path / "env.db"


def test_agents_env_parses_modes_and_skips_duplicates(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_HANDOFF_AGENTS", " Claude:push, opencode:PULL, claude:pull, reviewer ,")

    agents = Settings.from_env().agents.agents

    assert [(agent.name, agent.delivery_mode) for agent in agents] == [
        ("claude", "push"),
        ("opencode", "pull"),
        ("reviewer", "push"),
    ]
    assert agents[2].label == "Reviewer"


def test_agents_env_rejects_unknown_mode(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_HANDOFF_AGENTS", "claude:stream")

    with pytest.raises(ValueError, match="delivery mode"):
        Settings.from_env()


def test_per_agent_command_template(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_HANDOFF_COMMAND_TEMPLATE_OPENCODE", "opencode run {prompt}")

    dispatch = Settings.from_env().dispatch

    assert dispatch.command_template_for("opencode") == "opencode run {prompt}"
    assert dispatch.command_template_for("claude") == DEFAULT_COMMAND_TEMPLATE


def test_invalid_boolean_env_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_HANDOFF_AUTO_DISPATCH", "sometimes")

    with pytest.raises(ValueError, match="AGENT_HANDOFF_AUTO_DISPATCH"):
        Settings.from_env()


def test_auto_dispatch_can_be_disabled(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_HANDOFF_AUTO_DISPATCH", "off")

    assert Settings.from_env().dispatch.auto_dispatch is False


def test_validate_rejects_template_without_prompt() -> None:
    settings = Settings.from_env()
    settings = replace(
        settings,
        dispatch=replace(settings.dispatch, command_template="claude --output-format json"),
    )

    with pytest.raises(ValueError, match=r"\{prompt\}"):
        settings.validate()


def test_validate_rejects_relative_notify_url(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_HANDOFF_NOTIFY_URL", "localhost:8000/notify")

    with pytest.raises(ValueError, match="AGENT_HANDOFF_NOTIFY_URL"):
        Settings.from_env().validate()


def test_validate_rejects_malformed_default_repo(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_HANDOFF_DEFAULT_REPO", "just-a-repo")

    with pytest.raises(ValueError, match="owner/repo"):
        Settings.from_env().validate()


def test_validate_rejects_non_positive_limits(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_HANDOFF_MAX_CONCURRENT_EXECUTIONS", "0")

    with pytest.raises(ValueError, match="MAX_CONCURRENT_EXECUTIONS"):
        Settings.from_env().validate()
