"""Runtime configuration for task hand-off and dispatch."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_COMMAND_TEMPLATE = "claude -p {prompt} --output-format json"
_DELIVERY_MODES = {"push", "pull"}


@dataclass(slots=True, frozen=True)
class AgentSpec:
    """Seed definition of one agent."""

    name: str
    label: str
    delivery_mode: str = "push"


DEFAULT_AGENTS = (
    AgentSpec(name="claude", label="Claude", delivery_mode="push"),
    AgentSpec(name="opencode", label="OpenCode", delivery_mode="pull"),
)


@dataclass(slots=True)
class AgentSettings:
    """Known agents seeded into the store."""

    agents: tuple[AgentSpec, ...] = DEFAULT_AGENTS


@dataclass(slots=True)
class DispatchSettings:
    """External execution and dispatch settings."""

    execution_timeout_seconds: int = 1_800
    max_concurrent_executions: int = 4
    command_template: str = DEFAULT_COMMAND_TEMPLATE
    agent_command_templates: dict[str, str] = field(default_factory=dict)
    working_directory: Path | None = None
    graceful_shutdown_seconds: int = 10
    auto_dispatch: bool = True
    poll_interval_seconds: float = 10.0

    def command_template_for(self, agent_name: str) -> str:
        return self.agent_command_templates.get(agent_name, self.command_template)


@dataclass(slots=True)
class OrphanSettings:
    """Startup crash-recovery scan settings."""

    startup_grace_seconds: float = 2.0
    check_issue_state: bool = True


@dataclass(slots=True)
class NotificationSettings:
    """Best-effort operator notifications."""

    notify_url: str | None = None
    source: str = "agent-handoff"
    notify_on_success: bool = True
    timeout_seconds: float = 5.0


@dataclass(slots=True)
class GitHubSettings:
    """Read-only issue state lookups."""

    token: str | None = None
    api_url: str = "https://api.github.com"
    default_repo: str | None = None
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_handoff.db")
    sqlite_busy_timeout_ms: int = 5_000
    agents: AgentSettings = field(default_factory=AgentSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    orphans: OrphanSettings = field(default_factory=OrphanSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        working_directory = os.getenv("AGENT_HANDOFF_WORKING_DIRECTORY", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("AGENT_HANDOFF_DB_PATH", ".agent_handoff.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_HANDOFF_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            agents=AgentSettings(agents=_collect_agents()),
            dispatch=DispatchSettings(
                execution_timeout_seconds=int(
                    os.getenv("AGENT_HANDOFF_EXECUTION_TIMEOUT_SECONDS", "1800"),
                ),
                max_concurrent_executions=int(
                    os.getenv("AGENT_HANDOFF_MAX_CONCURRENT_EXECUTIONS", "4"),
                ),
                command_template=os.getenv(
                    "AGENT_HANDOFF_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                agent_command_templates=_collect_agent_command_templates(),
                working_directory=(
                    Path(working_directory).expanduser() if working_directory else None
                ),
                graceful_shutdown_seconds=int(
                    os.getenv("AGENT_HANDOFF_GRACEFUL_SHUTDOWN_SECONDS", "10"),
                ),
                auto_dispatch=_env_bool("AGENT_HANDOFF_AUTO_DISPATCH", default=True),
                poll_interval_seconds=float(
                    os.getenv("AGENT_HANDOFF_POLL_INTERVAL_SECONDS", "10"),
                ),
            ),
            orphans=OrphanSettings(
                startup_grace_seconds=float(
                    os.getenv("AGENT_HANDOFF_ORPHAN_GRACE_SECONDS", "2"),
                ),
                check_issue_state=_env_bool("AGENT_HANDOFF_ORPHAN_CHECK_ISSUES", default=True),
            ),
            notifications=NotificationSettings(
                notify_url=os.getenv("AGENT_HANDOFF_NOTIFY_URL", "").strip() or None,
                source=os.getenv("AGENT_HANDOFF_NOTIFY_SOURCE", "agent-handoff"),
                notify_on_success=_env_bool("AGENT_HANDOFF_NOTIFY_ON_SUCCESS", default=True),
                timeout_seconds=float(os.getenv("AGENT_HANDOFF_NOTIFY_TIMEOUT_SECONDS", "5")),
            ),
            github=GitHubSettings(
                token=os.getenv("AGENT_HANDOFF_GITHUB_TOKEN", "").strip() or None,
                api_url=os.getenv("AGENT_HANDOFF_GITHUB_API_URL", "https://api.github.com"),
                default_repo=os.getenv("AGENT_HANDOFF_DEFAULT_REPO", "").strip() or None,
                timeout_seconds=float(os.getenv("AGENT_HANDOFF_GITHUB_TIMEOUT_SECONDS", "10")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_HANDOFF_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not self.agents.agents:
            raise ValueError("At least one agent is required. Set AGENT_HANDOFF_AGENTS.")
        if self.dispatch.execution_timeout_seconds <= 0:
            raise ValueError("AGENT_HANDOFF_EXECUTION_TIMEOUT_SECONDS must be > 0.")
        if self.dispatch.max_concurrent_executions <= 0:
            raise ValueError("AGENT_HANDOFF_MAX_CONCURRENT_EXECUTIONS must be > 0.")
        if self.dispatch.graceful_shutdown_seconds < 0:
            raise ValueError("AGENT_HANDOFF_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.dispatch.poll_interval_seconds <= 0:
            raise ValueError("AGENT_HANDOFF_POLL_INTERVAL_SECONDS must be > 0.")
        for agent_name, template in {
            "*": self.dispatch.command_template,
            **self.dispatch.agent_command_templates,
        }.items():
            if "{prompt}" not in template:
                raise ValueError(
                    f"Command template for agent {agent_name!r} must include {{prompt}}.",
                )
        if self.orphans.startup_grace_seconds < 0:
            raise ValueError("AGENT_HANDOFF_ORPHAN_GRACE_SECONDS must be >= 0.")
        if self.notifications.notify_url is not None:
            _validate_http_url(self.notifications.notify_url, "AGENT_HANDOFF_NOTIFY_URL")
        _validate_http_url(self.github.api_url, "AGENT_HANDOFF_GITHUB_API_URL")
        if self.github.default_repo is not None and self.github.default_repo.count("/") != 1:
            raise ValueError(
                "AGENT_HANDOFF_DEFAULT_REPO must look like 'owner/repo': "
                f"{self.github.default_repo!r}",
            )


def _collect_agents() -> tuple[AgentSpec, ...]:
    raw = os.getenv("AGENT_HANDOFF_AGENTS", "").strip()
    if not raw:
        return DEFAULT_AGENTS

    agents: list[AgentSpec] = []
    seen: set[str] = set()
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        name, _, mode = token.partition(":")
        name = name.strip().lower()
        mode = (mode.strip() or "push").lower()
        if not name:
            raise ValueError(f"Invalid AGENT_HANDOFF_AGENTS entry: {token!r}")
        if mode not in _DELIVERY_MODES:
            raise ValueError(
                f"Invalid AGENT_HANDOFF_AGENTS delivery mode for {name!r}: {mode!r} "
                "(expected 'push' or 'pull')",
            )
        if name in seen:
            continue
        seen.add(name)
        agents.append(AgentSpec(name=name, label=name.capitalize(), delivery_mode=mode))
    return tuple(agents)


def _collect_agent_command_templates() -> dict[str, str]:
    prefix = "AGENT_HANDOFF_COMMAND_TEMPLATE_"
    templates: dict[str, str] = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix) or not value.strip():
            continue
        templates[key.removeprefix(prefix).lower()] = value.strip()
    return templates


def _validate_http_url(value: str, env_name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {env_name}: {value!r}. Expected an absolute http:// or https:// URL.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
