"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_handoff.config import DispatchSettings, OrphanSettings, Settings
from agent_handoff.orchestrator.backend.base import ExternalExecutor
from agent_handoff.orchestrator.repository import TaskStore
from agent_handoff.orchestrator.services import OrchestratorService
from tests.fakes import RecordingSink, ServiceFactory


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "handoff.db",
        dispatch=DispatchSettings(execution_timeout_seconds=30, graceful_shutdown_seconds=0),
        orphans=OrphanSettings(startup_grace_seconds=0, check_issue_state=False),
    )


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def store(settings: Settings) -> Iterator[TaskStore]:
    task_store = TaskStore(settings.db_path)
    task_store.init_schema()
    try:
        yield task_store
    finally:
        task_store.close()


@pytest.fixture()
def make_service(settings: Settings, sink: RecordingSink) -> Iterator[ServiceFactory]:
    """Build initialized services on the shared test DB; all are closed at teardown."""

    created: list[OrchestratorService] = []

    def _factory(
        *,
        executor: ExternalExecutor | None = None,
        run_executions: bool = True,
        **kwargs: object,
    ) -> OrchestratorService:
        kwargs.setdefault("notifier", sink)
        service = OrchestratorService(
            settings,
            executor=executor,
            run_executions=run_executions and executor is not None,
            **kwargs,  # type: ignore[arg-type]
        )
        service.init()
        created.append(service)
        return service

    yield _factory
    for service in created:
        service.close()


@pytest.fixture()
def record_only(make_service: ServiceFactory) -> OrchestratorService:
    """Service that claims tasks but never runs agents, like a process that crashed."""

    return make_service(run_executions=False)
