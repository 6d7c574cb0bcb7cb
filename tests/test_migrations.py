from __future__ import annotations

import sqlite3
from pathlib import Path

import allure
import pytest

from agent_handoff.orchestrator.repository import TaskStore

pytestmark = [
    allure.epic("Persistence"),
    allure.feature("Schema Migrations"),
]


def _schema_objects(db_path: Path, kind: str) -> set[str]:
    connection = sqlite3.connect(db_path)
    try:
        rows = connection.execute(
            "SELECT name FROM sqlite_master WHERE type = ?",
            (kind,),
        ).fetchall()
    finally:
        connection.close()
    return {row[0] for row in rows}


def test_init_schema_creates_tables_and_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "schema.db"
    store = TaskStore(db_path)
    try:
        store.init_schema()
        store.init_schema()
    finally:
        store.close()

    tables = _schema_objects(db_path, "table")
    assert {
        "agents",
        "agent_tasks",
        "agent_responses",
        "agent_task_sends",
        "agent_task_events",
        "alembic_version",
    } <= tables
    indexes = _schema_objects(db_path, "index")
    assert "uq_agent_responses_agent_in_progress" in indexes
    assert "ix_agent_tasks_issue_ref" in indexes


def test_partial_index_allows_history_but_one_in_progress_per_agent(tmp_path: Path) -> None:
    db_path = tmp_path / "partial.db"
    store = TaskStore(db_path)
    try:
        store.init_schema()
    finally:
        store.close()

    connection = sqlite3.connect(db_path)
    try:
        insert = (
            "INSERT INTO agent_responses (agent_name, status, started_at) "
            "VALUES (?, ?, '2026-10-19 09:00:00')"
        )
        connection.execute(insert, ("claude", "completed"))
        connection.execute(insert, ("claude", "completed"))
        connection.execute(insert, ("claude", "in_progress"))
        connection.execute(insert, ("opencode", "in_progress"))
        connection.commit()
        with pytest.raises(sqlite3.IntegrityError):
            connection.execute(insert, ("claude", "in_progress"))
    finally:
        connection.close()


def test_sqlite_pragmas_applied_on_connect(store: TaskStore) -> None:
    with store.engine.connect() as connection:
        journal_mode = connection.exec_driver_sql("PRAGMA journal_mode").scalar()
        foreign_keys = connection.exec_driver_sql("PRAGMA foreign_keys").scalar()

    assert str(journal_mode).lower() == "wal"
    assert foreign_keys == 1
