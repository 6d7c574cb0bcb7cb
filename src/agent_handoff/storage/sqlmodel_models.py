"""SQLModel ORM tables for task hand-off storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class AgentRow(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(unique=True, index=True)
    label: str
    is_active: bool = Field(default=True)
    delivery_mode: str = Field(default="push")
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRow(SQLModel, table=True):
    __tablename__ = "agent_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agent_tasks_dispatch", "status", "target_agent", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    issue_ref: str | None = Field(default=None, unique=True, index=True)
    summary: str = Field(sa_column=Column(Text, nullable=False))
    created_by_agent: str | None = Field(default=None)
    target_agent: str | None = Field(default=None, index=True)
    status: str = Field(index=True)
    requires_approval: bool = Field(default=True)
    result: str | None = Field(default=None, sa_column=Column(Text))
    session_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    approved_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    notified_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    sent_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentResponseRow(SQLModel, table=True):
    __tablename__ = "agent_responses"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_agent_responses_agent_in_progress",
            "agent_name",
            unique=True,
            sqlite_where=text("status = 'in_progress'"),
        ),
        Index("idx_agent_responses_status_started", "status", "started_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    agent_name: str = Field(index=True)
    task_id: int | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("agent_tasks.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    status: str
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    resolution: str | None = None
    detail: str | None = Field(default=None, sa_column=Column(Text))


class TaskSendRow(SQLModel, table=True):
    __tablename__ = "agent_task_sends"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            ForeignKey("agent_tasks.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    agent_name: str
    sent_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    delivery_method: str
    response: str | None = Field(default=None, sa_column=Column(Text))


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "agent_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_agent_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(
        sa_column=Column(
            ForeignKey("agent_tasks.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
