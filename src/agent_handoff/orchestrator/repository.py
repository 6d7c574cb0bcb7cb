"""Persistent task store for agent hand-off."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from agent_handoff.orchestrator.errors import (
    AgentBusyError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
)
from agent_handoff.orchestrator.models import (
    DISPATCHABLE_STATUSES,
    AgentResponseView,
    AgentView,
    DeliveryMethod,
    DeliveryMode,
    DispatchClaim,
    OrphanAction,
    ResponseResolution,
    ResponseStatus,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskSendView,
    TaskStatus,
    TaskView,
    ensure_transition,
)
from agent_handoff.storage.alembic_runner import upgrade_head
from agent_handoff.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_handoff.storage.sqlmodel_models import (
    AgentResponseRow,
    AgentRow,
    TaskEventRow,
    TaskRow,
    TaskSendRow,
)

logger = logging.getLogger(__name__)

_REOPEN_CLEARED_FIELDS: dict[str, Any] = {
    "approved_at": None,
    "notified_at": None,
    "sent_at": None,
    "completed_at": None,
    "result": None,
    "session_id": None,
}


class TaskStore:
    """Task, agent and execution-record persistence backed by SQLModel + SQLite.

    Every state change is a conditional update guarded by the status the
    caller observed, committed together with its audit event. Nothing is
    cached between calls.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Agents

    def upsert_agent(
        self,
        *,
        name: str,
        label: str,
        delivery_mode: DeliveryMode = DeliveryMode.PUSH,
    ) -> AgentView:
        """Create agent or refresh its label and delivery mode, keeping the active flag."""

        with Session(self.engine) as session:
            row = session.exec(select(AgentRow).where(AgentRow.name == name)).one_or_none()
            if row is None:
                row = AgentRow(
                    name=name,
                    label=label,
                    is_active=True,
                    delivery_mode=delivery_mode.value,
                    created_at=to_db_datetime(utc_now()),
                )
            else:
                row.label = label
                row.delivery_mode = delivery_mode.value
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_agent_view(row)

    def get_agent(self, name: str) -> AgentView | None:
        with Session(self.engine) as session:
            row = session.exec(select(AgentRow).where(AgentRow.name == name)).one_or_none()
            return _to_agent_view(row) if row is not None else None

    def list_agents(self, *, active_only: bool = False) -> list[AgentView]:
        with Session(self.engine) as session:
            statement = select(AgentRow)
            if active_only:
                statement = statement.where(col(AgentRow.is_active).is_(True))
            rows = session.exec(statement.order_by(col(AgentRow.name).asc())).all()
            return [_to_agent_view(row) for row in rows]

    def set_agent_active(self, name: str, *, is_active: bool) -> AgentView:
        with Session(self.engine) as session:
            row = session.exec(select(AgentRow).where(AgentRow.name == name)).one_or_none()
            if row is None:
                raise NotFoundError(f"Agent not found: {name}")
            row.is_active = is_active
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_agent_view(row)

    # Tasks

    def create_task(self, payload: TaskCreate) -> tuple[TaskView, bool]:
        """Insert a task, or reopen the terminal task already bound to its issue ref.

        Returns the task and whether an existing row was reopened. Raises
        ConflictError when the issue ref belongs to a task that is still active.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            if payload.issue_ref is not None:
                existing = session.exec(
                    select(TaskRow).where(TaskRow.issue_ref == payload.issue_ref),
                ).one_or_none()
                if existing is not None:
                    return self._reopen_for_issue(session, existing, payload, now), True

            row = TaskRow(
                issue_ref=payload.issue_ref,
                summary=payload.content,
                created_by_agent=payload.source_agent,
                target_agent=payload.target_agent,
                status=TaskStatus.PENDING.value,
                requires_approval=payload.requires_approval,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise ConflictError(
                    f"Issue {payload.issue_ref} is already bound to another task.",
                ) from error
            assert row.id is not None
            self._add_event(
                session=session,
                task_id=row.id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "source_agent": payload.source_agent,
                    "target_agent": payload.target_agent,
                    "requires_approval": payload.requires_approval,
                    "issue_ref": payload.issue_ref,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row), False

    def _reopen_for_issue(
        self,
        session: Session,
        existing: TaskRow,
        payload: TaskCreate,
        now: datetime,
    ) -> TaskView:
        assert existing.id is not None
        current = TaskStatus(existing.status)
        if not current.is_terminal:
            raise ConflictError(
                f"Issue {payload.issue_ref} is already bound to active task "
                f"{existing.id} (status '{current.value}').",
                task_id=existing.id,
            )
        ensure_transition(task_id=existing.id, current=current, target=TaskStatus.PENDING)
        result = session.exec(
            sa_update(TaskRow)
            .where(
                col(TaskRow.id) == existing.id,
                col(TaskRow.status) == current.value,
            )
            .values(
                status=TaskStatus.PENDING.value,
                summary=payload.content,
                created_by_agent=payload.source_agent,
                target_agent=payload.target_agent,
                requires_approval=payload.requires_approval,
                updated_at=now,
                **_REOPEN_CLEARED_FIELDS,
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            raise ConflictError(
                f"Task {existing.id} for issue {payload.issue_ref} changed concurrently.",
                task_id=existing.id,
            )
        self._add_event(
            session=session,
            task_id=existing.id,
            event_type="reopened",
            status_from=current,
            status_to=TaskStatus.PENDING,
            details={"reason": "issue_ref_reused", "issue_ref": payload.issue_ref},
        )
        session.commit()
        return _to_task_view(self._get_task_row(session=session, task_id=existing.id))

    def get_task(self, task_id: int) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            return _to_task_view(row) if row is not None else None

    def find_task_by_issue_ref(self, issue_ref: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TaskRow).where(TaskRow.issue_ref == issue_ref),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        statuses: Sequence[TaskStatus] | None = None,
        target_agent: str | None = None,
        limit: int | None = 50,
        oldest_first: bool = False,
    ) -> list[TaskView]:
        with Session(self.engine) as session:
            statement = select(TaskRow)
            if statuses:
                statement = statement.where(
                    col(TaskRow.status).in_([status.value for status in statuses]),
                )
            if target_agent is not None:
                statement = statement.where(TaskRow.target_agent == target_agent)
            if oldest_first:
                statement = statement.order_by(
                    col(TaskRow.created_at).asc(),
                    col(TaskRow.id).asc(),
                )
            else:
                statement = statement.order_by(
                    col(TaskRow.created_at).desc(),
                    col(TaskRow.id).desc(),
                )
            if limit is not None:
                statement = statement.limit(max(1, limit))
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def list_dispatch_candidates(
        self,
        *,
        agent_name: str,
        issue_ref: str | None = None,
    ) -> list[TaskView]:
        """Pending/approved tasks for the agent or unassigned, oldest first, ties by id."""

        with Session(self.engine) as session:
            statement = select(TaskRow).where(
                col(TaskRow.status).in_([status.value for status in DISPATCHABLE_STATUSES]),
                or_(
                    col(TaskRow.target_agent) == agent_name,
                    col(TaskRow.target_agent).is_(None),
                ),
            )
            if issue_ref is not None:
                statement = statement.where(TaskRow.issue_ref == issue_ref)
            rows = session.exec(
                statement.order_by(col(TaskRow.created_at).asc(), col(TaskRow.id).asc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def list_notified_tasks(self, *, agent_name: str | None = None) -> list[TaskView]:
        """Notified tasks ordered by notification time."""

        with Session(self.engine) as session:
            statement = select(TaskRow).where(TaskRow.status == TaskStatus.NOTIFIED.value)
            if agent_name is not None:
                statement = statement.where(TaskRow.target_agent == agent_name)
            rows = session.exec(
                statement.order_by(col(TaskRow.notified_at).asc(), col(TaskRow.id).asc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def transition_task(  # noqa: PLR0913
        self,
        *,
        task_id: int,
        action: str,
        allowed_from: Sequence[TaskStatus],
        target: TaskStatus,
        values: Mapping[str, Any] | None = None,
        details: dict[str, object] | None = None,
        close_responses: ResponseResolution | None = None,
        send: tuple[str, DeliveryMethod, str | None] | None = None,
    ) -> TaskView:
        """Move a task from one of ``allowed_from`` to ``target`` in one transaction.

        ``values`` are extra column updates. ``close_responses`` closes every
        in-progress execution record linked to the task; ``send`` appends a
        delivery log entry ``(agent_name, method, response)``.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            current = TaskStatus(row.status)
            if current not in allowed_from:
                raise InvalidStateError(
                    f"Cannot {action} task {task_id} with status '{current.value}'.",
                )
            self._apply_transition(
                session=session,
                task_id=task_id,
                current=current,
                target=target,
                event_type=action,
                values=dict(values or {}),
                details=details or {},
                now=now,
            )
            if close_responses is not None:
                closed = self._close_task_responses(
                    session=session,
                    task_id=task_id,
                    resolution=close_responses,
                    now=now,
                )
                if closed:
                    logger.info(
                        "Closed %d in-progress execution record(s) for task %s",
                        closed,
                        task_id,
                    )
            if send is not None:
                agent_name, method, response = send
                session.add(
                    TaskSendRow(
                        task_id=task_id,
                        agent_name=agent_name,
                        sent_at=now,
                        delivery_method=method.value,
                        response=response,
                    ),
                )
            session.commit()
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def set_task_session_id(self, *, task_id: int, session_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(TaskRow)
                .where(col(TaskRow.id) == task_id)
                .values(session_id=session_id, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()

    def get_task_details(self, task_id: int) -> TaskDetails | None:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                return None
            events = session.exec(
                select(TaskEventRow)
                .where(TaskEventRow.task_id == task_id)
                .order_by(col(TaskEventRow.created_at).asc(), col(TaskEventRow.id).asc()),
            ).all()
            sends = session.exec(
                select(TaskSendRow)
                .where(TaskSendRow.task_id == task_id)
                .order_by(col(TaskSendRow.id).asc()),
            ).all()
            responses = session.exec(
                select(AgentResponseRow)
                .where(AgentResponseRow.task_id == task_id)
                .order_by(col(AgentResponseRow.id).asc()),
            ).all()
            return TaskDetails(
                task=_to_task_view(row),
                events=[_to_event_view(event) for event in events],
                sends=[_to_send_view(send) for send in sends],
                responses=[_to_response_view(response) for response in responses],
            )

    # Execution records

    def claim_for_dispatch(
        self,
        *,
        agent_name: str,
        task_id: int,
        expected_status: TaskStatus,
    ) -> DispatchClaim | None:
        """Atomically mark the task sent and open an in-progress record for the agent.

        Returns None when the task left ``expected_status`` meanwhile. Raises
        AgentBusyError when the agent already holds an in-progress record.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            ensure_transition(task_id=task_id, current=expected_status, target=TaskStatus.SENT)
            result = session.exec(
                sa_update(TaskRow)
                .where(
                    col(TaskRow.id) == task_id,
                    col(TaskRow.status) == expected_status.value,
                )
                .values(
                    status=TaskStatus.SENT.value,
                    target_agent=agent_name,
                    sent_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            response = AgentResponseRow(
                agent_name=agent_name,
                task_id=task_id,
                status=ResponseStatus.IN_PROGRESS.value,
                started_at=now,
            )
            session.add(response)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise AgentBusyError(f"Agent {agent_name} already has a task in progress.") from error

            session.add(
                TaskSendRow(
                    task_id=task_id,
                    agent_name=agent_name,
                    sent_at=now,
                    delivery_method=DeliveryMethod.DISPATCH.value,
                    response=f"execution record {response.id}",
                ),
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="dispatched",
                status_from=expected_status,
                status_to=TaskStatus.SENT,
                details={"agent_name": agent_name, "agent_response_id": response.id},
            )
            session.commit()
            session.refresh(response)
            return DispatchClaim(
                task=_to_task_view(self._get_task_row(session=session, task_id=task_id)),
                response=_to_response_view(response),
            )

    def get_in_progress_response(self, agent_name: str) -> AgentResponseView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(AgentResponseRow).where(
                    AgentResponseRow.agent_name == agent_name,
                    AgentResponseRow.status == ResponseStatus.IN_PROGRESS.value,
                ),
            ).first()
            return _to_response_view(row) if row is not None else None

    def get_response(self, response_id: int) -> AgentResponseView | None:
        with Session(self.engine) as session:
            row = session.get(AgentResponseRow, response_id)
            return _to_response_view(row) if row is not None else None

    def list_responses(
        self,
        *,
        agent_name: str | None = None,
        limit: int = 50,
    ) -> list[AgentResponseView]:
        with Session(self.engine) as session:
            statement = select(AgentResponseRow)
            if agent_name is not None:
                statement = statement.where(AgentResponseRow.agent_name == agent_name)
            rows = session.exec(
                statement.order_by(col(AgentResponseRow.id).desc()).limit(max(1, limit)),
            ).all()
            return [_to_response_view(row) for row in rows]

    def list_orphaned_responses(self) -> list[AgentResponseView]:
        """In-progress records that never got a completion timestamp."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentResponseRow)
                .where(
                    AgentResponseRow.status == ResponseStatus.IN_PROGRESS.value,
                    col(AgentResponseRow.completed_at).is_(None),
                )
                .order_by(col(AgentResponseRow.started_at).asc(), col(AgentResponseRow.id).asc()),
            ).all()
            return [_to_response_view(row) for row in rows]

    def finish_response(
        self,
        *,
        response_id: int,
        resolution: ResponseResolution,
        detail: str | None = None,
    ) -> bool:
        """Close an in-progress record; False when it was already closed."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentResponseRow)
                .where(
                    col(AgentResponseRow.id) == response_id,
                    col(AgentResponseRow.status) == ResponseStatus.IN_PROGRESS.value,
                )
                .values(
                    status=ResponseStatus.COMPLETED.value,
                    completed_at=now,
                    resolution=resolution.value,
                    detail=detail,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def resolve_orphan(self, *, response_id: int, action: OrphanAction) -> bool:
        """Close an orphaned record and apply the chosen task action in one transaction.

        Returns False when the record was already closed.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            response = session.get(AgentResponseRow, response_id)
            if response is None:
                raise NotFoundError(f"Execution record not found: {response_id}")
            if response.status != ResponseStatus.IN_PROGRESS.value:
                return False

            result = session.exec(
                sa_update(AgentResponseRow)
                .where(
                    col(AgentResponseRow.id) == response_id,
                    col(AgentResponseRow.status) == ResponseStatus.IN_PROGRESS.value,
                )
                .values(
                    status=ResponseStatus.COMPLETED.value,
                    completed_at=now,
                    resolution=action.resolution.value,
                    detail=f"Resolved by operator: {action.value}",
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            task_id = response.task_id
            if task_id is not None:
                self._apply_orphan_action(
                    session=session,
                    task_id=task_id,
                    response_id=response_id,
                    action=action,
                    now=now,
                )
            session.commit()
            return True

    def _apply_orphan_action(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: int,
        response_id: int,
        action: OrphanAction,
        now: datetime,
    ) -> None:
        row = session.get(TaskRow, task_id)
        if row is None:
            return
        current = TaskStatus(row.status)
        details: dict[str, object] = {"agent_response_id": response_id}

        if action is OrphanAction.COMPLETE and current is TaskStatus.SENT:
            self._apply_transition(
                session=session,
                task_id=task_id,
                current=current,
                target=TaskStatus.COMPLETED,
                event_type="orphan_completed",
                values={
                    "completed_at": now,
                    "result": row.result or "Marked completed during crash recovery.",
                },
                details=details,
                now=now,
            )
            return

        if action is OrphanAction.RESET and current is not TaskStatus.PENDING:
            if current is TaskStatus.SENT:
                # Sent tasks only leave through a terminal state.
                self._apply_transition(
                    session=session,
                    task_id=task_id,
                    current=current,
                    target=TaskStatus.FAILED,
                    event_type="execution_interrupted",
                    values={"completed_at": now},
                    details=details,
                    now=now,
                )
                current = TaskStatus.FAILED
            if current.is_terminal:
                self._apply_transition(
                    session=session,
                    task_id=task_id,
                    current=current,
                    target=TaskStatus.PENDING,
                    event_type="orphan_reset",
                    values=dict(_REOPEN_CLEARED_FIELDS),
                    details=details,
                    now=now,
                )
                return

        self._add_event(
            session=session,
            task_id=task_id,
            event_type=action.resolution.value,
            status_from=current,
            status_to=current,
            details=details,
        )

    def _apply_transition(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: int,
        current: TaskStatus,
        target: TaskStatus,
        event_type: str,
        values: dict[str, Any],
        details: dict[str, object],
        now: datetime,
    ) -> None:
        ensure_transition(task_id=task_id, current=current, target=target)
        db_values = {
            key: to_db_datetime(value) if isinstance(value, datetime) else value
            for key, value in values.items()
        }
        result = session.exec(
            sa_update(TaskRow)
            .where(
                col(TaskRow.id) == task_id,
                col(TaskRow.status) == current.value,
            )
            .values(status=target.value, updated_at=now, **db_values),
        )
        if result.rowcount != 1:
            session.rollback()
            raise InvalidStateError(f"Task {task_id} changed concurrently; retry the operation.")
        self._add_event(
            session=session,
            task_id=task_id,
            event_type=event_type,
            status_from=current,
            status_to=target,
            details=details,
        )

    def _close_task_responses(
        self,
        *,
        session: Session,
        task_id: int,
        resolution: ResponseResolution,
        now: datetime,
    ) -> int:
        result = session.exec(
            sa_update(AgentResponseRow)
            .where(
                col(AgentResponseRow.task_id) == task_id,
                col(AgentResponseRow.status) == ResponseStatus.IN_PROGRESS.value,
            )
            .values(
                status=ResponseStatus.COMPLETED.value,
                completed_at=now,
                resolution=resolution.value,
            ),
        )
        return int(result.rowcount or 0)

    def _get_task_row(self, *, session: Session, task_id: int) -> TaskRow:
        row = session.exec(select(TaskRow).where(TaskRow.id == task_id)).one_or_none()
        if row is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: int,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEventRow(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_agent_view(row: AgentRow) -> AgentView:
    return AgentView(
        name=row.name,
        label=row.label,
        is_active=row.is_active,
        delivery_mode=DeliveryMode(row.delivery_mode),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_task_view(row: TaskRow) -> TaskView:
    assert row.id is not None
    return TaskView(
        task_id=row.id,
        issue_ref=row.issue_ref,
        summary=row.summary,
        created_by_agent=row.created_by_agent,
        target_agent=row.target_agent,
        status=TaskStatus(row.status),
        requires_approval=row.requires_approval,
        result=row.result,
        session_id=row.session_id,
        created_at=to_utc_aware_datetime(row.created_at),
        approved_at=_optional_aware(row.approved_at),
        notified_at=_optional_aware(row.notified_at),
        sent_at=_optional_aware(row.sent_at),
        completed_at=_optional_aware(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_response_view(row: AgentResponseRow) -> AgentResponseView:
    assert row.id is not None
    return AgentResponseView(
        response_id=row.id,
        agent_name=row.agent_name,
        task_id=row.task_id,
        status=ResponseStatus(row.status),
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=_optional_aware(row.completed_at),
        resolution=ResponseResolution(row.resolution) if row.resolution is not None else None,
        detail=row.detail,
    )


def _to_send_view(row: TaskSendRow) -> TaskSendView:
    assert row.id is not None
    return TaskSendView(
        send_id=row.id,
        task_id=row.task_id,
        agent_name=row.agent_name,
        sent_at=to_utc_aware_datetime(row.sent_at),
        delivery_method=DeliveryMethod(row.delivery_method),
        response=row.response,
    )


def _to_event_view(row: TaskEventRow) -> TaskEventView:
    assert row.id is not None
    return TaskEventView(
        event_id=row.id,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=json.loads(row.details_json) if row.details_json else {},
    )
