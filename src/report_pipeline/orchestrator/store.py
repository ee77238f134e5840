"""Durable task state store backed by SQLModel + SQLite."""

from __future__ import annotations

from collections.abc import Collection, Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, text
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from report_pipeline.orchestrator.errors import DagIntegrityError, TaskNotFoundError
from report_pipeline.orchestrator.models import (
    TaskDetails,
    TaskEventView,
    TaskRecord,
    TaskStatus,
)
from report_pipeline.planner.dag import assert_acyclic
from report_pipeline.planner.models import TaskDag
from report_pipeline.storage.alembic_runner import upgrade_head
from report_pipeline.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from report_pipeline.storage.sqlmodel_models import TaskState, TaskStateEvent

_TASK_COLUMNS = ", ".join(f"task_state.{column.name}" for column in TaskState.__table__.columns)

# One statement, so readiness is judged against a single consistent snapshot:
# a pending row is ready when no dependency id is missing or not completed.
_READY_TASKS_SQL = f"""
SELECT {_TASK_COLUMNS}
FROM task_state
WHERE task_state.project_id = :project_id
  AND task_state.status = :pending
  AND NOT EXISTS (
      SELECT 1
      FROM json_each(task_state.dependencies_json) AS dep
      LEFT JOIN task_state AS upstream
        ON upstream.project_id = task_state.project_id
       AND upstream.node_id = dep.value
      WHERE upstream.status IS NULL OR upstream.status != :completed
  )
ORDER BY task_state.seq ASC
"""


class TaskStateStore:
    """Task graph persistence facade scoped by project id."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def persist_dag(self, project_id: str, dag: TaskDag) -> None:
        """Insert every node as pending, then link dependents.

        Rows are inserted before any dependent list is touched, so each edge
        source already exists when its target is appended.
        """

        assert_acyclic(dag)
        node_ids = [node.id for node in dag.nodes]
        now = utc_now()
        with Session(self.engine) as session:
            existing = session.exec(
                select(TaskState.node_id).where(
                    TaskState.project_id == project_id,
                    col(TaskState.node_id).in_(node_ids),
                ),
            ).all()
            if existing:
                raise DagIntegrityError(
                    f"Project {project_id} already has tasks: {', '.join(sorted(existing))}. "
                    "Clear the project before scheduling again.",
                )

            rows: dict[str, TaskState] = {}
            for seq, node in enumerate(dag.nodes):
                row = TaskState(
                    project_id=project_id,
                    node_id=node.id,
                    seq=seq,
                    kind=node.kind.value,
                    label=node.label,
                    outline_id=node.outline_id,
                    status=TaskStatus.PENDING.value,
                    dependencies_json=dump_json(list(dict.fromkeys(node.dependencies))),
                    dependents_json="[]",
                    metadata_json=dump_json(node.metadata),
                    retries=0,
                    created_at=now,
                    updated_at=now,
                )
                rows[node.id] = row
                session.add(row)
            session.flush()

            links = [(edge.source, edge.target) for edge in dag.edges]
            links.extend(
                (dependency, node.id) for node in dag.nodes for dependency in node.dependencies
            )
            dependents: dict[str, list[str]] = {node_id: [] for node_id in node_ids}
            for source, target in links:
                if target not in dependents[source]:
                    dependents[source].append(target)
            for node_id, values in dependents.items():
                if values:
                    rows[node_id].dependents_json = dump_json(values)
                    session.add(rows[node_id])

            for node in dag.nodes:
                self._add_event(
                    session=session,
                    project_id=project_id,
                    node_id=node.id,
                    event_type="created",
                    status_from=None,
                    status_to=TaskStatus.PENDING,
                    details={"kind": node.kind.value},
                )
            session.commit()

    def add_dependent(self, project_id: str, source_id: str, target_id: str) -> bool:
        """Append ``target_id`` to the source row's dependents; no-op if present."""

        with Session(self.engine) as session:
            row = self._get_row(session=session, project_id=project_id, node_id=source_id)
            values = load_json(row.dependents_json, [])
            if target_id in values:
                return False
            values.append(target_id)
            row.dependents_json = dump_json(values)
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            return True

    def list_ready_tasks(self, project_id: str) -> list[TaskRecord]:
        """Pending tasks whose every dependency is completed."""

        statement = select(TaskState).from_statement(
            text(_READY_TASKS_SQL).columns(*TaskState.__table__.columns),
        )
        with Session(self.engine) as session:
            rows = (
                session.exec(
                    statement,
                    params={
                        "project_id": project_id,
                        "pending": TaskStatus.PENDING.value,
                        "completed": TaskStatus.COMPLETED.value,
                    },
                )
                .scalars()
                .all()
            )
            return [_to_record(row) for row in rows]

    def update_status(  # noqa: PLR0913
        self,
        project_id: str,
        node_id: str,
        status: TaskStatus,
        *,
        expected: Collection[TaskStatus] | None = None,
        result: Any = None,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
        retries: int | None = None,
        deadline_at: datetime | None = None,
        clear_deadline: bool = False,
        event_type: str = "status_changed",
    ) -> bool:
        """Partially update one task; fields left as ``None`` are unchanged.

        With ``expected`` the write only applies while the row is still in one
        of those statuses and returns ``False`` otherwise, which makes duplicate
        deliveries harmless. Without ``expected`` a missing row raises.
        """

        now = utc_now()
        with Session(self.engine) as session:
            current = session.exec(
                select(TaskState.status).where(
                    TaskState.project_id == project_id,
                    TaskState.node_id == node_id,
                ),
            ).one_or_none()
            if current is None:
                if expected is not None:
                    return False
                raise TaskNotFoundError(project_id, node_id)
            previous = TaskStatus(current)
            if expected is not None and previous not in set(expected):
                return False

            values: dict[str, Any] = {"status": status.value, "updated_at": now}
            if result is not None:
                values["result_json"] = dump_json(result)
            if error is not None:
                values["error"] = error
            if metadata is not None:
                values["metadata_json"] = dump_json(metadata)
            if retries is not None:
                values["retries"] = retries
            if deadline_at is not None:
                values["deadline_at"] = to_db_datetime(deadline_at)
            elif clear_deadline:
                values["deadline_at"] = None

            changed = session.exec(
                sa_update(TaskState)
                .where(
                    col(TaskState.project_id) == project_id,
                    col(TaskState.node_id) == node_id,
                    col(TaskState.status) == previous.value,
                )
                .values(**values),
            )
            if changed.rowcount != 1:
                session.rollback()
                return False

            details: dict[str, object] = {}
            if error is not None:
                details["error"] = error
            if retries is not None:
                details["retries"] = retries
            self._add_event(
                session=session,
                project_id=project_id,
                node_id=node_id,
                event_type=event_type,
                status_from=previous,
                status_to=status,
                details=details,
            )
            session.commit()
            return True

    def claim_for_dispatch(self, project_id: str, node_id: str, *, deadline_at: datetime) -> bool:
        """Move a pending task to running, stamping its completion deadline."""

        return self.update_status(
            project_id,
            node_id,
            TaskStatus.RUNNING,
            expected=(TaskStatus.PENDING,),
            deadline_at=deadline_at,
            event_type="dispatched",
        )

    def mark_blocked(
        self,
        project_id: str,
        node_ids: Iterable[str],
        *,
        reason: str | None = None,
    ) -> list[str]:
        """Bulk pending → blocked. Returns the ids that actually changed."""

        changed_ids: list[str] = []
        now = utc_now()
        with Session(self.engine) as session:
            for node_id in dict.fromkeys(node_ids):
                changed = session.exec(
                    sa_update(TaskState)
                    .where(
                        col(TaskState.project_id) == project_id,
                        col(TaskState.node_id) == node_id,
                        col(TaskState.status) == TaskStatus.PENDING.value,
                    )
                    .values(
                        status=TaskStatus.BLOCKED.value,
                        deadline_at=None,
                        updated_at=now,
                    ),
                )
                if changed.rowcount != 1:
                    continue
                changed_ids.append(node_id)
                self._add_event(
                    session=session,
                    project_id=project_id,
                    node_id=node_id,
                    event_type="blocked",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.BLOCKED,
                    details={"reason": reason} if reason else {},
                )
            session.commit()
        return changed_ids

    def touch_task(self, project_id: str, node_id: str) -> bool:
        """Refresh ``updated_at`` for a running task."""

        with Session(self.engine) as session:
            changed = session.exec(
                sa_update(TaskState)
                .where(
                    col(TaskState.project_id) == project_id,
                    col(TaskState.node_id) == node_id,
                    col(TaskState.status) == TaskStatus.RUNNING.value,
                )
                .values(updated_at=utc_now()),
            )
            session.commit()
            return changed.rowcount == 1

    def get_task(self, project_id: str, node_id: str) -> TaskRecord | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TaskState).where(
                    TaskState.project_id == project_id,
                    TaskState.node_id == node_id,
                ),
            ).one_or_none()
            return _to_record(row) if row is not None else None

    def get_tasks(self, project_id: str, node_ids: Iterable[str]) -> list[TaskRecord]:
        """Batch fetch in the order requested; unknown ids are omitted."""

        wanted = list(dict.fromkeys(node_ids))
        if not wanted:
            return []
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskState).where(
                    TaskState.project_id == project_id,
                    col(TaskState.node_id).in_(wanted),
                ),
            ).all()
            by_id = {row.node_id: _to_record(row) for row in rows}
        return [by_id[node_id] for node_id in wanted if node_id in by_id]

    def list_tasks(
        self,
        project_id: str,
        *,
        statuses: Collection[TaskStatus] | None = None,
    ) -> list[TaskRecord]:
        """All tasks of a project in plan order, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(TaskState)
                .where(TaskState.project_id == project_id)
                .order_by(col(TaskState.seq).asc())
            )
            if statuses:
                statement = statement.where(
                    col(TaskState.status).in_([status.value for status in statuses]),
                )
            rows = session.exec(statement).all()
            return [_to_record(row) for row in rows]

    def list_overdue_tasks(self, *, now: datetime | None = None) -> list[TaskRecord]:
        """Running tasks and autofix pauses past their deadline, across projects."""

        cutoff = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskState)
                .where(
                    col(TaskState.status).in_(
                        [TaskStatus.RUNNING.value, TaskStatus.BLOCKED.value],
                    ),
                    col(TaskState.deadline_at).is_not(None),
                    col(TaskState.deadline_at) < cutoff,
                )
                .order_by(col(TaskState.deadline_at).asc()),
            ).all()
            return [_to_record(row) for row in rows]

    def summarize(self, project_id: str) -> dict[str, int]:
        """Task count per status."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskState.status, func.count())
                .where(TaskState.project_id == project_id)
                .group_by(TaskState.status),
            ).all()
        return {str(status): int(count) for status, count in rows}

    def clear_project(self, project_id: str) -> int:
        """Delete every task of a project. Returns deleted row count."""

        with Session(self.engine) as session:
            session.exec(
                sa_delete(TaskStateEvent).where(col(TaskStateEvent.project_id) == project_id),
            )
            deleted = session.exec(
                sa_delete(TaskState).where(col(TaskState.project_id) == project_id),
            )
            session.commit()
            return int(deleted.rowcount or 0)

    def get_task_details(self, project_id: str, node_id: str) -> TaskDetails | None:
        """Return task record with its transition history."""

        task = self.get_task(project_id, node_id)
        if task is None:
            return None
        return TaskDetails(task=task, events=self.list_task_events(project_id, node_id))

    def list_task_events(self, project_id: str, node_id: str) -> list[TaskEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskStateEvent)
                .where(
                    TaskStateEvent.project_id == project_id,
                    TaskStateEvent.node_id == node_id,
                )
                .order_by(col(TaskStateEvent.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in rows:
            details = load_json(row.details_json, {})
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    project_id=row.project_id,
                    node_id=row.node_id,
                    event_type=row.event_type,
                    status_from=(
                        TaskStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details if isinstance(details, dict) else {},
                ),
            )
        return events

    def _get_row(self, *, session: Session, project_id: str, node_id: str) -> TaskState:
        row = session.exec(
            select(TaskState).where(
                TaskState.project_id == project_id,
                TaskState.node_id == node_id,
            ),
        ).one_or_none()
        if row is None:
            raise TaskNotFoundError(project_id, node_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        project_id: str,
        node_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskStateEvent(
                project_id=project_id,
                node_id=node_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=utc_now(),
            ),
        )


def _to_record(row: TaskState) -> TaskRecord:
    return TaskRecord(
        project_id=row.project_id,
        node_id=row.node_id,
        kind=row.kind,
        label=row.label,
        outline_id=row.outline_id,
        status=TaskStatus(row.status),
        dependencies=list(load_json(row.dependencies_json, [])),
        dependents=list(load_json(row.dependents_json, [])),
        metadata=dict(load_json(row.metadata_json, {})),
        result=load_json(row.result_json, None),
        error=row.error,
        retries=row.retries,
        deadline_at=(
            to_utc_aware_datetime(row.deadline_at) if row.deadline_at is not None else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
