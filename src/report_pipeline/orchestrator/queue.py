"""Named job queues: one per task kind plus the autofix queue.

The dispatcher only needs ``JobQueue.enqueue``. ``SQLiteJobQueue`` is a
durable single-machine implementation of that contract with at-least-once
delivery: a job held by a worker for longer than the stale window is released back
to ``queued`` and delivered again.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from report_pipeline.orchestrator.errors import UnknownTaskKindError
from report_pipeline.orchestrator.models import EnqueueOptions, JobStatus, QueueJobView
from report_pipeline.planner.models import AUTOFIX_KIND, TaskKind
from report_pipeline.storage.alembic_runner import upgrade_head
from report_pipeline.storage.common import (
    build_sqlite_engine,
    dump_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from report_pipeline.storage.sqlmodel_models import QueueJob

_QUEUE_SUFFIX_BY_KIND = {
    TaskKind.MATERIALIZE_FIXED.value: "materializer",
    TaskKind.PREPARE.value: "planner",
    TaskKind.RETRIEVE.value: "retriever",
    TaskKind.WRITE.value: "writer",
    TaskKind.VERIFY.value: "verifier",
    TaskKind.ASSEMBLE.value: "assembler",
    AUTOFIX_KIND: "autofixer",
}


@dataclass(slots=True, frozen=True)
class QueueNames:
    """Queue naming scheme, ``<prefix>-<role>``."""

    prefix: str = "report"

    def for_kind(self, kind: str | TaskKind) -> str:
        key = kind.value if isinstance(kind, TaskKind) else kind
        suffix = _QUEUE_SUFFIX_BY_KIND.get(key)
        if suffix is None:
            raise UnknownTaskKindError(f"Unknown task kind: {kind!r}")
        return f"{self.prefix}-{suffix}"

    def kind_for(self, queue_name: str) -> str:
        for kind, suffix in _QUEUE_SUFFIX_BY_KIND.items():
            if queue_name == f"{self.prefix}-{suffix}":
                return kind
        raise UnknownTaskKindError(f"Queue {queue_name!r} does not belong to any task kind")

    def all(self) -> tuple[str, ...]:
        return tuple(f"{self.prefix}-{suffix}" for suffix in _QUEUE_SUFFIX_BY_KIND.values())


class JobQueue(Protocol):
    """Enqueue side of the queue substrate."""

    def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict[str, Any],
        options: EnqueueOptions,
    ) -> str:
        """Push one job and return its id."""


class SQLiteJobQueue:
    """Durable multi-queue job store backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict[str, Any],
        options: EnqueueOptions,
    ) -> str:
        now = utc_now()
        job_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                QueueJob(
                    job_id=job_id,
                    queue_name=queue_name,
                    job_name=job_name,
                    status=JobStatus.QUEUED.value,
                    payload_json=dump_json(payload),
                    attempts=0,
                    remove_on_complete=_retention_limit(options.remove_on_complete),
                    remove_on_fail=_retention_limit(options.remove_on_fail),
                    created_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
        return job_id

    def claim(self, queue_names: Sequence[str], *, worker_id: str) -> QueueJobView | None:
        """Atomically claim the oldest queued job from any of ``queue_names``."""

        if not queue_names:
            return None
        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueJob)
                    .where(
                        col(QueueJob.queue_name).in_(list(queue_names)),
                        QueueJob.status == JobStatus.QUEUED.value,
                    )
                    .order_by(col(QueueJob.created_at).asc(), col(QueueJob.job_id).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueueJob)
                    .where(
                        col(QueueJob.job_id) == candidate.job_id,
                        col(QueueJob.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        attempts=candidate.attempts + 1,
                        worker_id=worker_id,
                        claimed_at=now,
                        heartbeat_at=now,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                claimed = session.exec(
                    select(QueueJob).where(QueueJob.job_id == candidate.job_id),
                ).one()
                return _to_job_view(claimed)

    def complete(self, job_id: str) -> bool:
        return self._finish(job_id, status=JobStatus.COMPLETED, error=None)

    def fail(self, job_id: str, error: str) -> bool:
        return self._finish(job_id, status=JobStatus.FAILED, error=error)

    def release(self, job_id: str) -> bool:
        """Put one active job back on its queue for redelivery."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.status) == JobStatus.ACTIVE.value,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    worker_id=None,
                    claimed_at=None,
                    heartbeat_at=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return result.rowcount == 1

    def release_stale(self, *, stale_after: timedelta) -> int:
        """Return jobs active for longer than ``stale_after`` to the queue."""

        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.status) == JobStatus.ACTIVE.value,
                    col(QueueJob.heartbeat_at) < cutoff,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    worker_id=None,
                    claimed_at=None,
                    heartbeat_at=None,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def get_job(self, job_id: str) -> QueueJobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(QueueJob).where(QueueJob.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        queue_name: str | None = None,
        status: JobStatus | None = None,
    ) -> list[QueueJobView]:
        with Session(self.engine) as session:
            statement = select(QueueJob).order_by(
                col(QueueJob.created_at).asc(),
                col(QueueJob.job_id).asc(),
            )
            if queue_name is not None:
                statement = statement.where(QueueJob.queue_name == queue_name)
            if status is not None:
                statement = statement.where(QueueJob.status == status.value)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def count(self, *, queue_name: str | None = None, status: JobStatus | None = None) -> int:
        with Session(self.engine) as session:
            statement = select(func.count()).select_from(QueueJob)
            if queue_name is not None:
                statement = statement.where(QueueJob.queue_name == queue_name)
            if status is not None:
                statement = statement.where(QueueJob.status == status.value)
            return int(session.exec(statement).one())

    def count_open(self, queue_names: Sequence[str]) -> int:
        """Queued plus active jobs across ``queue_names``, read in one statement."""

        with Session(self.engine) as session:
            statement = (
                select(func.count())
                .select_from(QueueJob)
                .where(
                    col(QueueJob.queue_name).in_(list(queue_names)),
                    col(QueueJob.status).in_(
                        [JobStatus.QUEUED.value, JobStatus.ACTIVE.value],
                    ),
                )
            )
            return int(session.exec(statement).one())

    def _finish(self, job_id: str, *, status: JobStatus, error: str | None) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(select(QueueJob).where(QueueJob.job_id == job_id)).one_or_none()
            if row is None:
                return False
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.status) == JobStatus.ACTIVE.value,
                )
                .values(status=status.value, error=error, finished_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            keep = row.remove_on_complete if status == JobStatus.COMPLETED else row.remove_on_fail
            if keep >= 0:
                retained = (
                    select(QueueJob.job_id)
                    .where(
                        QueueJob.queue_name == row.queue_name,
                        QueueJob.status == status.value,
                    )
                    .order_by(col(QueueJob.finished_at).desc(), col(QueueJob.job_id).desc())
                    .limit(keep)
                )
                session.exec(
                    sa_delete(QueueJob).where(
                        col(QueueJob.queue_name) == row.queue_name,
                        col(QueueJob.status) == status.value,
                        col(QueueJob.job_id).not_in(retained),
                    ),
                )
            session.commit()
            return True


def _retention_limit(value: bool | int) -> int:
    """Encode retention: -1 keeps everything, 0 removes at once, N keeps last N."""

    if value is True:
        return 0
    if value is False:
        return -1
    return max(0, int(value))


def _to_job_view(row: QueueJob) -> QueueJobView:
    payload = json.loads(row.payload_json)
    return QueueJobView(
        job_id=row.job_id,
        queue_name=row.queue_name,
        job_name=row.job_name,
        status=JobStatus(row.status),
        payload=payload if isinstance(payload, dict) else {},
        attempts=row.attempts,
        worker_id=row.worker_id,
        error=row.error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
