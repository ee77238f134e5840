"""Domain models for task state, worker events, and queue jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


class ProgressStatus(str, Enum):
    """Progress states a worker may report while holding a job."""

    RUNNING = "running"
    FAILED = "failed"
    RETRYING = "retrying"


class JobStatus(str, Enum):
    """Local queue job lifecycle."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class TaskRecord:
    """Readable task row for dispatcher and CLI logic."""

    project_id: str
    node_id: str
    kind: str
    label: str
    outline_id: str | None
    status: TaskStatus
    dependencies: list[str]
    dependents: list[str]
    metadata: dict[str, Any]
    result: Any
    error: str | None
    retries: int
    deadline_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task transition entry for audit trail."""

    event_id: int
    project_id: str
    node_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task record with event stream."""

    task: TaskRecord
    events: list[TaskEventView]


@dataclass(slots=True)
class WorkerResultEvent:
    """Terminal outcome reported by a worker for one job."""

    project_id: str
    node_id: str
    kind: str
    result: Any = None
    error: str | None = None
    # Verify attempt the job was built for; results for an older attempt are dropped.
    attempt: int | None = None


@dataclass(slots=True)
class WorkerProgressEvent:
    """Intermediate progress reported by a worker for one job."""

    project_id: str
    node_id: str
    kind: str
    status: ProgressStatus
    error: str | None = None
    attempt: int | None = None


@dataclass(slots=True)
class EnqueueOptions:
    """Retention of finished jobs: ``True`` removes, ``False`` keeps all, N keeps last N."""

    remove_on_complete: bool | int = 1000
    remove_on_fail: bool | int = 5000


@dataclass(slots=True)
class QueueJobView:
    """Claimed or inspected queue job."""

    job_id: str
    queue_name: str
    job_name: str
    status: JobStatus
    payload: dict[str, Any]
    attempts: int
    worker_id: str | None
    error: str | None
    created_at: datetime
    updated_at: datetime
