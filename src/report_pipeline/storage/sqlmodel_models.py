"""SQLModel ORM tables for task state and the local job queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKeyConstraint, Index, Text
from sqlmodel import Field, SQLModel


class TaskState(SQLModel, table=True):
    __tablename__ = "task_state"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_task_state_project_status", "project_id", "status"),
        Index("idx_task_state_deadline", "status", "deadline_at"),
    )

    project_id: str = Field(primary_key=True)
    node_id: str = Field(primary_key=True)
    seq: int = Field(default=0)
    kind: str = Field(index=True)
    label: str = ""
    outline_id: str | None = None
    status: str
    dependencies_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    dependents_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    retries: int = Field(default=0)
    deadline_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskStateEvent(SQLModel, table=True):
    __tablename__ = "task_state_events"  # type: ignore[bad-override]
    __table_args__ = (
        ForeignKeyConstraint(
            ["project_id", "node_id"],
            ["task_state.project_id", "task_state.node_id"],
            ondelete="CASCADE",
        ),
        Index("idx_task_state_events_node_time", "project_id", "node_id", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    project_id: str
    node_id: str
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueJob(SQLModel, table=True):
    __tablename__ = "queue_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queue_jobs_claim", "queue_name", "status", "created_at"),)

    job_id: str = Field(primary_key=True)
    queue_name: str = Field(index=True)
    job_name: str
    status: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    attempts: int = Field(default=0)
    worker_id: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text))
    remove_on_complete: int = Field(default=-1)
    remove_on_fail: int = Field(default=-1)
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
