"""Task state store, audit events, and local job queue."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "task_state",
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("node_id", sa.String(), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("label", sa.String(), nullable=False, server_default=""),
        sa.Column("outline_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("dependencies_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("dependents_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("metadata_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("retries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deadline_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("project_id", "node_id"),
    )
    op.create_index("ix_task_state_kind", "task_state", ["kind"], unique=False)
    op.create_index(
        "idx_task_state_project_status",
        "task_state",
        ["project_id", "status"],
        unique=False,
    )
    op.create_index(
        "idx_task_state_deadline",
        "task_state",
        ["status", "deadline_at"],
        unique=False,
    )

    op.create_table(
        "task_state_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("node_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["project_id", "node_id"],
            ["task_state.project_id", "task_state.node_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_task_state_events_event_type",
        "task_state_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_task_state_events_node_time",
        "task_state_events",
        ["project_id", "node_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "queue_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("job_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("remove_on_complete", sa.Integer(), nullable=False, server_default="-1"),
        sa.Column("remove_on_fail", sa.Integer(), nullable=False, server_default="-1"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_queue_jobs_queue_name", "queue_jobs", ["queue_name"], unique=False)
    op.create_index("ix_queue_jobs_status", "queue_jobs", ["status"], unique=False)
    op.create_index(
        "idx_queue_jobs_claim",
        "queue_jobs",
        ["queue_name", "status", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_queue_jobs_claim", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_status", table_name="queue_jobs")
    op.drop_index("ix_queue_jobs_queue_name", table_name="queue_jobs")
    op.drop_table("queue_jobs")
    op.drop_index("idx_task_state_events_node_time", table_name="task_state_events")
    op.drop_index("ix_task_state_events_event_type", table_name="task_state_events")
    op.drop_table("task_state_events")
    op.drop_index("idx_task_state_deadline", table_name="task_state")
    op.drop_index("idx_task_state_project_status", table_name="task_state")
    op.drop_index("ix_task_state_kind", table_name="task_state")
    op.drop_table("task_state")
