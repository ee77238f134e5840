"""Use-case services for report task orchestration."""

from __future__ import annotations

from collections.abc import Collection, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from report_pipeline.orchestrator.dispatcher import TaskDispatcher
from report_pipeline.orchestrator.models import TaskRecord, TaskStatus
from report_pipeline.orchestrator.store import TaskStateStore
from report_pipeline.planner.dag import build_dag
from report_pipeline.planner.models import AssetReadiness, OutlineNode, TaskDag


@dataclass(slots=True)
class ScheduleProject:
    """High-level command to plan and start one project run."""

    project_id: str
    outline: Sequence[OutlineNode]
    readiness: AssetReadiness = field(default_factory=AssetReadiness)
    project_context: Mapping[str, Any] | None = None
    chapter_context: Mapping[str, Mapping[str, Any]] | None = None
    max_autofix_attempts: int | None = None
    reset: bool = True


@dataclass(slots=True)
class ScheduleResult:
    """Planned DAG plus the task ids dispatched immediately."""

    dag: TaskDag
    dispatched: list[str]


class ReportTaskOrchestrator:
    """Coordinates planning, scheduling, and resumption for report projects."""

    def __init__(self, *, store: TaskStateStore, dispatcher: TaskDispatcher) -> None:
        self.store = store
        self.dispatcher = dispatcher

    def schedule(self, command: ScheduleProject) -> ScheduleResult:
        """Plan the outline and hand the DAG to the dispatcher."""

        if not command.project_id.strip():
            raise ValueError("project_id must not be empty.")
        dag = build_dag(
            command.outline,
            command.readiness,
            command.project_context,
            max_autofix_attempts=command.max_autofix_attempts,
            chapter_context=command.chapter_context,
        )
        if not dag.nodes:
            raise ValueError(
                f"Outline for project {command.project_id} produced no tasks. "
                "Every entry needs a chapter_number and a title.",
            )
        dispatched = self.dispatcher.schedule(command.project_id, dag, reset=command.reset)
        return ScheduleResult(dag=dag, dispatched=dispatched)

    def resume(self, project_id: str) -> list[str]:
        """Re-dispatch whatever is ready according to persisted state."""

        return self.dispatcher.enqueue_ready_tasks(project_id)

    def list_tasks(
        self,
        project_id: str,
        statuses: Collection[TaskStatus] | None = None,
    ) -> list[TaskRecord]:
        return self.store.list_tasks(project_id, statuses=statuses)
