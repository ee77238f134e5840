"""Controllers for report pipeline CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from report_pipeline.config import Settings
from report_pipeline.orchestrator.dispatcher import TaskDispatcher
from report_pipeline.orchestrator.models import EnqueueOptions, TaskRecord, TaskStatus
from report_pipeline.orchestrator.queue import QueueNames, SQLiteJobQueue
from report_pipeline.orchestrator.services import ReportTaskOrchestrator, ScheduleProject
from report_pipeline.orchestrator.store import TaskStateStore
from report_pipeline.orchestrator.worker import QueueWorker, WorkerPool, WorkerRunSummary
from report_pipeline.planner.dag import build_dag
from report_pipeline.planner.models import AssetReadiness
from report_pipeline.planner.outline import load_outline


@dataclass(slots=True)
class PlanCommand:
    """CLI input for a dry-run plan."""

    outline_path: Path
    embed_ready: bool
    table_ready: bool


@dataclass(slots=True)
class ScheduleCommand:
    """CLI input for planning and starting a project."""

    db_path: Path | None
    project_id: str
    outline_path: Path
    embed_ready: bool
    table_ready: bool
    context_json: str | None
    chapter_context_path: Path | None
    reset: bool


@dataclass(slots=True)
class ResumeCommand:
    """CLI input for re-dispatching ready tasks."""

    db_path: Path | None
    project_id: str


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    project_id: str
    statuses: tuple[str, ...]


@dataclass(slots=True)
class InspectTaskCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    project_id: str
    node_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for local worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    concurrency: int | None


@dataclass(slots=True)
class SweepCommand:
    """CLI input for one timeout sweep."""

    db_path: Path | None


@dataclass(slots=True)
class ClearCommand:
    """CLI input for a destructive project reset."""

    db_path: Path | None
    project_id: str


@dataclass(slots=True)
class _Runtime:
    store: TaskStateStore
    queue: SQLiteJobQueue
    dispatcher: TaskDispatcher
    queue_names: QueueNames

    def orchestrator(self) -> ReportTaskOrchestrator:
        return ReportTaskOrchestrator(store=self.store, dispatcher=self.dispatcher)


class OrchestratorCliController:
    """Coordinates planning, scheduling, worker, and inspection CLI operations."""

    def plan(self, command: PlanCommand) -> list[str]:
        dag = build_dag(
            load_outline(command.outline_path),
            AssetReadiness(embed_ready=command.embed_ready, table_ready=command.table_ready),
        )
        lines = [f"Planned tasks: {dag.summary.total}"]
        lines.extend(
            f"  {kind}: {count}" for kind, count in dag.summary.by_kind.items() if count
        )
        for node in dag.nodes:
            depends = ", ".join(node.dependencies) or "-"
            lines.append(f"{node.id} kind={node.kind.value} depends_on={depends}")
        return lines

    def schedule(self, command: ScheduleCommand) -> list[str]:
        outline = load_outline(command.outline_path)
        project_context = _parse_json_object(command.context_json, label="--context")
        chapter_context = (
            _read_json_object(command.chapter_context_path)
            if command.chapter_context_path is not None
            else None
        )
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            orchestrator = runtime.orchestrator()
            result = orchestrator.schedule(
                ScheduleProject(
                    project_id=command.project_id,
                    outline=outline,
                    readiness=AssetReadiness(
                        embed_ready=command.embed_ready,
                        table_ready=command.table_ready,
                    ),
                    project_context=project_context,
                    chapter_context=chapter_context,
                    reset=command.reset,
                ),
            )
        return [
            f"Project scheduled: project_id={command.project_id} tasks={result.dag.summary.total}",
            f"Dispatched: {', '.join(result.dispatched) or '-'}",
        ]

    def resume(self, command: ResumeCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            orchestrator = runtime.orchestrator()
            dispatched = orchestrator.resume(command.project_id)
        return [f"Resumed project {command.project_id}: dispatched={len(dispatched)}"] + [
            f"  {node_id}" for node_id in dispatched
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        statuses = [TaskStatus(value.lower()) for value in command.statuses]
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            orchestrator = runtime.orchestrator()
            tasks = orchestrator.list_tasks(command.project_id, statuses or None)
            summary = runtime.store.summarize(command.project_id)

        if not tasks:
            return [f"No tasks for project {command.project_id}."]
        counts = " ".join(f"{status}={count}" for status, count in sorted(summary.items()))
        lines = [f"Summary: {counts}"]
        lines.extend(_task_line(task) for task in tasks)
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            details = runtime.store.get_task_details(command.project_id, command.node_id)
        if details is None:
            return [f"Task not found: {command.project_id}/{command.node_id}"]

        task = details.task
        lines = [
            f"Task: {task.node_id}",
            f"Project: {task.project_id}",
            f"Kind: {task.kind}",
            f"Label: {task.label}",
            f"Status: {task.status.value}",
            f"Retries: {task.retries}",
            f"Error: {task.error or '-'}",
            f"Deadline: {task.deadline_at.isoformat() if task.deadline_at else '-'}",
            f"Depends on: {', '.join(task.dependencies) or '-'}",
            f"Dependents: {', '.join(task.dependents) or '-'}",
            f"Metadata: {json.dumps(task.metadata, ensure_ascii=False, sort_keys=True)}",
            f"Result: {json.dumps(task.result, ensure_ascii=False, sort_keys=True)}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        concurrency = command.concurrency or settings.worker.concurrency
        with _runtime(settings) as runtime:
            queue_names = runtime.queue_names.all()
            if command.once or command.max_jobs is not None:
                worker = QueueWorker(
                    queue=runtime.queue,
                    dispatcher=runtime.dispatcher,
                    queue_names=queue_names,
                    worker_id=settings.worker.worker_id,
                    poll_interval_seconds=settings.worker.poll_interval_seconds,
                    stale_job_seconds=settings.queue.stale_job_seconds,
                )
                summary = (
                    worker.run_once()
                    if command.once
                    else worker.run_loop(max_jobs=command.max_jobs)
                )
            else:
                pool = WorkerPool(
                    queue=runtime.queue,
                    dispatcher=runtime.dispatcher,
                    queue_names=queue_names,
                    worker_id=settings.worker.worker_id,
                    concurrency=concurrency,
                    poll_interval_seconds=settings.worker.poll_interval_seconds,
                    stale_job_seconds=settings.queue.stale_job_seconds,
                )
                summary = pool.run()
        return [_summary_line(summary)]

    def sweep(self, command: SweepCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            timed_out = runtime.dispatcher.sweep_timeouts()
        return [f"Timed out tasks: {len(timed_out)}"] + [f"  {key}" for key in timed_out]

    def clear(self, command: ClearCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _runtime(settings) as runtime:
            deleted = runtime.store.clear_project(command.project_id)
        return [f"Project cleared: project_id={command.project_id} deleted_tasks={deleted}"]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _runtime(settings: Settings) -> Iterator[_Runtime]:
    store = TaskStateStore(settings.db_path, busy_timeout_ms=settings.busy_timeout_ms)
    queue = SQLiteJobQueue(settings.db_path, busy_timeout_ms=settings.busy_timeout_ms)
    store.init_schema()
    queue_names = QueueNames(prefix=settings.queue.prefix)
    dispatcher = TaskDispatcher(
        store=store,
        queue=queue,
        queue_names=queue_names,
        enqueue_options=EnqueueOptions(
            remove_on_complete=settings.queue.remove_on_complete,
            remove_on_fail=settings.queue.remove_on_fail,
        ),
        task_timeout_seconds=settings.dispatcher.task_timeout_seconds,
        autofix_timeout_seconds=settings.dispatcher.autofix_timeout_seconds,
        max_autofix_attempts=settings.dispatcher.max_autofix_attempts,
    )
    try:
        yield _Runtime(store=store, queue=queue, dispatcher=dispatcher, queue_names=queue_names)
    finally:
        queue.close()
        store.close()


def _parse_json_object(raw: str | None, *, label: str) -> dict[str, Any]:
    if raw is None or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"{label} is not valid JSON: {error}") from error
    if not isinstance(value, dict):
        raise ValueError(f"{label} must be a JSON object.")
    return value


def _read_json_object(path: Path) -> dict[str, Any]:
    return _parse_json_object(path.read_text("utf-8"), label=str(path))


def _task_line(task: TaskRecord) -> str:
    line = f"{task.node_id} kind={task.kind} status={task.status.value} retries={task.retries}"
    if task.error:
        line += f" error={task.error}"
    return line


def _summary_line(summary: WorkerRunSummary) -> str:
    return (
        "Worker summary: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} idle_polls={summary.idle_polls}"
    )
