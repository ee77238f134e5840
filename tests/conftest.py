"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from report_pipeline.orchestrator.dispatcher import TaskDispatcher
from report_pipeline.orchestrator.models import EnqueueOptions, WorkerResultEvent
from report_pipeline.orchestrator.queue import SQLiteJobQueue
from report_pipeline.orchestrator.store import TaskStateStore


@dataclass(slots=True)
class EnqueuedJob:
    queue_name: str
    job_name: str
    payload: dict[str, Any]
    options: EnqueueOptions


@dataclass(slots=True)
class RecordingQueue:
    """In-memory ``JobQueue`` that records pushes and can be told to fail."""

    jobs: list[EnqueuedJob] = field(default_factory=list)
    fail_with: Exception | None = None

    def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict[str, Any],
        options: EnqueueOptions,
    ) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.jobs.append(EnqueuedJob(queue_name, job_name, payload, options))
        return f"job-{len(self.jobs)}"

    def job_names(self) -> list[str]:
        return [job.job_name for job in self.jobs]

    def last(self, job_name: str) -> EnqueuedJob:
        for job in reversed(self.jobs):
            if job.job_name == job_name:
                return job
        raise AssertionError(f"No job named {job_name}")


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[TaskStateStore]:
    task_store = TaskStateStore(tmp_path / "tasks.db")
    task_store.init_schema()
    yield task_store
    task_store.close()


@pytest.fixture()
def job_queue(store: TaskStateStore) -> Iterator[SQLiteJobQueue]:
    queue = SQLiteJobQueue(store.db_path)
    yield queue
    queue.close()


@pytest.fixture()
def recording_queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture()
def dispatcher(store: TaskStateStore, recording_queue: RecordingQueue) -> TaskDispatcher:
    return TaskDispatcher(store=store, queue=recording_queue)


@pytest.fixture()
def deliver(dispatcher: TaskDispatcher) -> Callable[..., list[str]]:
    """Report a worker result for a node, using its persisted task kind by default."""

    def _deliver(
        project_id: str,
        node_id: str,
        result: Any = None,
        *,
        kind: str | None = None,
        error: str | None = None,
        attempt: int | None = None,
    ) -> list[str]:
        if kind is None:
            task = dispatcher.store.get_task(project_id, node_id)
            assert task is not None, f"unknown task {node_id}"
            kind = task.kind
        return dispatcher.handle_worker_result(
            WorkerResultEvent(
                project_id=project_id,
                node_id=node_id,
                kind=kind,
                result=result,
                error=error,
                attempt=attempt,
            ),
        )

    return _deliver
