"""Event-driven task dispatcher with the verify/autofix repair protocol.

The dispatcher keeps no state between calls. Every transition is a
compare-and-swap against the status the handler expects, so a duplicate or
stale worker event changes nothing and several dispatcher instances can share
one store.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from report_pipeline.orchestrator.errors import InvalidVerifyOutcomeError
from report_pipeline.orchestrator.models import (
    EnqueueOptions,
    ProgressStatus,
    TaskRecord,
    TaskStatus,
    WorkerProgressEvent,
    WorkerResultEvent,
)
from report_pipeline.orchestrator.payloads import build_autofix_payload, build_job_payload
from report_pipeline.orchestrator.queue import JobQueue, QueueNames
from report_pipeline.orchestrator.store import TaskStateStore
from report_pipeline.orchestrator.verification import (
    HARD_FAIL_ERROR,
    VerifyOutcome,
    VerifyStatus,
    decide_autofix,
    is_structured_verify_result,
)
from report_pipeline.planner.models import AUTOFIX_KIND, TaskDag, TaskKind
from report_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)

_AUTOFIX_PAUSE_KEY = "pending_patches"


class TaskDispatcher:
    """Persists DAGs, pushes ready tasks, and reconciles worker events."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStateStore,
        queue: JobQueue,
        queue_names: QueueNames | None = None,
        enqueue_options: EnqueueOptions | None = None,
        task_timeout_seconds: int = 1_800,
        autofix_timeout_seconds: int = 600,
        max_autofix_attempts: int | None = 3,
    ) -> None:
        self.store = store
        self.queue = queue
        self.queue_names = queue_names or QueueNames()
        self.enqueue_options = enqueue_options or EnqueueOptions()
        self.task_timeout_seconds = task_timeout_seconds
        self.autofix_timeout_seconds = autofix_timeout_seconds
        self.max_autofix_attempts = max_autofix_attempts

    def schedule(self, project_id: str, dag: TaskDag, *, reset: bool = True) -> list[str]:
        """Persist ``dag`` for the project and dispatch its initially ready tasks."""

        if reset:
            cleared = self.store.clear_project(project_id)
            if cleared:
                logger.info(
                    "Cleared %d task(s) of project %s before scheduling",
                    cleared,
                    project_id,
                )
        self.store.persist_dag(project_id, dag)
        logger.info(
            "Persisted %d task(s) for project %s",
            dag.summary.total,
            project_id,
        )
        return self.enqueue_ready_tasks(project_id)

    def enqueue_ready_tasks(self, project_id: str) -> list[str]:
        """Dispatch every pending task whose dependencies are all completed.

        Readiness is derived from persisted state only, which makes this the
        resume primitive after a restart.
        """

        dispatched: list[str] = []
        for task in self.store.list_ready_tasks(project_id):
            if self._dispatch(task):
                dispatched.append(task.node_id)
        if dispatched:
            logger.debug("Dispatched %s for project %s", ", ".join(dispatched), project_id)
        return dispatched

    def handle_worker_progress(self, event: WorkerProgressEvent) -> list[str]:
        """Record intermediate progress. Returns ids of tasks newly blocked."""

        if event.status in {ProgressStatus.RUNNING, ProgressStatus.RETRYING}:
            if event.kind != AUTOFIX_KIND:
                self.store.touch_task(event.project_id, event.node_id)
            if event.status == ProgressStatus.RETRYING:
                logger.info(
                    "Worker retrying %s/%s (%s)",
                    event.project_id,
                    event.node_id,
                    event.kind,
                )
            return []

        if self._is_stale_attempt(event.project_id, event.node_id, event.attempt):
            return []
        error = event.error or "worker failed"
        if event.kind == AUTOFIX_KIND:
            return self.handle_autofix_failure(event.project_id, event.node_id, error)
        blocked = self._fail_task(
            event.project_id,
            event.node_id,
            error,
            expected=TaskStatus.RUNNING,
        )
        return blocked or []

    def handle_worker_result(self, event: WorkerResultEvent) -> list[str]:
        """Apply a terminal worker outcome. Returns ids dispatched as a consequence."""

        if self._is_stale_attempt(event.project_id, event.node_id, event.attempt):
            return []
        if event.kind == AUTOFIX_KIND:
            if event.error is not None:
                self.handle_autofix_failure(event.project_id, event.node_id, event.error)
                return []
            return self.handle_autofix_success(event.project_id, event.node_id, event.result)

        if event.error is not None:
            self._fail_task(
                event.project_id,
                event.node_id,
                event.error,
                expected=TaskStatus.RUNNING,
            )
            return []

        if event.kind == TaskKind.VERIFY.value and is_structured_verify_result(event.result):
            return self._handle_verify_result(event)

        return self._complete_task(event.project_id, event.node_id, event.result)

    def handle_autofix_success(self, project_id: str, node_id: str, result: Any) -> list[str]:
        """Merge the patched draft and send the verify task through verification again."""

        task = self._paused_for_autofix(project_id, node_id)
        if task is None:
            return []

        patched = result
        if isinstance(result, Mapping) and "draft" in result:
            patched = result["draft"]
        metadata = dict(task.metadata)
        metadata["draft"] = patched
        metadata.pop(_AUTOFIX_PAUSE_KEY, None)
        metadata.pop("violations", None)
        changed = self.store.update_status(
            project_id,
            node_id,
            TaskStatus.PENDING,
            expected=(TaskStatus.BLOCKED,),
            metadata=metadata,
            clear_deadline=True,
            event_type="autofix_applied",
        )
        if not changed:
            logger.info("Ignoring autofix result for %s/%s: task moved on", project_id, node_id)
            return []

        logger.info(
            "Autofix applied to %s/%s (attempt %d), re-verifying",
            project_id,
            node_id,
            task.retries,
        )
        refreshed = self.store.get_task(project_id, node_id)
        if refreshed is not None and self._dispatch(refreshed):
            return [node_id]
        return []

    def handle_autofix_failure(self, project_id: str, node_id: str, error: str) -> list[str]:
        """Escalate a failed repair to a terminal failure of the verify task."""

        if self._paused_for_autofix(project_id, node_id) is None:
            return []
        blocked = self._fail_task(
            project_id,
            node_id,
            error,
            expected=TaskStatus.BLOCKED,
            event_type="autofix_failed",
        )
        return blocked or []

    def sweep_timeouts(self, *, now: datetime | None = None) -> list[str]:
        """Fail overdue tasks in every project. Returns ``project:node`` keys."""

        timed_out: list[str] = []
        for task in self.store.list_overdue_tasks(now=now):
            if task.status == TaskStatus.RUNNING:
                error = f"task timed out after {self.task_timeout_seconds}s"
            else:
                error = f"autofix timed out after {self.autofix_timeout_seconds}s"
            failed = self._fail_task(
                task.project_id,
                task.node_id,
                error,
                expected=task.status,
                event_type="timed_out",
            )
            if failed is not None:
                timed_out.append(f"{task.project_id}:{task.node_id}")
        return timed_out

    def _dispatch(self, task: TaskRecord) -> bool:
        dependencies = {
            record.node_id: record
            for record in self.store.get_tasks(task.project_id, task.dependencies)
        }
        payload = build_job_payload(task, dependencies)
        queue_name = self.queue_names.for_kind(task.kind)

        deadline_at = utc_now() + timedelta(seconds=self.task_timeout_seconds)
        claimed = self.store.claim_for_dispatch(
            task.project_id,
            task.node_id,
            deadline_at=deadline_at,
        )
        if not claimed:
            logger.info("Skipping %s/%s: already dispatched", task.project_id, task.node_id)
            return False

        try:
            self.queue.enqueue(
                queue_name,
                f"{task.project_id}:{task.node_id}",
                payload,
                self.enqueue_options,
            )
        except Exception:
            self.store.update_status(
                task.project_id,
                task.node_id,
                TaskStatus.PENDING,
                expected=(TaskStatus.RUNNING,),
                clear_deadline=True,
                event_type="dispatch_reverted",
            )
            raise
        return True

    def _complete_task(self, project_id: str, node_id: str, result: Any) -> list[str]:
        changed = self.store.update_status(
            project_id,
            node_id,
            TaskStatus.COMPLETED,
            expected=(TaskStatus.RUNNING,),
            result=result,
            clear_deadline=True,
            event_type="completed",
        )
        if not changed:
            logger.info("Ignoring duplicate result for %s/%s", project_id, node_id)
            return []
        return self.enqueue_ready_tasks(project_id)

    def _handle_verify_result(self, event: WorkerResultEvent) -> list[str]:
        try:
            outcome = VerifyOutcome.from_result(event.result)
        except InvalidVerifyOutcomeError as error:
            self._fail_task(
                event.project_id,
                event.node_id,
                str(error),
                expected=TaskStatus.RUNNING,
            )
            return []

        if outcome.status == VerifyStatus.ACCEPT:
            return self._complete_task(event.project_id, event.node_id, outcome.draft)

        if outcome.status == VerifyStatus.HARD_FAIL:
            self._fail_task(
                event.project_id,
                event.node_id,
                HARD_FAIL_ERROR,
                expected=TaskStatus.RUNNING,
                result=outcome.draft,
                details_metadata={"violations": outcome.violations},
            )
            return []

        return self._handle_soft_fail(event.project_id, event.node_id, outcome)

    def _handle_soft_fail(self, project_id: str, node_id: str, outcome: VerifyOutcome) -> list[str]:
        task = self.store.get_task(project_id, node_id)
        if task is None or task.status != TaskStatus.RUNNING:
            logger.info("Ignoring stale verify result for %s/%s", project_id, node_id)
            return []

        max_attempts = task.metadata.get("max_autofix_attempts", self.max_autofix_attempts)
        decision = decide_autofix(attempts_used=task.retries, max_attempts=max_attempts)
        if not decision.should_autofix:
            self._fail_task(
                project_id,
                node_id,
                decision.reason,
                expected=TaskStatus.RUNNING,
                result=outcome.draft,
                details_metadata={"violations": outcome.violations},
            )
            return []

        metadata = dict(task.metadata)
        metadata["draft"] = outcome.draft
        metadata[_AUTOFIX_PAUSE_KEY] = outcome.patches
        metadata["violations"] = outcome.violations
        retries = task.retries + 1
        changed = self.store.update_status(
            project_id,
            node_id,
            TaskStatus.BLOCKED,
            expected=(TaskStatus.RUNNING,),
            metadata=metadata,
            retries=retries,
            deadline_at=utc_now() + timedelta(seconds=self.autofix_timeout_seconds),
            event_type="soft_failed",
        )
        if not changed:
            logger.info("Ignoring stale verify result for %s/%s", project_id, node_id)
            return []

        logger.info(
            "Verify soft fail on %s/%s with %d violation(s); %s",
            project_id,
            node_id,
            len(outcome.violations),
            decision.reason,
        )
        paused = dataclasses.replace(
            task,
            status=TaskStatus.BLOCKED,
            metadata=metadata,
            retries=retries,
        )
        # A failed push leaves the pause in place until the autofix deadline passes.
        self.queue.enqueue(
            self.queue_names.for_kind(AUTOFIX_KIND),
            f"{project_id}:{node_id}:{AUTOFIX_KIND}",
            build_autofix_payload(paused, draft=outcome.draft, patches=outcome.patches),
            self.enqueue_options,
        )
        return []

    def _is_stale_attempt(self, project_id: str, node_id: str, attempt: int | None) -> bool:
        if attempt is None:
            return False
        task = self.store.get_task(project_id, node_id)
        if task is None or task.retries == attempt:
            return False
        logger.info(
            "Ignoring event for %s/%s from attempt %d; task is on attempt %d",
            project_id,
            node_id,
            attempt,
            task.retries,
        )
        return True

    def _paused_for_autofix(self, project_id: str, node_id: str) -> TaskRecord | None:
        task = self.store.get_task(project_id, node_id)
        if (
            task is None
            or task.status != TaskStatus.BLOCKED
            or _AUTOFIX_PAUSE_KEY not in task.metadata
        ):
            logger.info(
                "Ignoring autofix event for %s/%s: not awaiting repair",
                project_id,
                node_id,
            )
            return None
        return task

    def _fail_task(  # noqa: PLR0913
        self,
        project_id: str,
        node_id: str,
        error: str,
        *,
        expected: TaskStatus,
        result: Any = None,
        details_metadata: dict[str, Any] | None = None,
        event_type: str = "failed",
    ) -> list[str] | None:
        """Fail one task and block everything downstream of it.

        Returns the ids newly blocked, or ``None`` when the CAS did not apply.
        """

        metadata = None
        if details_metadata:
            task = self.store.get_task(project_id, node_id)
            if task is not None:
                metadata = {**task.metadata, **details_metadata}
        changed = self.store.update_status(
            project_id,
            node_id,
            TaskStatus.FAILED,
            expected=(expected,),
            result=result,
            error=error,
            metadata=metadata,
            clear_deadline=True,
            event_type=event_type,
        )
        if not changed:
            logger.info("Ignoring failure for %s/%s: not %s", project_id, node_id, expected.value)
            return None

        logger.warning("Task %s/%s failed: %s", project_id, node_id, error)
        blocked = self._block_dependents(project_id, node_id)
        if blocked:
            logger.warning(
                "Blocked %d dependent(s) of %s/%s: %s",
                len(blocked),
                project_id,
                node_id,
                ", ".join(blocked),
            )
        return blocked

    def _block_dependents(self, project_id: str, node_id: str) -> list[str]:
        """Block the transitive closure of dependents below ``node_id``."""

        origin = self.store.get_task(project_id, node_id)
        if origin is None:
            return []
        seen: set[str] = set()
        closure: list[str] = []
        frontier = list(origin.dependents)
        while frontier:
            fresh = [dependent for dependent in dict.fromkeys(frontier) if dependent not in seen]
            seen.update(fresh)
            closure.extend(fresh)
            frontier = [
                dependent
                for record in self.store.get_tasks(project_id, fresh)
                for dependent in record.dependents
            ]
        return self.store.mark_blocked(project_id, closure, reason=f"upstream {node_id} failed")
