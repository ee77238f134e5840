"""Queue workers that run work functions and report back to the dispatcher."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from report_pipeline.orchestrator.dispatcher import TaskDispatcher
from report_pipeline.orchestrator.errors import UnknownTaskKindError
from report_pipeline.orchestrator.models import (
    ProgressStatus,
    QueueJobView,
    WorkerProgressEvent,
    WorkerResultEvent,
)
from report_pipeline.orchestrator.queue import SQLiteJobQueue
from report_pipeline.orchestrator.work_functions import DEFAULT_WORK_FUNCTIONS, WorkFunction

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.idle_polls += other.idle_polls


class QueueWorker:
    """Claims jobs from a set of queues and executes them one at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: SQLiteJobQueue,
        dispatcher: TaskDispatcher,
        queue_names: Sequence[str],
        worker_id: str,
        work_functions: Mapping[str, WorkFunction] | None = None,
        poll_interval_seconds: float = 1.0,
        stale_job_seconds: int | None = None,
    ) -> None:
        self.queue = queue
        self.dispatcher = dispatcher
        self.queue_names = tuple(queue_names)
        self.worker_id = worker_id
        self.work_functions = dict(work_functions or DEFAULT_WORK_FUNCTIONS)
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_job_seconds = stale_job_seconds
        self._stop_requested = False

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        job = self._claim_job()
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        if self._execute(job):
            summary.succeeded = 1
        else:
            summary.failed = 1
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
        install_signal_handlers: bool = True,
    ) -> WorkerRunSummary:
        """Run until the queues stay empty, ``max_jobs`` is reached, or a stop is requested.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting. ``None``
                keeps polling until :meth:`request_stop` is called.
            install_signal_handlers: Stop gracefully on SIGINT/SIGTERM. Only
                possible from the main thread.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers(enabled=install_signal_handlers):
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self, *, signal_name: str = "request") -> None:
        if not self._stop_requested:
            logger.info("Worker %s stopping (%s)", self.worker_id, signal_name)
        self._stop_requested = True

    def _claim_job(self) -> QueueJobView | None:
        if self.stale_job_seconds is not None:
            stale_after = timedelta(seconds=self.stale_job_seconds)
            released = self.queue.release_stale(stale_after=stale_after)
            if released:
                logger.warning("Released %d stale job(s) back to their queues", released)
        if self._stop_requested:
            return None
        return self.queue.claim(self.queue_names, worker_id=self.worker_id)

    def _execute(self, job: QueueJobView) -> bool:
        try:
            return self._process(job)
        except Exception:
            self.queue.release(job.job_id)
            raise

    def _process(self, job: QueueJobView) -> bool:
        payload = job.payload
        project_id = str(payload.get("project_id") or "")
        node_id = str(payload.get("node_id") or "")
        kind = str(payload.get("kind") or "")
        attempt = payload.get("attempt")
        if not isinstance(attempt, int):
            attempt = None
        logger.debug("Worker %s picked %s (%s)", self.worker_id, job.job_name, job.queue_name)

        self.dispatcher.handle_worker_progress(
            WorkerProgressEvent(
                project_id=project_id,
                node_id=node_id,
                kind=kind,
                status=ProgressStatus.RUNNING,
            ),
        )
        try:
            work_function = self.work_functions.get(kind)
            if work_function is None:
                raise UnknownTaskKindError(f"No work function registered for kind {kind!r}")
            result = work_function(payload)
        except Exception as error:  # noqa: BLE001
            message = str(error) or error.__class__.__name__
            logger.warning("Job %s failed: %s", job.job_name, message)
            self.dispatcher.handle_worker_progress(
                WorkerProgressEvent(
                    project_id=project_id,
                    node_id=node_id,
                    kind=kind,
                    status=ProgressStatus.FAILED,
                    error=message,
                    attempt=attempt,
                ),
            )
            self.queue.fail(job.job_id, message)
            return False

        # The job stays active until the result is recorded.
        self.dispatcher.handle_worker_result(
            WorkerResultEvent(
                project_id=project_id,
                node_id=node_id,
                kind=kind,
                result=result,
                attempt=attempt,
            ),
        )
        self.queue.complete(job.job_id)
        return True

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self, *, enabled: bool) -> Iterator[None]:
        if not enabled or threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


class WorkerPool:
    """Thread pool with ``concurrency`` workers per queue.

    Runs until every queue it serves has no queued or active job left, or
    until SIGINT/SIGTERM.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: SQLiteJobQueue,
        dispatcher: TaskDispatcher,
        queue_names: Sequence[str],
        worker_id: str,
        concurrency: int = 2,
        work_functions: Mapping[str, WorkFunction] | None = None,
        poll_interval_seconds: float = 1.0,
        stale_job_seconds: int | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.queue_names = tuple(queue_names)
        self.poll_interval_seconds = poll_interval_seconds
        self.workers = [
            QueueWorker(
                queue=queue,
                dispatcher=dispatcher,
                queue_names=(queue_name,),
                worker_id=f"{worker_id}/{queue_name}-{slot}",
                work_functions=work_functions,
                poll_interval_seconds=poll_interval_seconds,
                stale_job_seconds=stale_job_seconds,
            )
            for queue_name in self.queue_names
            for slot in range(concurrency)
        ]
        self._stop = threading.Event()
        self._summaries: dict[str, WorkerRunSummary] = {}
        self._lock = threading.Lock()

    def run(self, *, until_idle: bool = True) -> WorkerRunSummary:
        threads = [
            threading.Thread(
                target=self._worker_loop,
                args=(worker,),
                daemon=True,
                name=worker.worker_id,
            )
            for worker in self.workers
        ]
        for thread in threads:
            thread.start()
        logger.info(
            "Started %d worker thread(s) on %d queue(s)",
            len(threads),
            len(self.queue_names),
        )

        with self._signal_handlers():
            while not self._stop.is_set():
                if until_idle and self._drained():
                    break
                self._stop.wait(timeout=self.poll_interval_seconds)

        self.stop()
        for thread in threads:
            thread.join()

        aggregate = WorkerRunSummary()
        for summary in self._summaries.values():
            aggregate.add(summary)
        return aggregate

    def stop(self, *, signal_name: str = "request") -> None:
        self._stop.set()
        for worker in self.workers:
            worker.request_stop(signal_name=signal_name)

    def _worker_loop(self, worker: QueueWorker) -> None:
        summary = WorkerRunSummary()
        while not self._stop.is_set():
            try:
                step = worker.run_once()
            except Exception:
                logger.exception("Worker %s error", worker.worker_id)
                self._stop.wait(timeout=self.poll_interval_seconds)
                continue
            summary.add(step)
            if step.processed == 0:
                self._stop.wait(timeout=self.poll_interval_seconds)
        with self._lock:
            self._summaries[worker.worker_id] = summary

    def _drained(self) -> bool:
        return self.queue.count_open(self.queue_names) == 0

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            self.stop(signal_name=signal.Signals(signum).name)

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
