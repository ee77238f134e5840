from __future__ import annotations

import threading
from datetime import timedelta

import allure
import pytest

from report_pipeline.orchestrator.errors import UnknownTaskKindError
from report_pipeline.orchestrator.models import EnqueueOptions, JobStatus
from report_pipeline.orchestrator.queue import QueueNames, SQLiteJobQueue
from report_pipeline.planner import TaskKind

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Job Queue"),
]

KEEP_ALL = EnqueueOptions(remove_on_complete=False, remove_on_fail=False)


def test_queue_names_cover_every_kind_and_autofix() -> None:
    names = QueueNames(prefix="acme")

    assert names.for_kind(TaskKind.MATERIALIZE_FIXED) == "acme-materializer"
    assert names.for_kind("prepare") == "acme-planner"
    assert names.for_kind("retrieve") == "acme-retriever"
    assert names.for_kind("write") == "acme-writer"
    assert names.for_kind("verify") == "acme-verifier"
    assert names.for_kind("assemble") == "acme-assembler"
    assert names.for_kind("autofix") == "acme-autofixer"
    assert names.kind_for("acme-verifier") == "verify"
    assert len(names.all()) == 7
    with pytest.raises(UnknownTaskKindError, match="summarize"):
        names.for_kind("summarize")
    with pytest.raises(UnknownTaskKindError):
        names.kind_for("report-verifier")


def test_claim_is_fifo_across_requested_queues(job_queue: SQLiteJobQueue) -> None:
    first = job_queue.enqueue("report-writer", "p:write:1", {"n": 1}, KEEP_ALL)
    job_queue.enqueue("report-verifier", "p:verify:1", {"n": 2}, KEEP_ALL)
    third = job_queue.enqueue("report-writer", "p:write:2", {"n": 3}, KEEP_ALL)

    claimed = job_queue.claim(["report-writer"], worker_id="w1")

    assert claimed.job_id == first
    assert claimed.status == JobStatus.ACTIVE
    assert claimed.attempts == 1
    assert claimed.worker_id == "w1"
    assert claimed.payload == {"n": 1}
    assert job_queue.claim(["report-writer"], worker_id="w1").job_id == third
    assert job_queue.claim(["report-writer"], worker_id="w1") is None
    assert job_queue.claim([], worker_id="w1") is None
    assert job_queue.claim(["report-verifier"], worker_id="w2").job_name == "p:verify:1"


def test_concurrent_claims_deliver_each_job_once(job_queue: SQLiteJobQueue) -> None:
    for index in range(20):
        job_queue.enqueue("report-writer", f"p:write:{index}", {"index": index}, KEEP_ALL)
    claimed: list[str] = []
    lock = threading.Lock()

    def _drain(worker_id: str) -> None:
        while True:
            job = job_queue.claim(["report-writer"], worker_id=worker_id)
            if job is None:
                return
            with lock:
                claimed.append(job.job_id)

    threads = [threading.Thread(target=_drain, args=(f"w{index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(claimed) == 20
    assert len(set(claimed)) == 20


def test_complete_and_fail_only_apply_to_active_jobs(job_queue: SQLiteJobQueue) -> None:
    job_id = job_queue.enqueue("report-writer", "p:write:1", {}, KEEP_ALL)

    assert not job_queue.complete(job_id)
    job_queue.claim(["report-writer"], worker_id="w1")
    assert job_queue.fail(job_id, "boom")
    assert not job_queue.complete(job_id)
    assert not job_queue.complete("missing")

    job = job_queue.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error == "boom"


def test_retention_keeps_last_n_finished_jobs(job_queue: SQLiteJobQueue) -> None:
    options = EnqueueOptions(remove_on_complete=2, remove_on_fail=True)
    for index in range(4):
        job_queue.enqueue("report-writer", f"p:write:{index}", {}, options)
    for _ in range(3):
        job = job_queue.claim(["report-writer"], worker_id="w1")
        job_queue.complete(job.job_id)
    failing = job_queue.claim(["report-writer"], worker_id="w1")
    job_queue.fail(failing.job_id, "boom")

    completed = job_queue.list_jobs(queue_name="report-writer", status=JobStatus.COMPLETED)
    assert [job.job_name for job in completed] == ["p:write:1", "p:write:2"]
    assert job_queue.count(status=JobStatus.FAILED) == 0
    assert job_queue.get_job(failing.job_id) is None


def test_release_returns_active_job_for_redelivery(job_queue: SQLiteJobQueue) -> None:
    job_id = job_queue.enqueue("report-writer", "p:write:1", {}, KEEP_ALL)
    job_queue.claim(["report-writer"], worker_id="w1")

    assert job_queue.release(job_id)
    assert not job_queue.release(job_id)
    again = job_queue.claim(["report-writer"], worker_id="w2")
    assert again.job_id == job_id
    assert again.attempts == 2
    assert again.worker_id == "w2"


def test_release_stale_only_touches_old_active_jobs(job_queue: SQLiteJobQueue) -> None:
    job_queue.enqueue("report-writer", "p:write:1", {}, KEEP_ALL)
    job_queue.enqueue("report-writer", "p:write:2", {}, KEEP_ALL)
    job_queue.claim(["report-writer"], worker_id="w1")

    assert job_queue.release_stale(stale_after=timedelta(hours=1)) == 0
    assert job_queue.release_stale(stale_after=timedelta(seconds=-1)) == 1
    assert job_queue.count(status=JobStatus.QUEUED) == 2
    assert job_queue.count(status=JobStatus.ACTIVE) == 0


def test_count_open_spans_queued_and_active(job_queue: SQLiteJobQueue) -> None:
    job_queue.enqueue("report-writer", "p:write:1", {}, KEEP_ALL)
    job_queue.enqueue("report-writer", "p:write:2", {}, KEEP_ALL)
    job_queue.enqueue("report-verifier", "p:verify:1", {}, KEEP_ALL)
    done = job_queue.claim(["report-writer"], worker_id="w1")
    job_queue.complete(done.job_id)
    job_queue.claim(["report-writer"], worker_id="w1")

    assert job_queue.count_open(["report-writer"]) == 1
    assert job_queue.count_open(["report-writer", "report-verifier"]) == 2
    assert job_queue.count_open(["report-autofixer"]) == 0
    assert job_queue.count(queue_name="report-writer") == 2
