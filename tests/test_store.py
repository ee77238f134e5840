from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import text

import report_pipeline
from report_pipeline.orchestrator.errors import DagIntegrityError, TaskNotFoundError
from report_pipeline.orchestrator.models import TaskStatus
from report_pipeline.orchestrator.store import TaskStateStore
from report_pipeline.planner import DOCUMENT_SINK_ID, AssetReadiness, OutlineNode, build_dag
from report_pipeline.storage.alembic_runner import MIGRATIONS_DIR
from report_pipeline.storage.common import utc_now

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Durable Task State"),
]

PROJECT = "proj-store"


def _persist(store: TaskStateStore, outline: list[OutlineNode], **readiness: bool) -> None:
    store.persist_dag(PROJECT, build_dag(outline, AssetReadiness(**readiness)))


def test_schema_is_migrated_to_head(tmp_path: Path) -> None:
    store = TaskStateStore(tmp_path / "migrations.db")
    store.init_schema()
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = connection.execute(
            text(
                "SELECT name FROM sqlite_master WHERE type = 'table' "
                "AND name IN ('task_state', 'task_state_events', 'queue_jobs') ORDER BY name",
            ),
        ).scalars().all()
    store.close()

    assert version == "20261019_0001"
    assert tables == ["queue_jobs", "task_state", "task_state_events"]


def test_migrations_ship_inside_the_package_and_run_from_any_directory(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    assert MIGRATIONS_DIR.parent == Path(report_pipeline.__file__).resolve().parent
    assert (MIGRATIONS_DIR / "versions" / "20261019_0001_task_state.py").is_file()

    workdir = tmp_path / "elsewhere"
    workdir.mkdir()
    monkeypatch.chdir(workdir)
    store = TaskStateStore(tmp_path / "packaged.db")
    store.init_schema()
    try:
        assert store.list_tasks(PROJECT) == []
    finally:
        store.close()


def test_persist_dag_stores_pending_rows_and_links_dependents(store: TaskStateStore) -> None:
    _persist(store, [OutlineNode(chapter_number="1", title="Intro")], embed_ready=True)

    tasks = store.list_tasks(PROJECT)

    assert [task.node_id for task in tasks] == [
        "prepare:1",
        "retrieve:1",
        "write:1",
        "verify:1",
        "assemble:1",
        DOCUMENT_SINK_ID,
    ]
    assert {task.status for task in tasks} == {TaskStatus.PENDING}
    by_id = {task.node_id: task for task in tasks}
    assert by_id["prepare:1"].dependents == ["retrieve:1"]
    assert by_id["retrieve:1"].dependents == ["write:1"]
    assert by_id["assemble:1"].dependents == [DOCUMENT_SINK_ID]
    assert by_id[DOCUMENT_SINK_ID].dependents == []
    assert by_id["write:1"].dependencies == ["retrieve:1"]
    assert by_id["verify:1"].metadata["draft_source_id"] == "write:1"
    assert by_id["verify:1"].retries == 0
    assert by_id["verify:1"].result is None
    events = store.list_task_events(PROJECT, "prepare:1")
    assert [(event.event_type, event.status_to) for event in events] == [
        ("created", TaskStatus.PENDING),
    ]


def test_persist_dag_refuses_to_overwrite_existing_project(store: TaskStateStore) -> None:
    outline = [OutlineNode(chapter_number="1", title="Intro")]
    _persist(store, outline)

    with pytest.raises(DagIntegrityError, match="already has tasks"):
        _persist(store, outline)

    store.persist_dag("other-project", build_dag(outline, AssetReadiness()))
    assert len(store.list_tasks("other-project")) == 5


def test_ready_tasks_are_exactly_pending_with_completed_dependencies(
    store: TaskStateStore,
) -> None:
    outline = [OutlineNode(chapter_number=str(index), title=f"C{index}") for index in (1, 2, 3)]
    outline.append(OutlineNode(chapter_number="4", title="Cover", fixed_content="static"))
    outline.append(OutlineNode(chapter_number="5", title="Untouched"))
    _persist(store, outline, embed_ready=True)
    forced = {
        "prepare:1": TaskStatus.COMPLETED,
        "retrieve:1": TaskStatus.COMPLETED,
        "write:1": TaskStatus.COMPLETED,
        "prepare:2": TaskStatus.COMPLETED,
        "retrieve:2": TaskStatus.FAILED,
        "write:2": TaskStatus.BLOCKED,
        "prepare:3": TaskStatus.RUNNING,
        "materialize:4": TaskStatus.COMPLETED,
        "prepare:5": TaskStatus.COMPLETED,
        "retrieve:5": TaskStatus.CANCELLED,
    }
    for node_id, status in forced.items():
        assert store.update_status(PROJECT, node_id, status)

    ready = {task.node_id for task in store.list_ready_tasks(PROJECT)}

    tasks = store.list_tasks(PROJECT)
    assert len(tasks) >= 10
    by_id = {task.node_id: task for task in tasks}
    expected = {
        task.node_id
        for task in tasks
        if task.status == TaskStatus.PENDING
        and all(by_id[dep].status == TaskStatus.COMPLETED for dep in task.dependencies)
    }
    assert ready == expected
    assert ready == {"verify:1", "assemble:4"}


def test_ready_tasks_follow_plan_order(store: TaskStateStore) -> None:
    _persist(store, [OutlineNode(chapter_number=str(index), title="t") for index in (3, 1, 2)])

    assert [task.node_id for task in store.list_ready_tasks(PROJECT)] == [
        "prepare:3",
        "prepare:1",
        "prepare:2",
    ]


def test_update_status_compare_and_swap(store: TaskStateStore) -> None:
    _persist(store, [OutlineNode(chapter_number="1", title="Intro")])

    assert store.update_status(
        PROJECT,
        "prepare:1",
        TaskStatus.RUNNING,
        expected=(TaskStatus.PENDING,),
    )
    assert not store.update_status(
        PROJECT,
        "prepare:1",
        TaskStatus.RUNNING,
        expected=(TaskStatus.PENDING,),
    )
    assert store.update_status(
        PROJECT,
        "prepare:1",
        TaskStatus.COMPLETED,
        expected=(TaskStatus.RUNNING,),
        result={"queries": ["q"]},
        retries=2,
        event_type="completed",
    )

    task = store.get_task(PROJECT, "prepare:1")
    assert task.status == TaskStatus.COMPLETED
    assert task.result == {"queries": ["q"]}
    assert task.retries == 2
    events = store.list_task_events(PROJECT, "prepare:1")
    assert [event.event_type for event in events] == ["created", "status_changed", "completed"]
    assert events[-1].status_from == TaskStatus.RUNNING
    assert events[-1].details == {"retries": 2}


def test_update_status_leaves_unspecified_fields_untouched(store: TaskStateStore) -> None:
    _persist(store, [OutlineNode(chapter_number="1", title="Intro")])
    deadline = utc_now() + timedelta(minutes=5)
    store.update_status(
        PROJECT,
        "prepare:1",
        TaskStatus.RUNNING,
        metadata={"note": "kept"},
        error="transient",
        deadline_at=deadline,
    )

    store.update_status(PROJECT, "prepare:1", TaskStatus.PENDING)
    task = store.get_task(PROJECT, "prepare:1")
    assert task.metadata == {"note": "kept"}
    assert task.error == "transient"
    assert abs((task.deadline_at - deadline).total_seconds()) < 1

    store.update_status(PROJECT, "prepare:1", TaskStatus.PENDING, clear_deadline=True)
    assert store.get_task(PROJECT, "prepare:1").deadline_at is None


def test_update_status_on_missing_task(store: TaskStateStore) -> None:
    assert not store.update_status(
        PROJECT,
        "ghost",
        TaskStatus.COMPLETED,
        expected=(TaskStatus.RUNNING,),
    )
    with pytest.raises(TaskNotFoundError, match="node_id=ghost"):
        store.update_status(PROJECT, "ghost", TaskStatus.COMPLETED)


def test_claim_for_dispatch_sets_deadline_once(store: TaskStateStore) -> None:
    _persist(store, [OutlineNode(chapter_number="1", title="Intro")])
    deadline = utc_now() + timedelta(minutes=30)

    assert store.claim_for_dispatch(PROJECT, "prepare:1", deadline_at=deadline)
    assert not store.claim_for_dispatch(PROJECT, "prepare:1", deadline_at=deadline)

    task = store.get_task(PROJECT, "prepare:1")
    assert task.status == TaskStatus.RUNNING
    assert task.deadline_at is not None
    assert store.list_task_events(PROJECT, "prepare:1")[-1].event_type == "dispatched"


def test_mark_blocked_only_touches_pending_rows(store: TaskStateStore) -> None:
    _persist(store, [OutlineNode(chapter_number="1", title="Intro")])
    store.update_status(PROJECT, "write:1", TaskStatus.COMPLETED)

    changed = store.mark_blocked(
        PROJECT,
        ["write:1", "verify:1", "verify:1", "ghost"],
        reason="upstream prepare:1 failed",
    )

    assert changed == ["verify:1"]
    assert store.get_task(PROJECT, "write:1").status == TaskStatus.COMPLETED
    assert store.get_task(PROJECT, "verify:1").status == TaskStatus.BLOCKED
    event = store.list_task_events(PROJECT, "verify:1")[-1]
    assert event.event_type == "blocked"
    assert event.details == {"reason": "upstream prepare:1 failed"}


def test_add_dependent_is_idempotent(store: TaskStateStore) -> None:
    _persist(store, [OutlineNode(chapter_number="1", title="Intro")])

    assert store.add_dependent(PROJECT, "prepare:1", "assemble:1")
    assert not store.add_dependent(PROJECT, "prepare:1", "assemble:1")
    assert store.get_task(PROJECT, "prepare:1").dependents == ["write:1", "assemble:1"]
    with pytest.raises(TaskNotFoundError):
        store.add_dependent(PROJECT, "ghost", "assemble:1")


def test_get_tasks_preserves_requested_order(store: TaskStateStore) -> None:
    _persist(store, [OutlineNode(chapter_number="1", title="Intro")])

    tasks = store.get_tasks(PROJECT, ["verify:1", "ghost", "prepare:1", "verify:1"])

    assert [task.node_id for task in tasks] == ["verify:1", "prepare:1"]
    assert store.get_tasks(PROJECT, []) == []


def test_list_tasks_filters_by_status_and_summarizes(store: TaskStateStore) -> None:
    _persist(store, [OutlineNode(chapter_number="1", title="Intro")])
    store.update_status(PROJECT, "prepare:1", TaskStatus.FAILED, error="boom")
    store.mark_blocked(PROJECT, ["write:1"])

    failed = store.list_tasks(PROJECT, statuses=[TaskStatus.FAILED, TaskStatus.BLOCKED])

    assert [task.node_id for task in failed] == ["prepare:1", "write:1"]
    assert store.summarize(PROJECT) == {"blocked": 1, "failed": 1, "pending": 3}


def test_list_overdue_tasks_covers_running_and_autofix_pauses(store: TaskStateStore) -> None:
    _persist(store, [OutlineNode(chapter_number=str(index), title="t") for index in (1, 2)])
    past = utc_now() - timedelta(seconds=5)
    future = utc_now() + timedelta(hours=1)
    store.update_status(PROJECT, "prepare:1", TaskStatus.RUNNING, deadline_at=past)
    store.update_status(PROJECT, "prepare:2", TaskStatus.RUNNING, deadline_at=future)
    store.update_status(PROJECT, "verify:1", TaskStatus.BLOCKED, deadline_at=past)
    store.update_status(PROJECT, "write:2", TaskStatus.PENDING, deadline_at=past)
    store.mark_blocked(PROJECT, ["verify:2"])

    overdue = store.list_overdue_tasks()

    assert {task.node_id for task in overdue} == {"prepare:1", "verify:1"}
    later = store.list_overdue_tasks(now=utc_now() + timedelta(hours=2))
    assert {task.node_id for task in later} == {"prepare:1", "verify:1", "prepare:2"}


def test_touch_task_only_refreshes_running_rows(store: TaskStateStore) -> None:
    _persist(store, [OutlineNode(chapter_number="1", title="Intro")])

    assert not store.touch_task(PROJECT, "prepare:1")
    store.update_status(PROJECT, "prepare:1", TaskStatus.RUNNING)
    before = store.get_task(PROJECT, "prepare:1").updated_at
    assert store.touch_task(PROJECT, "prepare:1")
    assert store.get_task(PROJECT, "prepare:1").updated_at >= before


def test_clear_project_deletes_tasks_and_events(store: TaskStateStore) -> None:
    outline = [OutlineNode(chapter_number="1", title="Intro")]
    _persist(store, outline)
    store.persist_dag("kept", build_dag(outline, AssetReadiness()))

    assert store.clear_project(PROJECT) == 5
    assert store.list_tasks(PROJECT) == []
    assert store.list_task_events(PROJECT, "prepare:1") == []
    assert store.get_task_details(PROJECT, "prepare:1") is None
    assert len(store.list_tasks("kept")) == 5
    assert store.clear_project(PROJECT) == 0


def test_state_survives_reopening_the_database(tmp_path: Path) -> None:
    db_path = tmp_path / "reopen.db"
    first = TaskStateStore(db_path)
    first.init_schema()
    first.persist_dag(PROJECT, build_dag([OutlineNode("1", "Intro")], AssetReadiness()))
    first.update_status(PROJECT, "prepare:1", TaskStatus.COMPLETED, result={"ok": True})
    first.close()

    second = TaskStateStore(db_path)
    second.init_schema()
    details = second.get_task_details(PROJECT, "prepare:1")
    second.close()

    assert details.task.status == TaskStatus.COMPLETED
    assert details.task.result == {"ok": True}
    assert [event.event_type for event in details.events] == ["created", "status_changed"]
