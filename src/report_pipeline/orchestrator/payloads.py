"""Kind-specific job payloads assembled from task metadata and upstream results.

Upstream data is located through the explicit references the planner writes
into metadata (``prompt_source_id``, ``retrieval_source_id``, ...). When a
reference is absent the single dependency of the matching kind is used.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from report_pipeline.orchestrator.errors import UnknownTaskKindError
from report_pipeline.orchestrator.models import TaskRecord
from report_pipeline.planner.models import AUTOFIX_KIND, TaskKind

DEFAULT_RETRIEVAL_LIMIT = 5


def build_job_payload(task: TaskRecord, dependencies: Mapping[str, TaskRecord]) -> dict[str, Any]:
    """Build the payload a work function receives for ``task``."""

    base: dict[str, Any] = {
        "project_id": task.project_id,
        "node_id": task.node_id,
        "kind": task.kind,
        "label": task.label,
    }
    metadata = task.metadata

    try:
        kind = TaskKind(task.kind)
    except ValueError as error:
        raise UnknownTaskKindError(f"No payload builder for task kind {task.kind!r}") from error

    if kind == TaskKind.MATERIALIZE_FIXED:
        return {
            **base,
            "fixed_content": metadata.get("fixed_content") or "",
            "bindings": metadata.get("bindings") or {},
        }

    if kind == TaskKind.PREPARE:
        return {
            **base,
            "outline_node": metadata.get("outline_node") or {},
            "project_context": metadata.get("project_context") or {},
            "assets_availability": metadata.get("assets_availability")
            or {"embed_ready": False, "table_ready": False},
        }

    if kind == TaskKind.RETRIEVE:
        prepared = _upstream_result(task, dependencies, "prompt_source_id", TaskKind.PREPARE)
        return {
            **base,
            "queries": list(prepared.get("queries") or metadata.get("queries") or []),
            "limit": int(metadata.get("limit") or DEFAULT_RETRIEVAL_LIMIT),
            "requirements": list(metadata.get("requirements") or []),
        }

    if kind == TaskKind.WRITE:
        prepared = _upstream_result(task, dependencies, "prompt_source_id", TaskKind.PREPARE)
        retrieved = _upstream_result(
            task,
            dependencies,
            "retrieval_source_id",
            TaskKind.RETRIEVE,
        )
        prompts = prepared.get("prompts") or {}
        return {
            **base,
            "title": metadata.get("title") or task.label or task.node_id,
            "prompt": prompts.get("user_prompt_text") or metadata.get("prompt") or "",
            "context_pack": list(retrieved.get("context_pack") or []),
            "metrics": metadata.get("metrics"),
            "writing_journal": metadata.get("writing_journal"),
        }

    if kind == TaskKind.VERIFY:
        written = _upstream_result(task, dependencies, "draft_source_id", TaskKind.WRITE)
        # A draft stashed on the task itself is the autofixed one and wins.
        draft = metadata["draft"] if metadata.get("draft") is not None else written.get("draft")
        return {
            **base,
            "draft": draft,
            "attempt": task.retries,
            "metrics": metadata.get("metrics"),
            "evidence_map": metadata.get("evidence_map"),
            "writing_journal": metadata.get("writing_journal"),
        }

    if metadata.get("stage") == "final":
        section_ids = list(metadata.get("section_source_ids") or task.dependencies)
        sections = []
        for section_id in section_ids:
            record = dependencies.get(section_id)
            sections.append(
                {
                    "node_id": section_id,
                    "outline_id": record.outline_id if record is not None else None,
                    "result": record.result if record is not None else None,
                },
            )
        return {
            **base,
            "title": metadata.get("title") or "Full document",
            "sections": sections,
            "children": list(task.dependents),
        }

    materialized = _upstream_result(
        task,
        dependencies,
        "fixed_source_id",
        TaskKind.MATERIALIZE_FIXED,
    )
    verified_record = _upstream_record(
        task,
        dependencies,
        "verified_source_id",
        TaskKind.VERIFY,
    )
    verified_draft = verified_record.result if verified_record is not None else None
    rendered_block = materialized.get("rendered_block")
    return {
        **base,
        "title": metadata.get("title") or task.label,
        "outline_id": task.outline_id,
        "fixed_blocks": (
            [rendered_block]
            if rendered_block is not None
            else list(metadata.get("fixed_blocks") or [])
        ),
        "draft": verified_draft if verified_draft is not None else metadata.get("draft"),
        "children": list(task.dependents),
    }


def build_autofix_payload(task: TaskRecord, *, draft: Any, patches: list[Any]) -> dict[str, Any]:
    """Payload for the out-of-band repair job of a soft-failed verify task."""

    return {
        "project_id": task.project_id,
        "node_id": task.node_id,
        "kind": AUTOFIX_KIND,
        "label": task.label,
        "draft": draft,
        "patches": list(patches),
        "violations": list(task.metadata.get("violations") or []),
        "attempt": task.retries,
    }


def _upstream_record(
    task: TaskRecord,
    dependencies: Mapping[str, TaskRecord],
    reference_key: str,
    kind: TaskKind,
) -> TaskRecord | None:
    reference = task.metadata.get(reference_key)
    if reference:
        return dependencies.get(reference)
    if reference_key in task.metadata:
        return None
    candidates = [
        dependencies[dependency_id]
        for dependency_id in task.dependencies
        if dependency_id in dependencies and dependencies[dependency_id].kind == kind.value
    ]
    return candidates[0] if len(candidates) == 1 else None


def _upstream_result(
    task: TaskRecord,
    dependencies: Mapping[str, TaskRecord],
    reference_key: str,
    kind: TaskKind,
) -> dict[str, Any]:
    record = _upstream_record(task, dependencies, reference_key, kind)
    if record is None or not isinstance(record.result, Mapping):
        return {}
    return dict(record.result)
