"""Outline → task DAG planning.

``build_dag`` is pure and deterministic: the same outline, readiness flags and
context always produce the same nodes in the same order, so a diagnostic
re-plan reproduces the persisted graph exactly.
"""

from __future__ import annotations

import copy
import logging
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from report_pipeline.orchestrator.errors import DagCycleError, DagIntegrityError
from report_pipeline.planner.models import (
    AssetReadiness,
    DagSummary,
    OutlineNode,
    TaskDag,
    TaskEdge,
    TaskKind,
    TaskNode,
)

logger = logging.getLogger(__name__)

DOCUMENT_OUTLINE_ID = "document"
DOCUMENT_SINK_ID = f"assemble:{DOCUMENT_OUTLINE_ID}"

_NODE_ID_PREFIX = {
    TaskKind.MATERIALIZE_FIXED: "materialize",
    TaskKind.PREPARE: "prepare",
    TaskKind.RETRIEVE: "retrieve",
    TaskKind.WRITE: "write",
    TaskKind.VERIFY: "verify",
    TaskKind.ASSEMBLE: "assemble",
}

# Which per-chapter context entries each stage receives.
_CHAPTER_CONTEXT_KEYS: dict[TaskKind, tuple[str, ...]] = {
    TaskKind.WRITE: ("metrics", "writing_journal"),
    TaskKind.VERIFY: ("metrics", "writing_journal", "evidence_map"),
    TaskKind.ASSEMBLE: ("evidence_map",),
}


@dataclass(slots=True, frozen=True)
class FlatOutlineEntry:
    """Outline node with its nearest valid ancestor chapter number."""

    node: OutlineNode
    parent_id: str | None


def node_id_for(kind: TaskKind, outline_id: str) -> str:
    return f"{_NODE_ID_PREFIX[kind]}:{outline_id}"


def flatten_outline(outline: Sequence[OutlineNode]) -> list[FlatOutlineEntry]:
    """Pre-order traversal that drops malformed and duplicate chapters.

    A skipped node's children are still visited and attach to the skipped
    node's parent.
    """

    result: list[FlatOutlineEntry] = []
    seen: set[str] = set()

    def walk(nodes: Sequence[OutlineNode], parent_id: str | None) -> None:
        for node in nodes:
            next_parent = parent_id
            if not node.chapter_number or not node.title:
                logger.warning(
                    "Skipping malformed outline entry chapter=%r title=%r",
                    node.chapter_number,
                    node.title,
                )
            elif node.chapter_number == DOCUMENT_OUTLINE_ID:
                logger.warning(
                    "Skipping outline entry using reserved chapter number %r",
                    DOCUMENT_OUTLINE_ID,
                )
            elif node.chapter_number in seen:
                logger.warning(
                    "Skipping duplicate outline chapter %s (%s)",
                    node.chapter_number,
                    node.title,
                )
            else:
                seen.add(node.chapter_number)
                result.append(FlatOutlineEntry(node=node, parent_id=parent_id))
                next_parent = node.chapter_number
            if node.children:
                walk(node.children, next_parent)

    walk(outline, None)
    return result


def build_dag(
    outline: Sequence[OutlineNode],
    readiness: AssetReadiness,
    project_context: Mapping[str, Any] | None = None,
    *,
    max_autofix_attempts: int | None = None,
    chapter_context: Mapping[str, Mapping[str, Any]] | None = None,
) -> TaskDag:
    """Plan the task graph for one outline.

    Fixed-content chapters get ``materialize → assemble``; every other chapter
    gets ``prepare → [retrieve] → write → verify → assemble``, with ``retrieve``
    present only when some asset is embedding- or table-ready. A single
    ``assemble:document`` sink depends on every chapter assembly.
    """

    context = dict(project_context or {})
    chapter_context = chapter_context or {}
    nodes: list[TaskNode] = []
    edges: list[TaskEdge] = []

    for entry in flatten_outline(outline):
        outline_node = entry.node
        outline_id = outline_node.chapter_number
        base_label = f"{outline_id} {outline_node.title}"
        base_metadata: dict[str, Any] = {
            "outline_id": outline_id,
            "title": outline_node.title,
            "outline_node": outline_node.to_dict(),
            "parent_id": entry.parent_id,
        }

        def chapter_extras(kind: TaskKind, outline_id: str = outline_id) -> dict[str, Any]:
            extras: dict[str, Any] = {}
            for key in _CHAPTER_CONTEXT_KEYS.get(kind, ()):
                per_chapter = chapter_context.get(key) or {}
                if outline_id in per_chapter:
                    extras[key] = copy.deepcopy(per_chapter[outline_id])
            return extras

        assemble_id = node_id_for(TaskKind.ASSEMBLE, outline_id)

        if outline_node.fixed_content:
            materialize_id = node_id_for(TaskKind.MATERIALIZE_FIXED, outline_id)
            nodes.append(
                TaskNode(
                    id=materialize_id,
                    kind=TaskKind.MATERIALIZE_FIXED,
                    label=f"Render fixed content {base_label}",
                    outline_id=outline_id,
                    metadata={
                        **copy.deepcopy(base_metadata),
                        "fixed": True,
                        "fixed_content": outline_node.fixed_content,
                        "bindings": copy.deepcopy(context),
                    },
                ),
            )
            nodes.append(
                TaskNode(
                    id=assemble_id,
                    kind=TaskKind.ASSEMBLE,
                    label=f"Assemble chapter {base_label}",
                    outline_id=outline_id,
                    dependencies=(materialize_id,),
                    metadata={
                        **copy.deepcopy(base_metadata),
                        "source": "fixed",
                        "fixed_source_id": materialize_id,
                        **chapter_extras(TaskKind.ASSEMBLE),
                    },
                ),
            )
            edges.append(TaskEdge(materialize_id, assemble_id, "assemble fixed chapter"))
            continue

        prepare_id = node_id_for(TaskKind.PREPARE, outline_id)
        retrieve_id = node_id_for(TaskKind.RETRIEVE, outline_id)
        write_id = node_id_for(TaskKind.WRITE, outline_id)
        verify_id = node_id_for(TaskKind.VERIFY, outline_id)

        nodes.append(
            TaskNode(
                id=prepare_id,
                kind=TaskKind.PREPARE,
                label=f"Prepare prompts {base_label}",
                outline_id=outline_id,
                metadata={
                    **copy.deepcopy(base_metadata),
                    "context_keys": sorted(context),
                    "project_context": copy.deepcopy(context),
                    "assets_availability": readiness.to_dict(),
                },
            ),
        )

        write_dependency = prepare_id
        if readiness.needs_retrieval:
            requirements = []
            if readiness.embed_ready:
                requirements.append("embed_ready")
            if readiness.table_ready:
                requirements.append("table_ready")
            nodes.append(
                TaskNode(
                    id=retrieve_id,
                    kind=TaskKind.RETRIEVE,
                    label=f"Retrieve sources {base_label}",
                    outline_id=outline_id,
                    dependencies=(prepare_id,),
                    metadata={
                        **copy.deepcopy(base_metadata),
                        "requirements": requirements,
                        "prompt_source_id": prepare_id,
                    },
                ),
            )
            edges.append(TaskEdge(prepare_id, retrieve_id, "retrieval needs queries"))
            write_dependency = retrieve_id

        nodes.append(
            TaskNode(
                id=write_id,
                kind=TaskKind.WRITE,
                label=f"Write chapter {base_label}",
                outline_id=outline_id,
                dependencies=(write_dependency,),
                metadata={
                    **copy.deepcopy(base_metadata),
                    "prompt_source_id": prepare_id,
                    "retrieval_source_id": retrieve_id if readiness.needs_retrieval else None,
                    **chapter_extras(TaskKind.WRITE),
                },
            ),
        )
        edges.append(TaskEdge(write_dependency, write_id, "writing needs prompts"))

        nodes.append(
            TaskNode(
                id=verify_id,
                kind=TaskKind.VERIFY,
                label=f"Verify chapter {base_label}",
                outline_id=outline_id,
                dependencies=(write_id,),
                metadata={
                    **copy.deepcopy(base_metadata),
                    "draft_source_id": write_id,
                    **(
                        {"max_autofix_attempts": max_autofix_attempts}
                        if max_autofix_attempts is not None
                        else {}
                    ),
                    **chapter_extras(TaskKind.VERIFY),
                },
            ),
        )
        edges.append(TaskEdge(write_id, verify_id, "verification needs a draft"))

        nodes.append(
            TaskNode(
                id=assemble_id,
                kind=TaskKind.ASSEMBLE,
                label=f"Assemble chapter {base_label}",
                outline_id=outline_id,
                dependencies=(verify_id,),
                metadata={
                    **copy.deepcopy(base_metadata),
                    "source": "generated",
                    "verified_source_id": verify_id,
                    **chapter_extras(TaskKind.ASSEMBLE),
                },
            ),
        )
        edges.append(TaskEdge(verify_id, assemble_id, "assembly needs a verified draft"))

    chapter_assembly_ids = [node.id for node in nodes if node.kind == TaskKind.ASSEMBLE]
    if chapter_assembly_ids:
        nodes.append(
            TaskNode(
                id=DOCUMENT_SINK_ID,
                kind=TaskKind.ASSEMBLE,
                label="Assemble full document",
                outline_id=DOCUMENT_OUTLINE_ID,
                dependencies=tuple(chapter_assembly_ids),
                metadata={
                    "stage": "final",
                    "title": "Full document",
                    "outline_id": DOCUMENT_OUTLINE_ID,
                    "section_source_ids": list(chapter_assembly_ids),
                },
            ),
        )
        edges.extend(
            TaskEdge(chapter_id, DOCUMENT_SINK_ID, "merge chapters")
            for chapter_id in chapter_assembly_ids
        )

    return TaskDag(nodes=nodes, edges=edges, summary=_summarize(nodes))


def topological_order(dag: TaskDag) -> list[str]:
    """Kahn ordering of node ids; raises on unknown dependencies or cycles."""

    known = {node.id for node in dag.nodes}
    if len(known) != len(dag.nodes):
        raise DagIntegrityError("Task graph contains duplicate node ids.")

    indegree = {node.id: 0 for node in dag.nodes}
    dependents: dict[str, list[str]] = {node.id: [] for node in dag.nodes}
    for node in dag.nodes:
        for dependency in dict.fromkeys(node.dependencies):
            if dependency not in known:
                raise DagIntegrityError(
                    f"Task {node.id} depends on unknown task {dependency}.",
                )
            indegree[node.id] += 1
            dependents[dependency].append(node.id)
    for edge in dag.edges:
        if edge.source not in known or edge.target not in known:
            raise DagIntegrityError(
                f"Edge {edge.source} -> {edge.target} references an unknown task.",
            )

    queue = deque(node.id for node in dag.nodes if indegree[node.id] == 0)
    order: list[str] = []
    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        for dependent in dependents[node_id]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                queue.append(dependent)

    if len(order) != len(dag.nodes):
        remaining = sorted(node_id for node_id, degree in indegree.items() if degree > 0)
        raise DagCycleError(remaining)
    return order


def assert_acyclic(dag: TaskDag) -> None:
    """Raise ``DagCycleError`` / ``DagIntegrityError`` for a malformed graph."""

    topological_order(dag)


def _summarize(nodes: Sequence[TaskNode]) -> DagSummary:
    by_kind = {kind.value: 0 for kind in TaskKind}
    for node in nodes:
        by_kind[node.kind.value] += 1
    return DagSummary(total=len(nodes), by_kind=by_kind)
