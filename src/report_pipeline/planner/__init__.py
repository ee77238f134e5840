"""DAG planner: outline in, task graph out."""

from report_pipeline.planner.dag import (
    DOCUMENT_SINK_ID,
    assert_acyclic,
    build_dag,
    flatten_outline,
    topological_order,
)
from report_pipeline.planner.models import (
    AUTOFIX_KIND,
    AssetReadiness,
    DagSummary,
    OutlineNode,
    TaskDag,
    TaskEdge,
    TaskKind,
    TaskNode,
)
from report_pipeline.planner.outline import load_outline, parse_outline

__all__ = [
    "AUTOFIX_KIND",
    "DOCUMENT_SINK_ID",
    "AssetReadiness",
    "DagSummary",
    "OutlineNode",
    "TaskDag",
    "TaskEdge",
    "TaskKind",
    "TaskNode",
    "assert_acyclic",
    "build_dag",
    "flatten_outline",
    "load_outline",
    "parse_outline",
    "topological_order",
]
