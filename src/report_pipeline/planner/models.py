"""Domain models for outline planning and the task graph."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

AUTOFIX_KIND = "autofix"


class TaskKind(str, Enum):
    """Pipeline stages a task node can represent."""

    MATERIALIZE_FIXED = "materialize_fixed"
    PREPARE = "prepare"
    RETRIEVE = "retrieve"
    WRITE = "write"
    VERIFY = "verify"
    ASSEMBLE = "assemble"


@dataclass(slots=True)
class OutlineNode:
    """One chapter of a nested document outline."""

    chapter_number: str
    title: str
    govern_standard: str | None = None
    generate_prompt: bool = False
    fixed_content: str | None = None
    children: list[OutlineNode] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> OutlineNode:
        """Build a node tree from a JSON-like mapping.

        Nesting is read from ``outline_structure`` or ``children``. Missing
        chapter numbers or titles are kept as empty strings so the planner can
        decide to skip them.
        """

        raw_children = raw.get("outline_structure")
        if raw_children is None:
            raw_children = raw.get("children")
        children = [
            cls.from_dict(child) for child in raw_children or [] if isinstance(child, Mapping)
        ]
        fixed_content = raw.get("fixed_content")
        return cls(
            chapter_number=str(raw.get("chapter_number") or "").strip(),
            title=str(raw.get("title") or "").strip(),
            govern_standard=raw.get("govern_standard") or None,
            generate_prompt=bool(raw.get("generate_prompt", False)),
            fixed_content=str(fixed_content) if fixed_content else None,
            children=children,
        )

    def to_dict(self) -> dict[str, Any]:
        """Snapshot without children, stored in task metadata."""

        return {
            "chapter_number": self.chapter_number,
            "title": self.title,
            "govern_standard": self.govern_standard,
            "generate_prompt": self.generate_prompt,
            "fixed_content": self.fixed_content,
        }


@dataclass(slots=True, frozen=True)
class AssetReadiness:
    """Project-wide capability flags aggregated over ingested assets."""

    embed_ready: bool = False
    table_ready: bool = False

    @classmethod
    def from_assets(cls, assets: Iterable[Mapping[str, Any]]) -> AssetReadiness:
        embed_ready = False
        table_ready = False
        for asset in assets:
            embed_ready = embed_ready or bool(asset.get("embed_ready"))
            table_ready = table_ready or bool(asset.get("table_ready"))
        return cls(embed_ready=embed_ready, table_ready=table_ready)

    @property
    def needs_retrieval(self) -> bool:
        return self.embed_ready or self.table_ready

    def to_dict(self) -> dict[str, bool]:
        return {"embed_ready": self.embed_ready, "table_ready": self.table_ready}


@dataclass(slots=True)
class TaskNode:
    """One unit of work in the task graph."""

    id: str
    kind: TaskKind
    label: str
    outline_id: str | None = None
    dependencies: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class TaskEdge:
    """Documentation edge; dependency enforcement lives on ``TaskNode``."""

    source: str
    target: str
    reason: str | None = None


@dataclass(slots=True)
class DagSummary:
    """Node counts for observability."""

    total: int
    by_kind: dict[str, int]


@dataclass(slots=True)
class TaskDag:
    """Nodes and edges produced by one planning pass."""

    nodes: list[TaskNode]
    edges: list[TaskEdge]
    summary: DagSummary

    def node(self, node_id: str) -> TaskNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def node_ids(self, kind: TaskKind | None = None) -> list[str]:
        return [node.id for node in self.nodes if kind is None or node.kind == kind]
