"""Outline file loading."""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from report_pipeline.planner.models import OutlineNode


def parse_outline(raw: Any) -> list[OutlineNode]:
    """Parse a decoded outline document.

    Accepts either a bare list of chapters or an object with an ``outline``
    list. Non-object entries are ignored.
    """

    if isinstance(raw, Mapping):
        raw = raw.get("outline", [])
    if not isinstance(raw, list):
        raise ValueError("Outline must be a JSON list or an object with an 'outline' list.")
    return [OutlineNode.from_dict(entry) for entry in raw if isinstance(entry, Mapping)]


def load_outline(path: Path) -> list[OutlineNode]:
    """Read an outline JSON file."""

    try:
        raw = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Outline is not valid JSON: {path}: {error}") from error
    return parse_outline(raw)
