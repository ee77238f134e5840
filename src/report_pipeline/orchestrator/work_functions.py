"""Local work functions, one per task kind.

Each function takes the job payload built by the dispatcher and returns the
kind-specific result, raising on failure. ``prepare``, ``retrieve`` and
``write`` are deterministic echo implementations with no model calls, enough to
drive a project end to end on one machine. ``verify`` performs the structural
checks and returns one of the three verify result shapes.
"""

from __future__ import annotations

import copy
import json
import math
import re
from collections.abc import Callable, Mapping
from typing import Any

from report_pipeline.orchestrator.verification import VerifyStatus
from report_pipeline.planner.models import AUTOFIX_KIND, TaskKind

WorkFunction = Callable[[dict[str, Any]], Any]

DEFAULT_MIN_WORD_COUNT = 80
_FILLER_SENTENCE = "Further analysis and supporting data are required here."
_PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")
_SOFT_VIOLATION_CODES = frozenset({"WORD_COUNT_LOW", "MISSING_REFERENCES"})


def materialize_fixed(payload: dict[str, Any]) -> dict[str, Any]:
    bindings = payload.get("bindings") or {}
    return {
        "node_id": payload["node_id"],
        "rendered_block": {
            "text": render_fixed_content(payload.get("fixed_content") or "", bindings),
            "bindings": bindings,
        },
    }


def prepare(payload: dict[str, Any]) -> dict[str, Any]:
    """Derive the writing prompt and retrieval queries from the outline node."""

    node = payload.get("outline_node") or {}
    title = str(node.get("title") or payload.get("label") or "")
    chapter = str(node.get("chapter_number") or "")
    context = payload.get("project_context") or {}
    assets = payload.get("assets_availability") or {}

    lines = [f"Write section {chapter} \"{title}\"."]
    if node.get("govern_standard"):
        lines.append(f"Follow the standard: {node['govern_standard']}.")
    if context:
        lines.append(f"Project context: {json.dumps(context, ensure_ascii=False, sort_keys=True)}")

    table_prompt = None
    if assets.get("table_ready"):
        table_prompt = f"Tabulate the figures for \"{title}\"."
    queries = [title] if title else []
    if node.get("govern_standard"):
        queries.append(str(node["govern_standard"]))
    return {
        "prompts": {
            "user_prompt_text": "\n".join(lines),
            "user_prompt_table": table_prompt,
            "user_prompt_image": None,
        },
        "queries": queries,
    }


def retrieve(payload: dict[str, Any]) -> dict[str, Any]:
    context_pack = []
    for index, query in enumerate(payload.get("queries") or []):
        if not query:
            continue
        context_pack.append(
            {
                "source": "local",
                "type": "echo",
                "payload": {
                    "query": query,
                    "data": f"Background material for {query}.",
                    "citations": [{"id": f"{payload['node_id']}#{index}", "query": query}],
                },
            },
        )
    return {"context_pack": context_pack[: max(1, int(payload.get("limit") or 5))]}


def write(payload: dict[str, Any]) -> dict[str, Any]:
    context_pack = payload.get("context_pack") or []
    background = [
        str(item.get("payload", {}).get("data") or "")
        for item in context_pack
        if isinstance(item, Mapping)
    ]
    references = collect_references(context_pack)
    if not references:
        references = [
            {"source": "outline", "node_id": payload["node_id"], "title": payload.get("title")},
        ]

    text = "\n\n".join(part for part in [payload.get("prompt") or "", *background] if part)
    return {
        "draft": {
            "title": payload.get("title"),
            "text": text,
            "references": references,
        },
        "references": references,
        "word_count": count_words(text),
    }


def verify(payload: dict[str, Any]) -> dict[str, Any]:
    """Structural checks on a draft.

    Short drafts and drafts without references are repairable (soft). Missing
    required terms and numeric expectations out of range are not (hard).
    """

    draft = payload.get("draft")
    metrics = payload.get("metrics") or {}
    text = extract_draft_text(draft)
    violations: list[dict[str, Any]] = []
    patches: list[dict[str, Any]] = []

    min_word_count = int(metrics.get("min_word_count") or DEFAULT_MIN_WORD_COUNT)
    word_count = count_words(text)
    if word_count < min_word_count:
        violations.append(
            {
                "code": "WORD_COUNT_LOW",
                "message": f"Draft is too short ({word_count} words)",
                "expected": f">= {min_word_count}",
                "severity": "soft",
            },
        )
        missing = min_word_count - word_count
        filler_words = count_words(_FILLER_SENTENCE)
        repeats = math.ceil(missing / filler_words)
        patches.append(
            {
                "type": "append",
                "path": "/text",
                "value": " " + " ".join([_FILLER_SENTENCE] * repeats),
            },
        )

    references = draft.get("references") if isinstance(draft, Mapping) else None
    if not (isinstance(references, list) and references):
        violations.append(
            {
                "code": "MISSING_REFERENCES",
                "message": "Draft cites no references",
                "severity": "soft",
            },
        )

    missing_terms = [term for term in metrics.get("required_terms") or [] if term not in text]
    if missing_terms:
        violations.append(
            {
                "code": "MISSING_TERMS",
                "message": f"Missing required terms: {', '.join(missing_terms)}",
                "severity": "hard",
            },
        )

    for expectation in metrics.get("numeric_expectations") or []:
        violations.extend(_check_numeric_expectation(text, expectation))

    if not violations:
        return {"status": VerifyStatus.ACCEPT.value, "draft": draft}
    if any(violation.get("severity") == "hard" for violation in violations):
        return {"status": VerifyStatus.HARD_FAIL.value, "draft": draft, "violations": violations}
    if any(violation["code"] in _SOFT_VIOLATION_CODES for violation in violations):
        return {
            "status": VerifyStatus.SOFT_FAIL.value,
            "draft": draft,
            "violations": violations,
            "patches": patches,
        }
    return {"status": VerifyStatus.ACCEPT.value, "draft": draft}


def autofix(payload: dict[str, Any]) -> dict[str, Any]:
    draft = payload.get("draft")
    patches = payload.get("patches") or []
    for patch in patches:
        draft = apply_patch(draft, patch)
    return {"draft": draft, "applied_patches": len(patches)}


def assemble(payload: dict[str, Any]) -> dict[str, Any]:
    """Assemble one chapter, or the whole document for the sink node."""

    if "sections" in payload:
        return _assemble_document(payload)

    draft = payload.get("draft")
    content = {"fixed_blocks": list(payload.get("fixed_blocks") or []), "draft": draft}
    title = payload.get("title") or ""
    parts = [f"## {title}".rstrip()]
    for block in content["fixed_blocks"]:
        text = block.get("text") if isinstance(block, Mapping) else block
        if text:
            parts.append(str(text))
    if draft is not None:
        parts.append(extract_draft_text(draft))
    return {
        "section_id": payload["node_id"],
        "outline_id": payload.get("outline_id"),
        "title": title,
        "content": content,
        "markdown": "\n\n".join(parts) + "\n",
    }


def _assemble_document(payload: dict[str, Any]) -> dict[str, Any]:
    title = payload.get("title") or "Full document"
    parts = [f"# {title}"]
    section_ids = []
    for section in payload.get("sections") or []:
        section_ids.append(section["node_id"])
        result = section.get("result")
        if isinstance(result, Mapping) and result.get("markdown"):
            parts.append(str(result["markdown"]).strip())
    return {
        "document_id": payload["node_id"],
        "title": title,
        "section_ids": section_ids,
        "children": list(payload.get("children") or []),
        "markdown": "\n\n".join(parts) + "\n",
    }


def render_fixed_content(template: str, bindings: Mapping[str, Any]) -> str:
    """Replace ``{{ key }}`` placeholders; unknown keys render empty."""

    def substitute(match: re.Match[str]) -> str:
        value = bindings.get(match.group(1).strip())
        if value is None:
            return ""
        if isinstance(value, bool):
            return str(value).lower()
        if isinstance(value, float):
            return repr(value) if math.isfinite(value) else ""
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return str(value)

    return _PLACEHOLDER_PATTERN.sub(substitute, template)


def apply_patch(draft: Any, patch: Mapping[str, Any]) -> Any:
    """Apply one ``append``/``set``/``replace`` patch addressed by ``/a/b`` path.

    The input draft is left untouched; a string draft is treated as ``{"text": ...}``.
    """

    path = patch.get("path")
    if not isinstance(path, str):
        return draft
    patch_type = patch.get("type", "set")
    if patch_type not in {"append", "set", "replace"}:
        raise ValueError(f"Unsupported patch type: {patch_type!r}")

    if isinstance(draft, str):
        patched: Any = {"text": draft}
    elif isinstance(draft, Mapping):
        patched = copy.deepcopy(dict(draft))
    else:
        patched = {}

    segments = path.lstrip("/").split("/")
    target = patched
    for key in segments[:-1]:
        if not isinstance(target.get(key), dict):
            target[key] = {}
        target = target[key]

    last_key = segments[-1]
    value = patch.get("value")
    current = target.get(last_key)
    if patch_type == "append":
        if isinstance(current, list):
            current.append(value)
        elif isinstance(current, str):
            target[last_key] = f"{current}{value}"
        elif last_key not in target:
            target[last_key] = [value]
        else:
            target[last_key] = value
    else:
        target[last_key] = value
    return patched


def collect_references(context_pack: list[Any]) -> list[Any]:
    references: list[Any] = []
    for item in context_pack:
        item_payload = item.get("payload") if isinstance(item, Mapping) else None
        if not isinstance(item_payload, Mapping):
            continue
        citations = item_payload.get("citations")
        if isinstance(citations, list):
            references.extend(citations)
        metadata = item_payload.get("metadata")
        if isinstance(metadata, Mapping) and isinstance(metadata.get("citations"), list):
            references.extend(metadata["citations"])
    return references


def extract_draft_text(draft: Any) -> str:
    if not draft:
        return ""
    if isinstance(draft, str):
        return draft
    if isinstance(draft, Mapping):
        if draft.get("text"):
            return str(draft["text"])
        if draft.get("content"):
            return str(draft["content"])
    return json.dumps(draft, ensure_ascii=False, sort_keys=True)


def count_words(text: str) -> int:
    return len(text.split()) if text else 0


def _check_numeric_expectation(text: str, expectation: Mapping[str, Any]) -> list[dict[str, Any]]:
    name = str(expectation.get("name") or "")
    match = re.search(rf"{re.escape(name)}\s*[:：]?\s*(\d+(?:\.\d+)?)", text, re.IGNORECASE)
    if not name or match is None:
        return [
            {
                "code": "MISSING_NUMERIC_METRIC",
                "message": f"Metric {name} is not mentioned",
                "severity": "hard",
            },
        ]

    value = float(match.group(1))
    violations = []
    minimum = expectation.get("min")
    maximum = expectation.get("max")
    if minimum is not None and value < minimum:
        violations.append(
            {
                "code": "METRIC_BELOW_MIN",
                "message": f"{name} value ({value:g}) is below {minimum}",
                "severity": "hard",
            },
        )
    if maximum is not None and value > maximum:
        violations.append(
            {
                "code": "METRIC_ABOVE_MAX",
                "message": f"{name} value ({value:g}) is above {maximum}",
                "severity": "hard",
            },
        )
    return violations


DEFAULT_WORK_FUNCTIONS: dict[str, WorkFunction] = {
    TaskKind.MATERIALIZE_FIXED.value: materialize_fixed,
    TaskKind.PREPARE.value: prepare,
    TaskKind.RETRIEVE.value: retrieve,
    TaskKind.WRITE.value: write,
    TaskKind.VERIFY.value: verify,
    TaskKind.ASSEMBLE.value: assemble,
    AUTOFIX_KIND: autofix,
}
