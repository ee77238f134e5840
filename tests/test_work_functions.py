from __future__ import annotations

import allure
import pytest

from report_pipeline.orchestrator.work_functions import (
    DEFAULT_WORK_FUNCTIONS,
    apply_patch,
    assemble,
    autofix,
    count_words,
    extract_draft_text,
    materialize_fixed,
    prepare,
    render_fixed_content,
    retrieve,
    verify,
    write,
)

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Local Work Functions"),
]

LONG_TEXT = " ".join(["word"] * 100)
REFERENCES = [{"id": "write:1#0"}]


def test_render_fixed_content_formats_bound_values() -> None:
    template = "{{ name }}|{{flag}}|{{ ratio }}|{{ missing }}|{{ nan }}|{{ tags }}|{{ info }}"
    bindings = {
        "name": "ACME",
        "flag": True,
        "ratio": 0.5,
        "nan": float("nan"),
        "tags": ["a", "b"],
        "info": {"k": 1},
    }

    assert render_fixed_content(template, bindings) == 'ACME|true|0.5|||["a", "b"]|{"k": 1}'


def test_materialize_fixed_renders_block() -> None:
    result = materialize_fixed(
        {
            "node_id": "materialize:1",
            "fixed_content": "By {{ author }}",
            "bindings": {"author": 7},
        },
    )

    assert result == {
        "node_id": "materialize:1",
        "rendered_block": {"text": "By 7", "bindings": {"author": 7}},
    }


def test_prepare_builds_prompts_and_queries() -> None:
    result = prepare(
        {
            "outline_node": {
                "chapter_number": "2",
                "title": "Energy",
                "govern_standard": "GB 50189",
            },
            "project_context": {"site": "Plant A"},
            "assets_availability": {"embed_ready": True, "table_ready": True},
        },
    )

    prompts = result["prompts"]
    assert 'Write section 2 "Energy".' in prompts["user_prompt_text"]
    assert "GB 50189" in prompts["user_prompt_text"]
    assert '"site": "Plant A"' in prompts["user_prompt_text"]
    assert prompts["user_prompt_table"] is not None
    assert prompts["user_prompt_image"] is None
    assert result["queries"] == ["Energy", "GB 50189"]


def test_prepare_without_table_assets_has_no_table_prompt() -> None:
    result = prepare({"outline_node": {"chapter_number": "1", "title": "Intro"}})

    assert result["prompts"]["user_prompt_table"] is None
    assert result["queries"] == ["Intro"]


def test_prepare_treats_generate_prompt_as_a_switch() -> None:
    node = {"chapter_number": "1", "title": "Intro", "generate_prompt": True}

    result = prepare({"outline_node": node})

    assert result["prompts"]["user_prompt_text"] == 'Write section 1 "Intro".'
    assert "True" not in result["prompts"]["user_prompt_text"].splitlines()


def test_retrieve_emits_cited_context_items() -> None:
    result = retrieve({"node_id": "retrieve:1", "queries": ["a", "", "b", "c"], "limit": 2})

    pack = result["context_pack"]
    assert [item["payload"]["query"] for item in pack] == ["a", "b"]
    assert pack[0]["payload"]["citations"] == [{"id": "retrieve:1#0", "query": "a"}]


def test_write_collects_references_from_context_pack() -> None:
    context_pack = retrieve({"node_id": "retrieve:1", "queries": ["a"]})["context_pack"]

    result = write(
        {
            "node_id": "write:1",
            "title": "Intro",
            "prompt": "Write it",
            "context_pack": context_pack,
        },
    )

    assert result["draft"]["title"] == "Intro"
    assert result["draft"]["text"].startswith("Write it")
    assert "Background material for a." in result["draft"]["text"]
    assert result["references"] == [{"id": "retrieve:1#0", "query": "a"}]
    assert result["word_count"] == count_words(result["draft"]["text"])


def test_write_without_context_cites_outline() -> None:
    result = write({"node_id": "write:1", "title": "Intro", "prompt": "Write it"})

    assert result["draft"]["references"] == [
        {"source": "outline", "node_id": "write:1", "title": "Intro"},
    ]


def test_verify_accepts_complete_draft() -> None:
    draft = {"text": LONG_TEXT, "references": REFERENCES}

    assert verify({"draft": draft}) == {"status": "accept", "draft": draft}


def test_verify_short_draft_soft_fails_with_repairing_patch() -> None:
    draft = {"text": "too short", "references": REFERENCES}

    outcome = verify({"draft": draft, "metrics": {"min_word_count": 30}})

    assert outcome["status"] == "soft_fail"
    assert [violation["code"] for violation in outcome["violations"]] == ["WORD_COUNT_LOW"]
    repaired = autofix({"draft": draft, "patches": outcome["patches"]})
    assert repaired["applied_patches"] == 1
    assert count_words(repaired["draft"]["text"]) >= 30
    assert verify({"draft": repaired["draft"], "metrics": {"min_word_count": 30}})["status"] == (
        "accept"
    )


def test_verify_missing_references_is_soft() -> None:
    outcome = verify({"draft": {"text": LONG_TEXT, "references": []}})

    assert outcome["status"] == "soft_fail"
    assert [violation["code"] for violation in outcome["violations"]] == ["MISSING_REFERENCES"]
    assert outcome["patches"] == []


def test_verify_missing_required_terms_is_hard() -> None:
    outcome = verify(
        {
            "draft": {"text": "too short", "references": REFERENCES},
            "metrics": {"required_terms": ["carbon"]},
        },
    )

    assert outcome["status"] == "hard_fail"
    assert {violation["code"] for violation in outcome["violations"]} == {
        "WORD_COUNT_LOW",
        "MISSING_TERMS",
    }


@pytest.mark.parametrize(
    ("text", "code"),
    [
        ("no numbers at all", "MISSING_NUMERIC_METRIC"),
        ("Efficiency: 12", "METRIC_BELOW_MIN"),
        ("efficiency 99.5", "METRIC_ABOVE_MAX"),
    ],
)
def test_verify_numeric_expectations_are_hard(text: str, code: str) -> None:
    metrics = {
        "min_word_count": 1,
        "numeric_expectations": [{"name": "Efficiency", "min": 20, "max": 90}],
    }

    outcome = verify({"draft": {"text": text, "references": REFERENCES}, "metrics": metrics})

    assert outcome["status"] == "hard_fail"
    assert [violation["code"] for violation in outcome["violations"]] == [code]


def test_verify_numeric_expectation_in_range_accepts() -> None:
    metrics = {
        "min_word_count": 1,
        "numeric_expectations": [{"name": "Efficiency", "min": 20, "max": 90}],
    }
    draft = {"text": "Efficiency: 45", "references": REFERENCES}

    outcome = verify({"draft": draft, "metrics": metrics})

    assert outcome["status"] == "accept"


def test_apply_patch_does_not_mutate_input() -> None:
    draft = {"text": "a", "sections": {"tags": ["x"]}}

    appended = apply_patch(draft, {"type": "append", "path": "/sections/tags", "value": "y"})
    replaced = apply_patch(draft, {"type": "replace", "path": "/text", "value": "b"})
    created = apply_patch(draft, {"type": "set", "path": "/meta/owner", "value": "me"})

    assert draft == {"text": "a", "sections": {"tags": ["x"]}}
    assert appended["sections"]["tags"] == ["x", "y"]
    assert replaced["text"] == "b"
    assert created["meta"] == {"owner": "me"}


def test_apply_patch_edge_cases() -> None:
    assert apply_patch("plain", {"type": "append", "path": "/text", "value": "!"}) == {
        "text": "plain!",
    }
    assert apply_patch({"a": 1}, {"type": "append", "path": "/b", "value": 2}) == {"a": 1, "b": [2]}
    assert apply_patch({"a": 1}, {"value": 2}) == {"a": 1}
    with pytest.raises(ValueError, match="Unsupported patch type"):
        apply_patch({}, {"type": "delete", "path": "/a"})


def test_assemble_chapter_combines_fixed_blocks_and_draft() -> None:
    result = assemble(
        {
            "node_id": "assemble:1",
            "outline_id": "1",
            "title": "Intro",
            "fixed_blocks": [{"text": "Static header"}],
            "draft": {"text": "Body text"},
        },
    )

    assert result["section_id"] == "assemble:1"
    assert result["content"]["fixed_blocks"] == [{"text": "Static header"}]
    assert result["markdown"] == "## Intro\n\nStatic header\n\nBody text\n"


def test_assemble_document_joins_sections_in_order() -> None:
    result = assemble(
        {
            "node_id": "assemble:document",
            "title": "Full document",
            "sections": [
                {"node_id": "assemble:1", "result": {"markdown": "## One\n"}},
                {"node_id": "assemble:2", "result": None},
                {"node_id": "assemble:3", "result": {"markdown": "## Three\n"}},
            ],
            "children": [],
        },
    )

    assert result["document_id"] == "assemble:document"
    assert result["section_ids"] == ["assemble:1", "assemble:2", "assemble:3"]
    assert result["markdown"] == "# Full document\n\n## One\n\n## Three\n"


def test_extract_draft_text_variants() -> None:
    assert extract_draft_text(None) == ""
    assert extract_draft_text("raw") == "raw"
    assert extract_draft_text({"content": "c"}) == "c"
    assert extract_draft_text({"x": 1}) == '{"x": 1}'


def test_registry_covers_every_queue_kind() -> None:
    assert set(DEFAULT_WORK_FUNCTIONS) == {
        "materialize_fixed",
        "prepare",
        "retrieve",
        "write",
        "verify",
        "assemble",
        "autofix",
    }
