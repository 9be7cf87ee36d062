"""Tests for the context assembler."""

from __future__ import annotations

from docprompt.db.models import RetrievedSection
from docprompt.rag.assembler import (
    CONTEXT_INTRO,
    assemble_context,
    build_full_prompt,
    build_reference,
    prepare_section_text,
)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _section(path="/docs/intro.md", content="Some content", tokens=100, title=None, meta=None):
    return RetrievedSection(
        path=path,
        content=content,
        token_count=tokens,
        similarity=0.9,
        source_type="repository",
        source_data={"url": "https://github.com/org/docs"},
        file_meta={"title": title} if title else {},
        section_meta=meta or {},
    )


# ------------------------------------------------------------------
# Section text and references
# ------------------------------------------------------------------


def test_prepare_section_text_flattens_newlines():
    assert prepare_section_text("\nLine one\nLine two\n") == "Line one Line two"


def test_reference_uses_file_title():
    ref = build_reference(_section(title="Introduction"))
    assert ref.title == "Introduction"


def test_reference_falls_back_to_file_name():
    assert build_reference(_section(path="/docs/getting-started.md")).title == "getting-started"


def test_reference_to_dict():
    meta = {"leadHeading": {"value": "Setup", "depth": 2}}
    ref = build_reference(_section(title="Intro", meta=meta))
    assert ref.to_dict() == {
        "file": {
            "path": "/docs/intro.md",
            "title": "Intro",
            "meta": {"title": "Intro"},
            "source": {"type": "repository", "data": {"url": "https://github.com/org/docs"}},
        },
        "meta": meta,
    }


# ------------------------------------------------------------------
# assemble_context
# ------------------------------------------------------------------


def test_context_format():
    context = assemble_context([_section(content="First\nline")])
    assert context.text == "Section id: /docs/intro.md\n\nFirst line\n---\n"
    assert context.total_tokens == 100


def test_context_stops_before_section_reaching_cutoff():
    sections = [
        _section(path="/a.md", tokens=700),
        _section(path="/b.md", tokens=700),
        _section(path="/c.md", tokens=100),
        _section(path="/d.md", tokens=10),
    ]
    context = assemble_context(sections, context_tokens_cutoff=1500)
    # 700 + 700 + 100 = 1500 reaches the cutoff, so /c.md and everything after are dropped.
    assert [s.path for s in context.sections] == ["/a.md", "/b.md"]
    assert context.total_tokens == 1400
    assert "/c.md" not in context.text
    assert "/d.md" not in context.text


def test_references_deduplicated_in_first_seen_order():
    sections = [
        _section(path="/b.md", content="b1", tokens=10),
        _section(path="/a.md", content="a1", tokens=10),
        _section(path="/b.md", content="b2", tokens=10, meta={"leadHeading": {"value": "Two", "depth": 2}}),
    ]
    context = assemble_context(sections)
    assert context.reference_paths == ["/b.md", "/a.md"]
    assert context.references[0].section_meta == {}
    assert len(context.sections) == 3


def test_empty_sections():
    context = assemble_context([])
    assert context.text == ""
    assert context.references == []


# ------------------------------------------------------------------
# build_full_prompt
# ------------------------------------------------------------------


def test_full_prompt_substitutes_tags():
    template = "Use {{CONTEXT}}\nAnswer {{PROMPT}} or say {{I_DONT_KNOW}}"
    full = build_full_prompt(template, "CTX", "What?", "No idea")
    assert full == "Use CTX\nAnswer What? or say No idea"


def test_full_prompt_custom_tags():
    full = build_full_prompt(
        "<ctx> / <q> / <idk>", "CTX", "Q", "IDK", context_tag="<ctx>", prompt_tag="<q>", idk_tag="<idk>"
    )
    assert full == "CTX / Q / IDK"


def test_full_prompt_injects_missing_context_and_prompt():
    full = build_full_prompt("Be helpful.", "CTX", "What?", "No idea")
    assert full.startswith(CONTEXT_INTRO)
    assert "---\n\nCTX\n\n---\n\nBe helpful." in full
    assert full.endswith("Prompt: What?")


def test_full_prompt_do_not_inject():
    full = build_full_prompt(
        "Be helpful.", "CTX", "What?", "No idea", do_not_inject_context=True, do_not_inject_prompt=True
    )
    assert full == "Be helpful."


def test_full_prompt_dedents_template():
    template = """
        Context: {{CONTEXT}}
        Question: {{PROMPT}}
    """
    assert build_full_prompt(template, "CTX", "Q", "IDK") == "Context: CTX\nQuestion: Q"


def test_tag_text_inside_context_is_not_substituted():
    context = "Section id: /templates.md\n\nUse {{PROMPT}} in your template.\n---\n"
    full = build_full_prompt("Answer. {{I_DONT_KNOW}}", context, "How do tags work?", "Sorry")
    assert "Use {{PROMPT}} in your template." in full
    assert full.endswith("Prompt: How do tags work?")
    assert "Answer. Sorry" in full


def test_tag_text_inside_prompt_is_not_substituted():
    full = build_full_prompt("Q: {{PROMPT}}", "CTX", "What is {{CONTEXT}}?", "IDK")
    assert full.startswith(CONTEXT_INTRO)
    assert full.endswith("Q: What is {{CONTEXT}}?")
    assert full.count("CTX") == 1


def test_only_first_occurrence_of_each_tag_is_replaced():
    assert build_full_prompt("{{CONTEXT}} {{PROMPT}} {{PROMPT}}", "C", "Q", "I") == "C Q {{PROMPT}}"
