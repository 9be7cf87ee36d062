"""Tests for the Repository pattern."""

from __future__ import annotations

import json

import pytest

from docprompt.db.models import Section, Source


def _source(id="src-1", type="website", data=None, project_id="default"):
    return Source(
        id=id,
        type=type,
        data=json.dumps(data or {"url": "https://docs.example.com"}),
        project_id=project_id,
    )


# ------------------------------------------------------------------
# Sources
# ------------------------------------------------------------------

def test_add_and_get_source(repo):
    repo.add_source(_source(data={"url": "https://a.example.com"}))
    result = repo.get_source("src-1")
    assert result is not None
    assert result.type == "website"
    assert result.data_dict == {"url": "https://a.example.com"}


def test_get_source_not_found(repo):
    assert repo.get_source("nonexistent") is None


def test_list_sources_filters_by_project(repo):
    repo.add_source(_source(id="s1"))
    repo.add_source(_source(id="s2", project_id="other"))
    repo.add_source(_source(id="s3"))
    assert [s.id for s in repo.list_sources("default")] == ["s1", "s3"]
    assert len(repo.list_sources()) == 3


def test_delete_source_removes_files_sections_and_embeddings(repo, add_section, vec_table):
    rowid = add_section("/a.md", "content", [1.0, 0.0, 0.0, 0.0])
    repo.delete_source("src-1")

    assert repo.get_source("src-1") is None
    assert repo.count_files("src-1") == 0
    assert repo.get_section(rowid) is None
    assert repo._conn.execute(f"SELECT COUNT(*) FROM {vec_table}").fetchone()[0] == 0
    assert repo._conn.execute("SELECT COUNT(*) FROM file_sections_fts").fetchone()[0] == 0


# ------------------------------------------------------------------
# Files / checksums
# ------------------------------------------------------------------

def test_ensure_file_starts_with_empty_checksum(repo):
    repo.add_source(_source())
    repo.ensure_file("src-1", "/a.md", '{"title": "A"}')
    record = repo.get_file("src-1", "/a.md")
    assert record.checksum == ""
    assert record.meta_dict == {"title": "A"}


def test_ensure_file_keeps_checksum_and_id(repo):
    repo.add_source(_source())
    first = repo.ensure_file("src-1", "/a.md")
    repo.set_checksum("src-1", "/a.md", "abc")
    second = repo.ensure_file("src-1", "/a.md", '{"title": "New"}')

    record = repo.get_file("src-1", "/a.md")
    assert first == second
    assert record.checksum == "abc"
    assert record.meta_dict == {"title": "New"}


def test_set_checksum_upserts_one_row_per_path(repo):
    repo.add_source(_source())
    repo.set_checksum("src-1", "/a.md", "v1")
    repo.set_checksum("src-1", "/a.md", "v2")
    repo.set_checksum("src-1", "/b.md", "v1")

    assert repo.count_files("src-1") == 2
    assert repo.get_checksums("src-1") == {"/a.md": "v2", "/b.md": "v1"}


# ------------------------------------------------------------------
# Sections + embeddings
# ------------------------------------------------------------------

def test_replace_sections_swaps_previous_content(repo, vec_table):
    repo.add_source(_source())
    file_id = repo.ensure_file("src-1", "/a.md")
    old = repo.replace_sections(
        file_id,
        [(Section(file_id, "old one", 2), [1.0, 0.0, 0.0, 0.0]),
         (Section(file_id, "old two", 2), [0.0, 1.0, 0.0, 0.0])],
        vec_table,
    )
    new = repo.replace_sections(file_id, [(Section(file_id, "new", 1), [0.0, 0.0, 1.0, 0.0])], vec_table)

    assert repo.count_sections(file_id) == 1
    assert all(repo.get_section(r) is None for r in old)
    assert repo.get_section(new[0]).content == "new"
    assert repo._conn.execute(f"SELECT COUNT(*) FROM {vec_table}").fetchone()[0] == 1


def test_replace_sections_sets_rowid_on_section(repo, vec_table):
    repo.add_source(_source())
    file_id = repo.ensure_file("src-1", "/a.md")
    section = Section(file_id, "text", 1)
    [rowid] = repo.replace_sections(file_id, [(section, [1.0, 0.0, 0.0, 0.0])], vec_table)
    assert section.rowid == rowid


def test_replace_sections_rolls_back_on_bad_embedding(repo, vec_table):
    repo.add_source(_source())
    file_id = repo.ensure_file("src-1", "/a.md")
    repo.replace_sections(file_id, [(Section(file_id, "kept", 1), [1.0, 0.0, 0.0, 0.0])], vec_table)

    with pytest.raises(Exception):
        # Wrong dimension count is rejected by vec0.
        repo.replace_sections(file_id, [(Section(file_id, "bad", 1), [1.0, 0.0])], vec_table)

    assert repo.count_sections(file_id) == 1


def test_count_project_tokens_excludes_file(repo, add_section):
    add_section("/a.md", "a", [1.0, 0.0, 0.0, 0.0], token_count=30)
    add_section("/b.md", "b", [0.0, 1.0, 0.0, 0.0], token_count=12)
    add_section("/c.md", "c", [0.0, 0.0, 1.0, 0.0], source_id="other", project_id="p2", token_count=99)

    assert repo.count_project_tokens("default") == 42
    assert repo.count_project_tokens("default", exclude_file=("src-1", "/a.md")) == 12


# ------------------------------------------------------------------
# Similarity search
# ------------------------------------------------------------------

def test_match_sections_orders_by_similarity(repo, add_section, vec_table):
    add_section("/far.md", "x" * 40, [0.6, 0.8, 0.0, 0.0])
    add_section("/near.md", "y" * 40, [1.0, 0.1, 0.0, 0.0])

    results = repo.match_sections(vec_table, [1.0, 0.0, 0.0, 0.0], "default", 0.5, 10, 30)

    assert [r.path for r in results] == ["/near.md", "/far.md"]
    assert results[0].similarity > results[1].similarity
    assert results[0].source_type == "website"
    assert results[0].source_data == {"url": "https://docs.example.com"}


def test_match_sections_applies_threshold_length_and_project(repo, add_section, vec_table):
    add_section("/orthogonal.md", "z" * 40, [0.0, 1.0, 0.0, 0.0])
    add_section("/short.md", "tiny", [1.0, 0.0, 0.0, 0.0])
    add_section("/foreign.md", "w" * 40, [1.0, 0.0, 0.0, 0.0], source_id="s2", project_id="p2")
    add_section("/hit.md", "h" * 40, [1.0, 0.0, 0.0, 0.0], section_meta={"leadHeading": {"value": "H", "depth": 2}})

    results = repo.match_sections(vec_table, [1.0, 0.0, 0.0, 0.0], "default", 0.5, 10, 30)

    assert [r.path for r in results] == ["/hit.md"]
    assert results[0].section_meta == {"leadHeading": {"value": "H", "depth": 2}}


def test_match_sections_respects_count(repo, add_section, vec_table):
    for i in range(5):
        add_section(f"/p{i}.md", f"page {i} " * 10, [1.0, 0.01 * i, 0.0, 0.0])
    results = repo.match_sections(vec_table, [1.0, 0.0, 0.0, 0.0], "default", 0.5, 3, 30)
    assert len(results) == 3


# ------------------------------------------------------------------
# FTS5 search
# ------------------------------------------------------------------

def test_search_sections(repo, add_section):
    add_section("/hooks.md", "Configure webhooks for events", [1.0, 0.0, 0.0, 0.0])
    add_section("/billing.md", "Billing and invoices", [0.0, 1.0, 0.0, 0.0])

    results = repo.search_sections("webhooks", "default")
    assert [(s.content, path) for s, path in results] == [("Configure webhooks for events", "/hooks.md")]


def test_search_sections_strips_punctuation(repo, add_section):
    add_section("/hooks.md", "Configure webhooks", [1.0, 0.0, 0.0, 0.0])
    assert len(repo.search_sections("webhooks, please?", "default")) == 1
    assert repo.search_sections("?!", "default") == []


# ------------------------------------------------------------------
# Query stats
# ------------------------------------------------------------------

def test_insert_query_stat_with_reason(repo):
    stat_id = repo.insert_query_stat(
        "default", "How?", None, [0.1, 0.2], "no_sections", None, redact=False
    )
    stat = repo.get_query_stat(stat_id)
    assert stat.prompt == "How?"
    assert stat.response is None
    assert stat.no_response is True
    assert stat.no_response_reason == "no_sections"
    assert stat.embedding == [0.1, 0.2]
    assert stat.processed_state is None


def test_insert_query_stat_redacted_and_empty_values(repo):
    refs = [{"file": {"path": "/a.md"}}]
    stat_id = repo.insert_query_stat("default", "", "", None, None, refs, redact=True)
    stat = repo.get_query_stat(stat_id)
    assert stat.prompt is None
    assert stat.response is None
    assert stat.no_response is None
    assert stat.processed_state == "unprocessed"
    assert stat.references == refs


def test_update_query_stat_fills_response(repo):
    stat_id = repo.insert_query_stat("default", "q", None, None, None, None, redact=False)
    repo.update_query_stat(stat_id, "The answer", None)
    stat = repo.get_query_stat(stat_id)
    assert stat.response == "The answer"
    assert stat.no_response is None


def test_update_query_stat_records_reason(repo):
    stat_id = repo.insert_query_stat("default", "q", None, None, None, [{"x": 1}], redact=False)
    repo.update_query_stat(stat_id, None, "idk")
    stat = repo.get_query_stat(stat_id)
    assert stat.no_response is True
    assert stat.no_response_reason == "idk"
    assert stat.references == [{"x": 1}]


def test_update_query_stat_unknown_id_is_noop(repo):
    repo.update_query_stat("missing", "x", None)
    assert repo.list_query_stats("default") == []


def test_count_completions(repo):
    for _ in range(3):
        repo.insert_query_stat("default", "q", None, None, None, None, redact=False)
    repo.insert_query_stat("other", "q", None, None, None, None, redact=False)
    assert repo.count_completions("default") == 3
    assert repo.count_completions("default", to_ts="2000-01-01") == 0


# ------------------------------------------------------------------
# Token usage
# ------------------------------------------------------------------

def test_token_usage_totals_by_kind(repo):
    repo.record_token_usage("default", "gpt-4", 100, "completions")
    repo.record_token_usage("default", "gpt-4", 50, "completions")
    repo.record_token_usage("default", "ada", 7, "sections")
    repo.record_token_usage("other", "ada", 1000, "sections")
    assert repo.token_usage("default") == {"completions": 150, "sections": 7}
