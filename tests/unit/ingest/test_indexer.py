"""Tests for SectionIndexer: HTML conversion, chunking, quota, embeddings, persistence."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from docprompt.db.models import Source
from docprompt.errors import QuotaExceededError, TransientItemError
from docprompt.ingest.indexer import IndexerConfig, SectionIndexer, html_to_markdown
from docprompt.ingest.items import HTML, PLAIN, ContentItem, ItemData, create_checksum
from docprompt.rag.llm_client import EmbeddingResult

_EMBED = "docprompt.rag.llm_client.embed"
_COUNT = "docprompt.rag.llm_client.count_tokens"


def _fake_embed(model, text, api_key=None, num_retries=3):
    return EmbeddingResult(vector=[1.0, 0.0, 0.0, 0.0], total_tokens=5)


def _fake_count(model, text):
    return max(1, len(text) // 4)


def _item(path="/guide.md", content="# Guide\n\nHello there.", content_type=None, name="guide"):
    return ContentItem(
        path=path,
        checksum=create_checksum(content),
        data=ItemData(name=name, content=content, content_type=content_type),
    )


@pytest.fixture
def source(repo):
    repo.add_source(Source(id="src-1", type="repository", data='{"url": "/tmp/docs"}'))
    return "src-1"


def _indexer(repo, **kwargs):
    config = IndexerConfig(embedding_model="openai/text-embedding-ada-002", dimensions=4, **kwargs)
    return SectionIndexer(repo, "default", config)


# ------------------------------------------------------------------
# html_to_markdown
# ------------------------------------------------------------------


def test_html_to_markdown_strips_chrome_and_takes_title():
    html = (
        "<html><head><title>Install</title><script>var x;</script></head>"
        "<body><nav>Menu</nav><h1>Installing</h1><p>Run <b>pip</b>.</p><footer>(c)</footer></body></html>"
    )
    markdown, title = html_to_markdown(html)
    assert title == "Install"
    assert "# Installing" in markdown
    assert "**pip**" in markdown
    assert "Menu" not in markdown
    assert "var x" not in markdown
    assert "(c)" not in markdown


def test_html_to_markdown_falls_back_to_h1_title():
    _, title = html_to_markdown("<body><h1>Only heading</h1></body>")
    assert title == "Only heading"


# ------------------------------------------------------------------
# index
# ------------------------------------------------------------------


def test_index_creates_vec_table(repo):
    indexer = _indexer(repo)
    assert indexer.vec_table == "vec_sections_openai_text_embedding_ada_002"


def test_index_stores_sections_and_title(repo, source):
    with patch(_EMBED, side_effect=_fake_embed), patch(_COUNT, side_effect=_fake_count):
        rowids = _indexer(repo).index(source, _item(content="# Guide\n\nHello.\n\n## Next\n\nMore."))

    assert len(rowids) == 2
    record = repo.get_file(source, "/guide.md")
    assert record.meta_dict["title"] == "Guide"
    # checksum is recorded by the orchestrator, not the indexer
    assert record.checksum == ""
    section = repo.get_section(rowids[1])
    assert section.meta_dict == {"leadHeading": {"value": "Next", "depth": 2}}


def test_index_frontmatter_title_wins(repo, source):
    content = "---\ntitle: 'From frontmatter'\n---\n# Heading\n\nBody."
    with patch(_EMBED, side_effect=_fake_embed), patch(_COUNT, side_effect=_fake_count):
        rowids = _indexer(repo).index(source, _item(content=content))

    assert repo.get_file(source, "/guide.md").meta_dict["title"] == "From frontmatter"
    assert "title:" not in repo.get_section(rowids[0]).content


def test_index_html_item(repo, source):
    html = "<html><head><title>Page</title></head><body><h2>Usage</h2><p>Call it.</p></body></html>"
    with patch(_EMBED, side_effect=_fake_embed), patch(_COUNT, side_effect=_fake_count):
        rowids = _indexer(repo).index(
            source, _item(path="https://docs.example.com/usage", content=html, content_type=HTML)
        )

    assert repo.get_file(source, "https://docs.example.com/usage").meta_dict["title"] == "Page"
    assert "Call it." in repo.get_section(rowids[0]).content


def test_index_plain_text_uses_name_as_title(repo, source):
    with patch(_EMBED, side_effect=_fake_embed), patch(_COUNT, side_effect=_fake_count):
        _indexer(repo).index(
            source, _item(path="/notes.txt", content="# not a heading", content_type=PLAIN, name="notes")
        )
    assert repo.get_file(source, "/notes.txt").meta_dict["title"] == "notes"


def test_index_records_section_token_usage(repo, source):
    with patch(_EMBED, side_effect=_fake_embed), patch(_COUNT, side_effect=_fake_count):
        _indexer(repo).index(source, _item(content="# A\n\nx\n\n# B\n\ny"))
    assert repo.token_usage("default") == {"sections": 10}


def test_index_with_own_key_records_no_usage(repo, source):
    config = IndexerConfig(embedding_model="openai/text-embedding-ada-002", dimensions=4)
    indexer = SectionIndexer(repo, "default", config, api_key="sk-own")
    with patch(_EMBED, side_effect=_fake_embed) as mock_embed, patch(_COUNT, side_effect=_fake_count):
        indexer.index(source, _item())
    assert repo.token_usage("default") == {}
    assert mock_embed.call_args.kwargs["api_key"] == "sk-own"


def test_reindex_replaces_sections(repo, source):
    indexer = _indexer(repo)
    with patch(_EMBED, side_effect=_fake_embed), patch(_COUNT, side_effect=_fake_count):
        first = indexer.index(source, _item(content="# A\n\none\n\n# B\n\ntwo"))
        second = indexer.index(source, _item(content="# A\n\nonly"))

    file_id = repo.get_file(source, "/guide.md").id
    assert repo.count_sections(file_id) == 1
    assert all(repo.get_section(r) is None for r in first)
    assert repo.get_section(second[0]).content == "# A\n\nonly"


# ------------------------------------------------------------------
# Errors
# ------------------------------------------------------------------


def test_quota_exceeded_raises_before_embedding(repo, source):
    indexer = _indexer(repo, content_token_quota=10)
    with patch(_EMBED, side_effect=_fake_embed) as mock_embed, patch(_COUNT, return_value=11):
        with pytest.raises(QuotaExceededError):
            indexer.index(source, _item())
    mock_embed.assert_not_called()
    assert repo.get_file(source, "/guide.md") is None


def test_quota_ignores_previous_version_of_same_file(repo, source):
    indexer = _indexer(repo, content_token_quota=10)
    with patch(_EMBED, side_effect=_fake_embed), patch(_COUNT, return_value=8):
        indexer.index(source, _item(content="# One\n\nfirst"))
        # Re-indexing the same path replaces its 8 tokens rather than adding to them.
        indexer.index(source, _item(content="# One\n\nsecond"))
    assert repo.count_project_tokens("default") == 8


def test_embedding_failure_is_transient(repo, source):
    with patch(_EMBED, side_effect=RuntimeError("rate limited")), patch(_COUNT, side_effect=_fake_count):
        with pytest.raises(TransientItemError, match="rate limited"):
            _indexer(repo).index(source, _item())
    assert repo.get_file(source, "/guide.md") is None


def test_metadata_is_kept(repo, source):
    item = _item()
    item.data.metadata = {"lang": "en"}
    with patch(_EMBED, side_effect=_fake_embed), patch(_COUNT, side_effect=_fake_count):
        _indexer(repo).index(source, item)
    assert json.loads(repo.get_file(source, "/guide.md").meta) == {"lang": "en", "title": "Guide"}
