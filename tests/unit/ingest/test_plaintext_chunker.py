"""Tests for PlainTextChunker."""

from __future__ import annotations

import pytest

from docprompt.db.models import Section
from docprompt.ingest.plaintext import PlainTextChunker


def test_plaintext_default_settings():
    chunker = PlainTextChunker()
    assert chunker.chunk_size == 512
    assert chunker.overlap == pytest.approx(0.10)


def test_plaintext_empty_content():
    assert PlainTextChunker().chunk(1, "") == []
    assert PlainTextChunker().chunk(1, "  \n  ") == []


def test_plaintext_short_text_single_section():
    sections = PlainTextChunker().chunk(3, "Short text.")
    assert len(sections) == 1
    assert isinstance(sections[0], Section)
    assert sections[0].file_id == 3
    assert sections[0].content == "Short text."
    assert sections[0].meta_dict == {}


def test_plaintext_long_text_multiple_sections():
    sections = PlainTextChunker(chunk_size=10, overlap=0.0).chunk(1, "x" * 200)
    assert len(sections) == 5
    assert all(s.token_count == 10 for s in sections)


def test_plaintext_overlap_produces_more_sections():
    text = "x" * 400
    no_overlap = PlainTextChunker(chunk_size=10, overlap=0.0).chunk(1, text)
    with_overlap = PlainTextChunker(chunk_size=10, overlap=0.50).chunk(1, text)
    assert len(with_overlap) > len(no_overlap)
