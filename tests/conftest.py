"""Shared pytest fixtures."""

from __future__ import annotations

import json

import pytest

from docprompt.db.connection import Database
from docprompt.db.models import Section, Source
from docprompt.db.repository import Repository
from docprompt.db.schema import initialize

EMBEDDING_MODEL = "openai/text-embedding-ada-002"


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".docprompt.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


@pytest.fixture
def vec_table(repo):
    """A 4-dimensional vec table for the default embedding model."""
    return repo.ensure_vec_table(EMBEDDING_MODEL, 4)


@pytest.fixture
def add_section(repo, vec_table):
    """Store a single section with *embedding* as the content of ``(source_id, path)``.

    Creates the source on first use. Returns the section rowid.
    """

    def _add(
        path: str,
        content: str,
        embedding: list[float],
        source_id: str = "src-1",
        project_id: str = "default",
        token_count: int = 10,
        source_type: str = "website",
        file_meta: dict | None = None,
        section_meta: dict | None = None,
    ) -> int:
        if repo.get_source(source_id) is None:
            repo.add_source(
                Source(
                    id=source_id,
                    type=source_type,
                    data=json.dumps({"url": "https://docs.example.com"}),
                    project_id=project_id,
                )
            )
        file_id = repo.ensure_file(source_id, path, json.dumps(file_meta or {}))
        section = Section(
            file_id=file_id,
            content=content,
            token_count=token_count,
            meta=json.dumps(section_meta or {}),
        )
        return repo.replace_sections(file_id, [(section, embedding)], vec_table)[0]

    return _add
