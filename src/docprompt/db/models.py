"""Domain models for the docprompt database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

SOURCE_TYPES: tuple[str, ...] = ("repository", "website", "export", "connector")

NO_RESPONSE_REASONS: tuple[str, ...] = ("no_sections", "idk", "api_error")


@dataclass
class Source:
    id: str
    type: str
    data: str = field(default_factory=lambda: "{}")
    project_id: str = "default"
    inserted_at: str | None = None

    @property
    def data_dict(self) -> dict:
        return json.loads(self.data)


@dataclass
class FileRecord:
    """A trained item of a source, carrying its last-seen checksum."""

    source_id: str
    path: str
    checksum: str
    meta: str = field(default_factory=lambda: "{}")
    id: int | None = None
    updated_at: str | None = None

    @property
    def meta_dict(self) -> dict:
        return json.loads(self.meta)


@dataclass
class Section:
    file_id: int
    content: str
    token_count: int
    meta: str = field(default_factory=lambda: "{}")
    rowid: int | None = None  # set after insert; None for unsaved sections

    @property
    def meta_dict(self) -> dict:
        return json.loads(self.meta)


@dataclass
class RetrievedSection:
    """A section returned by a similarity search, joined with its file and source."""

    path: str
    content: str
    token_count: int
    similarity: float
    source_type: str
    source_data: dict = field(default_factory=dict)
    file_meta: dict = field(default_factory=dict)
    section_meta: dict = field(default_factory=dict)


@dataclass
class QueryStat:
    """Persisted record of a single query (prompt, answer, reason, references)."""

    id: str
    project_id: str
    prompt: str | None = None
    response: str | None = None
    embedding: list[float] | None = None
    no_response: bool | None = None
    meta: str = field(default_factory=lambda: "{}")
    processed_state: str | None = None
    created_at: str | None = None

    @property
    def meta_dict(self) -> dict:
        return json.loads(self.meta)

    @property
    def no_response_reason(self) -> str | None:
        return self.meta_dict.get("noResponseReason")

    @property
    def references(self) -> list[dict]:
        return self.meta_dict.get("references", [])
