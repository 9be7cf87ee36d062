"""Plain text chunker — fixed window with overlap."""

from __future__ import annotations

from docprompt.db.models import Section
from docprompt.ingest.base import BaseChunker


class PlainTextChunker(BaseChunker):
    """Split plain text into fixed-size windows with overlap.

    Default: 512 tokens / 10 % overlap.
    Delegates entirely to ``BaseChunker._split_fixed_window()``.
    """

    def chunk(self, file_id: int, content: str) -> list[Section]:
        if not content.strip():
            return []
        return self._make_sections(file_id, self._split_fixed_window(content))
