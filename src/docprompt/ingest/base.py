"""Base chunker interface shared by every section splitter."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod

from docprompt.db.models import Section


class BaseChunker(ABC):
    """Abstract base for all chunkers.

    Subclasses implement ``chunk()`` and may use ``_split_fixed_window()``
    and ``_make_sections()`` for the fixed-window fallback path.

    Token counting uses a 4-chars-per-token approximation; callers that
    need provider-accurate counts recount the section text afterwards.
    """

    def __init__(self, chunk_size: int = 512, overlap: float = 0.10) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not 0.0 <= overlap < 1.0:
            raise ValueError("overlap must be in [0.0, 1.0)")
        self.chunk_size = chunk_size
        self.overlap = overlap

    @abstractmethod
    def chunk(self, file_id: int, content: str) -> list[Section]:
        """Split *content* into Section objects belonging to *file_id*.

        Args:
            file_id: Row id of the parent file, or 0 when not yet persisted.
            content: Full decoded text of the item.

        Returns:
            Ordered list of sections; empty when *content* is blank.
        """

    @staticmethod
    def count_tokens(text: str) -> int:
        """Approximate token count: 4 characters ≈ 1 token."""
        return max(1, len(text) // 4)

    def _split_fixed_window(self, text: str) -> list[str]:
        """Split *text* into fixed-window segments with overlap.

        Window size = ``self.chunk_size * 4`` characters.
        Overlap     = ``self.overlap`` fraction of window size.
        Segments are stripped; empty segments are omitted.
        """
        if not text.strip():
            return []

        char_size = self.chunk_size * 4
        overlap_chars = int(char_size * self.overlap)
        step = max(1, char_size - overlap_chars)

        segments: list[str] = []
        pos = 0
        length = len(text)

        while pos < length:
            end = min(pos + char_size, length)
            segment = text[pos:end].strip()
            if segment:
                segments.append(segment)
            if end >= length:
                break
            pos += step

        return segments

    def _make_sections(
        self, file_id: int, texts: list[str], metas: list[dict] | None = None
    ) -> list[Section]:
        """Wrap text segments into Sections with approximate token counts."""
        metas = metas or [{} for _ in texts]
        return [
            Section(
                file_id=file_id,
                content=text,
                token_count=self.count_tokens(text),
                meta=json.dumps(meta),
            )
            for text, meta in zip(texts, metas)
        ]
