"""Markdown chunker — heading-aware splits with fixed-window fallback."""

from __future__ import annotations

import re

from docprompt.db.models import Section
from docprompt.ingest.base import BaseChunker

# Matches H1, H2, H3 headings at the start of a line.
_HEADING_RE = re.compile(r"^(#{1,3}) (.+)", re.MULTILINE)


class MarkdownChunker(BaseChunker):
    """Split Markdown on H1/H2/H3 heading boundaries.

    Strategy:
    - Find all H1/H2/H3 headings in the document.
    - Each heading + its following content is a *section*, whose metadata
      records the heading as ``leadHeading`` (``{"value", "depth"}``).
    - Content before the first heading (preamble) becomes its own section.
    - Sections that exceed ``chunk_size`` tokens are further split with
      ``_split_fixed_window()``; every window keeps the lead heading.
    - If the document has no H1/H2/H3 headings, fall back to fixed-window
      splitting (same as PlainTextChunker).
    """

    def chunk(self, file_id: int, content: str) -> list[Section]:
        if not content.strip():
            return []

        parts = self._split_on_headings(content)
        if not parts:
            return self._make_sections(file_id, self._split_fixed_window(content))

        texts: list[str] = []
        metas: list[dict] = []
        for text, meta in parts:
            if self.count_tokens(text) <= self.chunk_size:
                windows = [text]
            else:
                windows = self._split_fixed_window(text)
            for window in windows:
                if window.strip():
                    texts.append(window)
                    metas.append(meta)

        return self._make_sections(file_id, texts, metas)

    def _split_on_headings(self, content: str) -> list[tuple[str, dict]]:
        """Split *content* on H1/H2/H3 boundaries.

        Returns an empty list if no headings are found (signals fallback).
        """
        matches = list(_HEADING_RE.finditer(content))
        if not matches:
            return []

        parts: list[tuple[str, dict]] = []

        if matches[0].start() > 0:
            preamble = content[: matches[0].start()].strip()
            if preamble:
                parts.append((preamble, {}))

        for i, match in enumerate(matches):
            start = match.start()
            end = matches[i + 1].start() if i + 1 < len(matches) else len(content)
            text = content[start:end].strip()
            if text:
                heading = {"value": match.group(2).strip(), "depth": len(match.group(1))}
                parts.append((text, {"leadHeading": heading}))

        return parts
