"""Content items flowing from source resolvers into the section indexer."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

# Content types the indexer knows how to split.
HTML = "text/html"
MARKDOWN = "text/markdown"
PLAIN = "text/plain"

_MARKDOWN_SUFFIXES = (".md", ".mdx", ".markdown", ".mdoc")
_HTML_SUFFIXES = (".html", ".htm")


@dataclass
class ItemData:
    """Resolved content of one item: display name, raw text and metadata."""

    name: str
    content: str
    metadata: dict = field(default_factory=dict)
    content_type: str | None = None


@dataclass
class ContentItem:
    """An item ready to index: its path within the source and content checksum."""

    path: str
    checksum: str
    data: ItemData


def create_checksum(content: str) -> str:
    """SHA-256 hex digest of *content*."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def guess_content_type(path: str) -> str:
    """Infer a content type from the extension of *path*; defaults to Markdown."""
    lower = path.lower()
    if lower.endswith(_HTML_SUFFIXES):
        return HTML
    if lower.endswith(_MARKDOWN_SUFFIXES):
        return MARKDOWN
    if lower.endswith((".txt", ".rst", ".adoc")):
        return PLAIN
    return MARKDOWN
