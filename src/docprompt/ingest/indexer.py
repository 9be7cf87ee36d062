"""Section indexer — split an item into sections, embed them, persist them.

For each item:
1. Convert HTML to Markdown (html2text) when needed.
2. Split into sections (heading-aware for Markdown, fixed window otherwise).
3. Enforce the project's content token quota.
4. Embed every section via ``litellm.embedding()``.
5. Replace the file's previous sections atomically.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass

import html2text
from bs4 import BeautifulSoup

from docprompt.db.repository import Repository
from docprompt.errors import QuotaExceededError, TransientItemError
from docprompt.ingest.base import BaseChunker
from docprompt.ingest.items import HTML, PLAIN, ContentItem, guess_content_type
from docprompt.ingest.markdown import MarkdownChunker
from docprompt.ingest.plaintext import PlainTextChunker
from docprompt.rag import llm_client

logger = logging.getLogger(__name__)

_FRONTMATTER_RE = re.compile(r"\A---\s*\n(.*?)\n---\s*\n", re.DOTALL)
_FRONTMATTER_TITLE_RE = re.compile(r"^title:\s*[\"']?(.+?)[\"']?\s*$", re.MULTILINE)
_H1_RE = re.compile(r"^# (.+)$", re.MULTILINE)

# html2text converter
_h2t = html2text.HTML2Text()
_h2t.ignore_links = True
_h2t.ignore_images = True
_h2t.body_width = 0


@dataclass
class IndexerConfig:
    """Configuration for section indexing."""

    embedding_model: str = "openai/text-embedding-ada-002"
    dimensions: int = 1536
    chunk_size: int = 512
    overlap: float = 0.10
    content_token_quota: int | None = None


def html_to_markdown(html: str) -> tuple[str, str | None]:
    """Strip non-content tags from *html* and convert it to Markdown.

    Returns ``(markdown, title)`` where *title* comes from ``<title>`` or the
    first ``<h1>``.
    """
    soup = BeautifulSoup(html, "html.parser")
    title_tag = soup.find("title") or soup.find("h1")
    title = title_tag.get_text(strip=True) if title_tag else None
    for tag in soup.find_all(["script", "style", "nav", "footer", "head"]):
        tag.decompose()
    return _h2t.handle(str(soup)).strip(), title or None


def _split_frontmatter(markdown: str) -> tuple[str, str | None]:
    match = _FRONTMATTER_RE.match(markdown)
    if not match:
        return markdown, None
    title = _FRONTMATTER_TITLE_RE.search(match.group(1))
    return markdown[match.end():], title.group(1).strip() if title else None


class SectionIndexer:
    """Index content items into the sections table and its vector index.

    Args:
        repo:       Open Repository instance.
        project_id: Project whose token quota is enforced.
        config:     Embedding model, chunking and quota settings.
        api_key:    Optional provider key passed to every embedding call.
    """

    def __init__(
        self,
        repo: Repository,
        project_id: str,
        config: IndexerConfig | None = None,
        api_key: str | None = None,
    ) -> None:
        self._repo = repo
        self._project_id = project_id
        self._config = config or IndexerConfig()
        self._api_key = api_key
        self._vec_table = repo.ensure_vec_table(
            self._config.embedding_model, self._config.dimensions
        )

    @property
    def vec_table(self) -> str:
        return self._vec_table

    def index(self, source_id: str, item: ContentItem) -> list[int]:
        """Replace the sections of *item* with freshly embedded ones.

        Returns the rowids of the new sections.

        Raises:
            QuotaExceededError: The project would exceed its token quota.
            TransientItemError: Embedding or persistence failed for this item.
        """
        content_type = item.data.content_type or guess_content_type(item.path)
        text, title = self._prepare(item.data.content, content_type)

        chunker = self._chunker(content_type)
        sections = chunker.chunk(0, text)
        for section in sections:
            section.token_count = llm_client.count_tokens(
                self._config.embedding_model, section.content
            )

        self._check_quota(source_id, item.path, sum(s.token_count for s in sections))

        embeddings: list[list[float]] = []
        embedding_tokens = 0
        for section in sections:
            try:
                result = llm_client.embed(
                    self._config.embedding_model, section.content, api_key=self._api_key
                )
            except Exception as exc:
                raise TransientItemError(f"Embedding failed: {exc}") from exc
            embeddings.append(result.vector)
            embedding_tokens += result.total_tokens

        if embedding_tokens and not self._api_key:
            self._repo.record_token_usage(
                self._project_id, self._config.embedding_model, embedding_tokens, "sections"
            )

        meta = dict(item.data.metadata)
        meta.setdefault("title", title or item.data.name)
        file_id = self._repo.ensure_file(source_id, item.path, json.dumps(meta))
        for section in sections:
            section.file_id = file_id

        try:
            rowids = self._repo.replace_sections(
                file_id, list(zip(sections, embeddings)), self._vec_table
            )
        except Exception as exc:
            raise TransientItemError(f"Unable to store sections: {exc}") from exc

        logger.debug("Indexed %s: %d section(s)", item.path, len(rowids))
        return rowids

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _prepare(content: str, content_type: str) -> tuple[str, str | None]:
        if content_type == HTML:
            return html_to_markdown(content)
        if content_type == PLAIN:
            return content, None
        body, title = _split_frontmatter(content)
        if title is None:
            h1 = _H1_RE.search(body)
            title = h1.group(1).strip() if h1 else None
        return body, title

    def _chunker(self, content_type: str) -> BaseChunker:
        if content_type == PLAIN:
            return PlainTextChunker(self._config.chunk_size, self._config.overlap)
        return MarkdownChunker(self._config.chunk_size, self._config.overlap)

    def _check_quota(self, source_id: str, path: str, new_tokens: int) -> None:
        quota = self._config.content_token_quota
        if quota is None:
            return
        used = self._repo.count_project_tokens(
            self._project_id, exclude_file=(source_id, path)
        )
        if used + new_tokens > quota:
            raise QuotaExceededError(
                f"Indexing {path} would use {used + new_tokens} tokens, "
                f"above the project quota of {quota}."
            )
