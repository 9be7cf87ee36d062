"""Query retrieval: moderation → embedding (with backoff) → vector similarity match.

Each stage maps its failure to a distinct error so callers can report it:

- flagged by moderation          → ModerationRejectedError
- embedding failed after retries → EmbeddingError
- vector index query failed      → RetrievalError
- nothing above the threshold    → RetrievalEmptyError
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from docprompt.db.models import RetrievedSection
from docprompt.db.repository import Repository
from docprompt.db.vectors import model_to_slug, vec_table_name
from docprompt.errors import (
    ApiError,
    EmbeddingError,
    ModerationRejectedError,
    RetrievalEmptyError,
    RetrievalError,
)
from docprompt.rag import llm_client

logger = logging.getLogger(__name__)


@dataclass
class RetrieverConfig:
    """Configuration for query retrieval.

    Attributes:
        embedding_model: LiteLLM embedding model string (provider/model format).
        moderation_model: Model passed to the moderation endpoint.
        match_threshold: Minimum cosine similarity (exclusive) of a match.
        match_count: Maximum number of sections returned.
        min_content_length: Sections shorter than this are never returned.
        num_attempts: Embedding attempts before giving up.
        starting_delay: Seconds before the second embedding attempt; doubles after.
    """

    embedding_model: str = "openai/text-embedding-ada-002"
    moderation_model: str | None = None
    match_threshold: float = 0.5
    match_count: int = 10
    min_content_length: int = 30
    num_attempts: int = 10
    starting_delay: float = 10.0


@dataclass
class MatchResult:
    sections: list[RetrievedSection] = field(default_factory=list)
    embedding: list[float] = field(default_factory=list)


def get_matching_sections(
    sanitized_query: str,
    prompt: str,
    repo: Repository,
    project_id: str,
    config: RetrieverConfig,
    api_key: str | None = None,
    usage_kind: str = "completions",
    sleep: Callable[[float], None] = time.sleep,
) -> MatchResult:
    """Return the sections of *project_id* most similar to *sanitized_query*.

    *prompt* is the verbatim user prompt; it is what moderation inspects.
    Embedding token usage is recorded against the project unless the caller
    brought their own *api_key*.

    Raises:
        ApiError: One of the stage-specific subclasses listed in the module doc.
    """
    try:
        flagged = llm_client.moderate(prompt, config.moderation_model, api_key=api_key)
    except Exception as exc:
        raise ApiError(400, f"Error moderating content: {exc}") from exc
    if flagged:
        logger.info("[COMPLETIONS] [MODERATION] [%s] Prompt flagged", project_id)
        raise ModerationRejectedError()

    try:
        result = llm_client.with_backoff(
            lambda: llm_client.embed(config.embedding_model, sanitized_query, api_key=api_key),
            num_attempts=config.num_attempts,
            starting_delay=config.starting_delay,
            sleep=sleep,
        )
    except Exception as exc:
        logger.error("[COMPLETIONS] [CREATE-EMBEDDING] [%s] %s", project_id, exc)
        raise EmbeddingError(f"Error creating embedding for prompt: {exc}") from exc

    if not api_key:
        repo.record_token_usage(
            project_id, config.embedding_model, result.total_tokens, usage_kind
        )

    vec_table = vec_table_name(model_to_slug(config.embedding_model))
    try:
        sections = repo.match_sections(
            vec_table,
            result.vector,
            project_id,
            config.match_threshold,
            config.match_count,
            config.min_content_length,
        )
    except sqlite3.Error as exc:
        logger.error("[COMPLETIONS] [MATCH-SECTIONS] [%s] %s", project_id, exc)
        raise RetrievalError(f"Error matching sections: {exc}") from exc

    if not sections:
        raise RetrievalEmptyError()

    return MatchResult(sections=sections, embedding=result.vector)
