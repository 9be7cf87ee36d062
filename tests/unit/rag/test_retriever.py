"""Tests for query retrieval: moderation, embedding with backoff, similarity match."""

from __future__ import annotations

import sqlite3
from unittest.mock import MagicMock, patch

import pytest

from docprompt.errors import (
    ApiError,
    EmbeddingError,
    ModerationRejectedError,
    RetrievalEmptyError,
    RetrievalError,
)
from docprompt.rag.llm_client import EmbeddingResult
from docprompt.rag.retriever import RetrieverConfig, get_matching_sections

_MODERATE = "docprompt.rag.llm_client.moderate"
_EMBED = "docprompt.rag.llm_client.embed"

QUERY = [1.0, 0.0, 0.0, 0.0]


@pytest.fixture
def config():
    return RetrieverConfig(
        embedding_model="openai/text-embedding-ada-002",
        num_attempts=3,
        starting_delay=1.0,
    )


@pytest.fixture
def indexed(add_section):
    add_section("/install.md", "Install the package with pip install docprompt.", [1.0, 0.05, 0.0, 0.0])
    add_section("/billing.md", "Invoices are sent at the end of every month.", [0.0, 1.0, 0.0, 0.0])


def _result(vector=QUERY, tokens=4):
    return EmbeddingResult(vector=list(vector), total_tokens=tokens)


def test_returns_matching_sections(repo, indexed, config):
    with patch(_MODERATE, return_value=False), patch(_EMBED, return_value=_result()):
        match = get_matching_sections("how install", "How do I install?", repo, "default", config)

    assert [s.path for s in match.sections] == ["/install.md"]
    assert match.embedding == QUERY


def test_moderation_sees_raw_prompt_and_embedding_sees_sanitized_query(repo, indexed, config):
    with patch(_MODERATE, return_value=False) as mock_mod, patch(_EMBED, return_value=_result()) as mock_embed:
        get_matching_sections("clean query", "Raw\nPrompt", repo, "default", config)
    assert mock_mod.call_args.args[0] == "Raw\nPrompt"
    assert mock_embed.call_args.args[1] == "clean query"


def test_flagged_prompt_is_rejected_without_embedding(repo, indexed, config):
    with patch(_MODERATE, return_value=True), patch(_EMBED) as mock_embed:
        with pytest.raises(ModerationRejectedError) as exc_info:
            get_matching_sections("q", "bad prompt", repo, "default", config)
    assert exc_info.value.code == 400
    assert exc_info.value.message == "Flagged content"
    mock_embed.assert_not_called()


def test_moderation_failure_is_api_error(repo, config):
    with patch(_MODERATE, side_effect=RuntimeError("moderation down")):
        with pytest.raises(ApiError, match="Error moderating content: moderation down"):
            get_matching_sections("q", "p", repo, "default", config)


def test_embedding_retried_with_backoff(repo, indexed, config):
    sleeps: list[float] = []
    embed = MagicMock(side_effect=[RuntimeError("busy"), _result()])
    with patch(_MODERATE, return_value=False), patch(_EMBED, embed):
        match = get_matching_sections("q", "p", repo, "default", config, sleep=sleeps.append)
    assert embed.call_count == 2
    assert sleeps == [1.0]
    assert match.sections


def test_embedding_failure_after_retries(repo, config):
    sleeps: list[float] = []
    with patch(_MODERATE, return_value=False), patch(_EMBED, side_effect=RuntimeError("busy")) as mock_embed:
        with pytest.raises(EmbeddingError):
            get_matching_sections("q", "p", repo, "default", config, sleep=sleeps.append)
    assert mock_embed.call_count == 3
    assert sleeps == [1.0, 2.0]


def test_no_matching_sections(repo, indexed, config):
    with patch(_MODERATE, return_value=False), patch(_EMBED, return_value=_result([0.0, 0.0, 1.0, 0.0])):
        with pytest.raises(RetrievalEmptyError, match="No relevant sections found"):
            get_matching_sections("q", "p", repo, "default", config)


def test_other_project_sections_not_returned(repo, indexed, config):
    with patch(_MODERATE, return_value=False), patch(_EMBED, return_value=_result()):
        with pytest.raises(RetrievalEmptyError):
            get_matching_sections("q", "p", repo, "another-project", config)


def test_index_failure_is_retrieval_error(repo, config):
    with patch(_MODERATE, return_value=False), patch(_EMBED, return_value=_result()), patch.object(
        repo, "match_sections", side_effect=sqlite3.OperationalError("no such table")
    ):
        with pytest.raises(RetrievalError, match="no such table"):
            get_matching_sections("q", "p", repo, "default", config)


def test_token_usage_recorded_without_own_key(repo, indexed, config):
    with patch(_MODERATE, return_value=False), patch(_EMBED, return_value=_result(tokens=9)):
        get_matching_sections("q", "p", repo, "default", config)
    assert repo.token_usage("default") == {"completions": 9}


def test_token_usage_not_recorded_with_own_key(repo, indexed, config):
    with patch(_MODERATE, return_value=False), patch(_EMBED, return_value=_result(tokens=9)):
        get_matching_sections("q", "p", repo, "default", config, api_key="sk-own")
    assert repo.token_usage("default") == {}
