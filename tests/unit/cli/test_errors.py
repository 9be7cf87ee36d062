"""Tests for docprompt rich error messages."""

from __future__ import annotations

import pytest

from docprompt.cli.errors import (
    err_config,
    err_no_api_key,
    err_no_db,
    err_no_sources,
    err_quota_exceeded,
    err_source_not_found,
    err_unknown_source_type,
)


def _has_action(msg: str) -> bool:
    """Every error must say what to do next."""
    lower = msg.lower()
    return any(kw in lower for kw in ["run:", "set:", "use one of:", "export ", "fix "])


@pytest.mark.parametrize("msg", [
    err_no_api_key("openai"),
    err_no_db(),
    err_quota_exceeded("limit reached"),
    err_source_not_found("abc"),
    err_unknown_source_type("ftp"),
    err_no_sources(),
    err_config("bad value"),
])
def test_every_error_has_action(msg):
    assert _has_action(msg)


@pytest.mark.parametrize("provider,env_var", [
    ("openai", "OPENAI_API_KEY"),
    ("anthropic", "ANTHROPIC_API_KEY"),
    ("groq", "GROQ_API_KEY"),
])
def test_no_api_key_names_env_var(provider, env_var):
    msg = err_no_api_key(provider)
    assert env_var in msg
    assert "DOCPROMPT_PROJECT_API_KEY" in msg


def test_no_db_shows_path():
    assert "/tmp/x/.docprompt.db" in err_no_db("/tmp/x/.docprompt.db")


def test_unknown_source_type_lists_types():
    msg = err_unknown_source_type("ftp")
    for source_type in ("repository", "website", "export", "connector"):
        assert source_type in msg


def test_quota_message_mentions_setting():
    assert "content_token_quota" in err_quota_exceeded("limit reached")
