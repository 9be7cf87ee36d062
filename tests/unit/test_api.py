"""Tests for the HTTP endpoints."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from docprompt.api import create_app
from docprompt.config import DocpromptConfig
from docprompt.rag.engine import CompletionEngine
from docprompt.rag.llm_client import CompletionResult, EmbeddingResult
from docprompt.rag.stream import DATA_HEADER, STREAM_SEPARATOR, decode_header_data


@pytest.fixture
def client(repo, add_section):
    add_section("/docs/install.md", "Install the package with pip install docprompt.", [1.0, 0.0, 0.0, 0.0])
    config = DocpromptConfig()
    config.embedding.dimensions = 4
    app = create_app(CompletionEngine(repo, config), repo)
    with patch("docprompt.rag.llm_client.moderate", return_value=False), patch(
        "docprompt.rag.llm_client.embed",
        return_value=EmbeddingResult(vector=[1.0, 0.0, 0.0, 0.0], total_tokens=3),
    ):
        yield TestClient(app)


def test_unknown_project_rejected(client):
    response = client.post("/v1/completions?project=other", json={"prompt": "How?"})
    assert response.status_code == 400
    assert response.text == "Project not found"


def test_missing_project_rejected(client):
    response = client.post("/v1/completions", json={"prompt": "How?"})
    assert response.status_code == 400


def test_streamed_completion(client):
    with patch("docprompt.rag.llm_client.stream_complete", return_value=iter(["Use ", "pip."])):
        response = client.post("/v1/completions?project=default", json={"prompt": "How?"})

    assert response.status_code == 200
    assert response.text == '["/docs/install.md"]' + STREAM_SEPARATOR + "Use pip."
    header = decode_header_data(response.headers[DATA_HEADER])
    assert header["references"][0]["file"]["path"] == "/docs/install.md"


def test_json_completion(client):
    with patch("docprompt.rag.llm_client.complete", return_value=CompletionResult("Use pip.", 5)):
        response = client.post(
            "/v1/completions?project=default", json={"prompt": "How?", "stream": False}
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/json")
    assert response.json()["text"] == "Use pip."


def test_first_party_route_overrides_model_when_custom_config_disallowed(client, repo):
    engine = client.app.state.engine
    engine._config.project.allow_custom_model_config = False
    with patch(
        "docprompt.rag.llm_client.complete", return_value=CompletionResult("ok", 1)
    ) as mock_complete:
        client.post("/v1/completions/default", json={"prompt": "How?", "stream": False, "model": "openai/gpt-4"})
        client.post(
            "/v1/completions?project=default", json={"prompt": "How?", "stream": False, "model": "openai/gpt-4"}
        )
    assert mock_complete.call_args_list[0].args[0] == "openai/gpt-4"
    assert mock_complete.call_args_list[1].args[0] == engine._config.completions.model


def test_blank_prompt(client):
    response = client.post("/v1/completions?project=default", json={"prompt": ""})
    assert response.status_code == 400
    assert response.text == "No prompt provided"


def test_search(client):
    response = client.get("/v1/search", params={"query": "install"})
    assert response.status_code == 200
    [hit] = response.json()["data"]
    assert hit["path"] == "/docs/install.md"
    assert "pip install" in hit["content"]


def test_search_no_hits(client):
    assert client.get("/v1/search", params={"query": "invoices"}).json() == {"data": []}


def test_search_rejects_bad_limit(client):
    assert client.get("/v1/search", params={"query": "install", "limit": 0}).status_code == 400
