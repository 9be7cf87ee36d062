"""HTTP endpoints for querying a project.

POST /v1/completions?project=<id>  - answer a prompt (external callers)
POST /v1/completions/<id>          - answer a prompt (first-party dashboard)
GET  /v1/search?query=...          - full-text search over indexed sections
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel

from docprompt.db.repository import Repository
from docprompt.rag.engine import CompletionEngine, CompletionRequest, CompletionResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["completions"])


class SearchResult(BaseModel):
    path: str
    content: str
    meta: dict


class SearchResponse(BaseModel):
    data: list[SearchResult]


def get_engine(request: Request) -> CompletionEngine:
    return request.app.state.engine


def get_repo(request: Request) -> Repository:
    return request.app.state.repo


def _to_http(response: CompletionResponse) -> Response:
    headers = dict(response.headers)
    media_type = headers.pop("Content-Type", None)
    if response.streaming:
        return StreamingResponse(
            response.body, status_code=response.status, headers=headers, media_type=media_type
        )
    return Response(
        content=response.body, status_code=response.status, headers=headers, media_type=media_type
    )


def _answer(
    engine: CompletionEngine,
    project: Optional[str],
    params: Optional[dict[str, Any]],
    first_party: bool,
) -> Response:
    if not project or project != engine.project_id:
        logger.error("[COMPLETIONS] [%s] Project not found", project)
        return Response("Project not found", status_code=400)
    request = CompletionRequest.from_params(params or {}, first_party=first_party)
    return _to_http(engine.handle(request))


@router.post("/completions")
def create_completion(
    project: Optional[str] = None,
    params: Optional[dict[str, Any]] = Body(default=None),
    engine: CompletionEngine = Depends(get_engine),
):
    """Answer a prompt for an external caller identified by ``?project=``."""
    return _answer(engine, project, params, first_party=False)


@router.post("/completions/{project}")
def create_first_party_completion(
    project: str,
    params: Optional[dict[str, Any]] = Body(default=None),
    engine: CompletionEngine = Depends(get_engine),
):
    """Answer a prompt from the project's own dashboard."""
    return _answer(engine, project, params, first_party=True)


@router.get("/search", response_model=SearchResponse)
def search(
    query: str = "",
    limit: int = 10,
    repo: Repository = Depends(get_repo),
    engine: CompletionEngine = Depends(get_engine),
):
    """Full-text search over the project's sections."""
    if limit < 1:
        raise HTTPException(status_code=400, detail="limit must be >= 1")
    results = repo.search_sections(query, engine.project_id, limit)
    return SearchResponse(
        data=[
            SearchResult(path=path, content=section.content, meta=section.meta_dict)
            for section, path in results
        ]
    )


def create_app(engine: CompletionEngine, repo: Repository) -> FastAPI:
    app = FastAPI(title="docprompt")
    app.state.engine = engine
    app.state.repo = repo
    app.include_router(router)
    return app
