"""docprompt serve — expose the completions endpoint over HTTP."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
import uvicorn
from rich.console import Console

from docprompt.api import create_app
from docprompt.cli.project import ProjectDirOption, open_project
from docprompt.config import project_api_key
from docprompt.db.repository import Repository
from docprompt.rag.engine import CompletionEngine

console = Console()


def serve_cmd(
    host: Annotated[str, typer.Option("--host", help="Interface to bind.")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Port to listen on.")] = 8000,
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Serve POST /v1/completions and GET /v1/search for the project."""
    cfg, conn = open_project(project_dir)
    repo = Repository(conn)
    app = create_app(CompletionEngine(repo, cfg, api_key=project_api_key()), repo)
    console.print(
        f"Serving project [bold]{cfg.project.id}[/] on http://{host}:{port}/v1/completions"
    )
    try:
        uvicorn.run(app, host=host, port=port, log_level=cfg.logging.level.lower())
    finally:
        conn.close()
