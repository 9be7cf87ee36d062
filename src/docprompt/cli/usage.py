"""docprompt usage — token usage and completion counts for the project."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel

from docprompt.cli.project import ProjectDirOption, open_project
from docprompt.db.repository import Repository

console = Console()


def usage_cmd(
    from_date: Annotated[
        str | None, typer.Option("--from", help="Count completions from this date (YYYY-MM-DD).")
    ] = None,
    to_date: Annotated[
        str | None, typer.Option("--to", help="Count completions up to this date (YYYY-MM-DD).")
    ] = None,
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Show token usage and the number of completions."""
    cfg, conn = open_project(project_dir)
    try:
        repo = Repository(conn)
        tokens = repo.token_usage(cfg.project.id)
        completions = repo.count_completions(
            cfg.project.id,
            from_date,
            f"{to_date} 23:59:59" if to_date else None,
        )
        indexed = repo.count_project_tokens(cfg.project.id)
    finally:
        conn.close()

    lines = [
        f"Indexed content:     {indexed:,} tokens",
        f"Training embeddings: {tokens.get('sections', 0):,} tokens",
        f"Completions:         {tokens.get('completions', 0):,} tokens",
        f"Queries:             {completions:,}",
    ]
    if cfg.training.content_token_quota is not None:
        lines.insert(1, f"Content quota:       {cfg.training.content_token_quota:,} tokens")
    console.print(Panel("\n".join(lines), title=f"[bold]{cfg.project.id}[/]", expand=False))
