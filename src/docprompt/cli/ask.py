"""docprompt ask / search — query the project from the terminal.

``ask`` runs the completion engine in-process. Streamed answers are printed
as they arrive, decoded with the same stream decoder HTTP clients use.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from docprompt.cli.project import ProjectDirOption, open_project
from docprompt.config import project_api_key
from docprompt.db.repository import Repository
from docprompt.rag.engine import CompletionEngine, CompletionRequest
from docprompt.rag.stream import DATA_HEADER, StreamDecoder, decode_header_data, decode_stream

console = Console()


def ask_cmd(
    prompt: Annotated[str, typer.Argument(help="The question to answer.")],
    no_stream: Annotated[
        bool, typer.Option("--no-stream", help="Wait for the full answer instead of streaming.")
    ] = False,
    model: Annotated[
        str | None, typer.Option("--model", "-m", help="Override the completions model.")
    ] = None,
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Answer a question from the project's indexed content."""
    cfg, conn = open_project(project_dir)
    try:
        engine = CompletionEngine(Repository(conn), cfg, api_key=project_api_key())
        request = CompletionRequest(prompt=prompt, first_party=True, stream=not no_stream, model=model)
        response = engine.handle(request)

        if response.status != 200:
            console.print(f"[red]Error ({response.status}):[/] {response.text()}")
            raise typer.Exit(1)

        if response.streaming:
            decoder = StreamDecoder()
            for fragment in decode_stream(response.body, decoder):
                console.print(fragment, end="", markup=False, highlight=False)
            console.print()
            references = decoder.references
        else:
            console.print(response.json()["text"], markup=False, highlight=False)
            data = decode_header_data(response.headers.get(DATA_HEADER, ""))
            references = [r["file"]["path"] for r in data.get("references", [])]
    finally:
        conn.close()

    if references:
        console.print("\n[bold]References[/]")
        for path in references:
            console.print(f"  • {path}", markup=False, highlight=False)


def search_cmd(
    query: Annotated[str, typer.Argument(help="Full-text search query.")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum results.")] = 10,
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Search indexed sections by keyword."""
    cfg, conn = open_project(project_dir)
    try:
        results = Repository(conn).search_sections(query, cfg.project.id, limit)
    finally:
        conn.close()

    if not results:
        console.print("[dim]No matching sections.[/]")
        return

    table = Table(title=f"Results for '{query}'")
    table.add_column("Path", style="bold")
    table.add_column("Excerpt")
    for section, path in results:
        excerpt = section.content.replace("\n", " ")
        table.add_row(path, excerpt[:120] + ("…" if len(excerpt) > 120 else ""))
    console.print(table)
