"""docprompt sources — add, list and remove the sources of a project.

Usage:
  docprompt sources add website https://docs.example.com
  docprompt sources add repository https://github.com/org/docs --branch main
  docprompt sources add export ./notion-export.zip
  docprompt sources add connector --integration notion-pages
  docprompt sources add connector --database-type knowledge --environment sandbox
  docprompt sources list
  docprompt sources remove <id> --yes
"""

from __future__ import annotations

import json
import uuid
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from docprompt.cli.errors import err_source_not_found, err_unknown_source_type
from docprompt.cli.project import ProjectDirOption, open_project
from docprompt.db.models import SOURCE_TYPES, Source
from docprompt.db.repository import Repository
from docprompt.ingest.connectors import get_salesforce_database_integration_id

console = Console()

sources_app = typer.Typer(help="Manage the sources of a project.", no_args_is_help=True)


def _source_data(
    source_type: str,
    target: str | None,
    branch: str | None,
    integration: str | None,
    database_type: str | None,
    environment: str | None,
) -> dict:
    if source_type == "connector":
        if integration:
            return {"integrationId": integration}
        if database_type and environment:
            # Fails early on an unknown type / environment.
            get_salesforce_database_integration_id(database_type, environment)
            return {"databaseType": database_type, "environment": environment}
        raise ValueError("connector sources need --integration or --database-type/--environment")

    if not target:
        raise ValueError(f"{source_type} sources need a TARGET")
    if source_type == "repository":
        data = {"url": target}
        if branch:
            data["branch"] = branch
        return data
    if source_type == "website":
        return {"url": target}
    return {"path": str(Path(target).resolve())}


@sources_app.command("add")
def add_cmd(
    source_type: Annotated[str, typer.Argument(help=f"One of: {', '.join(SOURCE_TYPES)}.")],
    target: Annotated[
        str | None,
        typer.Argument(help="URL, repository or export path (not used by connectors)."),
    ] = None,
    branch: Annotated[
        str | None, typer.Option("--branch", help="Repository branch to clone.")
    ] = None,
    integration: Annotated[
        str | None, typer.Option("--integration", help="Connector integration id.")
    ] = None,
    database_type: Annotated[
        str | None, typer.Option("--database-type", help="Salesforce database: knowledge or case.")
    ] = None,
    environment: Annotated[
        str | None, typer.Option("--environment", help="Salesforce environment: production or sandbox.")
    ] = None,
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Add a source to the project."""
    if source_type not in SOURCE_TYPES:
        console.print(err_unknown_source_type(source_type))
        raise typer.Exit(1)

    try:
        data = _source_data(source_type, target, branch, integration, database_type, environment)
    except ValueError as exc:
        console.print(f"[red]Error:[/] {exc}")
        raise typer.Exit(1) from None

    cfg, conn = open_project(project_dir)
    try:
        source = Source(
            id=str(uuid.uuid4()),
            type=source_type,
            data=json.dumps(data),
            project_id=cfg.project.id,
        )
        Repository(conn).add_source(source)
    finally:
        conn.close()

    console.print(f"[green]✓[/] Added {source_type} source [bold]{source.id}[/]")
    console.print("  Run:  docprompt train")


@sources_app.command("list")
def list_cmd(project_dir: ProjectDirOption = Path(".")) -> None:
    """List the sources of the project."""
    cfg, conn = open_project(project_dir)
    try:
        repo = Repository(conn)
        sources = repo.list_sources(cfg.project.id)
        counts = {s.id: repo.count_files(s.id) for s in sources}
    finally:
        conn.close()

    if not sources:
        console.print("[dim]No sources yet.[/]")
        return

    table = Table(title="Sources")
    table.add_column("ID", style="bold")
    table.add_column("Type")
    table.add_column("Target")
    table.add_column("Files", justify="right")
    for source in sources:
        data = source.data_dict
        target = data.get("url") or data.get("path") or data.get("integrationId") or json.dumps(data)
        table.add_row(source.id, source.type, target, str(counts[source.id]))
    console.print(table)


@sources_app.command("remove")
def remove_cmd(
    source_id: Annotated[str, typer.Argument(help="Source id (see: docprompt sources list).")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")] = False,
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Remove a source and all its files and sections."""
    _, conn = open_project(project_dir)
    try:
        repo = Repository(conn)
        source = repo.get_source(source_id)
        if source is None:
            console.print(err_source_not_found(source_id))
            raise typer.Exit(1)

        file_count = repo.count_files(source_id)
        console.print(f"\nRemove {source.type} source: [bold]{source_id}[/] ({file_count} files)")
        if not yes and not typer.confirm("Confirm removal?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

        repo.delete_source(source_id)
    finally:
        conn.close()

    console.print(f"[green]✓[/] Removed: {source_id}")
