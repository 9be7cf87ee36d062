"""docprompt init — create the project database and a starter config.

Creates:
  .docprompt.db     — empty project database with schema
  docprompt.yaml    — project config (project:, training: sections)
  .gitignore        — ignores .docprompt.db
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from docprompt.cli.project import DB_NAME, open_db
from docprompt.config import write_project_config

console = Console()

_DEFAULT_PROJECT_DIR = Path(".")


def _slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "default"


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = _DEFAULT_PROJECT_DIR,
    name: Annotated[
        str | None,
        typer.Option("--name", "-n", help="Project name. Defaults to the directory name."),
    ] = None,
) -> None:
    """Initialize a docprompt project."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)
    project_name = name or project_dir.name

    db_path = project_dir / DB_NAME
    if db_path.exists():
        console.print(f"[yellow]⚠[/]  {db_path} already exists. Existing data is preserved.")

    open_db(db_path).close()
    console.print(f"  [green]✓[/] {DB_NAME}")

    cfg_path = write_project_config(project_dir, _slugify(project_name), project_name)
    console.print(f"  [green]✓[/] {cfg_path.name}")

    _update_gitignore(project_dir)

    console.print(f"\n[bold green]✓ Project '{project_name}' initialized.[/]")
    console.print("\nNext steps:")
    console.print("  1. docprompt sources add website https://docs.example.com")
    console.print("  2. docprompt train")
    console.print('  3. docprompt ask "How do I get started?"')


def _update_gitignore(project_dir: Path) -> None:
    gitignore = project_dir / ".gitignore"
    lines = gitignore.read_text(encoding="utf-8").splitlines() if gitignore.exists() else []
    if DB_NAME in lines:
        return
    lines.append(DB_NAME)
    gitignore.write_text("\n".join(lines) + "\n", encoding="utf-8")
    console.print("  [green]✓[/] .gitignore")
