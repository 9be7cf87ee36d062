"""Shared helpers for commands that operate on a docprompt project directory."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from docprompt.cli.errors import err_config, err_no_db
from docprompt.config import ConfigError, DocpromptConfig, load_config
from docprompt.db.connection import Database
from docprompt.db.schema import initialize
from docprompt.logging_setup import configure_logging

console = Console()

DB_NAME = ".docprompt.db"

ProjectDirOption = Annotated[
    Path,
    typer.Option("--project-dir", "-C", help="Project directory (holds .docprompt.db)."),
]


def open_db(db_path: Path) -> sqlite3.Connection:
    conn = Database(db_path).connect()
    initialize(conn)
    return conn


def open_project(project_dir: Path) -> tuple[DocpromptConfig, sqlite3.Connection]:
    """Load the project config and open its database, or exit with an error."""
    db_path = project_dir / DB_NAME
    if not db_path.exists():
        console.print(err_no_db(str(db_path)))
        raise typer.Exit(1)
    try:
        cfg = load_config(project_dir)
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from None
    configure_logging(cfg.logging.level)
    return cfg, open_db(db_path)
