"""docprompt CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from docprompt.cli.ask import ask_cmd, search_cmd
from docprompt.cli.init import init_cmd
from docprompt.cli.serve import serve_cmd
from docprompt.cli.sources import sources_app
from docprompt.cli.train import train_cmd
from docprompt.cli.usage import usage_cmd


def _version() -> str:
    try:
        return importlib.metadata.version("docprompt")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"docprompt {_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="docprompt",
    help=(
        "docprompt — answer questions from your documentation.\n\n"
        "  docprompt train  Index the project's sources.\n"
        "  docprompt ask    Answer a question from the indexed content."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """docprompt — answer questions from your documentation."""


app.command("init")(init_cmd)
app.add_typer(sources_app, name="sources")
app.command("train")(train_cmd)
app.command("ask")(ask_cmd)
app.command("search")(search_cmd)
app.command("usage")(usage_cmd)
app.command("serve")(serve_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed docprompt version."""
    typer.echo(f"docprompt {_version()}")


if __name__ == "__main__":
    app()
