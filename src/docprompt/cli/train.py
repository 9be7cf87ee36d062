"""docprompt train — index every source of the project (or one source).

Unchanged items are skipped by checksum unless --force is given. The first
Ctrl-C requests a stop: items already being indexed finish, queued items and
remaining sources are skipped. A second Ctrl-C interrupts immediately.
"""

from __future__ import annotations

import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn

from docprompt.cli.errors import err_no_api_key, err_no_sources, err_quota_exceeded, err_source_not_found
from docprompt.cli.project import ProjectDirOption, open_project
from docprompt.config import project_api_key
from docprompt.db.repository import Repository
from docprompt.errors import QuotaExceededError
from docprompt.ingest.connectors import SyncClient
from docprompt.ingest.indexer import IndexerConfig, SectionIndexer
from docprompt.ingest.orchestrator import TrainingOptions, TrainingOrchestrator
from docprompt.ingest.state import training_state_message
from docprompt.rag.llm_client import validate_api_key

console = Console()


def train_cmd(
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Re-index items even when unchanged.")
    ] = False,
    source_id: Annotated[
        str | None, typer.Option("--source", "-s", help="Train only this source id.")
    ] = None,
    project_dir: ProjectDirOption = Path("."),
) -> None:
    """Train the project's sources."""
    cfg, conn = open_project(project_dir)
    api_key = project_api_key()

    try:
        validate_api_key(cfg.embedding.model, api_key)
    except EnvironmentError:
        conn.close()
        provider = cfg.embedding.model.split("/")[0] if "/" in cfg.embedding.model else "openai"
        console.print(err_no_api_key(provider))
        raise typer.Exit(1) from None

    try:
        repo = Repository(conn)
        sources = repo.list_sources(cfg.project.id)
        if not sources:
            console.print(err_no_sources())
            raise typer.Exit(0)

        source = None
        if source_id is not None:
            source = repo.get_source(source_id)
            if source is None or source.project_id != cfg.project.id:
                console.print(err_source_not_found(source_id))
                raise typer.Exit(1)

        indexer = SectionIndexer(
            repo,
            cfg.project.id,
            IndexerConfig(
                embedding_model=cfg.embedding.model,
                dimensions=cfg.embedding.dimensions,
                chunk_size=cfg.training.chunk_size,
                overlap=cfg.training.overlap,
                content_token_quota=cfg.training.content_token_quota,
            ),
            api_key=api_key,
        )
        errors = _run(repo, indexer, cfg, source, force)
    finally:
        conn.close()

    if errors:
        console.print(f"\n[yellow]Finished with {len(errors)} error(s):[/]")
        for message in errors:
            console.print(f"  [red]✗[/] {message}")
        raise typer.Exit(1)
    console.print("\n[bold green]✓ Training complete.[/]")


def _run(repo, indexer, cfg, source, force: bool) -> list[str]:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        transient=True,
        console=console,
    ) as prog:
        task = prog.add_task("Starting…", total=None)

        def on_state_change(state) -> None:
            message = training_state_message(state)
            if message:
                prog.update(task, description=message)

        orchestrator = TrainingOrchestrator(
            repo,
            indexer,
            cfg.project.id,
            TrainingOptions(
                include=cfg.training.include,
                exclude=cfg.training.exclude,
                concurrency=cfg.training.concurrency,
                sitemap_limit=cfg.training.sitemap_limit,
            ),
            sync_client=SyncClient(cfg.connectors.sync_url),
            on_state_change=on_state_change,
        )

        def on_item_done(path: str) -> None:
            prog.console.print(f"  [green]✓[/] {path}", highlight=False)

        def on_error(message: str) -> None:
            prog.console.print(f"  [red]✗[/] {message}", highlight=False)

        try:
            with _stop_on_interrupt(orchestrator) as stopped:
                if source is not None:
                    errors = orchestrator.train_source(source, force, on_item_done, on_error)
                else:
                    errors = orchestrator.train_all_sources(force, on_item_done, on_error)
        except QuotaExceededError as exc:
            console.print(err_quota_exceeded(str(exc)))
            raise typer.Exit(1) from None
        except KeyboardInterrupt:
            orchestrator.stop()
            console.print("[yellow]Stopped.[/]")
            raise typer.Exit(130) from None

    if stopped.is_set():
        console.print("[yellow]Stopped.[/] Run:  docprompt train  to index the remaining items.")
        raise typer.Exit(130)
    return errors


@contextmanager
def _stop_on_interrupt(orchestrator: TrainingOrchestrator) -> Iterator[threading.Event]:
    """Turn the first SIGINT into a cooperative stop; the next one raises as usual."""
    stopped = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield stopped
        return

    def handler(signum, frame) -> None:
        if stopped.is_set():
            raise KeyboardInterrupt
        stopped.set()
        orchestrator.stop()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield stopped
    finally:
        signal.signal(signal.SIGINT, previous)
