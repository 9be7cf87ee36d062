"""Training orchestrator — concurrent, cancellable, checksum-aware indexing.

A training run sweeps the items of a source with a bounded worker pool.
Every item produces an explicit outcome:

- ``Indexed``      — the item was embedded and its checksum recorded.
- ``Skipped``      — filtered out, empty, unchanged, or cancelled.
- ``Recoverable``  — the item failed; the message joins the run's error list.
- ``Fatal``        — the content quota was hit; the whole run aborts.

A quota abort stops queued items from starting, leaves in-flight items to
finish, resets the state to ``Idle`` and raises ``QuotaExceededError``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Protocol

from docprompt.db.models import Source
from docprompt.db.repository import Repository
from docprompt.errors import QuotaExceededError
from docprompt.ingest.checksums import ChecksumTracker
from docprompt.ingest.connectors import (
    SyncClient,
    get_connection_id,
    get_integration_id,
    get_sync_id,
)
from docprompt.ingest.crawler import PageFetcher, WebsiteCrawler, name_from_url
from docprompt.ingest.filters import should_include_path
from docprompt.ingest.items import HTML, ContentItem, ItemData, create_checksum
from docprompt.ingest.resolvers import list_export_files, open_repository
from docprompt.ingest.state import (
    CANCEL_REQUESTED,
    FETCHING_DATA,
    IDLE,
    CancelRequested,
    Complete,
    Loading,
    TrainingState,
)

logger = logging.getLogger(__name__)

PathOf = Callable[[int], str]
Resolve = Callable[[int], "ItemData | None"]
OnItemDone = Callable[[str], None]
OnError = Callable[[str], None]


class Indexer(Protocol):
    def index(self, source_id: str, item: ContentItem) -> object: ...


# ------------------------------------------------------------------
# Item outcomes
# ------------------------------------------------------------------


@dataclass(frozen=True)
class Indexed:
    path: str


@dataclass(frozen=True)
class Skipped:
    path: str | None
    reason: str


@dataclass(frozen=True)
class Recoverable:
    path: str | None
    message: str


@dataclass(frozen=True)
class Fatal:
    path: str | None
    error: QuotaExceededError


ItemOutcome = Indexed | Skipped | Recoverable | Fatal


@dataclass
class TrainingOptions:
    """Per-project training settings used by the orchestrator."""

    include: list[str] | None = None
    exclude: list[str] | None = None
    concurrency: int = 5
    sitemap_limit: int = 10


class TrainingOrchestrator:
    """Run training sweeps for the sources of one project.

    Args:
        repo:            Open Repository instance.
        indexer:         Collaborator turning a ContentItem into stored sections.
        project_id:      Project whose sources are trained.
        options:         Include/exclude globs, concurrency and crawl limits.
        fetcher:         Page fetcher used for website sources.
        sync_client:     Sync service client used for connector sources.
        on_state_change: Called with every new TrainingState.
    """

    def __init__(
        self,
        repo: Repository,
        indexer: Indexer,
        project_id: str,
        options: TrainingOptions | None = None,
        fetcher: PageFetcher | None = None,
        sync_client: SyncClient | None = None,
        on_state_change: Callable[[TrainingState], None] | None = None,
    ) -> None:
        self._repo = repo
        self._indexer = indexer
        self._project_id = project_id
        self._options = options or TrainingOptions()
        if self._options.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._fetcher = fetcher or PageFetcher()
        self._sync_client = sync_client
        self._on_state_change = on_state_change

        self._state_lock = threading.RLock()
        self._state: TrainingState = IDLE
        self._stop = threading.Event()
        self._abort = threading.Event()
        self._errors: list[str] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> TrainingState:
        with self._state_lock:
            return self._state

    @property
    def errors(self) -> list[str]:
        with self._state_lock:
            return list(self._errors)

    def _set_state(self, state: TrainingState) -> None:
        with self._state_lock:
            # A pending stop or abort is not hidden by progress from in-flight items.
            if isinstance(state, Loading) and (
                isinstance(self._state, CancelRequested) or self._abort.is_set()
            ):
                return
            self._state = state
            if self._on_state_change is not None:
                self._on_state_change(state)

    def stop(self) -> None:
        """Ask the running sweep to stop. Items already started finish."""
        logger.info("Stop requested")
        self._stop.set()
        self._set_state(CANCEL_REQUESTED)

    def _begin(self) -> None:
        self._stop.clear()
        with self._state_lock:
            self._errors = []
            self._state = IDLE

    def _finish(self) -> None:
        with self._state_lock:
            errors = tuple(self._errors)
        self._set_state(Complete(errors))

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def generate_embeddings(
        self,
        source_id: str,
        source_type: str,
        item_count: int,
        force_retrain: bool,
        path_of: PathOf,
        resolve: Resolve,
        on_item_done: OnItemDone | None = None,
    ) -> list[str]:
        """Index the *item_count* items of one source. Returns the error messages.

        Raises:
            QuotaExceededError: The content quota was hit; state is ``Idle``.
        """
        self._begin()
        self._sweep(source_id, source_type, item_count, force_retrain, path_of, resolve, on_item_done)
        self._finish()
        return self.errors

    def train_source(
        self,
        source: Source,
        force_retrain: bool = False,
        on_item_done: OnItemDone | None = None,
        on_error: OnError | None = None,
    ) -> list[str]:
        """Train a single source. Returns the per-item error messages."""
        self._begin()
        self._set_state(FETCHING_DATA)
        self._train(source, force_retrain, on_item_done, on_error)
        self._finish()
        return self.errors

    def train_all_sources(
        self,
        force_retrain: bool = False,
        on_item_done: OnItemDone | None = None,
        on_error: OnError | None = None,
    ) -> list[str]:
        """Train every source of the project in turn, then return to ``Idle``.

        A failing source is reported through *on_error* and does not stop the
        others. A quota error stops the whole run.
        """
        self._begin()
        try:
            for source in self._repo.list_sources(self._project_id):
                if self._stop.is_set():
                    break
                self._set_state(FETCHING_DATA)
                self._train(source, force_retrain, on_item_done, on_error)
        finally:
            self._set_state(IDLE)
        return self.errors

    # ------------------------------------------------------------------
    # Per source type
    # ------------------------------------------------------------------

    def _train(
        self,
        source: Source,
        force_retrain: bool,
        on_item_done: OnItemDone | None,
        on_error: OnError | None,
    ) -> None:
        data = source.data_dict
        try:
            if source.type == "repository":
                with open_repository(data["url"], data.get("branch")) as files:
                    self._sweep(
                        source.id,
                        source.type,
                        len(files),
                        force_retrain,
                        lambda i: files[i].path,
                        lambda i: ItemData(name=files[i].name, content=files[i].read_text()),
                        on_item_done,
                    )
            elif source.type == "export":
                files = list_export_files(data["path"])
                self._sweep(
                    source.id,
                    source.type,
                    len(files),
                    force_retrain,
                    lambda i: files[i].path,
                    lambda i: ItemData(name=files[i].name, content=files[i].read_text()),
                    on_item_done,
                )
            elif source.type == "website":
                self._train_website(source, data["url"], force_retrain, on_item_done)
            elif source.type == "connector":
                self._trigger_connector_sync(source)
            else:
                raise ValueError(f"Unknown source type: {source.type}")
        except QuotaExceededError:
            raise
        except Exception as exc:
            message = f"Error processing {source.type} source {source.id}: {exc}"
            logger.error(message)
            if on_error is not None:
                on_error(message)

    def _train_website(
        self,
        source: Source,
        base_url: str,
        force_retrain: bool,
        on_item_done: OnItemDone | None,
    ) -> None:
        crawler = WebsiteCrawler(self._fetcher, self._options.sitemap_limit)

        def train_round(urls: list[str]) -> list[str]:
            contents: list[str] = []

            def resolve(i: int) -> ItemData | None:
                html = self._fetcher.fetch_page(urls[i])
                if not html:
                    return None
                contents.append(html)
                return ItemData(name=name_from_url(urls[i]), content=html, content_type=HTML)

            self._sweep(
                source.id,
                source.type,
                len(urls),
                force_retrain,
                lambda i: urls[i],
                resolve,
                on_item_done,
            )
            return contents

        crawler.crawl(base_url, train_round, should_stop=self._stop.is_set)

    def _trigger_connector_sync(self, source: Source) -> None:
        if self._sync_client is None:
            raise RuntimeError("No sync service configured for connector sources")
        integration_id = get_integration_id(source)
        if not integration_id:
            logger.warning("Connector source %s has no integration id", source.id)
            return
        sync_id = get_sync_id(integration_id)
        self._sync_client.trigger_sync(
            self._project_id,
            integration_id,
            get_connection_id(source.id),
            [sync_id] if sync_id else [],
        )

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def _sweep(
        self,
        source_id: str,
        source_type: str,
        item_count: int,
        force_retrain: bool,
        path_of: PathOf,
        resolve: Resolve,
        on_item_done: OnItemDone | None,
    ) -> None:
        """Process items 0..item_count-1 with at most ``concurrency`` in flight."""
        checksums = ChecksumTracker(self._repo, source_id)
        self._abort.clear()
        logger.info("[TRAIN] [%s] %d item(s) from %s source", source_id, item_count, source_type)

        executor = ThreadPoolExecutor(
            max_workers=self._options.concurrency, thread_name_prefix="docprompt-train"
        )
        futures = [
            executor.submit(
                self._process_item,
                index,
                source_id,
                source_type,
                item_count,
                force_retrain,
                checksums,
                path_of,
                resolve,
                on_item_done,
            )
            for index in range(item_count)
        ]
        try:
            for future in as_completed(futures):
                outcome = future.result()
                if isinstance(outcome, Recoverable):
                    with self._state_lock:
                        self._errors.append(outcome.message)
                elif isinstance(outcome, Fatal):
                    logger.error("Training aborted: %s", outcome.error)
                    self._set_state(IDLE)
                    raise outcome.error
        finally:
            executor.shutdown(wait=not self._abort.is_set(), cancel_futures=True)

    def _process_item(
        self,
        index: int,
        source_id: str,
        source_type: str,
        item_count: int,
        force_retrain: bool,
        checksums: ChecksumTracker,
        path_of: PathOf,
        resolve: Resolve,
        on_item_done: OnItemDone | None,
    ) -> ItemOutcome:
        if self._stop.is_set() or self._abort.is_set():
            return Skipped(None, "cancelled")

        path: str | None = None
        try:
            path = path_of(index)
            if not should_include_path(
                path,
                self._options.include,
                self._options.exclude,
                is_url=source_type == "website",
            ):
                logger.info("Ignoring %s", path)
                return Skipped(path, "filtered")

            # Progress is the item's position, so concurrent updates may
            # arrive out of order.
            self._set_state(
                Loading(progress=index + 1, total=item_count, filename=path.split("/")[-1])
            )

            data = resolve(index)
            if data is None or not data.content:
                return Skipped(path, "empty")

            checksum = create_checksum(data.content)
            if not force_retrain and checksums.is_unchanged(path, checksum):
                logger.info("Skipping %s (already processed)", path)
                return Skipped(path, "unchanged")

            logger.info("Processing %s", path)
            self._indexer.index(source_id, ContentItem(path=path, checksum=checksum, data=data))
            checksums.record(path, checksum)
        except QuotaExceededError as exc:
            self._abort.set()
            self._notify(on_item_done, path)
            return Fatal(path, exc)
        except Exception as exc:
            message = f"Error processing file {path or f'#{index}'}: {exc}"
            logger.error(message)
            self._notify(on_item_done, path)
            return Recoverable(path, message)

        self._notify(on_item_done, path)
        return Indexed(path)

    @staticmethod
    def _notify(on_item_done: OnItemDone | None, path: str | None) -> None:
        if on_item_done is not None and path is not None:
            on_item_done(path)
