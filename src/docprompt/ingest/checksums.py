"""Per-source checksum bookkeeping for change detection between training runs."""

from __future__ import annotations

import logging
import threading

from docprompt.db.repository import Repository

logger = logging.getLogger(__name__)


class ChecksumTracker:
    """Remember the last-indexed checksum of every path in one source.

    Checksums are loaded once when the tracker is created. ``record()`` is
    only called after an item is fully indexed, so a failed item keeps its
    previous checksum and is retried on the next run.
    """

    def __init__(self, repo: Repository, source_id: str) -> None:
        self._repo = repo
        self._source_id = source_id
        self._lock = threading.Lock()
        self._checksums = repo.get_checksums(source_id)
        logger.debug(
            "Loaded %d checksum(s) for source %s", len(self._checksums), source_id
        )

    def previous(self, path: str) -> str | None:
        with self._lock:
            return self._checksums.get(path) or None

    def is_unchanged(self, path: str, checksum: str) -> bool:
        return self.previous(path) == checksum

    def record(self, path: str, checksum: str) -> None:
        self._repo.set_checksum(self._source_id, path, checksum)
        with self._lock:
            self._checksums[path] = checksum
