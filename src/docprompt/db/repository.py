"""Repository pattern for all docprompt database operations.

Single interface for: sources, files (checksums), sections + FTS5 search,
vec embeddings, query stats and token usage.
Vec tables are model-managed (ensure_vec_table); repository handles read + write.
"""

from __future__ import annotations

import json
import re
import sqlite3
import threading
import uuid

from docprompt.db.models import FileRecord, QueryStat, RetrievedSection, Section, Source
from docprompt.db.vectors import ensure_vec_table, model_to_slug

# Candidate rows fetched from the KNN index per requested match, so that the
# project / length / threshold filters still leave enough rows.
_KNN_OVERFETCH = 5


class Repository:
    """Data access layer for all docprompt database entities.

    Wraps an open sqlite3.Connection. Every method holds an internal lock, so
    one repository can be shared by the ingestion worker threads. The
    connection is owned by the caller and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see docprompt.db.schema.initialize).
        """
        self._conn = conn
        self._lock = threading.RLock()

    def ensure_vec_table(self, model: str, dimensions: int) -> str:
        """Create the vec table for embedding *model* if needed. Returns its name."""
        with self._lock:
            return ensure_vec_table(self._conn, model_to_slug(model), dimensions)

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def add_source(self, source: Source) -> None:
        """Insert a new source record."""
        with self._lock:
            self._conn.execute(
                "INSERT INTO sources (id, project_id, type, data) VALUES (?, ?, ?, ?)",
                (source.id, source.project_id, source.type, source.data),
            )
            self._conn.commit()

    def get_source(self, source_id: str) -> Source | None:
        """Return a source by ID, or None if not found."""
        with self._lock:
            row = self._conn.execute(
                "SELECT id, project_id, type, data, inserted_at FROM sources WHERE id = ?",
                (source_id,),
            ).fetchone()
        return _row_to_source(row) if row else None

    def list_sources(self, project_id: str | None = None) -> list[Source]:
        """Return sources ordered by insertion time (oldest first)."""
        sql = "SELECT id, project_id, type, data, inserted_at FROM sources"
        params: tuple = ()
        if project_id is not None:
            sql += " WHERE project_id = ?"
            params = (project_id,)
        sql += " ORDER BY inserted_at, rowid"
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_source(r) for r in rows]

    def delete_source(self, source_id: str) -> None:
        """Delete a source with its files, sections, FTS entries and embeddings."""
        with self._lock:
            file_ids = [
                r[0]
                for r in self._conn.execute(
                    "SELECT id FROM files WHERE source_id = ?", (source_id,)
                ).fetchall()
            ]
            for file_id in file_ids:
                self._delete_sections(file_id)
            self._conn.execute("DELETE FROM files WHERE source_id = ?", (source_id,))
            self._conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
            self._conn.commit()

    # ------------------------------------------------------------------
    # Files / checksums
    # ------------------------------------------------------------------

    def get_checksums(self, source_id: str) -> dict[str, str]:
        """Return ``{path: checksum}`` for every trained file of *source_id*."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT path, checksum FROM files WHERE source_id = ?", (source_id,)
            ).fetchall()
        return {r["path"]: r["checksum"] for r in rows}

    def ensure_file(self, source_id: str, path: str, meta: str = "{}") -> int:
        """Return the id of the file row for ``(source_id, path)``, creating it if needed.

        A new row starts with an empty checksum; an existing row keeps its
        checksum and only has its metadata refreshed.
        """
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO files (source_id, path, checksum, meta)
                VALUES (?, ?, '', ?)
                ON CONFLICT(source_id, path) DO UPDATE SET
                    meta = excluded.meta,
                    updated_at = datetime('now')
                """,
                (source_id, path, meta),
            )
            row = self._conn.execute(
                "SELECT id FROM files WHERE source_id = ? AND path = ?",
                (source_id, path),
            ).fetchone()
            self._conn.commit()
        return row["id"]

    def set_checksum(self, source_id: str, path: str, checksum: str) -> None:
        """Upsert the checksum of ``(source_id, path)`` — one row per pair."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO files (source_id, path, checksum)
                VALUES (?, ?, ?)
                ON CONFLICT(source_id, path) DO UPDATE SET
                    checksum = excluded.checksum,
                    updated_at = datetime('now')
                """,
                (source_id, path, checksum),
            )
            self._conn.commit()

    def get_file(self, source_id: str, path: str) -> FileRecord | None:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT id, source_id, path, checksum, meta, updated_at
                FROM files WHERE source_id = ? AND path = ?
                """,
                (source_id, path),
            ).fetchone()
        return _row_to_file(row) if row else None

    def count_files(self, source_id: str) -> int:
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) FROM files WHERE source_id = ?", (source_id,)
            ).fetchone()[0]

    # ------------------------------------------------------------------
    # Sections + embeddings
    # ------------------------------------------------------------------

    def replace_sections(
        self,
        file_id: int,
        sections: list[tuple[Section, list[float]]],
        vec_table: str,
    ) -> list[int]:
        """Swap the sections of *file_id* for *sections* in one transaction.

        Each entry pairs a Section with its embedding. FTS5 and the vec table
        are kept in sync with explicit rowid mapping. Returns the new rowids.
        """
        rowids: list[int] = []
        with self._lock:
            try:
                self._delete_sections(file_id)
                for section, embedding in sections:
                    cur = self._conn.execute(
                        """
                        INSERT INTO file_sections (file_id, content, token_count, meta)
                        VALUES (?, ?, ?, ?)
                        """,
                        (file_id, section.content, section.token_count, section.meta),
                    )
                    rowid = cur.lastrowid
                    self._conn.execute(
                        "INSERT INTO file_sections_fts(rowid, content) VALUES (?, ?)",
                        (rowid, section.content),
                    )
                    self._conn.execute(
                        f"INSERT INTO {vec_table}(rowid, embedding) VALUES (?, ?)",
                        (rowid, json.dumps(embedding)),
                    )
                    section.rowid = rowid
                    rowids.append(rowid)
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
        return rowids

    def get_section(self, rowid: int) -> Section | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT rowid, file_id, content, token_count, meta FROM file_sections WHERE rowid = ?",
                (rowid,),
            ).fetchone()
        return _row_to_section(row) if row else None

    def count_sections(self, file_id: int) -> int:
        with self._lock:
            return self._conn.execute(
                "SELECT COUNT(*) FROM file_sections WHERE file_id = ?", (file_id,)
            ).fetchone()[0]

    def count_project_tokens(
        self, project_id: str, exclude_file: tuple[str, str] | None = None
    ) -> int:
        """Total token count of every indexed section in *project_id*.

        Args:
            exclude_file: Optional ``(source_id, path)`` whose sections are left
                out, e.g. a file that is about to be re-indexed.
        """
        sql = """
            SELECT COALESCE(SUM(fs.token_count), 0)
            FROM file_sections fs
            JOIN files f ON f.id = fs.file_id
            JOIN sources s ON s.id = f.source_id
            WHERE s.project_id = ?
        """
        params: list = [project_id]
        if exclude_file is not None:
            sql += " AND NOT (f.source_id = ? AND f.path = ?)"
            params.extend(exclude_file)
        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        return row[0]

    def _delete_sections(self, file_id: int) -> None:
        """Delete sections + FTS + vec rows of *file_id*. Caller holds the lock."""
        rowids = [
            r[0]
            for r in self._conn.execute(
                "SELECT rowid FROM file_sections WHERE file_id = ?", (file_id,)
            ).fetchall()
        ]
        if rowids:
            placeholders = ",".join("?" * len(rowids))
            self._conn.execute(
                f"DELETE FROM file_sections_fts WHERE rowid IN ({placeholders})", rowids
            )
            for table in self._vec_tables():
                self._conn.execute(
                    f"DELETE FROM [{table}] WHERE rowid IN ({placeholders})",  # noqa: S608
                    rowids,
                )
        self._conn.execute("DELETE FROM file_sections WHERE file_id = ?", (file_id,))

    def _vec_tables(self) -> list[str]:
        return [
            r[0]
            for r in self._conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name LIKE 'vec_sections_%'"
                " AND sql LIKE 'CREATE VIRTUAL TABLE%'"
            ).fetchall()
        ]

    # ------------------------------------------------------------------
    # Similarity search
    # ------------------------------------------------------------------

    def match_sections(
        self,
        vec_table: str,
        embedding: list[float],
        project_id: str,
        match_threshold: float,
        match_count: int,
        min_content_length: int,
    ) -> list[RetrievedSection]:
        """Return up to *match_count* sections of *project_id*, most similar first.

        Only sections whose cosine similarity exceeds *match_threshold* and
        whose content has at least *min_content_length* characters qualify.
        """
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT v.rowid AS rowid, v.distance AS distance,
                       fs.content, fs.token_count, fs.meta AS section_meta,
                       f.path, f.meta AS file_meta,
                       s.type AS source_type, s.data AS source_data
                FROM (
                    SELECT rowid, distance FROM {vec_table}
                    WHERE embedding MATCH ? AND k = ?
                ) v
                JOIN file_sections fs ON fs.rowid = v.rowid
                JOIN files f ON f.id = fs.file_id
                JOIN sources s ON s.id = f.source_id
                WHERE s.project_id = ? AND length(fs.content) >= ?
                ORDER BY v.distance
                """,
                (
                    json.dumps(embedding),
                    max(match_count * _KNN_OVERFETCH, match_count),
                    project_id,
                    min_content_length,
                ),
            ).fetchall()

        results: list[RetrievedSection] = []
        for row in rows:
            similarity = 1.0 - row["distance"]
            if similarity <= match_threshold:
                continue
            results.append(
                RetrievedSection(
                    path=row["path"],
                    content=row["content"],
                    token_count=row["token_count"],
                    similarity=similarity,
                    source_type=row["source_type"],
                    source_data=json.loads(row["source_data"]),
                    file_meta=json.loads(row["file_meta"]),
                    section_meta=json.loads(row["section_meta"]),
                )
            )
            if len(results) >= match_count:
                break
        return results

    # ------------------------------------------------------------------
    # FTS5 search
    # ------------------------------------------------------------------

    def search_sections(
        self, query: str, project_id: str, limit: int = 10
    ) -> list[tuple[Section, str]]:
        """Full-text search over sections of *project_id*. Returns (section, path)."""
        # FTS5 MATCH rejects punctuation like commas as syntax errors.
        fts_query = re.sub(r"[^\w\s]", " ", query).strip()
        if not fts_query:
            return []
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT fs.rowid, fs.file_id, fs.content, fs.token_count, fs.meta, f.path,
                       bm25(file_sections_fts) AS score
                FROM file_sections_fts
                JOIN file_sections fs ON fs.rowid = file_sections_fts.rowid
                JOIN files f ON f.id = fs.file_id
                JOIN sources s ON s.id = f.source_id
                WHERE file_sections_fts.content MATCH ? AND s.project_id = ?
                ORDER BY score
                LIMIT ?
                """,
                (fts_query, project_id, limit),
            ).fetchall()
        return [(_row_to_section(r), r["path"]) for r in rows]

    # ------------------------------------------------------------------
    # Query stats
    # ------------------------------------------------------------------

    def insert_query_stat(
        self,
        project_id: str,
        prompt: str | None,
        response: str | None,
        embedding: list[float] | None,
        no_response_reason: str | None,
        references: list[dict] | None,
        redact: bool,
    ) -> str:
        """Insert a query record and return its id.

        Empty prompt/response values are stored as NULL. ``no_response`` is only
        set when a reason is given; redacted records are marked 'unprocessed'.
        """
        meta: dict = {}
        if references:
            meta["references"] = references
        if no_response_reason is not None:
            meta["noResponseReason"] = no_response_reason

        stat_id = str(uuid.uuid4())
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO query_stats
                    (id, project_id, prompt, response, embedding, no_response, meta, processed_state)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    stat_id,
                    project_id,
                    prompt or None,
                    response or None,
                    json.dumps(embedding) if embedding else None,
                    int(bool(no_response_reason)) if no_response_reason is not None else None,
                    json.dumps(meta),
                    "unprocessed" if redact else None,
                ),
            )
            self._conn.commit()
        return stat_id

    def update_query_stat(
        self,
        stat_id: str,
        response: str | None,
        no_response_reason: str | None,
    ) -> None:
        """Fill in the final response and no-answer reason of a streamed query."""
        with self._lock:
            row = self._conn.execute(
                "SELECT meta FROM query_stats WHERE id = ?", (stat_id,)
            ).fetchone()
            if row is None:
                return
            meta = json.loads(row["meta"])
            if no_response_reason is not None:
                meta["noResponseReason"] = no_response_reason
            self._conn.execute(
                """
                UPDATE query_stats SET
                    response = COALESCE(?, response),
                    no_response = COALESCE(?, no_response),
                    meta = ?
                WHERE id = ?
                """,
                (
                    response or None,
                    int(bool(no_response_reason)) if no_response_reason is not None else None,
                    json.dumps(meta),
                    stat_id,
                ),
            )
            self._conn.commit()

    def get_query_stat(self, stat_id: str) -> QueryStat | None:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT id, project_id, prompt, response, embedding, no_response, meta,
                       processed_state, created_at
                FROM query_stats WHERE id = ?
                """,
                (stat_id,),
            ).fetchone()
        return _row_to_query_stat(row) if row else None

    def list_query_stats(self, project_id: str) -> list[QueryStat]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT id, project_id, prompt, response, embedding, no_response, meta,
                       processed_state, created_at
                FROM query_stats WHERE project_id = ? ORDER BY created_at, rowid
                """,
                (project_id,),
            ).fetchall()
        return [_row_to_query_stat(r) for r in rows]

    def count_completions(
        self, project_id: str, from_ts: str | None = None, to_ts: str | None = None
    ) -> int:
        """Number of queries for *project_id* within the optional [from, to] range."""
        sql = "SELECT COUNT(*) FROM query_stats WHERE project_id = ?"
        params: list = [project_id]
        if from_ts:
            sql += " AND created_at >= ?"
            params.append(from_ts)
        if to_ts:
            sql += " AND created_at <= ?"
            params.append(to_ts)
        with self._lock:
            return self._conn.execute(sql, params).fetchone()[0]

    # ------------------------------------------------------------------
    # Token usage
    # ------------------------------------------------------------------

    def record_token_usage(self, project_id: str, model: str, tokens: int, kind: str) -> None:
        """Append a token usage row; *kind* is 'sections' or 'completions'."""
        with self._lock:
            self._conn.execute(
                "INSERT INTO token_usage (project_id, model, kind, tokens) VALUES (?, ?, ?, ?)",
                (project_id, model, kind, tokens),
            )
            self._conn.commit()

    def token_usage(self, project_id: str) -> dict[str, int]:
        """Return ``{kind: total_tokens}`` for *project_id*."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT kind, SUM(tokens) AS total FROM token_usage WHERE project_id = ? GROUP BY kind",
                (project_id,),
            ).fetchall()
        return {r["kind"]: r["total"] for r in rows}


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

def _row_to_source(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        project_id=row["project_id"],
        type=row["type"],
        data=row["data"],
        inserted_at=row["inserted_at"],
    )


def _row_to_file(row: sqlite3.Row) -> FileRecord:
    return FileRecord(
        id=row["id"],
        source_id=row["source_id"],
        path=row["path"],
        checksum=row["checksum"],
        meta=row["meta"],
        updated_at=row["updated_at"],
    )


def _row_to_section(row: sqlite3.Row) -> Section:
    return Section(
        rowid=row["rowid"],
        file_id=row["file_id"],
        content=row["content"],
        token_count=row["token_count"],
        meta=row["meta"],
    )


def _row_to_query_stat(row: sqlite3.Row) -> QueryStat:
    return QueryStat(
        id=row["id"],
        project_id=row["project_id"],
        prompt=row["prompt"],
        response=row["response"],
        embedding=json.loads(row["embedding"]) if row["embedding"] else None,
        no_response=bool(row["no_response"]) if row["no_response"] is not None else None,
        meta=row["meta"],
        processed_state=row["processed_state"],
        created_at=row["created_at"],
    )
