"""Forward-only migration runner for docprompt's database schema.

Vec tables (vec_sections_*) are NOT migration-managed — use ensure_vec_table().
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS sources (
    id              TEXT PRIMARY KEY,
    project_id      TEXT NOT NULL,
    type            TEXT NOT NULL,
    data            TEXT NOT NULL DEFAULT '{}',
    inserted_at     DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS files (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id       TEXT NOT NULL REFERENCES sources(id) ON DELETE CASCADE,
    path            TEXT NOT NULL,
    checksum        TEXT NOT NULL,
    meta            TEXT NOT NULL DEFAULT '{}',
    updated_at      DATETIME NOT NULL DEFAULT (datetime('now')),
    UNIQUE (source_id, path)
);

CREATE TABLE IF NOT EXISTS file_sections (
    file_id         INTEGER NOT NULL REFERENCES files(id) ON DELETE CASCADE,
    content         TEXT NOT NULL,
    token_count     INTEGER NOT NULL,
    meta            TEXT NOT NULL DEFAULT '{}'
);

CREATE VIRTUAL TABLE IF NOT EXISTS file_sections_fts USING fts5(content, tokenize='porter ascii');

CREATE TABLE IF NOT EXISTS query_stats (
    id              TEXT PRIMARY KEY,
    project_id      TEXT NOT NULL,
    prompt          TEXT,
    response        TEXT,
    embedding       TEXT,
    no_response     INTEGER,
    meta            TEXT NOT NULL DEFAULT '{}',
    processed_state TEXT,
    created_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS token_usage (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id      TEXT NOT NULL,
    model           TEXT NOT NULL,
    kind            TEXT NOT NULL,
    tokens          INTEGER NOT NULL,
    recorded_at     DATETIME NOT NULL DEFAULT (datetime('now'))
);
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()
