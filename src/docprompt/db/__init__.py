"""docprompt database layer."""

from docprompt.db.connection import Database
from docprompt.db.migrations import MIGRATIONS, run_migrations
from docprompt.db.schema import initialize
from docprompt.db.vectors import ensure_vec_table, model_to_slug, vec_table_name

__all__ = [
    "Database",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "ensure_vec_table",
    "model_to_slug",
    "vec_table_name",
]
