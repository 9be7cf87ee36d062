"""Include/exclude glob filtering of item paths."""

from __future__ import annotations

import fnmatch
from urllib.parse import urlparse


def _matches(path: str, pattern: str) -> bool:
    return fnmatch.fnmatchcase(path, pattern) or fnmatch.fnmatchcase(
        path.lstrip("/"), pattern.lstrip("/")
    )


def should_include_path(
    path: str,
    include: list[str] | None = None,
    exclude: list[str] | None = None,
    is_url: bool = False,
) -> bool:
    """Return True when *path* passes the include/exclude globs.

    An empty include list includes everything. Exclusions win over inclusions.
    For URLs only the path component is matched.
    """
    if is_url:
        path = urlparse(path).path or "/"
    if include and not any(_matches(path, p) for p in include):
        return False
    if exclude and any(_matches(path, p) for p in exclude):
        return False
    return True
