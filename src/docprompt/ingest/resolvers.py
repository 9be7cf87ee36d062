"""File listing for repository and export sources.

Security requirements for remote repositories:
- shell=False always (no command injection).
- URL scheme whitelist: https://, http://, git@ only.
- Temp dirs created with mode=0o700; cleaned via try/finally + atexit.
- GIT_TOKEN injected into URL in-memory; never logged, never in error output.
"""

from __future__ import annotations

import atexit
import logging
import os
import re
import shutil
import subprocess
import tempfile
import urllib.parse
import zipfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

_ALLOWED_SCHEMES = {"https", "http"}
_GIT_SSH_PREFIX = "git@"

# Strips credentials from clone URLs in error messages.
_CRED_RE = re.compile(r"(https?://)([^@/]+@)", re.IGNORECASE)

TEXT_SUFFIXES = (
    ".md",
    ".mdx",
    ".markdown",
    ".mdoc",
    ".txt",
    ".rst",
    ".adoc",
    ".html",
    ".htm",
)
_SKIP_DIRS = {".git", "node_modules", ".venv", "__pycache__"}


def _sanitise_url(url: str) -> str:
    """Remove embedded credentials from a URL for safe logging / error messages."""
    return _CRED_RE.sub(r"\1***@", url)


@dataclass
class SourceFile:
    """A file of a repository or export, read lazily.

    ``path`` is the file's location inside the source, always starting with
    ``/`` so include/exclude globs behave the same for every source type.
    """

    path: str
    name: str
    reader: Callable[[], str]

    def read_text(self) -> str:
        return self.reader()


def _file_reader(location: Path) -> Callable[[], str]:
    return lambda: location.read_text(encoding="utf-8", errors="replace")


def _archive_reader(archive: Path, member: str) -> Callable[[], str]:
    def read() -> str:
        with zipfile.ZipFile(archive) as zf:
            return zf.read(member).decode("utf-8", errors="replace")

    return read


# ------------------------------------------------------------------
# Local directories and archives
# ------------------------------------------------------------------


def list_directory_files(root: Path | str) -> list[SourceFile]:
    """List the text files below *root*, sorted by path."""
    root = Path(root).resolve()
    if not root.is_dir():
        raise ValueError(f"Directory does not exist: {root}")

    files: list[SourceFile] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
        for filename in sorted(filenames):
            if not filename.lower().endswith(TEXT_SUFFIXES):
                continue
            location = Path(dirpath) / filename
            rel = location.relative_to(root).as_posix()
            files.append(SourceFile(f"/{rel}", filename, _file_reader(location)))
    return files


def list_archive_files(archive: Path | str) -> list[SourceFile]:
    """List the text members of a ``.zip`` export."""
    archive = Path(archive).resolve()
    if not zipfile.is_zipfile(archive):
        raise ValueError(f"Not a zip archive: {archive}")

    files: list[SourceFile] = []
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            if info.is_dir() or not info.filename.lower().endswith(TEXT_SUFFIXES):
                continue
            parts = info.filename.split("/")
            if any(p in _SKIP_DIRS or p.startswith("__MACOSX") for p in parts):
                continue
            files.append(
                SourceFile(
                    f"/{info.filename.lstrip('/')}",
                    parts[-1],
                    _archive_reader(archive, info.filename),
                )
            )
    return files


def list_export_files(location: Path | str) -> list[SourceFile]:
    """List an export: either an unpacked directory or a ``.zip`` archive."""
    location = Path(location)
    if location.is_file() and location.suffix.lower() == ".zip":
        return list_archive_files(location)
    return list_directory_files(location)


# ------------------------------------------------------------------
# Repositories
# ------------------------------------------------------------------


def is_remote(url: str) -> bool:
    return "://" in url or url.startswith(_GIT_SSH_PREFIX)


@contextmanager
def open_repository(url: str, branch: str | None = None) -> Iterator[list[SourceFile]]:
    """Yield the text files of a repository.

    Local paths are listed in place. Remote URLs are shallow-cloned into a
    private temp dir that is removed when the context exits.
    """
    if not is_remote(url):
        yield list_directory_files(url)
        return

    _validate_url(url)
    clone_url = _inject_token(url)

    tmpdir = tempfile.mkdtemp(prefix="docprompt-")
    os.chmod(tmpdir, 0o700)
    atexit.register(_cleanup_dir, tmpdir)

    try:
        _clone(clone_url, tmpdir, url, branch)
        yield list_directory_files(tmpdir)
    finally:
        _cleanup_dir(tmpdir)


def _validate_url(url: str) -> None:
    """Raise ValueError if *url* uses a disallowed scheme."""
    if url.startswith(_GIT_SSH_PREFIX):
        return
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in _ALLOWED_SCHEMES:
        raise ValueError(
            f"Unsupported URL scheme '{parsed.scheme}'. Allowed: https://, http://, git@"
        )


def _inject_token(url: str) -> str:
    """Inject GIT_TOKEN into an HTTPS/HTTP URL for private repo auth.

    The modified URL is only used for the git clone call and is never
    logged or included in exception messages.
    """
    token = os.environ.get("GIT_TOKEN", "")
    if not token or not url.startswith(("https://", "http://")):
        return url
    parsed = urllib.parse.urlparse(url)
    return parsed._replace(netloc=f"{token}@{parsed.netloc}").geturl()


def _clone(clone_url: str, tmpdir: str, original_url: str, branch: str | None) -> None:
    """Run a shallow git clone (shell=False). Raises RuntimeError on failure."""
    args = ["git", "clone", "--depth", "1"]
    if branch:
        args += ["--branch", branch]
    args += ["--", clone_url, tmpdir]
    logger.info("Cloning %s", _sanitise_url(original_url))
    try:
        subprocess.run(args, shell=False, check=True, capture_output=True, text=True)
    except subprocess.CalledProcessError as exc:
        stderr_safe = _sanitise_url(exc.stderr or "")
        raise RuntimeError(
            f"git clone failed for {_sanitise_url(original_url)}: {stderr_safe}"
        ) from None


def _cleanup_dir(path: str) -> None:
    shutil.rmtree(path, ignore_errors=True)
