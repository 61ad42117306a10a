from __future__ import annotations

import fnmatch
import os
import stat
import subprocess  # noqa: S404
from pathlib import Path
from typing import TYPE_CHECKING, Any

from repo_chunker.config import DEFAULT_EXCLUDES, FileRecord
from repo_chunker.exceptions import FileLoadingError
from repo_chunker.logging import logger

if TYPE_CHECKING:
    from collections.abc import Sequence


def relpath(path: Path, root: Path) -> str:
    """Send the relative path of path from root.

    Args:
        path (Path): the path to "relativise"
        root (Path): the root to relativise from

    Returns:
        str: the relative path from root to path, with POSIX separators.
            If path is not under root, returns the original path as a string.
    """
    try:
        return str(path.relative_to(root)).replace("\\", "/")
    except ValueError:
        return str(path)


def is_regular_file(path: Path) -> bool:
    try:
        return stat.S_ISREG(path.stat().st_mode)
    except OSError:
        return False


def sniff_text_utf8(path: Path, nbytes: int = 4096) -> bool:
    """Check if path points to a utf-8 encoded text file.

    Only the first `nbytes` are decoded; a NUL byte marks the file as binary.

    Args:
        path (Path): path to test.
        nbytes (int, optional): number of bytes to read for testing. Defaults to 4096.

    Returns:
        bool: True if the file is utf-8 encoded text, False otherwise.
    """
    if not is_regular_file(path):
        return False
    try:
        with path.open("rb") as f:
            head = f.read(nbytes)
    except OSError:
        return False
    if b"\x00" in head:
        return False
    try:
        head.decode("utf-8")
    except UnicodeDecodeError as e:
        # A multi-byte character cut by the read window is still text.
        return e.start >= len(head) - 3 and e.reason == "unexpected end of data"
    return True


def git_ls_files(repo: Path) -> list[Path]:
    """Get the list of tracked files in a git repository using `git ls-files`.

    Args:
        repo (Path): the root of the git repository to query

    Raises:
        FileLoadingError: if `.git` is missing.
        subprocess.CalledProcessError: if the `git` invocation fails.

    Returns:
        list[Path]: the list of tracked files within the repository
    """
    if not (repo / ".git").exists():
        raise FileLoadingError(path=str(repo), message="Not a git repository")
    out = subprocess.run(
        ["git", "ls-files"],  # noqa: S607
        cwd=str(repo),
        text=True,
        capture_output=True,
        check=True,
    )
    return [(repo / line.strip()).resolve() for line in out.stdout.splitlines() if line.strip()]


def walk_files(repo: Path) -> list[Path]:
    """Walk the directory tree rooted at `repo`, pruning `DEFAULT_EXCLUDES` directories."""
    results: list[Path] = []
    for root, dirs, files in os.walk(repo):
        dirs[:] = [d for d in dirs if d not in DEFAULT_EXCLUDES]
        for f in files:
            p = (Path(root) / f).resolve()
            if p.is_file():
                results.append(p)
    return results


def in_default_excludes(repo: Path, path: Path) -> bool:
    try:
        parts = path.relative_to(repo).parts
    except ValueError:
        return True
    return any(p in DEFAULT_EXCLUDES for p in parts)


def match_any_glob(rel: str, globs: Sequence[str]) -> bool:
    return any(fnmatch.fnmatch(rel, g) for g in globs)


def normalize_globs(globs: Sequence[str]) -> list[str]:
    """Strip whitespace, drop empty patterns and use forward slashes."""
    out: list[str] = []
    for g in globs:
        g2 = (g or "").strip()
        if not g2:
            continue
        out.append(g2.replace("\\", "/"))
    return out


def apply_filters(
    files: Sequence[Path],
    repo: Path,
    includes: Sequence[str],
    excludes: Sequence[str],
    exclude_paths: Sequence[str],
) -> list[Path]:
    """Apply include/exclude filters to a list of files.

    Args:
        files (Sequence[Path]): the list of file paths to filter (absolute paths)
        repo (Path): the root path to relativize file paths against for filtering
        includes (Sequence[str]): glob patterns to include (relative to repo)
        excludes (Sequence[str]): glob patterns to exclude (relative to repo)
        exclude_paths (Sequence[str]): specific relative paths to exclude (relative to repo)

    Returns:
        list[Path]: the filtered files, sorted case-insensitively on their relative path
    """
    inc = normalize_globs(includes)
    exc = normalize_globs(excludes)
    exc_paths = [p.strip().strip("/").replace("\\", "/") for p in exclude_paths if p.strip()]

    out: list[Path] = []
    for f in files:
        if not is_regular_file(f):
            continue
        if in_default_excludes(repo, f):
            continue
        r = relpath(f, repo)
        if any(r == ep or r.startswith(ep + "/") for ep in exc_paths):
            continue
        if inc and not match_any_glob(r, inc):
            continue
        if exc and match_any_glob(r, exc):
            continue
        out.append(f)
    return sorted(set(out), key=lambda p: relpath(p, repo).lower())


def list_repository_files(repo: Path, *, use_git: bool = True) -> list[Path]:
    """Tracked files from `git ls-files`, or a filesystem walk when git is disabled or unavailable."""
    if use_git:
        try:
            return git_ls_files(repo)
        except (FileLoadingError, OSError, subprocess.CalledProcessError) as e:
            logger.info("files.git_fallback", repo=str(repo), error=str(e))
    return walk_files(repo)


def load_file_records(files: Sequence[Path], repo: Path, max_bytes: int) -> list[FileRecord]:
    """Read text files into `FileRecord`s, keeping the order of `files`.

    Binary files, files larger than `max_bytes` and unreadable files are
    skipped with a warning.

    Args:
        files (Sequence[Path]): absolute file paths
        repo (Path): repository root, used for the record paths
        max_bytes (int): size above which a file is skipped

    Returns:
        list[FileRecord]: one record per loaded file
    """
    records: list[FileRecord] = []
    for f in files:
        rel = relpath(f, repo)
        try:
            size = f.stat().st_size
            if size > max_bytes:
                logger.warning("files.skipped", path=rel, reason="too_big", size=size, max_bytes=max_bytes)
                continue
            if not sniff_text_utf8(f):
                logger.warning("files.skipped", path=rel, reason="binary")
                continue
            content = f.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning("files.skipped", path=rel, reason="unreadable", error=str(e))
            continue
        records.append(FileRecord.from_content(rel, content))
    logger.debug("files.loaded", count=len(records), candidates=len(files))
    return records


def build_tree_lines(root_name: str, rel_paths: Sequence[str]) -> list[str]:
    """Render POSIX relative paths as an indented tree, directories first.

    Args:
        root_name (str): label of the first line
        rel_paths (Sequence[str]): paths relative to the root (e.g. "src/main.py"); duplicates are merged

    Returns:
        list[str]: one string per tree line
    """
    tree: dict[str, Any] = {}
    for rel in {p.strip("/").replace("\\", "/") for p in rel_paths if p.strip()}:
        node = tree
        *dirs, name = rel.split("/")
        for part in dirs:
            node = node.setdefault(part, {})
        node.setdefault("__files__", set()).add(name)

    lines = [root_name]

    def walk(node: dict[str, Any], prefix: str) -> None:
        entries = [(d, node[d]) for d in sorted((k for k in node if k != "__files__"), key=str.lower)]
        entries += [(f, None) for f in sorted(node.get("__files__", set()), key=str.lower)]
        for idx, (name, child) in enumerate(entries):
            last = idx == len(entries) - 1
            lines.append(prefix + ("└── " if last else "├── ") + name + ("/" if child is not None else ""))
            if child is not None:
                walk(child, prefix + ("    " if last else "│   "))

    walk(tree, "")
    return lines
