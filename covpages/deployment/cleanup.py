"""Cleanup engine — remove stale files from the pages working copy.

Published artifact types and hosting marker files are protected: they are
kept no matter which removal patterns a caller passes, and a removal pattern
that names one of them outright is rejected before anything is deleted.
"""

from __future__ import annotations

import abc
import logging
import os
import shutil
from enum import Enum
from pathlib import Path
from typing import Collection, Iterable, Iterator

from pydantic import BaseModel, Field

from covpages.config import NOJEKYLL_FILE

logger = logging.getLogger(__name__)

GIT_DIR = ".git"

# Exact paths that are always kept
PROTECTED_FILES = (NOJEKYLL_FILE, "CNAME", "index.html")

# Artifact types that are always kept
PROTECTED_PATTERNS = (
    "*.html", "*.svg", "*.css", "*.js", "*.json",
    "*.png", "*.jpg", "*.jpeg", "*.gif", "*.ico", "*.webp",
    "*.webmanifest", "favicon.*",
)

# Removal patterns that are refused outright
CRITICAL_PATTERNS = PROTECTED_FILES + (
    "coverage.html", "coverage.svg",
    "*.html", "*.svg", "*.json", "*.css", "*.js",
)

# Clearly not artifacts
UNWANTED_EXTENSIONS = (
    ".go", ".mod", ".sum", ".lock",
    ".yml", ".yaml", ".md", ".txt", ".log",
)
UNWANTED_DIRS = (
    "cmd", "internal", "pkg", "test", "testdata",
    "docs", "examples", "scripts", "tools", ".github",
)


class WorkDirMissingError(FileNotFoundError):
    """Raised when the directory to clean does not exist."""


class CleanupPatternCriticalError(ValueError):
    """Raised when a removal pattern would target protected artifacts."""

    def __init__(self, pattern: str) -> None:
        super().__init__(
            f"cleanup pattern would remove critical coverage files: {pattern}"
        )
        self.pattern = pattern


class CleanupResult(BaseModel):
    """Outcome of one cleanup pass over a working tree."""

    files_removed: int = 0
    directories_removed: int = 0
    files_preserved: int = 0
    directories_preserved: int = 0
    removed_paths: list[str] = Field(default_factory=list)
    preserved_paths: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


def default_preserve_patterns() -> list[str]:
    """Patterns for files that should always be preserved."""
    return [
        "*.html",       # reports
        "*.svg",        # badges
        "*.css",
        "*.js",
        "*.json",       # data files
        "*.png",
        "*.jpg",
        "*.jpeg",
        "*.gif",
        "*.ico",
        NOJEKYLL_FILE,  # static hosting config
        "CNAME",        # custom domain
        "robots.txt",
        "sitemap.xml",
        "favicon.*",
        "manifest.*",
    ]


def default_cleanup_patterns() -> list[str]:
    """Patterns for files removed from the pages branch on every deployment."""
    return [
        "*.go", "*.mod", "*.sum",
        "*.yml", "*.yaml",
        "*.md", "LICENSE", "README*",
        "cmd/", "internal/", "pkg/",
        "test/", "testdata/",
        ".github/",
        "docs/", "examples/",
        "scripts/", "tools/",
        "*.txt", "*.log",
        "Makefile", "mage*",
        "go.work*",
    ]


def match_pattern(path: str, pattern: str) -> bool:
    """Match a slash-separated relative *path* against *pattern*.

    ``*.ext`` matches any path ending in ``.ext``; ``dir/*`` matches anything
    under ``dir/``; any other wildcard pattern matches by substring with the
    ``*`` removed.  A plain pattern matches the path itself or anything
    below it as a directory.
    """
    if "*" in pattern:
        if pattern.startswith("*."):
            return path.endswith(pattern[1:])
        if pattern.endswith("/*"):
            return path.startswith(pattern[:-2] + "/")
        return pattern.replace("*", "") in path

    pattern = pattern.rstrip("/")
    if not pattern:
        return False
    return path == pattern or path.startswith(pattern + "/")


def _matches_any(path: str, patterns: Iterable[str]) -> bool:
    return any(match_pattern(path, p) for p in patterns)


def is_protected(
    path: str, preserve_patterns: Iterable[str] = (), keep: Collection[str] = (),
) -> bool:
    """Return True if *path* must never be removed.

    *keep* holds exact relative paths; unlike *preserve_patterns* they are
    compared literally, so names containing ``*`` are safe.
    """
    if path in PROTECTED_FILES or path in keep:
        return True
    if _matches_any(path, PROTECTED_PATTERNS):
        return True
    return _matches_any(path, preserve_patterns)


class _Decision(str, Enum):
    PRESERVE = "preserve"
    REMOVE = "remove"


class CleanupEngine(abc.ABC):
    """Decide which files of a working tree to delete, and delete them."""

    @abc.abstractmethod
    def cleanup_files(
        self,
        work_dir: str | Path,
        patterns: list[str],
        preserve_patterns: list[str],
        keep: Collection[str] = (),
    ) -> CleanupResult:
        """Remove files matching *patterns*, keeping protected ones and *keep*."""

    @abc.abstractmethod
    def validate_cleanup(self, work_dir: str | Path, patterns: list[str]) -> None:
        """Raise if cleaning *work_dir* with *patterns* would be unsafe."""

    @abc.abstractmethod
    def preview_cleanup(
        self,
        work_dir: str | Path,
        patterns: list[str],
        preserve_patterns: list[str],
        keep: Collection[str] = (),
    ) -> list[str]:
        """Return the relative paths a cleanup would remove, touching nothing."""


class FileCleanup(CleanupEngine):
    """Filesystem implementation of :class:`CleanupEngine`.

    Parameters
    ----------
    dry_run:
        If True, :meth:`cleanup_files` reports what it would remove without
        deleting anything.
    """

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run = dry_run

    # -- Validation -----------------------------------------------------------

    def validate_cleanup(self, work_dir: str | Path, patterns: list[str]) -> None:
        """Reject a cleanup before it runs.

        Raises
        ------
        WorkDirMissingError
            If *work_dir* does not exist.
        CleanupPatternCriticalError
            If a pattern is one of the critical patterns.
        """
        if not Path(work_dir).is_dir():
            raise WorkDirMissingError(f"work directory does not exist: {work_dir}")

        for pattern in patterns:
            if pattern in CRITICAL_PATTERNS:
                raise CleanupPatternCriticalError(pattern)

    # -- Execution ------------------------------------------------------------

    def cleanup_files(
        self,
        work_dir: str | Path,
        patterns: list[str],
        preserve_patterns: list[str],
        keep: Collection[str] = (),
    ) -> CleanupResult:
        """Walk *work_dir* and remove what the decision rules select.

        Errors on individual paths are collected in the result; the walk
        carries on.
        """
        root = Path(work_dir)
        if not self.dry_run:
            self.validate_cleanup(root, patterns)
        elif not root.is_dir():
            raise WorkDirMissingError(f"work directory does not exist: {work_dir}")

        result = CleanupResult()
        for rel, path, is_dir, decision in self._scan(root, patterns, preserve_patterns, keep, result.errors):
            if decision is _Decision.PRESERVE:
                if is_dir:
                    result.directories_preserved += 1
                else:
                    result.files_preserved += 1
                result.preserved_paths.append(rel)
                continue

            if not self.dry_run:
                try:
                    _remove(path, is_dir)
                except OSError as exc:
                    logger.warning("Failed to remove %s: %s", rel, exc)
                    result.errors.append(f"Failed to remove {rel}: {exc}")
                    continue

            if is_dir:
                result.directories_removed += 1
            else:
                result.files_removed += 1
            result.removed_paths.append(rel)

        logger.info(
            "Cleanup %s: %d file(s) and %d dir(s) removed, %d preserved%s",
            root, result.files_removed, result.directories_removed,
            result.files_preserved, " (dry run)" if self.dry_run else "",
        )
        return result

    def preview_cleanup(
        self,
        work_dir: str | Path,
        patterns: list[str],
        preserve_patterns: list[str],
        keep: Collection[str] = (),
    ) -> list[str]:
        root = Path(work_dir)
        if not root.is_dir():
            raise WorkDirMissingError(f"work directory does not exist: {work_dir}")

        errors: list[str] = []
        to_remove = [
            rel
            for rel, _path, _is_dir, decision in self._scan(root, patterns, preserve_patterns, keep, errors)
            if decision is _Decision.REMOVE
        ]
        for err in errors:
            logger.warning("Skipping path during preview: %s", err)
        return to_remove

    # -- Decision walk --------------------------------------------------------

    def _scan(
        self,
        root: Path,
        patterns: list[str],
        preserve_patterns: list[str],
        keep: Collection[str],
        errors: list[str],
        directory: Path | None = None,
    ) -> Iterator[tuple[str, Path, bool, _Decision]]:
        """Yield ``(relative path, path, is_dir, decision)`` depth-first in name order.

        The ``.git`` directory is skipped entirely; removed directories are
        not descended into.
        """
        directory = root if directory is None else directory
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as exc:
            errors.append(f"Error accessing {directory}: {exc}")
            return

        for entry in entries:
            path = Path(entry.path)
            rel = path.relative_to(root).as_posix()
            if rel == GIT_DIR:
                continue
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
            except OSError as exc:
                errors.append(f"Error accessing {rel}: {exc}")
                continue

            decision = self._decide(rel, path, is_dir, patterns, preserve_patterns, keep)
            logger.debug("cleanup %s: %s", decision.value, rel)
            yield rel, path, is_dir, decision

            if is_dir and decision is _Decision.PRESERVE:
                yield from self._scan(root, patterns, preserve_patterns, keep, errors, path)

    def _decide(
        self,
        rel: str,
        path: Path,
        is_dir: bool,
        patterns: list[str],
        preserve_patterns: list[str],
        keep: Collection[str],
    ) -> _Decision:
        if is_protected(rel, preserve_patterns, keep):
            return _Decision.PRESERVE

        remove = (
            _matches_any(rel, patterns)
            or (not is_dir and rel.endswith(UNWANTED_EXTENSIONS))
            or (is_dir and _matches_any(rel, UNWANTED_DIRS))
        )
        if not remove:
            return _Decision.PRESERVE

        # Never take protected files down with their directory
        if is_dir and _has_protected_descendant(path, rel, preserve_patterns, keep):
            return _Decision.PRESERVE
        return _Decision.REMOVE


def _has_protected_descendant(
    directory: Path, rel: str, preserve_patterns: list[str], keep: Collection[str],
) -> bool:
    for dirpath, dirnames, filenames in os.walk(directory):
        base = Path(dirpath).relative_to(directory).as_posix()
        prefix = rel if base == "." else f"{rel}/{base}"
        for name in filenames + dirnames:
            if is_protected(f"{prefix}/{name}", preserve_patterns, keep):
                return True
    return False


def _remove(path: Path, is_dir: bool) -> None:
    if is_dir:
        shutil.rmtree(path)
    else:
        path.unlink()
