"""Tests for the cleanup engine.

All tests build small working trees under tmp_path.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from covpages.deployment.cleanup import (
    CleanupPatternCriticalError,
    FileCleanup,
    WorkDirMissingError,
    default_cleanup_patterns,
    default_preserve_patterns,
    is_protected,
    match_pattern,
)


def _make_tree(root: Path, files: list[str]) -> None:
    for rel in files:
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(rel)


_SITE = [
    ".nojekyll",
    "index.html",
    "coverage.svg",
    "main.go",
    "go.mod",
    "README.md",
    "notes.txt",
    "data.bin",
    "cmd/tool/main.go",
    "docs/guide.md",
    "main/master/coverage.html",
    "main/master/coverage.svg",
    "branch/feature/debug.log",
]


class TestMatchPattern:
    def test_suffix(self):
        assert match_pattern("a/b/file.go", "*.go")
        assert not match_pattern("file.gox", "*.go")

    def test_directory_prefix_wildcard(self):
        assert match_pattern("cmd/tool/main.go", "cmd/*")
        assert not match_pattern("cmd", "cmd/*")

    def test_substring_fallback(self):
        assert match_pattern("README.md", "README*")
        assert match_pattern("magefile.go", "mage*")

    def test_exact_and_directory(self):
        assert match_pattern("LICENSE", "LICENSE")
        assert match_pattern("docs/guide.md", "docs")
        assert not match_pattern("docsite", "docs")

    def test_trailing_slash_ignored(self):
        assert match_pattern("cmd", "cmd/")
        assert match_pattern("cmd/tool", "cmd/")


class TestProtection:
    @pytest.mark.parametrize("path", [
        ".nojekyll", "CNAME", "index.html", "pr/1/coverage.svg",
        "data/coverage.json", "favicon.ico", "site.webmanifest",
    ])
    def test_builtin_protected(self, path: str):
        assert is_protected(path)

    def test_caller_preserve_patterns(self):
        assert not is_protected("notes.txt")
        assert is_protected("notes.txt", ["notes.txt"])

    def test_kept_paths_compared_literally(self):
        assert is_protected("branch/x/a*b.txt", keep={"branch/x/a*b.txt"})
        assert not is_protected("branch/x/ab.txt", keep={"branch/x/a*b.txt"})

    def test_default_patterns(self):
        assert "*.go" in default_cleanup_patterns()
        assert ".nojekyll" in default_preserve_patterns()
        assert "CNAME" in default_preserve_patterns()


class TestValidateCleanup:
    def test_critical_pattern_rejected(self, tmp_path: Path):
        with pytest.raises(CleanupPatternCriticalError) as exc_info:
            FileCleanup().validate_cleanup(tmp_path, [".nojekyll"])
        assert exc_info.value.pattern == ".nojekyll"

    @pytest.mark.parametrize("pattern", ["index.html", "*.html", "*.svg", "coverage.html", "*.json"])
    def test_artifact_patterns_rejected(self, tmp_path: Path, pattern: str):
        with pytest.raises(CleanupPatternCriticalError):
            FileCleanup().validate_cleanup(tmp_path, ["*.go", pattern])

    def test_safe_patterns_accepted(self, tmp_path: Path):
        FileCleanup().validate_cleanup(tmp_path, ["*.go"])

    def test_missing_directory(self, tmp_path: Path):
        with pytest.raises(WorkDirMissingError):
            FileCleanup().validate_cleanup(tmp_path / "missing", ["*.go"])


class TestCleanupFiles:
    def test_removes_stale_files_and_keeps_artifacts(self, tmp_path: Path):
        _make_tree(tmp_path, _SITE)
        result = FileCleanup().cleanup_files(
            tmp_path, default_cleanup_patterns(), default_preserve_patterns(),
        )

        for kept in (".nojekyll", "index.html", "coverage.svg", "data.bin",
                     "main/master/coverage.html", "main/master/coverage.svg"):
            assert (tmp_path / kept).exists(), kept
        for gone in ("main.go", "go.mod", "README.md", "notes.txt", "cmd", "docs",
                     "branch/feature/debug.log"):
            assert not (tmp_path / gone).exists(), gone

        assert "cmd" in result.removed_paths
        assert result.directories_removed == 2
        assert result.files_removed == 5
        assert result.errors == []

    def test_git_directory_untouched(self, tmp_path: Path):
        _make_tree(tmp_path, [".git/config.yml", ".git/HEAD", "stale.yml"])
        result = FileCleanup().cleanup_files(tmp_path, ["*.yml"], [])

        assert (tmp_path / ".git" / "config.yml").exists()
        assert result.removed_paths == ["stale.yml"]

    def test_directory_with_protected_content_not_removed(self, tmp_path: Path):
        _make_tree(tmp_path, ["docs/index.html", "docs/notes.md"])
        result = FileCleanup().cleanup_files(tmp_path, ["docs/"], [])

        assert (tmp_path / "docs" / "index.html").exists()
        assert not (tmp_path / "docs" / "notes.md").exists()
        assert "docs" in result.preserved_paths
        assert "docs/notes.md" in result.removed_paths

    def test_dry_run_touches_nothing(self, tmp_path: Path):
        _make_tree(tmp_path, _SITE)
        result = FileCleanup(dry_run=True).cleanup_files(
            tmp_path, default_cleanup_patterns(), default_preserve_patterns(),
        )

        assert result.removed_paths
        for rel in _SITE:
            assert (tmp_path / rel).exists()

    def test_critical_pattern_stops_before_walk(self, tmp_path: Path):
        _make_tree(tmp_path, ["main.go"])
        with pytest.raises(CleanupPatternCriticalError):
            FileCleanup().cleanup_files(tmp_path, ["*.go", "*.html"], [])
        assert (tmp_path / "main.go").exists()


class TestPreviewCleanup:
    def test_matches_real_cleanup_and_is_stable(self, tmp_path: Path):
        _make_tree(tmp_path, _SITE)
        cleanup = FileCleanup()
        args = (default_cleanup_patterns(), default_preserve_patterns())

        first = cleanup.preview_cleanup(tmp_path, *args)
        second = cleanup.preview_cleanup(tmp_path, *args)
        assert first == second

        result = cleanup.cleanup_files(tmp_path, *args)
        assert sorted(result.removed_paths) == sorted(first)

    def test_never_lists_protected_files(self, tmp_path: Path):
        _make_tree(tmp_path, _SITE)
        # Substring patterns that would hit artifacts if protection lost
        removed = FileCleanup().preview_cleanup(tmp_path, ["cov*", "index*", "*/*"], [])

        assert not any(is_protected(rel) for rel in removed)
        assert "index.html" not in removed

    def test_missing_directory(self, tmp_path: Path):
        with pytest.raises(WorkDirMissingError):
            FileCleanup().preview_cleanup(tmp_path / "nope", [], [])

    def test_kept_path_with_wildcard_character(self, tmp_path: Path):
        _make_tree(tmp_path, ["branch/x/a*b.txt", "branch/x/old.txt"])
        keep = {"branch/x/a*b.txt"}

        removed = FileCleanup().preview_cleanup(tmp_path, [], [], keep=keep)
        assert removed == ["branch/x/old.txt"]

        result = FileCleanup().cleanup_files(tmp_path, ["branch/"], [], keep=keep)
        assert (tmp_path / "branch" / "x" / "a*b.txt").exists()
        assert not (tmp_path / "branch" / "x" / "old.txt").exists()
        assert result.files_removed == 1
