"""Tests for paths.py: project layout and root discovery."""

from __future__ import annotations

import pytest

from tbd.errors import NotInitializedError
from tbd.paths import (
    PathResolver,
    attic_dir,
    ids_file,
    issues_dir,
    meta_file,
)


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    (root / ".tbd").mkdir(parents=True)
    (root / ".tbd" / "config.yml").write_text("{}\n", encoding="utf-8")
    return root


def test_data_layout(tmp_path):
    assert issues_dir(tmp_path) == tmp_path / "issues"
    assert ids_file(tmp_path) == tmp_path / "mappings" / "ids.yml"
    assert attic_dir(tmp_path) == tmp_path / "attic" / "conflicts"
    assert meta_file(tmp_path) == tmp_path / "meta.yml"


class TestPathResolver:
    """Tests for PathResolver."""

    def test_finds_root_from_subdirectory(self, project):
        nested = project / "src" / "pkg"
        nested.mkdir(parents=True)

        resolver = PathResolver(nested)

        assert resolver.project_root() == project.resolve()
        assert resolver.worktree_dir() == (
            project.resolve() / ".tbd" / "data-sync-worktree"
        )
        assert resolver.data_dir() == resolver.worktree_dir()
        assert resolver.config_file().name == "config.yml"

    def test_no_project(self, tmp_path):
        resolver = PathResolver(tmp_path)

        assert resolver.find_root() is None
        with pytest.raises(NotInitializedError):
            resolver.project_root()

    def test_cache_and_invalidate(self, project):
        """A cached root is kept until invalidate() is called."""
        resolver = PathResolver(project)
        assert resolver.find_root() == project.resolve()

        (project / ".tbd" / "config.yml").unlink()
        assert resolver.find_root() == project.resolve()

        resolver.invalidate()
        assert resolver.find_root() is None

    def test_tbd_dir_without_config_ignored(self, tmp_path):
        (tmp_path / ".tbd").mkdir()

        assert PathResolver(tmp_path).find_root() is None
