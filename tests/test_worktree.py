"""Tests for sync/worktree.py: the hidden sync-branch checkout."""

from __future__ import annotations

import pytest

from tbd.errors import NotInitializedError
from tbd.sync.worktree import (
    INIT_COMMIT_MESSAGE,
    Worktree,
    WorktreeHealth,
    ensure_gitignore,
)

pytestmark = pytest.mark.git

BRANCH = "tbd-sync"


@pytest.fixture
def repo(make_repo):
    return make_repo("project")


class TestEnsureGitignore:
    def test_creates_file(self, tmp_path):
        path = ensure_gitignore(tmp_path / ".tbd")

        assert path.read_text(encoding="utf-8") == (
            "data-sync-worktree/\ndata-sync-worktree.bak-*/\n"
        )

    def test_keeps_existing_lines(self, tmp_path):
        tbd_dir = tmp_path / ".tbd"
        tbd_dir.mkdir()
        (tbd_dir / ".gitignore").write_text("*.log", encoding="utf-8")

        ensure_gitignore(tbd_dir)
        ensure_gitignore(tbd_dir)

        lines = (tbd_dir / ".gitignore").read_text(encoding="utf-8")
        assert lines.splitlines() == [
            "*.log",
            "data-sync-worktree/",
            "data-sync-worktree.bak-*/",
        ]


class TestInit:
    """Tests for Worktree.init()."""

    def test_orphan_branch(self, repo, git_cmd):
        worktree = Worktree(repo, BRANCH, "origin")

        assert worktree.init() == WorktreeHealth.VALID

        assert (worktree.path / "issues").is_dir()
        assert (worktree.path / "mappings" / "ids.yml").read_text(
            encoding="utf-8"
        ) == "{}\n"
        assert (worktree.path / "meta.yml").read_text(
            encoding="utf-8"
        ) == "schema_version: 1\n"
        assert (worktree.path / "attic" / "conflicts").is_dir()
        # no shared history with the user's branch
        assert git_cmd(repo, "log", "--format=%s", BRANCH) == (
            INIT_COMMIT_MESSAGE
        )

    def test_user_branch_untouched(self, repo, git_cmd):
        head_before = git_cmd(repo, "rev-parse", "HEAD")

        Worktree(repo, BRANCH, "origin").init()

        assert git_cmd(repo, "rev-parse", "HEAD") == head_before
        assert git_cmd(repo, "branch", "--show-current") == "main"
        status = git_cmd(
            repo, "status", "--porcelain", "--untracked-files=all"
        )
        assert status == "?? .tbd/.gitignore"

    def test_init_is_idempotent(self, repo):
        worktree = Worktree(repo, BRANCH, "origin")
        worktree.init()
        marker = worktree.path / "issues" / "keep.md"
        marker.write_text("x", encoding="utf-8")

        assert worktree.init() == WorktreeHealth.VALID
        assert marker.exists()

    def test_reinit_keeps_unusable_worktree(self, repo, git_cmd):
        """A detached worktree is moved aside with its unsaved files."""
        worktree = Worktree(repo, BRANCH, "origin")
        worktree.init()
        draft = worktree.path / "issues" / "draft.md"
        draft.write_text("unsaved", encoding="utf-8")
        git_cmd(worktree.path, "checkout", "-q", "--detach")

        assert worktree.init() == WorktreeHealth.VALID

        backups = list(worktree.path.parent.glob("data-sync-worktree.bak-*"))
        assert len(backups) == 1
        assert (backups[0] / "issues" / "draft.md").read_text(
            encoding="utf-8"
        ) == "unsaved"
        assert not draft.exists()

    def test_attaches_to_remote_branch(self, make_repo, bare_remote, git_cmd):
        first = make_repo("first", remote=bare_remote)
        Worktree(first, BRANCH, "origin").init()
        git_cmd(first, "push", "-q", "origin", f"{BRANCH}:{BRANCH}")
        tip = git_cmd(first, "rev-parse", BRANCH)

        second = make_repo("second", remote=bare_remote)
        worktree = Worktree(second, BRANCH, "origin")

        assert worktree.init() == WorktreeHealth.VALID
        assert git_cmd(second, "rev-parse", BRANCH) == tip

    def test_not_a_repository(self, tmp_path, git_env):
        plain = tmp_path / "plain"
        plain.mkdir()

        with pytest.raises(NotInitializedError, match="not a git"):
            Worktree(plain, BRANCH, "origin").init()


class TestHealth:
    def test_missing(self, repo):
        worktree = Worktree(repo, BRANCH, "origin")

        assert worktree.health() == WorktreeHealth.MISSING
        with pytest.raises(NotInitializedError):
            worktree.require()

    def test_corrupted_without_git_file(self, repo):
        worktree = Worktree(repo, BRANCH, "origin")
        worktree.init()
        (worktree.path / ".git").unlink()

        assert worktree.health() == WorktreeHealth.CORRUPTED
        with pytest.raises(NotInitializedError, match="corrupted"):
            worktree.require()

    def test_wrong_branch_is_corrupted(self, repo):
        worktree = Worktree(repo, BRANCH, "origin")
        worktree.init()

        assert Worktree(repo, "other", "origin").health() == (
            WorktreeHealth.CORRUPTED
        )


class TestRepair:
    def test_backs_up_and_recreates(self, repo):
        worktree = Worktree(repo, BRANCH, "origin")
        worktree.init()
        (worktree.path / ".git").unlink()
        (worktree.path / "issues" / "draft.md").write_text(
            "unsaved", encoding="utf-8"
        )

        assert worktree.repair() == WorktreeHealth.VALID

        backups = list(worktree.path.parent.glob("data-sync-worktree.bak-*"))
        assert len(backups) == 1
        assert (backups[0] / "issues" / "draft.md").exists()
        assert not (worktree.path / "issues" / "draft.md").exists()

    def test_valid_worktree_left_alone(self, repo):
        worktree = Worktree(repo, BRANCH, "origin")
        worktree.init()

        assert worktree.repair() == WorktreeHealth.VALID
        assert not list(worktree.path.parent.glob("*.bak-*"))
