"""Tests for sync/git.py: the git subprocess wrapper."""

from __future__ import annotations

import subprocess
from unittest.mock import patch

import pytest

from tbd.errors import GitError, PushRejectedError, SyncUnavailableError
from tbd.sync.git import GitRunner, tracking_ref


def _done(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(
        args=["git"], returncode=returncode, stdout=stdout, stderr=stderr
    )


@pytest.fixture
def runner(tmp_path):
    return GitRunner(tmp_path, network_timeout=5, local_timeout=10)


@pytest.fixture
def mock_run():
    with patch("tbd.sync.git.subprocess.run") as mock:
        yield mock


class TestRun:
    """Tests for GitRunner.run()."""

    def test_invocation(self, runner, mock_run, tmp_path):
        mock_run.return_value = _done(stdout="abc\n")

        assert runner.output("rev-parse", "HEAD") == "abc"

        args, kwargs = mock_run.call_args
        assert args[0] == ["git", "rev-parse", "HEAD"]
        assert kwargs["cwd"] == str(tmp_path)
        assert kwargs["timeout"] == 10
        assert kwargs["env"]["GIT_TERMINAL_PROMPT"] == "0"

    def test_failure_raises_git_error(self, runner, mock_run):
        mock_run.return_value = _done(returncode=128, stderr="fatal: bad")

        with pytest.raises(GitError) as exc_info:
            runner.run("status")

        assert exc_info.value.returncode == 128
        assert exc_info.value.git_args == ["status"]

    def test_unchecked_failure_returned(self, runner, mock_run):
        mock_run.return_value = _done(returncode=1)

        assert runner.run("diff", "--quiet", check=False).returncode == 1

    def test_git_missing(self, runner, mock_run):
        mock_run.side_effect = FileNotFoundError("git")

        with pytest.raises(GitError, match="not found"):
            runner.run("status")

    def test_timeout_is_unavailable(self, runner, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(["git"], 5)

        with pytest.raises(SyncUnavailableError, match="timed out"):
            runner.run("fetch", network=True)

        assert mock_run.call_args.kwargs["timeout"] == 5


class TestQueries:
    def test_rev_parse_missing(self, runner, mock_run):
        mock_run.return_value = _done(returncode=1)

        assert runner.rev_parse("refs/heads/nope") is None

    def test_diff_name_status(self, runner, mock_run):
        mock_run.return_value = _done(
            stdout="A\0issues/a.md\0M\0issues/b.md\0D\0issues/c.md\0"
        )

        entries = runner.diff_name_status("old", "new", "issues")

        assert entries == [
            ("A", "issues/a.md"),
            ("M", "issues/b.md"),
            ("D", "issues/c.md"),
        ]

    def test_status_porcelain(self, runner, mock_run):
        mock_run.return_value = _done(
            stdout=" M issues/a.md\0?? issues/new file.md\0"
        )

        assert runner.status_porcelain() == [
            (" M", "issues/a.md"),
            ("??", "issues/new file.md"),
        ]

    def test_staged_files_matching_limited_to_paths(self, runner, mock_run):
        mock_run.return_value = _done(stdout="issues/a.md\n")

        assert runner.staged_files_matching(
            "^<<<<<<< ", ["issues/a.md", "mappings/ids.yml"]
        ) == ["issues/a.md"]
        args = mock_run.call_args.args[0]
        assert args[args.index("--") + 1 :] == [
            "issues/a.md",
            "mappings/ids.yml",
        ]

    def test_staged_files_matching_no_paths(self, runner, mock_run):
        assert runner.staged_files_matching("^<<<<<<< ", []) == []
        mock_run.assert_not_called()


class TestCommit:
    def test_nothing_staged(self, runner, mock_run):
        """Clean index and no merge in progress: no commit."""
        mock_run.side_effect = [
            _done(),  # add -A
            _done(),  # diff --cached --quiet
            _done(returncode=1),  # rev-parse MERGE_HEAD
        ]

        assert runner.commit("msg") is None
        assert mock_run.call_count == 3

    def test_commits_staged_changes(self, runner, mock_run):
        mock_run.side_effect = [
            _done(),
            _done(returncode=1),
            _done(),
            _done(stdout="deadbeef\n"),
        ]

        assert runner.commit("tbd sync: 1 file(s)") == "deadbeef"
        commit_args = mock_run.call_args_list[2].args[0]
        assert "--no-verify" in commit_args
        assert commit_args[-1] == "tbd sync: 1 file(s)"


class TestRemote:
    """Tests for ls-remote, fetch and push handling."""

    def test_missing_remote_branch(self, runner, mock_run):
        mock_run.return_value = _done(returncode=2)

        assert runner.remote_branch_tip("origin", "tbd-sync") is None
        assert runner.fetch_branch("origin", "tbd-sync") is None

    def test_unreachable_remote(self, runner, mock_run):
        mock_run.return_value = _done(
            returncode=128, stderr="fatal: 'origin' does not appear"
        )

        with pytest.raises(SyncUnavailableError, match="Cannot reach"):
            runner.remote_branch_tip("origin", "tbd-sync")

    def test_fetch_updates_tracking_ref(self, runner, mock_run):
        mock_run.side_effect = [
            _done(stdout="abc123\trefs/heads/tbd-sync\n"),
            _done(),
            _done(stdout="abc123\n"),
        ]

        assert runner.fetch_branch("origin", "tbd-sync") == "abc123"
        fetch_args = mock_run.call_args_list[1].args[0]
        assert fetch_args[-1] == (
            "+refs/heads/tbd-sync:" + tracking_ref("origin", "tbd-sync")
        )

    def test_push_rejected(self, runner, mock_run):
        mock_run.return_value = _done(
            returncode=1,
            stdout="!\trefs/heads/tbd-sync:refs/heads/tbd-sync\t[rejected]",
            stderr="error: failed to push some refs (fetch first)",
        )

        with pytest.raises(PushRejectedError):
            runner.push_branch("origin", "tbd-sync")

    def test_push_other_failure(self, runner, mock_run):
        mock_run.return_value = _done(
            returncode=128, stderr="fatal: Could not read from remote"
        )

        with pytest.raises(SyncUnavailableError, match="Could not read"):
            runner.push_branch("origin", "tbd-sync")

    def test_push_success_moves_tracking_ref(self, runner, mock_run):
        mock_run.side_effect = [
            _done(),
            _done(stdout="abc123\n"),
            _done(),
        ]

        runner.push_branch("origin", "tbd-sync")

        assert mock_run.call_args_list[2].args[0] == [
            "git",
            "update-ref",
            "refs/remotes/origin/tbd-sync",
            "abc123",
        ]
