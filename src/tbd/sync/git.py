"""Narrow wrapper around the ``git`` binary.

Sync depends on git's atomic commits and branch updates, so git is run
as a subprocess rather than re-implemented.  All calls go through
``GitRunner`` so tests can substitute a mock and so every invocation is
logged at DEBUG in one place.

Network operations (``ls-remote``, ``fetch``, ``push``) run with a
timeout and never prompt for credentials; failures surface as
``SyncUnavailableError``.  A push refused because the remote moved
raises ``PushRejectedError`` instead, which the sync loop retries.
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

from ..errors import GitError, PushRejectedError, SyncUnavailableError

logger = logging.getLogger(__name__)

# Hash of the empty tree, valid in every repository
EMPTY_TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"

_REJECTION_MARKERS = (
    "[rejected]",
    "non-fast-forward",
    "fetch first",
    "stale info",
)


def tracking_ref(remote: str, branch: str) -> str:
    return f"refs/remotes/{remote}/{branch}"


class GitRunner:
    """Run git commands in one working directory.

    Args:
        cwd: Directory the commands run in.
        network_timeout: Seconds allowed for fetch/push/ls-remote.
        local_timeout: Seconds allowed for local commands.
    """

    def __init__(
        self,
        cwd: Path,
        network_timeout: int = 60,
        local_timeout: int = 120,
    ) -> None:
        self.cwd = cwd
        self.network_timeout = network_timeout
        self.local_timeout = local_timeout

    # ------------------------------------------------------------------
    # Low level
    # ------------------------------------------------------------------

    def run(
        self,
        *args: str,
        check: bool = True,
        input: str | None = None,
        network: bool = False,
    ) -> subprocess.CompletedProcess:
        """Run ``git <args>`` and return the completed process.

        Raises:
            GitError: Non-zero exit when *check* is set, or git missing.
            SyncUnavailableError: The command timed out.
        """
        timeout = self.network_timeout if network else self.local_timeout
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        logger.debug("git %s (in %s)", " ".join(args), self.cwd)
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=str(self.cwd),
                capture_output=True,
                text=True,
                encoding="utf-8",
                input=input,
                timeout=timeout,
                env=env,
            )
        except FileNotFoundError as exc:
            raise GitError(
                list(args),
                127,
                "git executable not found",
                "Install git and make sure it is on PATH.",
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise SyncUnavailableError(
                f"'git {args[0]}' timed out after {timeout}s"
            ) from exc

        if check and result.returncode != 0:
            raise GitError(list(args), result.returncode, result.stderr)
        return result

    def output(self, *args: str) -> str:
        return self.run(*args).stdout.strip()

    def _network(self, *args: str) -> subprocess.CompletedProcess:
        try:
            return self.run(*args, network=True)
        except GitError as exc:
            raise SyncUnavailableError(
                f"Remote operation failed: {exc.message}"
            ) from exc

    # ------------------------------------------------------------------
    # Refs and history
    # ------------------------------------------------------------------

    def rev_parse(self, ref: str) -> str | None:
        """Commit id of *ref*, or ``None`` if it does not resolve."""
        result = self.run(
            "rev-parse", "-q", "--verify", f"{ref}^{{commit}}", check=False
        )
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def merge_base(self, a: str, b: str) -> str | None:
        result = self.run("merge-base", a, b, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        result = self.run(
            "merge-base", "--is-ancestor", ancestor, descendant, check=False
        )
        return result.returncode == 0

    def count_commits(self, since: str, until: str) -> int:
        return int(self.output("rev-list", "--count", f"{since}..{until}"))

    def show_file(self, rev: str, path: str) -> str | None:
        """Contents of *path* at *rev*, or ``None`` if absent there."""
        result = self.run("show", f"{rev}:{path}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout

    def diff_name_status(
        self, old: str, new: str, *paths: str
    ) -> list[tuple[str, str]]:
        """``(status letter, path)`` for files differing between commits."""
        out = self.run(
            "diff",
            "--name-status",
            "--no-renames",
            "-z",
            old,
            new,
            "--",
            *paths,
        ).stdout
        parts = [p for p in out.split("\0") if p]
        return [(parts[i][0], parts[i + 1]) for i in range(0, len(parts), 2)]

    # ------------------------------------------------------------------
    # Working tree
    # ------------------------------------------------------------------

    def status_porcelain(self) -> list[tuple[str, str]]:
        """``(XY status, path)`` for every uncommitted change."""
        out = self.run(
            "status",
            "--porcelain=v1",
            "-z",
            "--untracked-files=all",
            "--no-renames",
        ).stdout
        return [(entry[:2], entry[3:]) for entry in out.split("\0") if entry]

    def commit(self, message: str) -> str | None:
        """Stage everything and commit.

        While a merge is in progress the commit is always made, even with
        an unchanged tree, so the merged parent is recorded.

        Returns:
            The new commit id, or ``None`` when there was nothing to
            commit.
        """
        self.run("add", "-A")
        staged = self.run("diff", "--cached", "--quiet", check=False)
        if staged.returncode == 0 and not self.merge_in_progress():
            return None
        self.run("commit", "--no-verify", "--quiet", "-m", message)
        commit = self.output("rev-parse", "HEAD")
        logger.debug("Committed %s: %s", commit[:10], message)
        return commit

    def staged_files_matching(
        self, pattern: str, paths: list[str]
    ) -> list[str]:
        """Those of *paths* whose staged changes match the regex *pattern*."""
        if not paths:
            return []
        out = self.run(
            "diff", "--cached", "--name-only", "-G", pattern, "--", *paths
        ).stdout
        return [line for line in out.splitlines() if line]

    def merge_in_progress(self) -> bool:
        return self.rev_parse("MERGE_HEAD") is not None

    def abort_merge(self) -> None:
        self.run("merge", "--abort")

    # ------------------------------------------------------------------
    # Remote
    # ------------------------------------------------------------------

    def remote_branch_tip(self, remote: str, branch: str) -> str | None:
        """Tip of *branch* on *remote*, or ``None`` if it does not exist.

        Raises:
            SyncUnavailableError: The remote cannot be reached.
        """
        result = self.run(
            "ls-remote",
            "--exit-code",
            remote,
            f"refs/heads/{branch}",
            check=False,
            network=True,
        )
        if result.returncode == 2:
            return None
        if result.returncode != 0:
            raise SyncUnavailableError(
                f"Cannot reach remote '{remote}': "
                f"{result.stderr.strip() or 'unknown error'}"
            )
        return result.stdout.split()[0]

    def fetch_branch(self, remote: str, branch: str) -> str | None:
        """Fetch *branch* into its remote-tracking ref.

        Returns:
            The fetched tip, or ``None`` if the branch does not exist on
            the remote yet.

        Raises:
            SyncUnavailableError: No such remote or network failure.
        """
        if self.remote_branch_tip(remote, branch) is None:
            logger.debug("Branch %s does not exist on %s", branch, remote)
            return None
        ref = tracking_ref(remote, branch)
        self._network(
            "fetch", "--quiet", remote, f"+refs/heads/{branch}:{ref}"
        )
        return self.rev_parse(ref)

    def push_branch(self, remote: str, branch: str) -> None:
        """Push the local *branch* to *remote* (fast-forward only).

        Raises:
            PushRejectedError: The remote moved since the last fetch.
            SyncUnavailableError: Any other push failure.
        """
        refspec = f"refs/heads/{branch}:refs/heads/{branch}"
        result = self.run(
            "push", "--porcelain", remote, refspec, check=False, network=True
        )
        if result.returncode == 0:
            tip = self.rev_parse(f"refs/heads/{branch}")
            if tip:
                self.run("update-ref", tracking_ref(remote, branch), tip)
            return

        text = f"{result.stdout}\n{result.stderr}"
        if any(marker in text for marker in _REJECTION_MARKERS):
            raise PushRejectedError(
                f"Push to {remote}/{branch} rejected: remote has new commits"
            )
        raise SyncUnavailableError(
            f"Push to {remote}/{branch} failed: "
            f"{result.stderr.strip() or 'unknown error'}"
        )
