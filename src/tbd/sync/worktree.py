"""Hidden git worktree holding the sync branch.

Issue data never touches the user's working branches.  It lives on a
dedicated branch (``tbd-sync`` by default) checked out at
``.tbd/data-sync-worktree/``, which ``.tbd/.gitignore`` keeps out of the
project tree.

``init`` attaches in order of preference to:

1. the local sync branch, if it exists;
2. the remote sync branch, fetched into a new local branch;
3. a new orphan branch holding the empty layout, built with plumbing
   commands so the user's index and HEAD are never touched.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from ..errors import GitError, NotInitializedError, SyncUnavailableError
from ..paths import (
    ATTIC_DIR,
    IDS_FILE,
    ISSUES_DIR,
    MAPPINGS_DIR,
    META_FILE,
    TBD_DIR,
    WORKTREE_DIR,
)
from .git import GitRunner, tracking_ref

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
INIT_COMMIT_MESSAGE = "tbd: initialize sync branch"
GITIGNORE_CONTENT = f"{WORKTREE_DIR}/\n{WORKTREE_DIR}.bak-*/\n"


class WorktreeHealth(str, Enum):
    MISSING = "missing"
    VALID = "valid"
    CORRUPTED = "corrupted"


def ensure_gitignore(tbd_dir: Path) -> Path:
    """Make sure ``.tbd/.gitignore`` hides the worktree."""
    path = tbd_dir / ".gitignore"
    existing = path.read_text(encoding="utf-8") if path.exists() else ""
    lines = existing.splitlines()
    missing = [
        line for line in GITIGNORE_CONTENT.splitlines() if line not in lines
    ]
    if missing:
        tbd_dir.mkdir(parents=True, exist_ok=True)
        if existing and not existing.endswith("\n"):
            existing += "\n"
        path.write_text(
            existing + "\n".join(missing) + "\n", encoding="utf-8"
        )
    return path


class Worktree:
    """Create, check and repair the sync worktree of one project.

    Args:
        project_root: Root of the user's git repository.
        branch: Sync branch name.
        remote: Remote the branch is shared through.
        network_timeout: Seconds allowed for network git commands.
    """

    def __init__(
        self,
        project_root: Path,
        branch: str,
        remote: str,
        network_timeout: int = 60,
    ) -> None:
        self.project_root = project_root
        self.branch = branch
        self.remote = remote
        self.path = project_root / TBD_DIR / WORKTREE_DIR
        self.repo = GitRunner(project_root, network_timeout=network_timeout)
        self.git = GitRunner(self.path, network_timeout=network_timeout)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health(self) -> WorktreeHealth:
        if not self.path.exists():
            return WorktreeHealth.MISSING
        if not (self.path / ".git").exists():
            return WorktreeHealth.CORRUPTED
        try:
            head = self.git.run(
                "symbolic-ref", "--short", "-q", "HEAD", check=False
            )
        except GitError:
            return WorktreeHealth.CORRUPTED
        if head.returncode != 0 or head.stdout.strip() != self.branch:
            return WorktreeHealth.CORRUPTED
        if not (self.path / ISSUES_DIR).is_dir():
            return WorktreeHealth.CORRUPTED
        return WorktreeHealth.VALID

    def require(self) -> None:
        """Raise unless the worktree is usable."""
        state = self.health()
        if state == WorktreeHealth.MISSING:
            raise NotInitializedError(f"Sync worktree missing: {self.path}")
        if state == WorktreeHealth.CORRUPTED:
            raise NotInitializedError(
                f"Sync worktree at {self.path} is corrupted",
                "Run the worktree repair to back it up and re-create it.",
            )

    # ------------------------------------------------------------------
    # Init / repair
    # ------------------------------------------------------------------

    def _check_repo(self) -> None:
        result = self.repo.run(
            "rev-parse", "--is-inside-work-tree", check=False
        )
        if result.returncode != 0 or result.stdout.strip() != "true":
            raise NotInitializedError(
                f"{self.project_root} is not a git repository",
                "Run 'git init' first.",
            )

    def _backup(self) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup = self.path.with_name(f"{self.path.name}.bak-{stamp}")
        self.path.rename(backup)
        logger.warning("Moved unusable worktree to %s", backup)
        return backup

    def init(self) -> WorktreeHealth:
        """Create the worktree if needed.  Safe to call repeatedly.

        An existing directory that is not a valid worktree is moved to a
        ``.bak-<stamp>`` sibling, never deleted.
        """
        if self.health() == WorktreeHealth.VALID:
            logger.debug("Sync worktree already valid at %s", self.path)
            return WorktreeHealth.VALID

        self._check_repo()
        ensure_gitignore(self.path.parent)
        if self.path.exists():
            self._backup()
        self.repo.run("worktree", "prune")

        local_ref = f"refs/heads/{self.branch}"
        if self.repo.rev_parse(local_ref):
            logger.info("Attaching worktree to local branch %s", self.branch)
            self.repo.run("worktree", "add", str(self.path), self.branch)
        elif self._fetch_remote_branch():
            logger.info(
                "Attaching worktree to %s/%s", self.remote, self.branch
            )
            self.repo.run(
                "worktree",
                "add",
                "-b",
                self.branch,
                str(self.path),
                tracking_ref(self.remote, self.branch),
            )
        else:
            logger.info("Creating sync branch %s", self.branch)
            commit = self._create_orphan_commit()
            self.repo.run("update-ref", local_ref, commit)
            self.repo.run("worktree", "add", str(self.path), self.branch)

        # git does not track empty directories
        for sub in (ISSUES_DIR, MAPPINGS_DIR, ATTIC_DIR):
            (self.path / sub).mkdir(parents=True, exist_ok=True)
        return self.health()

    def _fetch_remote_branch(self) -> bool:
        try:
            return self.repo.fetch_branch(self.remote, self.branch) is not None
        except SyncUnavailableError as exc:
            logger.info("Remote not available, starting locally: %s", exc)
            return False

    def _blob(self, content: str) -> str:
        return self.repo.run(
            "hash-object", "-w", "--stdin", input=content
        ).stdout.strip()

    def _tree(self, entries: list[tuple[str, str, str]]) -> str:
        lines = "".join(
            f"{'040000 tree' if kind == 'tree' else '100644 blob'} "
            f"{sha}\t{name}\n"
            for kind, sha, name in entries
        )
        return self.repo.run("mktree", input=lines).stdout.strip()

    def _create_orphan_commit(self) -> str:
        keep = self._blob("")
        ids = self._blob("{}\n")
        meta = self._blob(f"schema_version: {SCHEMA_VERSION}\n")

        issues = self._tree([("blob", keep, ".gitkeep")])
        mappings = self._tree([("blob", ids, IDS_FILE)])
        conflicts = self._tree([("blob", keep, ".gitkeep")])
        attic_parent, attic_child = ATTIC_DIR.split("/")
        attic = self._tree([("tree", conflicts, attic_child)])
        root = self._tree(
            [
                ("tree", issues, ISSUES_DIR),
                ("tree", mappings, MAPPINGS_DIR),
                ("tree", attic, attic_parent),
                ("blob", meta, META_FILE),
            ]
        )
        return self.repo.output(
            "commit-tree", root, "-m", INIT_COMMIT_MESSAGE
        )

    def repair(self) -> WorktreeHealth:
        """Back up a corrupted worktree and create a fresh one.

        Uncommitted changes in the damaged copy stay in the backup
        directory; committed data is on the branch and is not lost.
        """
        state = self.health()
        if state == WorktreeHealth.VALID:
            return state
        if state == WorktreeHealth.CORRUPTED:
            self._backup()
        self.repo.run("worktree", "prune")
        return self.init()
