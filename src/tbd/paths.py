"""Project layout and root discovery.

Layout (relative to the project root)::

    .tbd/config.yml               project configuration
    .tbd/.gitignore               keeps the worktree off project branches
    .tbd/data-sync-worktree/      hidden checkout of the sync branch
        issues/{internal_id}.md
        mappings/ids.yml
        attic/conflicts/{internal_id}/{timestamp}_{field}.yml
        meta.yml

``PathResolver`` is an explicit object rather than module state so that
several projects (or tests) can resolve paths side by side.
"""

from __future__ import annotations

import logging
from pathlib import Path

from .errors import NotInitializedError

logger = logging.getLogger(__name__)

TBD_DIR = ".tbd"
CONFIG_FILE = "config.yml"
WORKTREE_DIR = "data-sync-worktree"
ISSUES_DIR = "issues"
MAPPINGS_DIR = "mappings"
IDS_FILE = "ids.yml"
ATTIC_DIR = "attic/conflicts"
META_FILE = "meta.yml"

# Paths inside the sync branch, as git sees them
ISSUES_GIT_PATH = ISSUES_DIR
IDS_GIT_PATH = f"{MAPPINGS_DIR}/{IDS_FILE}"


def issues_dir(data_dir: Path) -> Path:
    return data_dir / ISSUES_DIR


def ids_file(data_dir: Path) -> Path:
    return data_dir / MAPPINGS_DIR / IDS_FILE


def attic_dir(data_dir: Path) -> Path:
    return data_dir / ATTIC_DIR


def meta_file(data_dir: Path) -> Path:
    return data_dir / META_FILE


class PathResolver:
    """Find the project root by walking up from a start directory.

    Results are cached per start directory; call ``invalidate()`` after
    creating or moving a project.

    Args:
        start: Directory to search from (default: current directory).
    """

    def __init__(self, start: Path | None = None) -> None:
        self._start = (start or Path.cwd()).resolve()
        self._cache: dict[Path, Path] = {}

    def invalidate(self) -> None:
        """Forget every cached root."""
        self._cache.clear()

    def find_root(self, start: Path | None = None) -> Path | None:
        """Return the nearest ancestor holding ``.tbd/config.yml``."""
        origin = (start or self._start).resolve()
        if origin in self._cache:
            return self._cache[origin]

        for candidate in (origin, *origin.parents):
            if (candidate / TBD_DIR / CONFIG_FILE).is_file():
                logger.debug("Project root for %s: %s", origin, candidate)
                self._cache[origin] = candidate
                return candidate
        return None

    def project_root(self) -> Path:
        """Like ``find_root()`` but raises when no project is found."""
        root = self.find_root()
        if root is None:
            raise NotInitializedError(
                f"No tbd project found at or above {self._start}"
            )
        return root

    def tbd_dir(self) -> Path:
        return self.project_root() / TBD_DIR

    def config_file(self) -> Path:
        return self.tbd_dir() / CONFIG_FILE

    def worktree_dir(self) -> Path:
        return self.tbd_dir() / WORKTREE_DIR

    def data_dir(self) -> Path:
        """Issue data lives at the root of the sync worktree."""
        return self.worktree_dir()
