"""Project facade: one object wiring storage, ids, attic and sync.

``init_project`` sets up a repository for issue tracking (config file,
``.tbd/.gitignore``, sync worktree); ``open_project`` finds an existing
project from any directory inside it.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path

import yaml

from .config import Config, load_config
from .config_loader import ensure_config
from .config_schema import (
    DEFAULT_ID_PREFIX,
    DEFAULT_REMOTE,
    DEFAULT_SYNC_BRANCH,
)
from .errors import IntegrityError, ValidationError
from .file_handler import read_text
from .issues.doctor import ConsistencyReport, check_consistency
from .issues.importer import ImportRecord, ImportResult, import_issues
from .issues.models import Issue
from .issues.service import IssueService
from .issues.storage import IssueStore
from .paths import TBD_DIR, PathResolver, meta_file
from .sync.attic import Attic
from .sync.engine import SyncEngine
from .sync.merger import MergeEngine
from .sync.models import SyncReport, SyncStatus
from .sync.worktree import SCHEMA_VERSION, Worktree, ensure_gitignore
from .validators import (
    validate_branch_name,
    validate_id_prefix,
    validate_remote_name,
)

logger = logging.getLogger(__name__)


def read_schema_version(data_dir: Path) -> int | None:
    """Schema version recorded in ``meta.yml``, or ``None`` if absent.

    Raises:
        IntegrityError: The file is unreadable or the version is newer
            than this code understands.
    """
    path = meta_file(data_dir)
    if not path.exists():
        return None
    try:
        data = yaml.safe_load(read_text(path)) or {}
    except yaml.YAMLError as exc:
        raise IntegrityError(f"{path}: invalid YAML: {exc}") from exc
    version = data.get("schema_version") if isinstance(data, dict) else None
    if not isinstance(version, int):
        raise IntegrityError(f"{path}: schema_version must be an integer")
    if version > SCHEMA_VERSION:
        raise IntegrityError(
            f"Data schema version {version} is newer than supported "
            f"version {SCHEMA_VERSION}",
            "Upgrade tbd before working with this repository.",
        )
    return version


class Project:
    """Everything needed to work with one project's issues.

    Args:
        root: Project root (the directory holding ``.tbd``).
        config: Resolved configuration.
        clock: Returns the current UTC time (default: system clock).
        rng: Random source for short codes.
    """

    def __init__(
        self,
        root: Path,
        config: Config,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.root = root
        self.config = config
        self.worktree = Worktree(
            root,
            branch=config.sync_branch,
            remote=config.remote,
            network_timeout=config.network_timeout,
        )
        self.data_dir = self.worktree.path
        self.store = IssueStore(self.data_dir)
        self.service = IssueService(
            self.store, id_prefix=config.id_prefix, clock=clock, rng=rng
        )
        self.attic = Attic(self.data_dir, clock=clock)
        self.sync_engine = SyncEngine(
            git=self.worktree.git,
            data_dir=self.data_dir,
            remote=config.remote,
            branch=config.sync_branch,
            max_push_retries=config.max_push_retries,
            merge_engine=MergeEngine(
                text_merge=config.text_merge, clock=clock
            ),
            attic=self.attic,
            clock=clock,
            rng=rng,
        )

    def check_schema(self) -> None:
        if read_schema_version(self.data_dir) is None:
            logger.warning(
                "%s missing; assuming schema version %d",
                meta_file(self.data_dir),
                SCHEMA_VERSION,
            )

    # ------------------------------------------------------------------
    # Operations spanning several components
    # ------------------------------------------------------------------

    def sync(self, mode: str = "full") -> SyncReport:
        return self.sync_engine.run(mode)

    def status(self) -> SyncStatus:
        return self.sync_engine.status()

    def doctor(self, fix: bool = False) -> ConsistencyReport:
        return check_consistency(self.data_dir, fix=fix, rng=self.service.rng)

    def import_issues(self, records: Iterable[ImportRecord]) -> ImportResult:
        return import_issues(self.service, list(records))

    def restore(
        self, ref: str, timestamp: str, field: str | None = None
    ) -> Issue:
        """Restore archived conflict values into the issue *ref*."""
        internal_id = self.service.resolve(ref)
        return self.attic.restore(
            internal_id, timestamp, field=field, store=self.store
        )


def _config_error(exc: ValueError) -> ValidationError:
    return ValidationError(
        str(exc), corrective_action="Fix .tbd/config.yml and try again."
    )


def init_project(
    root: Path,
    id_prefix: str | None = None,
    remote: str | None = None,
    branch: str | None = None,
    clock: Callable[[], datetime] | None = None,
    rng: random.Random | None = None,
) -> Project:
    """Set up issue tracking in the git repository at *root*.

    Re-running on an initialized project is harmless: an existing config
    is kept and a valid worktree is left alone.

    Raises:
        ValidationError: A setting is malformed.
        NotInitializedError: *root* is not a git repository.
    """
    settings = {
        "id_prefix": (
            validate_id_prefix,
            (id_prefix or DEFAULT_ID_PREFIX).strip().lower(),
        ),
        "remote": (validate_remote_name, (remote or DEFAULT_REMOTE).strip()),
        "branch": (
            validate_branch_name,
            (branch or DEFAULT_SYNC_BRANCH).strip(),
        ),
    }
    values = {}
    for name, (check, value) in settings.items():
        ok, reason = check(value)
        if not ok:
            raise ValidationError(f"Invalid {name}: {reason}")
        values[name] = value

    root = root.resolve()
    ensure_config(root, **values)
    ensure_gitignore(root / TBD_DIR)
    try:
        config = load_config(root=root)
    except ValueError as exc:
        raise _config_error(exc) from exc

    project = Project(root, config, clock=clock, rng=rng)
    project.worktree.init()
    project.check_schema()
    logger.info("Initialized tbd in %s", root)
    return project


def open_project(
    start: Path | None = None,
    clock: Callable[[], datetime] | None = None,
    rng: random.Random | None = None,
) -> Project:
    """Open the project containing *start* (default: current directory).

    Raises:
        NotInitializedError: No project, or its worktree is unusable.
        IntegrityError: Data written by a newer schema.
    """
    root = PathResolver(start).project_root()
    try:
        config = load_config(root=root)
    except ValueError as exc:
        raise _config_error(exc) from exc

    project = Project(root, config, clock=clock, rng=rng)
    project.worktree.require()
    project.check_schema()
    return project
