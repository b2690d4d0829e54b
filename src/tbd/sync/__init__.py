"""Git-backed sync of the issue store.

Exchanges the hidden sync branch with a shared remote and merges
concurrent edits field by field.

Architecture
------------
Issues live on a dedicated branch checked out in a hidden worktree, so
sync never touches the user's working branches.  Divergent histories
are joined with a real merge commit whose content is computed here,
per issue, instead of by git's line merge.  A content hash decides
whether two copies really differ, so a sync with nothing new writes
nothing.

Modules:

- ``engine``    -- ``SyncEngine``: commit, fetch, merge, push with retry.
- ``git``       -- ``GitRunner``: the only place git is invoked.
- ``worktree``  -- ``Worktree``: create, check and repair the worktree.
- ``merger``    -- ``MergeEngine``: three-way field merge, optional
  line merge via ``merge3``.
- ``attic``     -- ``Attic``: archive and restore values that lost.
- ``models``    -- ``SyncPhase``, ``RecordAction``, ``AtticEntry``,
  ``ChangeTally``, ``RecordOutcome``, ``SyncReport``, ``SyncStatus``.
- ``reporter``  -- Human-readable and JSON report formatting.

Usage example
-------------
::

    from pathlib import Path
    from tbd.sync import SyncEngine, Worktree, format_sync_summary

    worktree = Worktree(Path("."), branch="tbd-sync", remote="origin")
    worktree.init()

    engine = SyncEngine(
        git=worktree.git,
        data_dir=worktree.path,
        remote="origin",
        branch="tbd-sync",
    )
    report = engine.run()
    print(format_sync_summary(report))
"""

from .attic import Attic
from .engine import SyncEngine
from .git import GitRunner
from .merger import MergeEngine, MergeResult, attempt_merge
from .models import (
    AtticEntry,
    ChangeTally,
    RecordAction,
    RecordOutcome,
    SyncPhase,
    SyncReport,
    SyncStatus,
)
from .reporter import (
    format_attic_entry,
    format_sync_report,
    format_sync_summary,
    report_to_json,
)
from .worktree import Worktree, WorktreeHealth

__all__ = [
    "Attic",
    "AtticEntry",
    "ChangeTally",
    "GitRunner",
    "MergeEngine",
    "MergeResult",
    "RecordAction",
    "RecordOutcome",
    "SyncEngine",
    "SyncPhase",
    "SyncReport",
    "SyncStatus",
    "Worktree",
    "WorktreeHealth",
    "attempt_merge",
    "format_attic_entry",
    "format_sync_report",
    "format_sync_summary",
    "report_to_json",
]
