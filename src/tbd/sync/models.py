"""Pydantic models for the sync engine.

Defines the data contracts shared by the sync modules:

- ``SyncPhase``: states of the sync state machine.
- ``RecordAction``: what happened to one issue file during a merge.
- ``AtticEntry``: a value that lost a last-write-wins conflict.
- ``ChangeTally``: new/updated/deleted counts in one direction.
- ``RecordOutcome``: result of merging one issue.
- ``SyncReport``: aggregate result of one sync run.
- ``SyncStatus``: read-only view of pending work.

All models are frozen (immutable).
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel


class SyncPhase(str, Enum):
    """States of one sync run.

    Full cycle: CLEAN -> LOCAL_DIRTY -> COMMITTING -> FETCHING ->
    MERGING -> PUSHING -> CLEAN.  Remote-only advance: CLEAN -> BEHIND ->
    PULLING -> CLEAN.
    """

    CLEAN = "clean"
    LOCAL_DIRTY = "local_dirty"
    COMMITTING = "committing"
    FETCHING = "fetching"
    MERGING = "merging"
    PUSHING = "pushing"
    BEHIND = "behind"
    PULLING = "pulling"


class RecordAction(str, Enum):
    """What the merge did with one issue file."""

    UNCHANGED = "unchanged"
    MERGED = "merged"
    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"
    KEPT_LOCAL = "kept_local"
    RESURRECTED = "resurrected"
    FAILED = "failed"


Side = Literal["local", "remote"]


class AtticContext(BaseModel):
    """Both sides' edit counters and times when the conflict happened."""

    local_version: int
    remote_version: int
    local_updated_at: str
    remote_updated_at: str

    model_config = {"frozen": True}


class AtticEntry(BaseModel):
    """A value overwritten by last-write-wins, kept for restore.

    Attributes:
        internal_id: Issue the value belonged to.
        field: Name of the issue field.
        timestamp: When the merge happened (UTC ISO 8601).
        lost_value: The losing side's value.
        lost_absent: True when the losing side had no value at all
            (as opposed to an explicit null).
        winner_value: The value the merged record kept.
        winner_source: Which side won.
        loser_source: Which side lost.
        context: Versions and update times of both sides.
    """

    internal_id: str
    field: str
    timestamp: str
    lost_value: Any = None
    lost_absent: bool = False
    winner_value: Any = None
    winner_source: Side
    loser_source: Side
    context: AtticContext

    model_config = {"frozen": True}


class ChangeTally(BaseModel):
    """Counts of issue files added, modified and removed."""

    new: int = 0
    updated: int = 0
    deleted: int = 0

    model_config = {"frozen": True}

    @property
    def total(self) -> int:
        return self.new + self.updated + self.deleted

    @classmethod
    def from_name_status(
        cls, entries: list[tuple[str, str]]
    ) -> ChangeTally:
        """Build from ``git diff --name-status`` letters (A/M/D/T)."""
        new = sum(1 for status, _ in entries if status == "A")
        deleted = sum(1 for status, _ in entries if status == "D")
        return cls(
            new=new, updated=len(entries) - new - deleted, deleted=deleted
        )

    def __add__(self, other: ChangeTally) -> ChangeTally:
        return ChangeTally(
            new=self.new + other.new,
            updated=self.updated + other.updated,
            deleted=self.deleted + other.deleted,
        )


class RecordOutcome(BaseModel):
    """Result of reconciling one issue.

    Attributes:
        internal_id: The issue.
        action: What happened.
        success: False when the record failed validation.
        error: Reason for failure.
        conflicts: Number of attic entries written for this issue.
    """

    internal_id: str
    action: RecordAction
    success: bool = True
    error: str | None = None
    conflicts: int = 0

    model_config = {"frozen": True}


class SyncReport(BaseModel):
    """Aggregate report for one sync run.

    Attributes:
        mode: "full", "push" or "pull".
        started_at: ISO 8601 timestamp when sync started.
        completed_at: ISO 8601 timestamp when sync completed.
        final_phase: Last state reached.
        committed_files: Files in the local commit made at the start.
        sent: Issue changes the remote received from us.
        received: Issue changes we received from the remote.
        records: Per-issue outcomes of a divergent merge.
        already_in_sync: Nothing to send or receive.
        local_only: The remote was unavailable; changes stay local.
        push_attempts: Number of pushes tried.
        warnings: Non-fatal problems.
    """

    mode: str = "full"
    started_at: str
    completed_at: str | None = None
    final_phase: SyncPhase = SyncPhase.CLEAN
    committed_files: int = 0
    sent: ChangeTally = ChangeTally()
    received: ChangeTally = ChangeTally()
    records: list[RecordOutcome] = []
    already_in_sync: bool = False
    local_only: bool = False
    push_attempts: int = 0
    warnings: list[str] = []

    model_config = {"frozen": True}

    @property
    def conflicts_resolved(self) -> int:
        """Number of field conflicts settled by last-write-wins."""
        return sum(r.conflicts for r in self.records)

    @property
    def merged(self) -> list[RecordOutcome]:
        return [r for r in self.records if r.action == RecordAction.MERGED]

    @property
    def errors(self) -> list[RecordOutcome]:
        """Records that could not be merged."""
        return [r for r in self.records if not r.success]


class SyncStatus(BaseModel):
    """What a sync would do, computed without changing anything.

    Attributes:
        uncommitted: Paths with uncommitted changes in the worktree.
        ahead: Local commits the remote does not have.
        behind: Remote commits we do not have.
        remote_branch_exists: False before the first push.
        remote_available: False when the remote could not be reached.
    """

    uncommitted: list[str] = []
    ahead: int = 0
    behind: int = 0
    remote_branch_exists: bool = True
    remote_available: bool = True

    model_config = {"frozen": True}

    @property
    def in_sync(self) -> bool:
        return (
            not self.uncommitted
            and self.ahead == 0
            and self.behind == 0
            and self.remote_branch_exists
        )
