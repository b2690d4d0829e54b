"""Sync engine: exchange the sync branch with the remote.

One ``run`` goes through these steps:

1. Abort a merge left behind by an interrupted run.
2. Commit local changes in the worktree.
3. Fetch the remote sync branch.
4. Reconcile: nothing to do when the tips match; fast-forward when only
   the remote moved; otherwise start a merge commit, merge every issue
   changed on both sides field by field, union the id mappings and write
   attic entries for values that lost.
5. Push.  A rejection (someone pushed meanwhile) repeats from step 3 up
   to ``max_push_retries`` times, then ``SyncConflictError``.

An unreachable remote is not an error: the run ends with
``local_only=True`` and the local commit is pushed by a later sync.
Errors while merging one issue are recorded per record and do not stop
the run; any other failure during a merge aborts it, leaving the local
branch as it was.
"""

from __future__ import annotations

import logging
import random
import re
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from ..errors import (
    IntegrityError,
    PushRejectedError,
    SyncConflictError,
    SyncUnavailableError,
    TbdError,
    ValidationError,
)
from ..issues.hashing import content_hash
from ..issues.mapping import (
    IdMapping,
    load_mapping,
    merge_mappings,
    parse_mapping_entries,
    reconcile_mappings,
    save_mapping,
    serialize_mapping,
)
from ..issues.models import format_timestamp, utc_now
from ..issues.parser import parse_issue
from ..issues.storage import ISSUE_SUFFIX, IssueStore
from ..paths import IDS_GIT_PATH, ISSUES_GIT_PATH, ids_file
from .attic import Attic
from .git import EMPTY_TREE, GitRunner
from .merger import MergeEngine
from .models import (
    ChangeTally,
    RecordAction,
    RecordOutcome,
    SyncPhase,
    SyncReport,
    SyncStatus,
)

logger = logging.getLogger(__name__)

SYNC_MODES = ("full", "push", "pull")
CONFLICT_MARKER_PATTERN = "^<<<<<<< "
_MARKER_RE = re.compile(CONFLICT_MARKER_PATTERN + ".*$", re.MULTILINE)


def _is_issue_path(path: str) -> bool:
    return path.startswith(f"{ISSUES_GIT_PATH}/") and path.endswith(
        ISSUE_SUFFIX
    )


def _marker_lines(text: str | None) -> set[str]:
    return set(_MARKER_RE.findall(text or ""))


class SyncEngine:
    """Synchronize one sync worktree with its remote.

    Args:
        git: Runner bound to the sync worktree.
        data_dir: Root of the sync worktree.
        remote: Remote name.
        branch: Sync branch name.
        max_push_retries: Fetch/merge/push attempts before giving up.
        merge_engine: Field merger (default: last-write-wins only).
        attic: Archive for losing values.
        clock: Returns the current UTC time.
        rng: Random source for short codes created while reconciling.
    """

    def __init__(
        self,
        git: GitRunner,
        data_dir: Path,
        remote: str,
        branch: str,
        max_push_retries: int = 3,
        merge_engine: MergeEngine | None = None,
        attic: Attic | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.git = git
        self.data_dir = data_dir
        self.remote = remote
        self.branch = branch
        self.max_push_retries = max_push_retries
        self._clock = clock or utc_now
        self.merge_engine = merge_engine or MergeEngine(clock=self._clock)
        self.attic = attic or Attic(data_dir, clock=self._clock)
        self.store = IssueStore(data_dir)
        self.rng = rng

    def _now(self) -> str:
        return format_timestamp(self._clock())

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    def run(self, mode: str = "full") -> SyncReport:
        """Execute one sync.

        Args:
            mode: ``"full"`` (pull then push), ``"push"`` (send local
                commits, merging only when the push requires it) or
                ``"pull"`` (receive only, never push).

        Raises:
            ValidationError: Unknown *mode*.
            SyncConflictError: Pushes kept being rejected.
            IntegrityError: A merge produced conflict markers.
        """
        if mode not in SYNC_MODES:
            raise ValidationError(
                f"Unknown sync mode '{mode}'",
                corrective_action=f"Use one of: {', '.join(SYNC_MODES)}.",
            )
        started_at = self._now()
        warnings: list[str] = []
        records: list[RecordOutcome] = []
        received = ChangeTally()
        sent = ChangeTally()
        push_attempts = 0

        def report(phase: SyncPhase, **extra) -> SyncReport:
            return SyncReport(
                mode=mode,
                started_at=started_at,
                completed_at=self._now(),
                final_phase=phase,
                committed_files=committed,
                sent=extra.pop("sent", sent),
                received=received,
                records=records,
                push_attempts=push_attempts,
                warnings=warnings,
                **extra,
            )

        if self.git.merge_in_progress():
            logger.warning("Aborting merge left by an interrupted sync")
            self.git.abort_merge()
            warnings.append("aborted an unfinished merge from a previous run")

        committed = self._commit_local()

        for attempt in range(1, self.max_push_retries + 1):
            # --- Fetch ---
            logger.debug("Sync attempt %d: fetching", attempt)
            try:
                remote_tip = self.git.fetch_branch(self.remote, self.branch)
            except SyncUnavailableError as exc:
                return self._local_only(exc, warnings, report)
            local_tip = self.git.rev_parse("HEAD")

            # --- Reconcile ---
            if remote_tip is None:
                if mode == "pull":
                    warnings.append(
                        f"{self.remote}/{self.branch} does not exist yet"
                    )
                    return report(SyncPhase.CLEAN)
                sent = self._tally(EMPTY_TREE, local_tip)
            elif remote_tip == local_tip:
                logger.info("Already in sync with %s", self.remote)
                return report(
                    SyncPhase.CLEAN,
                    already_in_sync=committed == 0 and not records,
                )
            else:
                base = self.git.merge_base(local_tip, remote_tip)
                if base == local_tip:
                    # Only the remote moved
                    if mode == "push":
                        warnings.append(
                            f"{self.remote}/{self.branch} has new commits; "
                            "pull to receive them"
                        )
                        return report(SyncPhase.BEHIND)
                    logger.debug("Fast-forwarding to %s", remote_tip[:10])
                    received += self._tally(base, remote_tip)
                    self.git.run("merge", "--ff-only", "--quiet", remote_tip)
                    return report(SyncPhase.CLEAN)

                sent = self._tally(base or EMPTY_TREE, local_tip)
                if base != remote_tip:
                    received += self._tally(base or EMPTY_TREE, remote_tip)
                    records.extend(self._merge(base, local_tip, remote_tip))

            if mode == "pull":
                if self.git.rev_parse("HEAD") != remote_tip:
                    warnings.append("local commits not pushed (pull only)")
                return report(SyncPhase.CLEAN, sent=ChangeTally())

            # --- Push ---
            push_attempts += 1
            logger.debug("Sync attempt %d: pushing", attempt)
            try:
                self.git.push_branch(self.remote, self.branch)
            except PushRejectedError:
                logger.warning(
                    "Push rejected (attempt %d of %d); fetching again",
                    attempt,
                    self.max_push_retries,
                )
                continue
            except SyncUnavailableError as exc:
                return self._local_only(exc, warnings, report)
            logger.info("Pushed to %s/%s", self.remote, self.branch)
            return report(SyncPhase.CLEAN)

        raise SyncConflictError(
            f"Push to {self.remote}/{self.branch} rejected "
            f"{self.max_push_retries} times"
        )

    def _local_only(
        self,
        exc: TbdError,
        warnings: list[str],
        report: Callable[..., SyncReport],
    ) -> SyncReport:
        logger.warning("Remote unavailable, changes kept locally: %s", exc)
        warnings.append(exc.message)
        return report(
            SyncPhase.CLEAN, local_only=True, sent=ChangeTally()
        )

    # ------------------------------------------------------------------
    # Local commit
    # ------------------------------------------------------------------

    def _commit_local(self) -> int:
        changes = self.git.status_porcelain()
        if not changes:
            return 0
        logger.debug(
            "Committing %d local change(s)", len(changes)
        )
        self.git.commit(f"tbd sync: {len(changes)} file(s)")
        return len(changes)

    def _tally(self, old: str, new: str) -> ChangeTally:
        entries = [
            (status, path)
            for status, path in self.git.diff_name_status(
                old, new, ISSUES_GIT_PATH
            )
            if _is_issue_path(path)
        ]
        return ChangeTally.from_name_status(entries)

    # ------------------------------------------------------------------
    # Divergent merge
    # ------------------------------------------------------------------

    def _merge(
        self, base: str | None, local_tip: str, remote_tip: str
    ) -> list[RecordOutcome]:
        """Merge *remote_tip* into HEAD and commit the result."""
        logger.info("Merging %s/%s", self.remote, self.branch)
        self.git.run(
            "merge",
            "-s",
            "ours",
            "--no-commit",
            "--no-ff",
            "--allow-unrelated-histories",
            remote_tip,
        )
        try:
            old = base or EMPTY_TREE
            local_changed = {
                p for _, p in self.git.diff_name_status(old, local_tip)
            }
            remote_changed = {
                p for _, p in self.git.diff_name_status(old, remote_tip)
            }

            records: list[RecordOutcome] = []
            merged_paths: list[str] = []
            for path in sorted(local_changed | remote_changed):
                if path == IDS_GIT_PATH:
                    continue
                if _is_issue_path(path):
                    outcome = self._merge_record(
                        path,
                        base,
                        remote_tip,
                        in_local=path in local_changed,
                        in_remote=path in remote_changed,
                    )
                    if outcome is not None:
                        records.append(outcome)
                        if outcome.action == RecordAction.MERGED:
                            merged_paths.append(path)
                elif path not in local_changed:
                    self._take_remote(path, remote_tip)

            self._merge_mapping(remote_tip)
            merged_paths.append(IDS_GIT_PATH)

            self.git.run("add", "-A")
            marked = self._new_conflict_markers(
                merged_paths, local_tip, remote_tip
            )
            if marked:
                raise IntegrityError(
                    "Merge left conflict markers in: " + ", ".join(marked)
                )
            self.git.commit(
                f"tbd sync: merge {len(records)} file(s) from "
                f"{self.remote}/{self.branch}"
            )
        except Exception:
            logger.error("Merge failed; restoring the local branch")
            self.git.abort_merge()
            # Local changes were committed before the merge started
            self.git.run("reset", "--hard", "--quiet", "HEAD")
            self.git.run("clean", "-fdq")
            raise
        return records

    def _new_conflict_markers(
        self, paths: list[str], local_tip: str, remote_tip: str
    ) -> list[str]:
        """Those of *paths* whose staged text gained marker lines.

        Marker lines already present on either side are issue content
        (a quoted diff, say) and do not count.
        """
        marked = []
        candidates = self.git.staged_files_matching(
            CONFLICT_MARKER_PATTERN, paths
        )
        for path in candidates:
            inherited = _marker_lines(self.git.show_file(local_tip, path))
            inherited |= _marker_lines(self.git.show_file(remote_tip, path))
            staged = _marker_lines(self.git.show_file("", path))
            if staged - inherited:
                marked.append(path)
        return marked

    def _merge_record(
        self,
        path: str,
        base: str | None,
        remote_tip: str,
        in_local: bool,
        in_remote: bool,
    ) -> RecordOutcome | None:
        internal_id = Path(path).stem
        if not in_remote:
            return None
        if not in_local:
            return self._take_remote(path, remote_tip)

        try:
            local_file = self.store.path_for(internal_id)
            remote_text = self.git.show_file(remote_tip, path)
            if not local_file.exists() and remote_text is None:
                return RecordOutcome(
                    internal_id=internal_id, action=RecordAction.DELETED
                )
            if remote_text is None:
                # Remote deleted, local edited: keep the edit
                logger.warning(
                    "%s deleted remotely but edited locally; keeping it",
                    internal_id,
                )
                return RecordOutcome(
                    internal_id=internal_id, action=RecordAction.KEPT_LOCAL
                )
            if not local_file.exists():
                logger.warning(
                    "%s deleted locally but edited remotely; restoring it",
                    internal_id,
                )
                self.git.run("checkout", remote_tip, "--", path)
                return RecordOutcome(
                    internal_id=internal_id, action=RecordAction.RESURRECTED
                )

            local = self.store.read(internal_id)
            remote = parse_issue(remote_text, f"{remote_tip[:10]}:{path}")
            base_text = self.git.show_file(base, path) if base else None
            base_issue = (
                parse_issue(base_text, f"{base[:10]}:{path}")
                if base_text is not None
                else None
            )

            result = self.merge_engine.merge(local, remote, base_issue)
            if content_hash(result.merged) == content_hash(local) and (
                result.merged.version == local.version
            ):
                action = RecordAction.UNCHANGED
            else:
                self.store.write(result.merged)
                action = RecordAction.MERGED
            self.attic.record_all(result.conflicts)
            return RecordOutcome(
                internal_id=internal_id,
                action=action,
                conflicts=len(result.conflicts),
            )
        except (ValidationError, IntegrityError) as exc:
            logger.error("Could not merge %s: %s", internal_id, exc.message)
            return RecordOutcome(
                internal_id=internal_id,
                action=RecordAction.FAILED,
                success=False,
                error=exc.message,
            )

    def _take_remote(self, path: str, remote_tip: str) -> RecordOutcome:
        """Make the worktree copy of *path* match the remote."""
        internal_id = Path(path).stem
        target = self.data_dir / path
        if self.git.show_file(remote_tip, path) is None:
            if target.exists():
                target.unlink()
            return RecordOutcome(
                internal_id=internal_id, action=RecordAction.DELETED
            )
        existed = target.exists()
        self.git.run("checkout", remote_tip, "--", path)
        return RecordOutcome(
            internal_id=internal_id,
            action=RecordAction.UPDATED if existed else RecordAction.ADDED,
        )

    def _merge_mapping(self, remote_tip: str) -> None:
        path = ids_file(self.data_dir)
        local = load_mapping(path)
        remote_text = self.git.show_file(remote_tip, IDS_GIT_PATH)
        remote = (
            IdMapping.from_entries(
                parse_mapping_entries(remote_text, f"{remote_tip[:10]}:ids"),
                IDS_GIT_PATH,
            )
            if remote_text is not None
            else IdMapping()
        )
        merged = merge_mappings(local, remote)
        reconcile_mappings(
            self.store.ids(), merged, historical=remote, rng=self.rng
        )
        new_text = serialize_mapping(merged)
        if not path.exists() or new_text != serialize_mapping(local):
            save_mapping(path, merged)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> SyncStatus:
        """Pending work, without committing or merging anything.

        Fetching updates the remote-tracking ref only.
        """
        uncommitted = [path for _, path in self.git.status_porcelain()]
        local_tip = self.git.rev_parse("HEAD")
        try:
            remote_tip = self.git.fetch_branch(self.remote, self.branch)
        except SyncUnavailableError as exc:
            logger.info("Remote unavailable for status: %s", exc)
            return SyncStatus(uncommitted=uncommitted, remote_available=False)

        if remote_tip is None:
            ahead = int(self.git.output("rev-list", "--count", "HEAD"))
            return SyncStatus(
                uncommitted=uncommitted,
                ahead=ahead,
                remote_branch_exists=False,
            )
        return SyncStatus(
            uncommitted=uncommitted,
            ahead=self.git.count_commits(remote_tip, local_tip),
            behind=self.git.count_commits(local_tip, remote_tip),
        )
