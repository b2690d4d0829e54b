"""Consistency check over a data directory.

Finds integrity problems that no single operation can see:

- issue files that fail to parse, or whose ``id`` differs from the
  file name;
- the same internal id in more than one file (never auto-repaired:
  which copy is right is a human decision);
- issues with no mapping entry (repairable: a short code is assigned);
- mapping entries giving one issue several short codes;
- dependency or parent references to issues that do not exist;
- temp files left behind by an interrupted atomic write (repairable:
  removed).
"""

from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from pathlib import Path

from pydantic import BaseModel

from ..errors import ValidationError
from ..file_handler import TEMP_SUFFIX, read_text
from ..paths import ids_file
from .mapping import (
    IdMapping,
    parse_mapping_entries,
    reconcile_mappings,
    save_mapping,
)
from .models import INTERNAL_ID_PREFIX, Issue
from .parser import parse_issue
from .storage import IssueStore

logger = logging.getLogger(__name__)


class FindingKind(str, Enum):
    INVALID_FILE = "invalid_file"
    ID_MISMATCH = "id_mismatch"
    DUPLICATE_ID = "duplicate_id"
    MISSING_MAPPING = "missing_mapping"
    DUPLICATE_MAPPING = "duplicate_mapping"
    ORPHANED_DEPENDENCY = "orphaned_dependency"
    ORPHANED_PARENT = "orphaned_parent"
    TEMP_FILE = "temp_file"


class Finding(BaseModel):
    """One problem found by the consistency check.

    Attributes:
        kind: Category of problem.
        message: Human-readable description.
        internal_id: Issue concerned, when there is one.
        path: File concerned, relative to the data directory.
        fixed: True when ``fix=True`` repaired it.
    """

    kind: FindingKind
    message: str
    internal_id: str | None = None
    path: str | None = None
    fixed: bool = False

    model_config = {"frozen": True}


class ConsistencyReport(BaseModel):
    findings: list[Finding] = []
    issues_checked: int = 0

    model_config = {"frozen": True}

    @property
    def ok(self) -> bool:
        """True when nothing is left unrepaired."""
        return all(f.fixed for f in self.findings)

    @property
    def fixed(self) -> list[Finding]:
        return [f for f in self.findings if f.fixed]

    def summary(self) -> str:
        if not self.findings:
            return f"{self.issues_checked} issues checked, no problems found"
        lines = [
            f"{self.issues_checked} issues checked, "
            f"{len(self.findings)} problem(s), {len(self.fixed)} fixed"
        ]
        for finding in self.findings:
            mark = "fixed" if finding.fixed else "open"
            lines.append(f"  [{mark}] {finding.kind.value}: {finding.message}")
        return "\n".join(lines)


def _temp_files(data_dir: Path) -> list[Path]:
    if not data_dir.is_dir():
        return []
    return sorted(
        p
        for p in data_dir.rglob(f"*{TEMP_SUFFIX}")
        if p.is_file() and ".git" not in p.relative_to(data_dir).parts
    )


def check_consistency(
    data_dir: Path, fix: bool = False, rng=None
) -> ConsistencyReport:
    """Check *data_dir* and optionally repair the safe cases.

    Args:
        data_dir: Root of the sync worktree.
        fix: Assign missing short codes and delete stale temp files.
        rng: Random source for short codes assigned during repair.
    """
    store = IssueStore(data_dir)
    findings: list[Finding] = []

    def rel(path: Path) -> str:
        return str(path.relative_to(data_dir))

    # --- Issue files ---
    files_by_id: dict[str, list[Path]] = defaultdict(list)
    issues_by_id: dict[str, Issue] = {}
    for path in store.issue_files():
        try:
            issue = parse_issue(read_text(path), str(path))
        except ValidationError as exc:
            findings.append(
                Finding(
                    kind=FindingKind.INVALID_FILE,
                    message=exc.message,
                    path=rel(path),
                )
            )
            continue
        files_by_id[issue.id].append(path)
        issues_by_id.setdefault(issue.id, issue)
        if path.stem != issue.id:
            findings.append(
                Finding(
                    kind=FindingKind.ID_MISMATCH,
                    message=f"{rel(path)} contains id {issue.id}",
                    internal_id=issue.id,
                    path=rel(path),
                )
            )

    for internal_id, paths in sorted(files_by_id.items()):
        if len(paths) > 1:
            findings.append(
                Finding(
                    kind=FindingKind.DUPLICATE_ID,
                    message=(
                        f"{internal_id} appears in "
                        + ", ".join(rel(p) for p in paths)
                    ),
                    internal_id=internal_id,
                )
            )
    issues = [issues_by_id[key] for key in sorted(issues_by_id)]

    # --- Mapping ---
    mapping_path = ids_file(data_dir)
    entries = (
        parse_mapping_entries(read_text(mapping_path), str(mapping_path))
        if mapping_path.exists()
        else []
    )
    shorts_by_ulid: dict[str, set[str]] = defaultdict(set)
    for short, ulid in entries:
        shorts_by_ulid[ulid].add(short)
    for ulid, shorts in sorted(shorts_by_ulid.items()):
        if len(shorts) > 1:
            findings.append(
                Finding(
                    kind=FindingKind.DUPLICATE_MAPPING,
                    message=(
                        f"{INTERNAL_ID_PREFIX}{ulid} has several short ids: "
                        + ", ".join(sorted(shorts))
                    ),
                    internal_id=INTERNAL_ID_PREFIX + ulid,
                )
            )

    mapping = IdMapping.from_entries(entries, str(mapping_path))
    known_ids = {issue.id for issue in issues}
    missing = sorted(i for i in known_ids if not mapping.has_internal(i))
    if missing and fix:
        reconcile_mappings(missing, mapping, rng=rng)
        save_mapping(mapping_path, mapping)
    for internal_id in missing:
        findings.append(
            Finding(
                kind=FindingKind.MISSING_MAPPING,
                message=f"{internal_id} has no short id",
                internal_id=internal_id,
                fixed=fix,
            )
        )

    # --- References ---
    for issue in issues:
        for target in issue.blocks():
            if target not in known_ids:
                findings.append(
                    Finding(
                        kind=FindingKind.ORPHANED_DEPENDENCY,
                        message=f"{issue.id} blocks missing issue {target}",
                        internal_id=issue.id,
                    )
                )
        if issue.parent_id and issue.parent_id not in known_ids:
            findings.append(
                Finding(
                    kind=FindingKind.ORPHANED_PARENT,
                    message=(
                        f"{issue.id} has missing parent {issue.parent_id}"
                    ),
                    internal_id=issue.id,
                )
            )

    # --- Leftover temp files ---
    for path in _temp_files(data_dir):
        if fix:
            path.unlink()
        findings.append(
            Finding(
                kind=FindingKind.TEMP_FILE,
                message=f"leftover temp file {rel(path)}",
                path=rel(path),
                fixed=fix,
            )
        )

    report = ConsistencyReport(findings=findings, issues_checked=len(issues))
    for finding in report.findings:
        if not finding.fixed:
            logger.warning("%s: %s", finding.kind.value, finding.message)
    return report
