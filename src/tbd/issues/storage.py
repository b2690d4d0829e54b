"""Record store: one ``issues/{internal_id}.md`` file per issue.

Writes are atomic (temp file + ``os.replace``).  There is no cross-file
transaction; a crash between two writes leaves both files as pending
changes that the next sync commits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import IntegrityError, NotFoundError, ValidationError
from ..file_handler import read_text, write_file_atomic
from ..paths import issues_dir
from .models import Issue, is_internal_id
from .parser import parse_issue, serialize_issue

logger = logging.getLogger(__name__)

ISSUE_SUFFIX = ".md"


@dataclass
class LoadResult:
    """All readable issues plus the files that failed to load."""

    issues: list[Issue] = field(default_factory=list)
    invalid: list[tuple[Path, str]] = field(default_factory=list)


class IssueStore:
    """Read and write issue files under ``<data_dir>/issues``.

    Args:
        data_dir: Root of the sync worktree.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir
        self.issues_dir = issues_dir(data_dir)

    def path_for(self, internal_id: str) -> Path:
        return self.issues_dir / f"{internal_id}{ISSUE_SUFFIX}"

    def exists(self, internal_id: str) -> bool:
        return self.path_for(internal_id).is_file()

    def read(self, internal_id: str) -> Issue:
        """Load one issue.

        Raises:
            NotFoundError: No file for *internal_id*.
            ValidationError: The file does not parse.
            IntegrityError: The file's ``id`` differs from its name.
        """
        path = self.path_for(internal_id)
        if not path.is_file():
            raise NotFoundError(f"Issue not found: {internal_id}")
        issue = parse_issue(read_text(path), str(path))
        if issue.id != internal_id:
            raise IntegrityError(
                f"{path} contains id {issue.id}, expected {internal_id}"
            )
        return issue

    def write(self, issue: Issue) -> Path:
        path = self.path_for(issue.id)
        write_file_atomic(path, serialize_issue(issue))
        logger.debug("Wrote %s (version %d)", path.name, issue.version)
        return path

    def delete(self, internal_id: str) -> None:
        path = self.path_for(internal_id)
        if not path.exists():
            raise NotFoundError(f"Issue not found: {internal_id}")
        path.unlink()
        logger.debug("Deleted %s", path.name)

    def issue_files(self) -> list[Path]:
        if not self.issues_dir.is_dir():
            return []
        return sorted(
            p
            for p in self.issues_dir.iterdir()
            if p.is_file() and p.suffix == ISSUE_SUFFIX
        )

    def ids(self) -> list[str]:
        """Internal ids of every issue file, by file name."""
        return [
            p.stem for p in self.issue_files() if is_internal_id(p.stem)
        ]

    def load_all(self) -> LoadResult:
        """Parse every issue file; invalid ones are collected, not raised."""
        result = LoadResult()
        for path in self.issue_files():
            try:
                result.issues.append(parse_issue(read_text(path), str(path)))
            except ValidationError as exc:
                result.invalid.append((path, exc.message))
        return result

    def list_issues(self) -> list[Issue]:
        """Every readable issue, sorted by internal id.

        Unreadable files are skipped with a warning.
        """
        result = self.load_all()
        for path, reason in result.invalid:
            logger.warning("Skipping invalid issue file %s: %s", path, reason)
        return sorted(result.issues, key=lambda issue: issue.id)
