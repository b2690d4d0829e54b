"""Archive of values that lost a last-write-wins conflict.

Each lost value is one YAML file::

    attic/conflicts/{internal_id}/{timestamp}_{field}.yml

with ``:`` in the timestamp replaced by ``-`` so the name is valid on
every filesystem.  Entries are never overwritten: if the name is taken
the timestamp is moved forward by one millisecond.  Files live in the
sync worktree, so the archive travels with the issues and is committed
by the next sync.

An entry is removed only by ``restore``, which puts the lost value back
into the issue as a normal edit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

import yaml

from ..errors import NotFoundError, ValidationError
from ..file_handler import read_text, write_file_atomic
from ..issues.models import (
    IMMUTABLE_FIELDS,
    SET_FIELDS,
    Issue,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from ..issues.storage import IssueStore
from ..paths import attic_dir
from .models import AtticEntry

logger = logging.getLogger(__name__)

ENTRY_SUFFIX = ".yml"


def _stamp(timestamp: str) -> str:
    return timestamp.replace(":", "-")


class Attic:
    """Read and write attic entries under one data directory.

    Args:
        data_dir: Root of the sync worktree.
        clock: Returns the current UTC time; used by ``restore``.
    """

    def __init__(
        self,
        data_dir: Path,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.data_dir = data_dir
        self.root = attic_dir(data_dir)
        self._clock = clock or utc_now

    def path_for(self, entry: AtticEntry) -> Path:
        name = f"{_stamp(entry.timestamp)}_{entry.field}{ENTRY_SUFFIX}"
        return self.root / entry.internal_id / name

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def record(self, entry: AtticEntry) -> AtticEntry:
        """Write *entry*; returns it with the timestamp actually used."""
        if entry.field in SET_FIELDS:
            raise ValidationError(
                f"'{entry.field}' is merged by union and is never archived"
            )
        path = self.path_for(entry)
        while path.exists():
            later = parse_timestamp(entry.timestamp) + timedelta(
                milliseconds=1
            )
            entry = entry.model_copy(
                update={"timestamp": format_timestamp(later)}
            )
            path = self.path_for(entry)

        write_file_atomic(
            path,
            yaml.safe_dump(
                entry.model_dump(mode="json"),
                sort_keys=False,
                allow_unicode=True,
                default_flow_style=False,
            ),
        )
        logger.info(
            "Archived losing %s value of %s in %s",
            entry.field,
            entry.internal_id,
            path.relative_to(self.data_dir),
        )
        return entry

    def record_all(self, entries: list[AtticEntry]) -> list[AtticEntry]:
        return [self.record(entry) for entry in entries]

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def _load(self, path: Path) -> AtticEntry:
        try:
            data = yaml.safe_load(read_text(path))
        except yaml.YAMLError as exc:
            raise ValidationError(f"{path}: invalid YAML: {exc}") from exc
        if not isinstance(data, dict):
            raise ValidationError(f"{path}: expected a mapping")
        return AtticEntry.model_validate(data)

    def _files(self, internal_id: str | None = None) -> list[Path]:
        base = self.root / internal_id if internal_id else self.root
        if not base.is_dir():
            return []
        return sorted(base.rglob(f"*{ENTRY_SUFFIX}"))

    def list(self, internal_id: str | None = None) -> list[AtticEntry]:
        """All entries, or those of one issue, oldest first.

        Unreadable files are skipped with a warning.
        """
        entries = []
        for path in self._files(internal_id):
            try:
                entries.append(self._load(path))
            except (ValidationError, ValueError) as exc:
                logger.warning("Skipping attic file %s: %s", path, exc)
        entries.sort(key=lambda e: (e.timestamp, e.internal_id, e.field))
        return entries

    def get(
        self, internal_id: str, timestamp: str, field: str | None = None
    ) -> list[AtticEntry]:
        """Entries of one merge, optionally narrowed to one field.

        Raises:
            NotFoundError: No matching entry.
        """
        matches = [
            entry
            for entry in self.list(internal_id)
            if entry.timestamp == timestamp
            and (field is None or entry.field == field)
        ]
        if not matches:
            what = f" field '{field}'" if field else ""
            raise NotFoundError(
                f"No attic entry for {internal_id}{what} at {timestamp}",
                "List the attic entries of the issue to see what can be "
                "restored.",
            )
        return matches

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(
        self,
        internal_id: str,
        timestamp: str,
        field: str | None = None,
        store: IssueStore | None = None,
    ) -> Issue:
        """Put archived values back into the issue and drop the entries.

        The restore is an ordinary edit: ``version`` goes up by one and
        ``updated_at`` is set to now, so the next sync propagates it.

        Raises:
            NotFoundError: No such entry or issue.
            ValidationError: The field cannot be restored.
        """
        store = store or IssueStore(self.data_dir)
        entries = self.get(internal_id, timestamp, field)
        issue = store.read(internal_id)

        changes = {}
        remove = []
        for entry in entries:
            if entry.field in IMMUTABLE_FIELDS or entry.field in SET_FIELDS:
                raise ValidationError(
                    f"Field '{entry.field}' cannot be restored"
                )
            if entry.lost_absent:
                remove.append(entry.field)
            else:
                changes[entry.field] = entry.lost_value

        changes["version"] = issue.version + 1
        changes["updated_at"] = format_timestamp(self._clock())
        restored = issue.evolve(changes, remove=tuple(remove))
        store.write(restored)

        for entry in entries:
            self.path_for(entry).unlink()
            logger.info(
                "Restored %s of %s from %s",
                entry.field,
                internal_id,
                entry.timestamp,
            )
        issue_dir = self.root / internal_id
        if issue_dir.is_dir() and not any(issue_dir.iterdir()):
            issue_dir.rmdir()
        return restored
