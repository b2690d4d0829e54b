"""Issue operations on top of the record store and id mapping.

Every mutation goes through ``_save``: the record is re-validated, its
``version`` is bumped by one, ``updated_at`` is set from the service
clock, and the file is written atomically.  Nothing is written when
validation fails.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from ..errors import NotFoundError, ValidationError
from ..paths import ids_file
from .ids import InternalIdGenerator, format_display, resolve_input
from .mapping import IdMapping, load_mapping, save_mapping
from .models import (
    IMMUTABLE_FIELDS,
    Dependency,
    Issue,
    IssueKind,
    IssueStatus,
    format_timestamp,
    utc_now,
)
from .storage import IssueStore

logger = logging.getLogger(__name__)

# Fields that update() refuses; they have dedicated operations.
_MANAGED_FIELDS = frozenset(
    {*IMMUTABLE_FIELDS, "version", "updated_at", "labels", "dependencies"}
)


class IssueService:
    """Create, query and edit issues in one data directory.

    Args:
        store: Record store for the data directory.
        id_generator: Source of internal ids; one per process.
        id_prefix: Display prefix for short ids.
        clock: Returns the current UTC time.
        rng: Random source for short codes.
    """

    def __init__(
        self,
        store: IssueStore,
        id_generator: InternalIdGenerator | None = None,
        id_prefix: str = "tbd",
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.id_generator = id_generator or InternalIdGenerator()
        self.id_prefix = id_prefix
        self._clock = clock or utc_now
        self.rng = rng
        self.mapping_path = ids_file(store.data_dir)

    # ------------------------------------------------------------------
    # Ids
    # ------------------------------------------------------------------

    def now(self) -> str:
        return format_timestamp(self._clock())

    def load_mapping(self) -> IdMapping:
        return load_mapping(self.mapping_path)

    def resolve(self, ref: str, mapping: IdMapping | None = None) -> str:
        """Resolve any accepted id form to an existing internal id.

        Raises:
            NotFoundError: Unknown id, or no file for a well-formed one.
        """
        internal_id = resolve_input(ref, mapping or self.load_mapping())
        if not self.store.exists(internal_id):
            raise NotFoundError(f"Issue not found: {ref}")
        return internal_id

    def display_id(
        self, internal_id: str, mapping: IdMapping | None = None
    ) -> str:
        return format_display(
            internal_id, mapping or self.load_mapping(), self.id_prefix
        )

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create(
        self,
        title: str,
        kind: IssueKind | str = IssueKind.TASK,
        priority: int = 2,
        *,
        description: str | None = None,
        notes: str | None = None,
        labels: Iterable[str] = (),
        assignee: str | None = None,
        parent: str | None = None,
        created_by: str | None = None,
        due_date: str | None = None,
        short_id: str | None = None,
        **extra: Any,
    ) -> Issue:
        """Create and persist a new issue.

        Args:
            short_id: Use this short code instead of generating one.
            **extra: Any other optional issue field (e.g. extensions).

        Raises:
            ValidationError: If any field is invalid.
            IntegrityError: If *short_id* is already taken.
        """
        mapping = self.load_mapping()
        now = self.now()
        data: dict[str, Any] = {
            "id": self.id_generator(),
            "version": 1,
            "created_at": now,
            "updated_at": now,
            "title": title,
            "kind": kind,
            "priority": priority,
            "labels": list(labels),
            "description": description,
            "notes": notes,
            **extra,
        }
        for key, value in (
            ("assignee", assignee),
            ("created_by", created_by),
            ("due_date", due_date),
        ):
            if value is not None:
                data[key] = value
        if parent is not None:
            data["parent_id"] = self.resolve(parent, mapping)

        issue = Issue.from_data(data)

        if short_id is not None:
            mapping.add(short_id.lower(), issue.id)
        else:
            mapping.assign(issue.id, rng=self.rng)

        self.store.write(issue)
        save_mapping(self.mapping_path, mapping)
        logger.info(
            "Created %s: %s", self.display_id(issue.id, mapping), issue.title
        )
        return issue

    def get(self, ref: str) -> Issue:
        return self.store.read(self.resolve(ref))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _save(
        self,
        issue: Issue,
        changes: dict[str, Any] | None = None,
        remove: tuple[str, ...] = (),
    ) -> Issue:
        updated = issue.evolve(
            {
                **(changes or {}),
                "version": issue.version + 1,
                "updated_at": self.now(),
            },
            remove=remove,
        )
        self.store.write(updated)
        return updated

    def update(self, ref: str, **fields: Any) -> Issue:
        """Set arbitrary editable fields.

        Passing ``None`` stores an explicit null.  ``parent_id`` accepts
        any id form.

        Raises:
            ValidationError: For immutable or managed fields, or invalid
                values.
        """
        forbidden = sorted(set(fields) & _MANAGED_FIELDS)
        if forbidden:
            raise ValidationError(
                f"Cannot update {', '.join(forbidden)} directly",
                corrective_action=(
                    "Use the label and dependency operations for labels "
                    "and dependencies; ids and creation data never change."
                ),
            )
        mapping = self.load_mapping()
        issue = self.store.read(self.resolve(ref, mapping))
        if fields.get("parent_id"):
            fields["parent_id"] = self.resolve(fields["parent_id"], mapping)
            self._warn_parent_cycle(issue.id, fields["parent_id"])
        return self._save(issue, fields)

    def close(self, ref: str, reason: str | None = None) -> Issue:
        issue = self.get(ref)
        changes: dict[str, Any] = {
            "status": IssueStatus.CLOSED,
            "closed_at": self.now(),
        }
        if reason is not None:
            changes["close_reason"] = reason
        closed = self._save(issue, changes)
        logger.info("Closed %s", issue.id)
        return closed

    def reopen(self, ref: str) -> Issue:
        issue = self.get(ref)
        return self._save(
            issue,
            {"status": IssueStatus.OPEN},
            remove=("closed_at", "close_reason"),
        )

    def add_label(self, ref: str, label: str) -> Issue:
        issue = self.get(ref)
        if label.strip() in issue.labels:
            return issue
        return self._save(issue, {"labels": [*issue.labels, label]})

    def remove_label(self, ref: str, label: str) -> Issue:
        issue = self.get(ref)
        if label not in issue.labels:
            return issue
        return self._save(
            issue, {"labels": [x for x in issue.labels if x != label]}
        )

    def add_dependency(self, blocker: str, blocked: str) -> Issue:
        """Record that *blocker* blocks *blocked*; returns the blocker."""
        mapping = self.load_mapping()
        source = self.store.read(self.resolve(blocker, mapping))
        target = self.resolve(blocked, mapping)
        if target == source.id:
            raise ValidationError("An issue cannot block itself")
        if target in source.blocks():
            return source
        deps = [dep.model_dump() for dep in source.dependencies]
        deps.append(Dependency(target=target).model_dump())
        return self._save(source, {"dependencies": deps})

    def remove_dependency(self, blocker: str, blocked: str) -> Issue:
        mapping = self.load_mapping()
        source = self.store.read(self.resolve(blocker, mapping))
        target = resolve_input(blocked, mapping)
        if target not in source.blocks():
            return source
        deps = [
            dep.model_dump()
            for dep in source.dependencies
            if dep.target != target
        ]
        return self._save(source, {"dependencies": deps})

    def _warn_parent_cycle(self, internal_id: str, parent_id: str) -> None:
        seen = {internal_id}
        current: str | None = parent_id
        while current is not None:
            if current in seen:
                logger.warning(
                    "Parent chain of %s loops back through %s",
                    internal_id,
                    current,
                )
                return
            seen.add(current)
            try:
                current = self.store.read(current).parent_id
            except NotFoundError:
                return

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_issues(
        self,
        status: IssueStatus | str | None = None,
        kind: IssueKind | str | None = None,
        label: str | None = None,
        assignee: str | None = None,
    ) -> list[Issue]:
        """Issues matching every given filter, by priority then id."""
        issues = self.store.list_issues()
        if status is not None:
            issues = [i for i in issues if i.status == IssueStatus(status)]
        if kind is not None:
            issues = [i for i in issues if i.kind == IssueKind(kind)]
        if label is not None:
            issues = [i for i in issues if label in i.labels]
        if assignee is not None:
            issues = [i for i in issues if i.assignee == assignee]
        return sorted(issues, key=lambda i: (i.priority, i.id))

    @staticmethod
    def _open_blockers(issues: list[Issue]) -> dict[str, list[str]]:
        """Map each blocked id to the non-closed issues blocking it."""
        blockers: dict[str, list[str]] = {}
        for issue in issues:
            if issue.is_closed:
                continue
            for target in issue.blocks():
                blockers.setdefault(target, []).append(issue.id)
        return blockers

    def ready(self) -> list[Issue]:
        """Open, unassigned issues with no unresolved blocker."""
        issues = self.store.list_issues()
        blockers = self._open_blockers(issues)
        ready = [
            issue
            for issue in issues
            if issue.status == IssueStatus.OPEN
            and not issue.assignee
            and issue.id not in blockers
        ]
        return sorted(ready, key=lambda i: (i.priority, i.id))

    def blocked(self) -> list[tuple[Issue, list[str]]]:
        """Non-closed issues that are blocked, with their open blockers."""
        issues = self.store.list_issues()
        blockers = self._open_blockers(issues)
        result = [
            (issue, blockers.get(issue.id, []))
            for issue in issues
            if not issue.is_closed
            and (
                issue.status == IssueStatus.BLOCKED or issue.id in blockers
            )
        ]
        return sorted(result, key=lambda pair: (pair[0].priority, pair[0].id))
