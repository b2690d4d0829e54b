"""Import validated issues from another tracker.

The import collaborator hands over ``ImportRecord`` objects: a validated
``Issue`` plus, optionally, the id it had in the foreign system (for
example ``"test-001"``).  The foreign short code (``"001"``) is kept so
existing cross-references stay valid.

Imported issues remember their foreign id under
``extensions.import.foreign_id``.  Re-import is idempotent through the
id mapping: a record whose short code already maps to the issue imported
from the same foreign id updates that issue (only when the record is
newer) instead of creating a new one.  A short code held by some other
issue is a clash: the record gets a fresh code and a warning is logged.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..errors import NotFoundError, TbdError, ValidationError
from .ids import foreign_short_code
from .mapping import save_mapping
from .models import Issue, parse_timestamp
from .service import IssueService

logger = logging.getLogger(__name__)

# Extension key recording where an imported issue came from
IMPORT_EXTENSION = "import"


@dataclass
class ImportRecord:
    """One foreign issue.

    Attributes:
        issue: The validated record; its ``id`` is used for new issues
            unless that id is already taken.
        foreign_id: Display id in the foreign system, e.g. ``test-001``.
        foreign_blocks: Foreign ids of issues this one blocks.
        foreign_parent: Foreign id of the parent issue.
    """

    issue: Issue
    foreign_id: str | None = None
    foreign_blocks: list[str] = field(default_factory=list)
    foreign_parent: str | None = None


@dataclass
class ImportResult:
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    renamed: dict[str, str] = field(default_factory=dict)
    errors: list[tuple[str, str]] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"{len(self.created)} created, {len(self.updated)} updated, "
            f"{len(self.skipped)} unchanged, {len(self.errors)} failed"
        )


def import_issues(
    service: IssueService, records: Iterable[ImportRecord]
) -> ImportResult:
    """Import *records* into the service's data directory.

    Ids are assigned for every record first so foreign dependency and
    parent references can be translated in a second pass.
    """
    records = list(records)
    mapping = service.load_mapping()
    result = ImportResult()

    # Pass 1: decide the internal id and short code for every record
    assigned: list[tuple[ImportRecord, str, bool]] = []
    foreign_to_internal: dict[str, str] = {}
    for record in records:
        label = record.foreign_id or record.issue.id
        code = (
            foreign_short_code(record.foreign_id)
            if record.foreign_id
            else None
        )
        existing = mapping.internal_for(code) if code else None
        if existing is not None and not _same_origin(
            service, existing, record.foreign_id
        ):
            existing = None
        if existing is None and mapping.has_internal(record.issue.id):
            existing = record.issue.id

        if existing is not None:
            internal_id, is_new = existing, False
        else:
            internal_id = record.issue.id
            if service.store.exists(internal_id):
                internal_id = service.id_generator()
            is_new = True
            try:
                if code is not None and code not in mapping:
                    mapping.add(code, internal_id)
                else:
                    new_code = mapping.assign(internal_id, rng=service.rng)
                    if code is not None:
                        logger.warning(
                            "Short id '%s' is taken; %s imported as '%s'",
                            code,
                            label,
                            new_code,
                        )
                        result.renamed[label] = new_code
            except TbdError as exc:
                result.errors.append((label, exc.message))
                continue

        assigned.append((record, internal_id, is_new))
        if record.foreign_id:
            key = _foreign_key(record.foreign_id)
            foreign_to_internal[key] = internal_id

    def translate(foreign: str) -> str | None:
        key = _foreign_key(foreign)
        if key in foreign_to_internal:
            return foreign_to_internal[key]
        code = foreign_short_code(key)
        return mapping.internal_for(code) if code else None

    # Pass 2: translate references and write
    for record, internal_id, is_new in assigned:
        label = record.foreign_id or record.issue.id
        try:
            issue = _translated(record, internal_id, translate)
            if is_new or not service.store.exists(internal_id):
                service.store.write(issue)
                result.created.append(internal_id)
                continue
            current = service.store.read(internal_id)
            if parse_timestamp(issue.updated_at) > parse_timestamp(
                current.updated_at
            ):
                service.store.write(
                    issue.evolve({"version": current.version + 1})
                )
                result.updated.append(internal_id)
            else:
                result.skipped.append(internal_id)
        except TbdError as exc:
            logger.warning("Import of %s failed: %s", label, exc.message)
            result.errors.append((label, exc.message))

    save_mapping(service.mapping_path, mapping)
    logger.info("Import finished: %s", result.summary())
    return result


def _foreign_key(foreign_id: str) -> str:
    return foreign_id.strip().lower()


def _same_origin(
    service: IssueService, internal_id: str, foreign_id: str | None
) -> bool:
    """True when *internal_id* was imported from *foreign_id*.

    A mapped code whose file is gone counts as the same record, so the
    import re-creates it.
    """
    try:
        issue = service.store.read(internal_id)
    except NotFoundError:
        return True
    origin = (issue.extensions or {}).get(IMPORT_EXTENSION)
    recorded = origin.get("foreign_id") if isinstance(origin, dict) else None
    return (
        foreign_id is not None
        and recorded is not None
        and _foreign_key(str(recorded)) == _foreign_key(foreign_id)
    )


def _translated(record: ImportRecord, internal_id: str, translate) -> Issue:
    changes: dict = {"id": internal_id}
    if record.foreign_id:
        changes["extensions"] = {
            **(record.issue.extensions or {}),
            IMPORT_EXTENSION: {"foreign_id": record.foreign_id},
        }
    if record.foreign_blocks:
        targets = []
        for foreign in record.foreign_blocks:
            target = translate(foreign)
            if target is None:
                raise ValidationError(
                    f"Dependency target '{foreign}' was not imported"
                )
            targets.append({"type": "blocks", "target": target})
        changes["dependencies"] = [
            dep.model_dump() for dep in record.issue.dependencies
        ] + targets
    if record.foreign_parent:
        parent = translate(record.foreign_parent)
        if parent is None:
            raise ValidationError(
                f"Parent '{record.foreign_parent}' was not imported"
            )
        changes["parent_id"] = parent
    return record.issue.evolve(changes)
