"""The persistent short code to internal id table (``mappings/ids.yml``).

The file is a flat YAML mapping of ``short: ulid`` (no prefixes), sorted
naturally so ``2`` comes before ``10``.  It is append-only: entries are
never removed, so a short code can never be handed to a second issue.

Loading tolerates duplicate keys, which appear when someone resolves a
git conflict in the file by keeping both sides: the last occurrence wins
and a warning is logged.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from ..errors import IntegrityError, ValidationError
from ..file_handler import read_text, write_file_atomic
from ..validators import validate_short_code
from .ids import generate_short_id
from .models import INTERNAL_ID_PREFIX, ulid_part

logger = logging.getLogger(__name__)

_ULID_RE = re.compile(r"^[0-9a-z]{26}$")
_DIGITS_RE = re.compile(r"(\d+)")


def natural_key(code: str) -> list:
    """Sort key placing ``2`` before ``10`` and ``a2`` before ``a10``."""
    return [
        int(part) if part.isdigit() else part
        for part in _DIGITS_RE.split(code)
    ]


class IdMapping:
    """Bidirectional short code <-> internal id table.

    Short codes map to bare ULIDs on disk; the public methods speak in
    full internal ids (``is-<ulid>``).
    """

    def __init__(self) -> None:
        self._short_to_ulid: dict[str, str] = {}
        self._ulid_to_short: dict[str, str] = {}

    @classmethod
    def from_entries(
        cls, entries: Iterable[tuple[str, str]], source: str = "mapping"
    ) -> IdMapping:
        """Build a mapping without failing on damaged data.

        Later entries for the same short code replace earlier ones.  A
        ULID claimed by several short codes keeps every forward entry but
        reverse lookups return the first one.
        """
        mapping = cls()
        for short, ulid in entries:
            previous = mapping._short_to_ulid.get(short)
            if previous is not None and previous != ulid:
                logger.warning(
                    "%s: short id '%s' listed twice (%s, %s); keeping %s",
                    source,
                    short,
                    previous,
                    ulid,
                    ulid,
                )
                if mapping._ulid_to_short.get(previous) == short:
                    del mapping._ulid_to_short[previous]
            mapping._short_to_ulid[short] = ulid
            existing = mapping._ulid_to_short.setdefault(ulid, short)
            if existing != short:
                logger.warning(
                    "%s: ULID %s has several short ids (%s, %s)",
                    source,
                    ulid,
                    existing,
                    short,
                )
        return mapping

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._short_to_ulid)

    def __contains__(self, short: object) -> bool:
        return short in self._short_to_ulid

    def __iter__(self) -> Iterator[tuple[str, str]]:
        """Yield ``(short, ulid)`` pairs in natural order."""
        for short in sorted(self._short_to_ulid, key=natural_key):
            yield short, self._short_to_ulid[short]

    def internal_for(self, short: str) -> str | None:
        ulid = self._short_to_ulid.get(short.lower())
        return INTERNAL_ID_PREFIX + ulid if ulid else None

    def short_for(self, internal_id: str) -> str | None:
        return self._ulid_to_short.get(ulid_part(internal_id))

    def has_internal(self, internal_id: str) -> bool:
        return ulid_part(internal_id) in self._ulid_to_short

    def copy(self) -> IdMapping:
        return IdMapping.from_entries(iter(self))

    # ------------------------------------------------------------------
    # Mutation (append-only)
    # ------------------------------------------------------------------

    def add(self, short: str, internal_id: str) -> None:
        """Record a new ``short -> internal_id`` entry.

        Re-adding an identical entry is a no-op.

        Raises:
            ValidationError: If *short* is not a legal short code.
            IntegrityError: If *short* already names another issue, or
                *internal_id* already has a different short code.
        """
        ok, reason = validate_short_code(short)
        if not ok:
            raise ValidationError(reason)
        ulid = ulid_part(internal_id)

        current = self._short_to_ulid.get(short)
        if current is not None and current != ulid:
            raise IntegrityError(
                f"Short id '{short}' already maps to "
                f"{INTERNAL_ID_PREFIX}{current}"
            )
        existing_short = self._ulid_to_short.get(ulid)
        if existing_short is not None and existing_short != short:
            raise IntegrityError(
                f"{internal_id} already has short id '{existing_short}'"
            )
        self._short_to_ulid[short] = ulid
        self._ulid_to_short[ulid] = short

    def assign(self, internal_id: str, rng=None) -> str:
        """Give *internal_id* a fresh short code unless it has one."""
        existing = self.short_for(internal_id)
        if existing is not None:
            return existing
        short = generate_short_id(self, rng=rng)
        self.add(short, internal_id)
        return short


# ---------------------------------------------------------------------------
# File format
# ---------------------------------------------------------------------------


def parse_mapping_entries(
    text: str, source: str = "<string>"
) -> list[tuple[str, str]]:
    """Parse ``ids.yml`` text into raw ``(short, ulid)`` pairs.

    Every scalar is read as a string, so ``001`` stays ``"001"`` even if
    a hand edit removed the quotes.  Duplicate keys are kept in file
    order.

    Raises:
        ValidationError: If the text is not a flat mapping of strings.
    """
    try:
        node = yaml.compose(text, Loader=yaml.BaseLoader)
    except yaml.YAMLError as exc:
        raise ValidationError(f"{source}: invalid YAML: {exc}") from exc

    if node is None:
        return []
    if not isinstance(node, yaml.MappingNode):
        raise ValidationError(f"{source}: expected a mapping of short ids")

    entries: list[tuple[str, str]] = []
    seen: set[str] = set()
    for key_node, value_node in node.value:
        if not (
            isinstance(key_node, yaml.ScalarNode)
            and isinstance(value_node, yaml.ScalarNode)
        ):
            raise ValidationError(
                f"{source}: line {key_node.start_mark.line + 1}: "
                "entries must be 'short: ulid'"
            )
        short = key_node.value.strip().lower()
        ulid = value_node.value.strip().lower()
        if not _ULID_RE.match(ulid):
            raise ValidationError(
                f"{source}: '{short}' maps to malformed ULID '{ulid}'"
            )
        if short in seen:
            logger.warning(
                "%s: duplicate key '%s' (last one wins)", source, short
            )
        seen.add(short)
        entries.append((short, ulid))
    return entries


def serialize_mapping(mapping: IdMapping) -> str:
    if not len(mapping):
        return "{}\n"
    return yaml.safe_dump(
        dict(iter(mapping)),
        sort_keys=False,
        default_flow_style=False,
    )


def load_mapping(path: Path) -> IdMapping:
    """Load ``ids.yml``; a missing file is an empty mapping."""
    if not path.exists():
        return IdMapping()
    return IdMapping.from_entries(
        parse_mapping_entries(read_text(path), str(path)), str(path)
    )


def save_mapping(path: Path, mapping: IdMapping) -> None:
    write_file_atomic(path, serialize_mapping(mapping))


# ---------------------------------------------------------------------------
# Merge and reconcile
# ---------------------------------------------------------------------------


def merge_mappings(local: IdMapping, remote: IdMapping) -> IdMapping:
    """Additive union of two mappings; local wins on any clash."""
    merged = local.copy()
    for short, ulid in remote:
        internal_id = INTERNAL_ID_PREFIX + ulid
        if short in merged:
            if merged.internal_for(short) != internal_id:
                logger.warning(
                    "Short id '%s' differs between local and remote; "
                    "keeping local",
                    short,
                )
            continue
        if merged.has_internal(internal_id):
            logger.warning(
                "%s has short id '%s' locally and '%s' remotely; "
                "keeping local",
                internal_id,
                merged.short_for(internal_id),
                short,
            )
            continue
        merged.add(short, internal_id)
    return merged


@dataclass
class ReconcileResult:
    """Entries added by ``reconcile_mappings``."""

    created: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.recovered)


def reconcile_mappings(
    internal_ids: Iterable[str],
    mapping: IdMapping,
    historical: IdMapping | None = None,
    rng=None,
) -> ReconcileResult:
    """Make sure every id in *internal_ids* has a mapping entry.

    Missing entries are recovered from *historical* (for instance the
    remote's mapping) when that short code is still free, otherwise a
    fresh code is generated.  *mapping* is modified in place.
    """
    result = ReconcileResult()
    for internal_id in sorted(internal_ids):
        if mapping.has_internal(internal_id):
            continue
        old_short = historical.short_for(internal_id) if historical else None
        if old_short is not None and old_short not in mapping:
            mapping.add(old_short, internal_id)
            result.recovered.append(internal_id)
            logger.info(
                "Recovered short id '%s' for %s", old_short, internal_id
            )
        else:
            short = mapping.assign(internal_id, rng=rng)
            result.created.append(internal_id)
            logger.warning(
                "Created missing short id '%s' for %s", short, internal_id
            )
    return result
