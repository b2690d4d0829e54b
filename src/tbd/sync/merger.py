"""Three-way, field-level merge of issue records.

Given the local record, the remote record and their common ancestor
(``base``), ``MergeEngine.merge`` produces one merged record:

* Equal content hashes mean there is nothing to reconcile.
* A field changed on one side only takes that side's value.
* A field changed on both sides to different values:

  - ``type``, ``id``, ``created_at``, ``created_by`` never change; the
    base value is kept.
  - ``labels`` and ``dependencies`` take the union, so nothing is
    dropped.
  - Every other field is last-write-wins by ``updated_at``.  On equal
    timestamps the remote side wins.  The losing value becomes an
    ``AtticEntry``.

* ``version`` becomes ``max(local, remote) + 1`` and ``updated_at`` the
  later of the two.

With no base (the same id created independently on both sides) every
differing field counts as changed on both sides.

When text merging is enabled, ``description`` and ``notes`` changed on
both sides are first line-merged with ``merge3`` (the algorithm used by
Bazaar/Breezy); a clean merge is taken without an attic entry, and a
conflicting one falls back to last-write-wins.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from merge3 import Merge3
from pydantic import BaseModel

from ..issues.hashing import content_hash
from ..issues.models import (
    IMMUTABLE_FIELDS,
    SET_FIELDS,
    Issue,
    format_timestamp,
    parse_timestamp,
    utc_now,
)
from .models import AtticContext, AtticEntry, Side

logger = logging.getLogger(__name__)

TEXT_FIELDS = ("description", "notes")
_COUNTER_FIELDS = ("version", "updated_at")

_ABSENT = object()


def attempt_merge(
    base_content: str,
    local_content: str,
    remote_content: str,
) -> tuple[str, bool]:
    """Perform a three-way line merge of local and remote text.

    Args:
        base_content: The common ancestor text.
        local_content: The local text.
        remote_content: The remote text.

    Returns:
        A tuple of ``(merged_text, has_conflicts)`` where *merged_text* is
        the result of the merge (possibly containing conflict markers) and
        *has_conflicts* is ``True`` if conflict markers are present.
    """
    base_lines = base_content.splitlines(True)
    local_lines = local_content.splitlines(True)
    remote_lines = remote_content.splitlines(True)

    m3 = Merge3(base_lines, local_lines, remote_lines)

    merged_lines = list(
        m3.merge_lines(
            name_a="LOCAL",
            name_b="REMOTE",
            start_marker="<<<<<<< LOCAL",
            mid_marker="=======",
            end_marker=">>>>>>> REMOTE",
        )
    )

    merged_text = "".join(merged_lines)
    has_conflicts = "<<<<<<< LOCAL" in merged_text

    return merged_text, has_conflicts


class MergeResult(BaseModel):
    """Merged record plus every value that lost a conflict."""

    merged: Issue
    conflicts: list[AtticEntry] = []

    model_config = {"frozen": True}


def _union(field: str, local: Any, remote: Any) -> list:
    local = [] if local is _ABSENT else local
    remote = [] if remote is _ABSENT else remote
    if field == "dependencies":
        unique = {
            (dep["target"], dep["type"]): dep for dep in [*local, *remote]
        }
        return [unique[key] for key in sorted(unique)]
    return sorted(set(local) | set(remote))


class MergeEngine:
    """Field-level three-way merge.

    Args:
        text_merge: Line-merge description/notes before LWW.
        clock: Returns the current UTC time; stamps attic entries.
    """

    def __init__(
        self,
        text_merge: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.text_merge = text_merge
        self._clock = clock or utc_now

    def merge(
        self, local: Issue, remote: Issue, base: Issue | None = None
    ) -> MergeResult:
        """Reconcile one issue.

        Raises:
            ValidationError: If the merged record is invalid.
        """
        if content_hash(local) == content_hash(remote):
            version = max(local.version, remote.version)
            if version != local.version:
                local = local.evolve({"version": version})
            return MergeResult(merged=local)

        now = format_timestamp(self._clock())
        local_data = local.to_data()
        remote_data = remote.to_data()
        base_data = base.to_data() if base is not None else None

        local_newer = parse_timestamp(local.updated_at) > parse_timestamp(
            remote.updated_at
        )
        winner: Side = "local" if local_newer else "remote"
        context = AtticContext(
            local_version=local.version,
            remote_version=remote.version,
            local_updated_at=local.updated_at,
            remote_updated_at=remote.updated_at,
        )

        merged: dict[str, Any] = {}
        conflicts: list[AtticEntry] = []
        keys = set(local_data) | set(remote_data) | set(base_data or {})

        for key in sorted(keys - set(_COUNTER_FIELDS)):
            lv = local_data.get(key, _ABSENT)
            rv = remote_data.get(key, _ABSENT)
            bv = base_data.get(key, _ABSENT) if base_data else _ABSENT

            if lv == rv:
                value = lv
            elif base_data is not None and lv == bv:
                value = rv
            elif base_data is not None and rv == bv:
                value = lv
            elif key in IMMUTABLE_FIELDS:
                value = self._immutable(key, lv, rv, bv, local, remote)
            elif key in SET_FIELDS:
                value = _union(key, lv, rv)
            else:
                value = self._text_merge(key, lv, rv, bv)
                if value is _ABSENT:
                    value, entry = self._last_write_wins(
                        local.id, key, lv, rv, winner, now, context
                    )
                    conflicts.append(entry)

            if value is not _ABSENT:
                merged[key] = value

        merged["version"] = max(local.version, remote.version) + 1
        merged["updated_at"] = (
            local.updated_at if local_newer else remote.updated_at
        )

        result = Issue.from_data(merged)
        if conflicts:
            logger.info(
                "Merged %s with %d conflict(s): %s",
                local.id,
                len(conflicts),
                ", ".join(entry.field for entry in conflicts),
            )
        else:
            logger.debug("Merged %s cleanly", local.id)
        return MergeResult(merged=result, conflicts=conflicts)

    # ------------------------------------------------------------------
    # Field strategies
    # ------------------------------------------------------------------

    @staticmethod
    def _immutable(
        key: str,
        lv: Any,
        rv: Any,
        bv: Any,
        local: Issue,
        remote: Issue,
    ) -> Any:
        if bv is not _ABSENT:
            return bv
        # no base: the earlier creation is the original
        if key == "created_at":
            return min(
                (lv, rv),
                key=lambda v: parse_timestamp(v) if isinstance(v, str) else 0,
            )
        local_first = parse_timestamp(local.created_at) <= parse_timestamp(
            remote.created_at
        )
        return lv if local_first or rv is _ABSENT else rv

    def _text_merge(self, key: str, lv: Any, rv: Any, bv: Any) -> Any:
        if not self.text_merge or key not in TEXT_FIELDS:
            return _ABSENT
        if not all(isinstance(v, str) for v in (lv, rv, bv)):
            return _ABSENT
        text, has_conflicts = attempt_merge(bv + "\n", lv + "\n", rv + "\n")
        if has_conflicts:
            logger.debug("Text merge of %s conflicted; using LWW", key)
            return _ABSENT
        return text[:-1] if text.endswith("\n") else text

    @staticmethod
    def _last_write_wins(
        internal_id: str,
        key: str,
        lv: Any,
        rv: Any,
        winner: Side,
        now: str,
        context: AtticContext,
    ) -> tuple[Any, AtticEntry]:
        win_value, lose_value = (lv, rv) if winner == "local" else (rv, lv)
        loser: Side = "remote" if winner == "local" else "local"
        entry = AtticEntry(
            internal_id=internal_id,
            field=key,
            timestamp=now,
            lost_value=None if lose_value is _ABSENT else lose_value,
            lost_absent=lose_value is _ABSENT,
            winner_value=None if win_value is _ABSENT else win_value,
            winner_source=winner,
            loser_source=loser,
            context=context,
        )
        return win_value, entry
