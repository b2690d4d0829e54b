"""Canonical form and content hash of an issue.

The content hash is the sole "did this record really change" signal used
by sync: two records with equal hashes never conflict.  The canonical
form therefore has to be identical for logically-equal records:

1. Keys sorted at every level.
2. ``labels`` sorted; ``dependencies`` sorted by target.
3. Optional fields: explicit ``null`` kept, absent fields omitted.
4. ``version`` excluded, so re-saving identical content hashes the same.
5. ``\\r\\n`` normalized to ``\\n`` in every string.

The result is compact JSON, encoded as UTF-8 and hashed with SHA-256.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from .models import Issue

EXCLUDED_FIELDS = frozenset({"version"})


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return value.replace("\r\n", "\n")
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    return value


def canonical_form(issue: Issue) -> str:
    """Return the deterministic serialization used for hashing."""
    data = {
        key: value
        for key, value in issue.to_data().items()
        if key not in EXCLUDED_FIELDS
    }
    data["labels"] = sorted(data.get("labels", []))
    data["dependencies"] = sorted(
        data.get("dependencies", []),
        key=lambda dep: (dep["target"], dep["type"]),
    )
    return json.dumps(
        _normalize(data),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def content_hash(issue: Issue) -> str:
    """SHA-256 hex digest of ``canonical_form(issue)``."""
    return hashlib.sha256(
        canonical_form(issue).encode("utf-8")
    ).hexdigest()
