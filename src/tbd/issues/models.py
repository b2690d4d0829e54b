"""Pydantic models for issues.

Defines the typed value objects every other module works with:

- ``IssueStatus`` / ``IssueKind``: closed vocabularies.
- ``Dependency``: a ``blocks`` edge to another issue's internal id.
- ``Issue``: one issue record, exactly as stored in ``issues/{id}.md``.
- ``ValidationResult``: tagged success/failure from ``validate_issue``.

Issues are frozen.  They are only built through validation
(``Issue.from_data`` or ``validate_issue``), so an ``Issue`` instance is
always well-formed.  Changes produce a new instance via ``evolve()``.

Optional fields distinguish *explicit null* (``assignee: null`` in the
file, present in ``model_fields_set``) from *absent* (key missing).  The
two serialize and hash differently.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

import pydantic
from pydantic import BaseModel, Field, field_validator, model_validator

from ..errors import ValidationError
from ..validators import validate_label

INTERNAL_ID_PREFIX = "is-"
INTERNAL_ID_RE = re.compile(r"^is-[0-9a-z]{26}$")

TITLE_MAX = 500
TEXT_MAX = 50_000


class IssueStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    DEFERRED = "deferred"
    CLOSED = "closed"


class IssueKind(str, Enum):
    BUG = "bug"
    FEATURE = "feature"
    TASK = "task"
    EPIC = "epic"
    CHORE = "chore"


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def format_timestamp(moment: datetime) -> str:
    """Render *moment* as UTC ISO 8601 with millisecond precision."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + (
        f"{moment.microsecond // 1000:03d}Z"
    )


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp (``Z`` suffix allowed) as aware UTC."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_timestamp(value: Any) -> Any:
    """Normalize to the millisecond ``...Z`` form so equal instants hash
    alike."""
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, str):
        try:
            return format_timestamp(parse_timestamp(value))
        except ValueError:
            raise ValueError(
                f"'{value}' is not an ISO 8601 timestamp"
            ) from None
    return value


def _check_internal_id(value: str) -> str:
    if not INTERNAL_ID_RE.match(value):
        raise ValueError(
            f"'{value}' is not an internal id (expected is-<26 chars>)"
        )
    return value


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class Dependency(BaseModel):
    """A dependency edge: this issue *blocks* ``target``."""

    type: Literal["blocks"] = "blocks"
    target: str

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("target")
    @classmethod
    def _check_target(cls, value: str) -> str:
        return _check_internal_id(value.strip().lower())


class Issue(BaseModel):
    """One issue record.

    Attributes:
        type: Record discriminator, always ``"is"``.
        id: Internal id ``is-<ulid>``; immutable.
        version: Edit counter; informational only, never hashed.
        created_at: Creation time (UTC ISO 8601); immutable.
        updated_at: Time of the last edit; drives last-write-wins.
        title: One-line summary, 1-500 characters.
        kind: bug, feature, task, epic or chore.
        status: open, in_progress, blocked, deferred or closed.
        priority: 0 (highest) to 4.
        labels: Unordered label set, stored sorted.
        dependencies: ``blocks`` edges, stored sorted by target.
        description: Free text body; absent when empty.
        notes: Free text under ``## Notes``; absent when empty.
    """

    type: Literal["is"] = "is"
    id: str
    version: int = Field(default=1, ge=0)
    created_at: str
    updated_at: str
    title: str = Field(min_length=1, max_length=TITLE_MAX)
    kind: IssueKind = IssueKind.TASK
    status: IssueStatus = IssueStatus.OPEN
    priority: int = Field(default=2, ge=0, le=4)
    labels: list[str] = Field(default_factory=list)
    dependencies: list[Dependency] = Field(default_factory=list)
    description: str | None = Field(default=None, max_length=TEXT_MAX)
    notes: str | None = Field(default=None, max_length=TEXT_MAX)
    assignee: str | None = None
    parent_id: str | None = None
    created_by: str | None = None
    closed_at: str | None = None
    close_reason: str | None = None
    due_date: str | None = None
    deferred_until: str | None = None
    extensions: dict[str, Any] | None = None

    model_config = {"frozen": True, "extra": "forbid"}

    @model_validator(mode="before")
    @classmethod
    def _normalize_text(cls, data: Any) -> Any:
        # Empty description/notes are stored as absent, never null.
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for key in ("description", "notes"):
            value = data.get(key)
            if isinstance(value, str):
                value = value.replace("\r\n", "\n").strip()
            if value:
                data[key] = value
            else:
                data.pop(key, None)
        return data

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        return _check_internal_id(value.strip().lower())

    @field_validator("parent_id")
    @classmethod
    def _check_parent(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return _check_internal_id(value.strip().lower())

    @field_validator(
        "created_at",
        "updated_at",
        "closed_at",
        "due_date",
        "deferred_until",
        mode="before",
    )
    @classmethod
    def _check_timestamp(cls, value: Any) -> Any:
        return _coerce_timestamp(value)

    @field_validator("title")
    @classmethod
    def _check_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title cannot be blank")
        if "\n" in value or "\r" in value:
            raise ValueError("title must be a single line")
        return value

    @field_validator("labels")
    @classmethod
    def _check_labels(cls, value: list[str]) -> list[str]:
        cleaned = set()
        for label in value:
            ok, reason = validate_label(label)
            if not ok:
                raise ValueError(reason)
            cleaned.add(label.strip())
        return sorted(cleaned)

    @field_validator("dependencies")
    @classmethod
    def _check_dependencies(
        cls, value: list[Dependency]
    ) -> list[Dependency]:
        unique = {(dep.target, dep.type): dep for dep in value}
        return [unique[key] for key in sorted(unique)]

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> Issue:
        """Validate *data* and return an ``Issue``.

        Raises:
            ValidationError: With one message per invalid field.
        """
        result = validate_issue(data)
        if result.issue is None:
            raise ValidationError(
                "Invalid issue: " + "; ".join(result.errors),
                errors=result.errors,
            )
        return result.issue

    def to_data(self) -> dict[str, Any]:
        """Plain dict form keeping the null-versus-absent distinction.

        Optional fields appear only when they were explicitly set.
        """
        data = self.model_dump(mode="json")
        return {
            key: value
            for key, value in data.items()
            if key not in OPTIONAL_FIELDS or key in self.model_fields_set
        }

    def evolve(
        self,
        changes: dict[str, Any] | None = None,
        remove: tuple[str, ...] = (),
    ) -> Issue:
        """Return a validated copy with *changes* applied.

        Fields listed in *remove* become absent.  ``version`` and
        ``updated_at`` are not touched here; callers bump them.
        """
        data = self.to_data()
        data.update(changes or {})
        for key in remove:
            data.pop(key, None)
        return Issue.from_data(data)

    @property
    def is_closed(self) -> bool:
        return self.status == IssueStatus.CLOSED

    def blocks(self) -> list[str]:
        """Internal ids of issues this one blocks."""
        return [
            dep.target for dep in self.dependencies if dep.type == "blocks"
        ]


OPTIONAL_FIELDS = frozenset(
    name
    for name, field in Issue.model_fields.items()
    if not field.is_required()
    and field.default is None
    and field.default_factory is None
)

IMMUTABLE_FIELDS = ("type", "id", "created_at", "created_by")
SET_FIELDS = ("labels", "dependencies")


class ValidationResult(BaseModel):
    """Tagged outcome of ``validate_issue``.

    Exactly one of ``issue`` (success) or ``errors`` (failure) is filled.
    """

    issue: Issue | None = None
    errors: list[str] = []

    model_config = {"frozen": True}

    @property
    def ok(self) -> bool:
        return self.issue is not None


def validate_issue(data: Any) -> ValidationResult:
    """Validate untyped *data* without raising."""
    if not isinstance(data, dict):
        return ValidationResult(
            errors=[f"issue data must be a mapping, got {type(data).__name__}"]
        )
    try:
        return ValidationResult(issue=Issue.model_validate(data))
    except pydantic.ValidationError as exc:
        errors = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err["loc"]) or "issue"
            errors.append(f"{loc}: {err['msg']}")
        return ValidationResult(errors=errors)


def new_internal_id(ulid: str) -> str:
    return INTERNAL_ID_PREFIX + ulid.lower()


def is_internal_id(value: str) -> bool:
    return bool(INTERNAL_ID_RE.match(value))


def ulid_part(internal_id: str) -> str:
    """Strip the ``is-`` prefix: the form stored in the mapping file."""
    return internal_id.removeprefix(INTERNAL_ID_PREFIX)
