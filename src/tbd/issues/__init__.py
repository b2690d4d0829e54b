"""Issue records, identifiers and local storage."""

from .hashing import canonical_form, content_hash
from .ids import (
    InternalIdGenerator,
    format_display,
    generate_short_id,
    resolve_input,
)
from .mapping import IdMapping, merge_mappings, reconcile_mappings
from .models import (
    Dependency,
    Issue,
    IssueKind,
    IssueStatus,
    ValidationResult,
    validate_issue,
)
from .parser import parse_issue, serialize_issue
from .service import IssueService
from .storage import IssueStore

__all__ = [
    "Dependency",
    "IdMapping",
    "InternalIdGenerator",
    "Issue",
    "IssueKind",
    "IssueService",
    "IssueStatus",
    "IssueStore",
    "ValidationResult",
    "canonical_form",
    "content_hash",
    "format_display",
    "generate_short_id",
    "merge_mappings",
    "parse_issue",
    "reconcile_mappings",
    "resolve_input",
    "serialize_issue",
    "validate_issue",
]
