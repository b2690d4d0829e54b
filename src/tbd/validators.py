"""
Input validation functions for tbd.

Plain checks on user-supplied names (branches, remotes, prefixes, short
codes) performed before they reach git or the mapping file.
"""

import re

_SHORT_CODE_RE = re.compile(r"^[0-9a-z]{1,16}$")
_PREFIX_RE = re.compile(r"^[a-z]{1,20}$")
_REMOTE_RE = re.compile(r"^[A-Za-z0-9._-]+$")
_LABEL_MAX = 100


# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Branch name")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_branch_name(name: str) -> tuple[bool, str]:
    """
    Validate a git branch name for the sync branch.

    Returns:
        Tuple of (is_valid, error_message).

    Validation rules (subset of ``git check-ref-format``):
        - Cannot be empty or contain whitespace
        - Cannot contain '..', '~', '^', ':', '?', '*', '[' or '\\'
        - Cannot start with '-' or '/', or end with '/', '.' or '.lock'
    """
    field = "Branch name"
    if not name or not name.strip():
        return (False, format_validation_error(field, "cannot be empty"))

    if any(ch.isspace() for ch in name):
        return (
            False,
            format_validation_error(field, "cannot contain whitespace"),
        )

    if ".." in name or "//" in name or "@{" in name:
        return (
            False,
            format_validation_error(
                field, "cannot contain '..', '//' or '@{'"
            ),
        )

    bad = set("~^:?*[\\")
    if any(ch in bad for ch in name):
        return (
            False,
            format_validation_error(
                field, "cannot contain any of ~ ^ : ? * [ \\"
            ),
        )

    if name.startswith(("-", "/")) or name.endswith(("/", ".", ".lock")):
        return (
            False,
            format_validation_error(field, "has an invalid start or end"),
        )

    return (True, "")


def validate_remote_name(name: str) -> tuple[bool, str]:
    """Validate a git remote name (e.g. ``origin``)."""
    if not name or not name.strip():
        return (
            False,
            format_validation_error("Remote name", "cannot be empty"),
        )
    if not _REMOTE_RE.match(name) or name.startswith("-"):
        return (
            False,
            format_validation_error(
                "Remote name",
                "may only contain letters, digits, '.', '_' and '-'",
            ),
        )
    return (True, "")


def validate_id_prefix(prefix: str) -> tuple[bool, str]:
    """Validate the display prefix shown in front of short ids."""
    if not prefix:
        return (
            False,
            format_validation_error("ID prefix", "cannot be empty"),
        )
    if not _PREFIX_RE.match(prefix):
        return (
            False,
            format_validation_error(
                "ID prefix", "must be 1-20 lowercase letters"
            ),
        )
    return (True, "")


def validate_short_code(code: str) -> tuple[bool, str]:
    """Validate a short id code (without prefix).

    Short codes are 1-16 lowercase base-36 characters.  Imported codes
    such as ``001`` are legal even though generated ones are longer.
    """
    if not code:
        return (
            False,
            format_validation_error("Short id", "cannot be empty"),
        )
    if not _SHORT_CODE_RE.match(code):
        return (
            False,
            format_validation_error(
                "Short id",
                f"'{code}' must be 1-16 characters of 0-9 and a-z",
            ),
        )
    return (True, "")


def validate_label(label: str) -> tuple[bool, str]:
    """Validate a single issue label."""
    if not label or not label.strip():
        return (False, format_validation_error("Label", "cannot be empty"))
    if len(label) > _LABEL_MAX:
        return (
            False,
            format_validation_error(
                "Label", f"cannot exceed {_LABEL_MAX} characters"
            ),
        )
    if "\n" in label:
        return (
            False,
            format_validation_error("Label", "cannot contain newlines"),
        )
    return (True, "")
