"""Issue file format: YAML front matter, description, optional notes.

::

    ---
    created_at: '2025-01-07T10:30:00.000Z'
    id: is-01hx5zzkbkactav9wevgemmvrz
    ...
    ---
    Description text.

    ## Notes

    Notes text.

Front matter keys are sorted.  The description follows the closing
delimiter directly (no blank line).  ``serialize_issue`` output parses
back to an equal issue and re-serializes byte for byte.
"""

from __future__ import annotations

import re

import yaml

from ..errors import ValidationError
from .models import Issue

DELIMITER = "---"
NOTES_HEADING = "## Notes"

_NOTES_RE = re.compile(r"(?:^|\n)## notes[ \t]*\n", re.IGNORECASE)
_BODY_FIELDS = ("description", "notes")


class FrontMatterLoader(yaml.SafeLoader):
    """SafeLoader that keeps timestamps as strings.

    Uses a dedicated subclass so the global ``yaml.SafeLoader`` is never
    modified.
    """


FrontMatterLoader.yaml_implicit_resolvers = {
    first: [
        (tag, regexp)
        for tag, regexp in resolvers
        if tag != "tag:yaml.org,2002:timestamp"
    ]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def serialize_issue(issue: Issue) -> str:
    """Render *issue* in the on-disk file format."""
    data = issue.to_data()
    body = {key: data.pop(key, None) for key in _BODY_FIELDS}

    front = yaml.safe_dump(
        data,
        sort_keys=True,
        allow_unicode=True,
        default_flow_style=False,
        width=1_000_000,
    )
    lines = [DELIMITER, front.rstrip("\n"), DELIMITER]
    if body["description"]:
        lines.append(body["description"])
    if body["notes"]:
        lines.extend(["", NOTES_HEADING, "", body["notes"]])
    return "\n".join(lines) + "\n"


def split_front_matter(text: str, source: str = "<string>") -> tuple[str, str]:
    """Return ``(front_matter_yaml, body)`` from raw file text."""
    text = text.lstrip("\ufeff").replace("\r\n", "\n")
    lines = text.split("\n")
    if not lines or lines[0].strip() != DELIMITER:
        raise ValidationError(
            f"{source}: missing front matter (file must start with '---')"
        )
    for index in range(1, len(lines)):
        if lines[index].strip() == DELIMITER:
            front = "\n".join(lines[1:index])
            body = "\n".join(lines[index + 1 :])
            return front, body
    raise ValidationError(f"{source}: front matter is not closed by '---'")


def parse_issue(text: str, source: str = "<string>") -> Issue:
    """Parse file text into a validated ``Issue``.

    Raises:
        ValidationError: If the front matter is malformed or any field
            fails validation.
    """
    front, body = split_front_matter(text, source)
    try:
        data = yaml.load(front, Loader=FrontMatterLoader)
    except yaml.YAMLError as exc:
        raise ValidationError(f"{source}: invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError(f"{source}: front matter must be a mapping")

    for key in _BODY_FIELDS:
        if key in data:
            raise ValidationError(
                f"{source}: '{key}' belongs in the body, not front matter"
            )

    body = body.strip()
    match = _NOTES_RE.search(body)
    if match:
        data["description"] = body[: match.start()]
        data["notes"] = body[match.end() :]
    else:
        data["description"] = body

    try:
        return Issue.from_data(data)
    except ValidationError as exc:
        raise ValidationError(
            f"{source}: {exc.message}", errors=exc.errors
        ) from exc
