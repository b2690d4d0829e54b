"""Sync report formatting functions.

Provides human-readable and machine-readable output for sync operations:

- ``format_sync_summary`` -- one-line summary of a sync.
- ``format_sync_report`` -- full post-sync report.
- ``format_attic_entry`` -- unified diff of a value lost in a conflict.
- ``report_to_json`` -- structured dict for JSON output.
"""

from __future__ import annotations

import difflib
from typing import TYPE_CHECKING

import yaml

from .models import RecordAction

if TYPE_CHECKING:
    from .models import AtticEntry, ChangeTally, SyncReport

# ------------------------------------------------------------------
# Summary line
# ------------------------------------------------------------------


def _tally_text(tally: ChangeTally) -> str:
    parts = [
        f"{count} {label}"
        for count, label in (
            (tally.new, "new"),
            (tally.updated, "updated"),
            (tally.deleted, "deleted"),
        )
        if count
    ]
    return ", ".join(parts)


def format_sync_summary(report: SyncReport) -> str:
    """One line such as ``sent 1 new, received 2 updated (1 conflict
    resolved)``.
    """
    if report.already_in_sync:
        return "already in sync"

    parts = []
    if report.sent.total:
        parts.append(f"sent {_tally_text(report.sent)}")
    if report.received.total:
        parts.append(f"received {_tally_text(report.received)}")
    text = ", ".join(parts) or "nothing to send or receive"

    resolved = report.conflicts_resolved
    if resolved:
        noun = "conflict" if resolved == 1 else "conflicts"
        text += f" ({resolved} {noun} resolved)"
    if report.local_only:
        text += " (remote unavailable, changes kept locally)"
    return text


# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_sync_report(report: SyncReport) -> str:
    """Format a complete sync report as human-readable text.

    Sections are only included when they contain at least one record.

    Args:
        report: The completed sync report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    lines.append(f"Sync ({report.mode})")
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append("")

    lines.append(format_sync_summary(report))
    if report.committed_files:
        lines.append(f"Committed {report.committed_files} local file(s)")
    if report.push_attempts > 1:
        lines.append(f"Push attempts: {report.push_attempts}")
    lines.append("")

    sections = (
        ("Merged:", RecordAction.MERGED),
        ("Added from remote:", RecordAction.ADDED),
        ("Updated from remote:", RecordAction.UPDATED),
        ("Deleted by remote:", RecordAction.DELETED),
        ("Kept (deleted remotely, edited locally):", RecordAction.KEPT_LOCAL),
        ("Restored (deleted locally, edited remotely):",
         RecordAction.RESURRECTED),
    )
    for title, action in sections:
        matching = [r for r in report.records if r.action == action]
        if not matching:
            continue
        lines.append(title)
        for r in matching:
            suffix = f" ({r.conflicts} conflict(s))" if r.conflicts else ""
            lines.append(f"  {r.internal_id}{suffix}")
        lines.append("")

    if report.errors:
        lines.append("Errors:")
        for r in report.errors:
            lines.append(f"  {r.internal_id}: {r.error}")
        lines.append("")

    if report.warnings:
        lines.append("Warnings:")
        for warning in report.warnings:
            lines.append(f"  {warning}")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Attic entry diff
# ------------------------------------------------------------------


def _as_text(value: object) -> str:
    if isinstance(value, str):
        return value
    return yaml.safe_dump(value, default_flow_style=False, allow_unicode=True)


def format_attic_entry(entry: AtticEntry) -> str:
    """Show what a conflict replaced, as a diff from lost to kept value.

    Args:
        entry: The archived conflict.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    lines.append(
        f"{entry.internal_id} {entry.field} at {entry.timestamp}: "
        f"{entry.winner_source} won over {entry.loser_source}"
    )
    ctx = entry.context
    lines.append(
        f"  local v{ctx.local_version} ({ctx.local_updated_at}), "
        f"remote v{ctx.remote_version} ({ctx.remote_updated_at})"
    )
    lines.append("")

    lost = "" if entry.lost_absent else _as_text(entry.lost_value)
    kept = _as_text(entry.winner_value)
    diff = difflib.unified_diff(
        lost.splitlines(keepends=True),
        kept.splitlines(keepends=True),
        fromfile=f"lost ({entry.loser_source})",
        tofile=f"kept ({entry.winner_source})",
    )
    diff_text = "".join(diff)
    if diff_text:
        lines.append(diff_text.rstrip())
    else:
        lines.append("(no textual differences)")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: SyncReport) -> dict:
    """Convert a sync report to a structured dict for JSON serialisation.

    Args:
        report: The sync report.

    Returns:
        Dict with run info, counts, and per-record details.
    """
    records_list = []
    for r in report.records:
        entry: dict = {
            "internal_id": r.internal_id,
            "action": r.action.value,
            "success": r.success,
            "conflicts": r.conflicts,
        }
        if r.error:
            entry["error"] = r.error
        records_list.append(entry)

    return {
        "mode": report.mode,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "final_phase": report.final_phase.value,
        "summary": format_sync_summary(report),
        "already_in_sync": report.already_in_sync,
        "local_only": report.local_only,
        "counts": {
            "committed": report.committed_files,
            "sent": report.sent.model_dump(),
            "received": report.received.model_dump(),
            "conflicts_resolved": report.conflicts_resolved,
            "errors": len(report.errors),
            "push_attempts": report.push_attempts,
        },
        "records": records_list,
        "warnings": list(report.warnings),
    }
