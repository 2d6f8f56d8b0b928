"""Sync report formatting functions.

Provides human-readable and machine-readable output for sync runs:

- ``format_sync_report`` -- full post-sync summary.
- ``format_conflicts`` -- one line per resolved conflict.
- ``format_status`` -- one-line sync status.
- ``report_to_json`` -- structured dict for logging or an API response.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ConflictEvent, SyncReport, SyncStatus

from .models import MergeDecision

# Order in which decisions are listed; SKIP is summarised separately.
_DECISION_ORDER = [
    MergeDecision.PUSH,
    MergeDecision.PULL,
    MergeDecision.CREATE_REMOTE,
    MergeDecision.CREATE_LOCAL,
    MergeDecision.DELETE_REMOTE,
    MergeDecision.CONFLICT,
]


def format_timestamp(ms: int | None) -> str:
    """Render an epoch-millisecond timestamp as ISO 8601 UTC."""
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat(
        timespec="milliseconds"
    )


# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_sync_report(report: SyncReport) -> str:
    """Format a complete sync report as human-readable text.

    Sections are only included when they contain at least one entry.

    Args:
        report: The completed sync report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    lines.append(f"Sync report for user '{report.user_id}'")
    lines.append(f"Started: {format_timestamp(report.started_at)}")
    if report.completed_at is not None:
        lines.append(f"Completed: {format_timestamp(report.completed_at)}")
    lines.append("")

    totals = report.decision_totals()
    upserted = sum(r.upserted for r in report.results)
    deleted = sum(r.deleted for r in report.results)
    lines.append(
        f"Synced {len(report.results)} kinds: "
        f"{upserted} pushed, {deleted} deleted, "
        f"{totals.get(MergeDecision.PULL.value, 0)} pulled, "
        f"{len(report.conflicts)} conflicts, {len(report.errors)} errors"
    )
    lines.append("")

    for result in report.results:
        if not result.success:
            lines.append(f"{result.kind.value}: FAILED ({result.error})")
            continue
        parts = [
            f"{result.decisions[d.value]} {d.value.replace('_', ' ')}"
            for d in _DECISION_ORDER
            if result.decisions.get(d.value)
        ]
        unchanged = result.decisions.get(MergeDecision.SKIP.value, 0)
        if unchanged:
            parts.append(f"{unchanged} unchanged")
        if result.skipped_records:
            parts.append(f"{result.skipped_records} invalid skipped")
        lines.append(
            f"{result.kind.value}: {', '.join(parts) or 'nothing to do'}"
        )
    lines.append("")

    if report.conflicts:
        lines.append("Conflicts:")
        lines.append(format_conflicts(report.conflicts, indent="  "))
        lines.append("")

    return "\n".join(lines).rstrip()


def format_conflicts(conflicts: list[ConflictEvent], indent: str = "") -> str:
    """Format resolved conflicts, one per line."""
    lines = []
    for c in conflicts:
        kind = c.kind.value if c.kind else "record"
        lines.append(
            f"{indent}{kind}/{c.record_id}: {c.winner} won "
            f"(local {format_timestamp(c.local_updated_at)}, "
            f"remote {format_timestamp(c.remote_updated_at)}, "
            f"{c.strategy})"
        )
    return "\n".join(lines)


def format_status(status: SyncStatus) -> str:
    """One-line summary of a ``SyncStatus``."""
    if status.is_pending:
        return (
            f"{status.pending_sync_items} item(s) pending; last full sync "
            f"{format_timestamp(status.last_synced_at or None)}"
        )
    return f"Up to date as of {format_timestamp(status.last_synced_at)}"


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: SyncReport) -> dict:
    """Convert a sync report to a structured dict for JSON serialisation.

    Args:
        report: The sync report.

    Returns:
        Dict with run info, totals, per-kind results and conflicts.
    """
    results_list = []
    for r in report.results:
        entry: dict = {
            "kind": r.kind.value,
            "success": r.success,
            "decisions": dict(r.decisions),
            "upserted": r.upserted,
            "deleted": r.deleted,
            "skipped_records": r.skipped_records,
        }
        if r.error:
            entry["error"] = r.error
        results_list.append(entry)

    return {
        "user_id": report.user_id,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "succeeded": report.succeeded,
        "counts": {
            "kinds": len(report.results),
            "upserted": sum(r.upserted for r in report.results),
            "deleted": sum(r.deleted for r in report.results),
            "conflicts": len(report.conflicts),
            "errors": len(report.errors),
            "decisions": dict(report.decision_totals()),
        },
        "results": results_list,
        "conflicts": [
            c.model_dump(mode="json", by_alias=False) for c in report.conflicts
        ],
    }
