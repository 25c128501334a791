"""Sync report formatting functions.

Provides human-readable and machine-readable output for sync state:

- ``format_cycle_report`` -- post-cycle summary.
- ``format_conflict`` -- field-level view of one pending conflict.
- ``format_status`` -- status indicator text ("sync failed, will retry").
- ``report_to_json`` -- structured dict for MCP tool output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .models import ConflictRecord, CycleReport

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_cycle_report(report: CycleReport) -> str:
    """Format a sync cycle report as human-readable text.

    Sections are only included when they contain at least one entry.

    Args:
        report: The completed cycle report.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    lines.append(f"Sync report for '{report.source}'")
    lines.append(f"Started: {report.started_at.isoformat()}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at.isoformat()}")
    lines.append("")

    lines.append(
        f"{len(report.merged)} merged, "
        f"{len(report.conflicts)} conflicts "
        f"({report.auto_resolved} auto-resolved), "
        f"{report.queue_processed} queued changes sent, "
        f"{len(report.errors)} remote errors"
    )
    lines.append("")

    lines.append("Remotes:")
    for outcome in report.outcomes:
        state = "ok" if outcome.ok else "FAILED"
        lines.append(
            f"  {outcome.remote}: {state} "
            f"(pulled {outcome.pulled}, pushed {outcome.pushed})"
        )
        if outcome.pull_error:
            lines.append(f"    pull: {outcome.pull_error}")
        if outcome.push_error:
            lines.append(f"    push: {outcome.push_error}")
    lines.append("")

    if report.conflicts:
        lines.append("Conflicts:")
        for conflict in report.conflicts:
            fields = ", ".join(d.field for d in conflict.field_diffs)
            line = f"  {conflict.task_id} <-> {conflict.remote}: {fields}"
            if conflict.resolution:
                line += f" (resolved: {conflict.resolution})"
            lines.append(line)
        lines.append("")

    if report.queue_failed or report.dead_lettered:
        lines.append(
            f"Queue: {report.queue_failed} retrying, "
            f"{report.dead_lettered} moved to dead-letter"
        )
        lines.append("")

    if report.pending_conflicts:
        lines.append(
            f"{report.pending_conflicts} conflict(s) awaiting manual resolution"
        )
        lines.append("")

    return "\n".join(lines).rstrip()


def format_conflict(conflict: ConflictRecord) -> str:
    """Format a single conflict for manual review.

    Args:
        conflict: The pending conflict.

    Returns:
        Multi-line string listing each differing field.
    """
    lines = [
        f"Conflict {conflict.id}",
        f"Task {conflict.task_id} (local vs {conflict.remote})",
        f"  local updated:  {conflict.local_snapshot.updated_at.isoformat()}",
        f"  remote updated: {conflict.remote_snapshot.updated_at.isoformat()}",
        "",
    ]
    for diff in conflict.field_diffs:
        lines.append(f"  {diff.field}:")
        lines.append(f"    local:  {diff.local_value!r}")
        lines.append(f"    remote: {diff.remote_value!r}")
    return "\n".join(lines)


def format_status(status: dict[str, Any]) -> str:
    """Format the combined engine/scheduler status as an indicator line."""
    scheduler = status.get("scheduler") or {}
    if scheduler.get("state") == "idle-with-backoff":
        headline = "Sync failed, will retry"
    elif not scheduler.get("online", True):
        headline = "Offline, changes kept locally"
    elif scheduler.get("syncing"):
        headline = "Syncing"
    else:
        headline = "In sync"

    lines = [headline]
    lines.append(f"  Last sync: {status.get('lastSyncTime') or 'never'}")
    lines.append(f"  Queued changes: {status.get('queueLength', 0)}")
    if status.get("deadLetters"):
        lines.append(f"  Needs attention: {status['deadLetters']} failed change(s)")
    if status.get("pendingConflicts"):
        lines.append(f"  Conflicts: {status['pendingConflicts']}")
    if scheduler.get("lastError"):
        lines.append(f"  Last error: {scheduler['lastError']}")
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: CycleReport) -> dict:
    """Convert a cycle report to a structured dict for JSON serialisation.

    Suitable for MCP ``structuredContent`` output.
    """
    return {
        "source": report.source,
        "ok": report.ok,
        "started_at": report.started_at.isoformat(),
        "completed_at": report.completed_at.isoformat() if report.completed_at else None,
        "counts": {
            "merged": len(report.merged),
            "conflicts": len(report.conflicts),
            "auto_resolved": report.auto_resolved,
            "queue_processed": report.queue_processed,
            "queue_failed": report.queue_failed,
            "dead_lettered": report.dead_lettered,
            "pending_conflicts": report.pending_conflicts,
        },
        "remotes": [
            {
                "remote": o.remote,
                "ok": o.ok,
                "pulled": o.pulled,
                "pushed": o.pushed,
                **({"pull_error": o.pull_error} if o.pull_error else {}),
                **({"push_error": o.push_error} if o.push_error else {}),
            }
            for o in report.outcomes
        ],
        "merged": list(report.merged),
        "conflicts": [c.id for c in report.conflicts],
    }
