"""Human-readable and JSON rendering of sync cycle results."""

from __future__ import annotations

from typing import Any

from .models import RecordKind, SyncCycleResult, SyncStatus

_STATUS_LABELS = {
    SyncStatus.IDLE: "idle",
    SyncStatus.CHECKING: "checking connection",
    SyncStatus.OFFLINE: "offline, changes kept locally",
    SyncStatus.SYNCING: "syncing",
    SyncStatus.SYNCED: "synced",
    SyncStatus.ERROR: "sync failed, will retry",
}


def format_cycle_report(result: SyncCycleResult) -> str:
    """Format a cycle result as a short multi-line report."""
    if result.busy:
        return "Sync skipped: another cycle is already running."

    lines = [f"Status: {_STATUS_LABELS[result.status]}"]
    if result.round_trip:
        lines.append(
            f"Sent: {result.sent_audits} audit(s), "
            f"{result.sent_answers} answer(s), "
            f"{result.requested} pull request(s)"
        )
        lines.append(
            f"Received: {result.received} audit(s); "
            f"cleared {result.cleared} dirty record(s)"
        )
        still_dirty = result.sent_audits + result.sent_answers - result.cleared
        if result.status == SyncStatus.SYNCED and still_dirty > 0:
            lines.append(
                f"{still_dirty} record(s) changed during the sync "
                "and stay queued for the next cycle"
            )
    elif result.status == SyncStatus.SYNCED:
        lines.append("Nothing to send.")
    if result.error:
        lines.append(f"Error: {result.error}")
    return "\n".join(lines)


def format_dirty_counts(counts: dict[RecordKind, int]) -> str:
    audits = counts.get(RecordKind.AUDIT, 0)
    answers = counts.get(RecordKind.ANSWER, 0)
    if not audits and not answers:
        return "All local changes are synced."
    return f"Pending: {audits} audit(s), {answers} answer(s)"


def report_to_json(result: SyncCycleResult) -> dict[str, Any]:
    """Serialize a cycle result for ``--json`` output."""
    data = result.model_dump(mode="json")
    data["round_trip"] = result.round_trip
    return data
