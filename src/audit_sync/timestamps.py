"""Timestamp helpers and the last-write-wins comparison rule.

All record timestamps travel as ISO-8601 strings.  Comparison happens on
epoch milliseconds so ``2026-01-01T10:00:00Z`` and
``2026-01-01T12:00:00.000+02:00`` are the same instant.

The tie-break rule is the same on the server, in the local store and in the
UI projection: an incoming write replaces an existing one only when it is
strictly newer.  Equal timestamps keep what is already there.
"""

from __future__ import annotations

from datetime import datetime, timezone


def now_iso() -> str:
    """Return the current UTC time as ISO-8601 with millisecond precision."""
    return format_millis(
        int(datetime.now(timezone.utc).timestamp() * 1000)
    )


def format_millis(millis: int) -> str:
    """Format epoch milliseconds as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    dt = datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{millis % 1000:03d}Z"


def to_millis(value: str | datetime | int | float | None) -> int:
    """Convert a timestamp to epoch milliseconds.

    Missing, empty and unparseable values map to ``0`` so they sort before
    every real timestamp.  Naive datetimes are taken as UTC.
    """
    match value:
        case None | "":
            return 0
        case bool():
            return 0
        case int() | float():
            return int(value)
        case datetime() as dt:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return int(dt.timestamp() * 1000)
        case str() as text:
            text = text.strip()
            if text.endswith(("Z", "z")):
                text = text[:-1] + "+00:00"
            try:
                dt = datetime.fromisoformat(text)
            except ValueError:
                return 0
            return to_millis(dt)
        case _:
            return 0


def is_newer(incoming: str | None, existing: str | None, *, exists: bool = True) -> bool:
    """Decide whether an incoming write replaces the existing record.

    Args:
        incoming: Timestamp carried by the incoming write.
        existing: Timestamp of the stored record.
        exists: ``False`` when there is no stored record at all; the first
            write always succeeds, whatever its timestamp.

    Returns:
        ``True`` when the incoming write wins.
    """
    if not exists:
        return True
    return to_millis(incoming) > to_millis(existing)
