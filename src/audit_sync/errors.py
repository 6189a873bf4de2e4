"""Error taxonomy for the reconciliation subsystem.

- ``StorageError``: local durable store unavailable, full or corrupt.
  Callers retry on the next scheduled operation.
- ``NetworkError``: transport failure or non-2xx response.
- ``ServerError``: the endpoint answered ``{ok: false}`` or sent a
  payload that could not be read.
- ``RecordValidationError``: one malformed record inside a batch; only
  that record is skipped.
- ``ConflictSkipped``: not an error: a stale write that lost under
  last-write-wins.  Returned as a value, never raised.

None of these reach UI code; the sync engine turns them into a status.
"""

from __future__ import annotations

from dataclasses import dataclass


class AuditSyncError(Exception):
    """Base class for all reconciliation errors."""


class StorageError(AuditSyncError):
    """Local durable store operation failed."""


class NetworkError(AuditSyncError):
    """Sync request did not complete (connection, timeout, HTTP status)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ServerError(AuditSyncError):
    """Reconciliation endpoint reported a failure."""


class RecordValidationError(AuditSyncError):
    """A single incoming record is malformed."""

    def __init__(self, kind: str, reason: str, key: str | None = None) -> None:
        super().__init__(f"Invalid {kind} {key or '<unknown>'}: {reason}")
        self.kind = kind
        self.reason = reason
        self.key = key


@dataclass(frozen=True)
class ConflictSkipped:
    """Outcome of a write that lost against a newer or equal timestamp."""

    kind: str
    key: str
    incoming_at: str | None
    existing_at: str | None

    def describe(self) -> str:
        return (
            f"stale {self.kind} {self.key} ignored "
            f"(incoming={self.incoming_at}, stored={self.existing_at})"
        )
