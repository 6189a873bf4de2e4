"""Pydantic models for the reconciliation subsystem.

Defines the data contracts shared by the client and the server:

- ``RecordKind``: the two record kinds held by the local store.
- ``AuditRecord`` / ``AnswerRecord``: locally persisted records.
- ``IncomingAudit`` / ``IncomingAnswer`` / ``SyncRequest``: request body
  of the reconciliation endpoint.
- ``AnswerSnapshot`` / ``AuditSnapshot`` / ``SyncResponse``: the server's
  resolved view.
- ``DraftAudit``: payload that turns a local draft into a server record.
- ``SyncStatus`` / ``SyncCycleResult``: outcome of one client sync cycle.

Wire models use the camelCase field names of the HTTP contract as aliases
and accept either spelling on input.  All models are frozen.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .validators import is_syncable_id

ScalarFields = dict[str, Any]


class RecordKind(str, Enum):
    """Kinds of record held by the local durable store."""

    AUDIT = "audit"
    ANSWER = "answer"


class SyncStatus(str, Enum):
    """Sync engine states, also shown by the status indicator."""

    IDLE = "idle"
    CHECKING = "checking"
    OFFLINE = "offline"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Local records
# ---------------------------------------------------------------------------


class AuditRecord(BaseModel):
    """Parent record as persisted by the local store.

    Attributes:
        id: Stable audit id, or ``"draft"`` before the server assigned one.
        details: Flat map of scalar fields (general details and derived
            summary fields).
        inspector_ids: Ids of the associated inspectors.
        updated_at: ISO 8601 timestamp of the last write.
        is_dirty: True while the record has unsynced local mutations.
        last_synced_at: ISO 8601 timestamp of the last confirmed sync.
    """

    id: str
    details: ScalarFields = Field(default_factory=dict)
    inspector_ids: list[str] = Field(default_factory=list)
    updated_at: str
    is_dirty: bool = False
    last_synced_at: str | None = None

    model_config = {"frozen": True}


class AnswerRecord(BaseModel):
    """Child record: one answer per criterion per audit."""

    audit_id: str
    criterion_id: str
    value: str | None = None
    comment: str | None = None
    updated_at: str
    is_dirty: bool = False
    last_synced_at: str | None = None

    model_config = {"frozen": True}

    @property
    def key(self) -> str:
        """Composite identity ``audit_id:criterion_id``."""
        return answer_key(self.audit_id, self.criterion_id)


def answer_key(audit_id: str, criterion_id: str) -> str:
    """Build the composite key of an answer."""
    return f"{audit_id}:{criterion_id}"


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class IncomingAudit(BaseModel):
    """Dirty audit as transmitted by a client."""

    id: str
    general_details: ScalarFields = Field(
        default_factory=dict, alias="generalDetails"
    )
    selected_inspector_ids: list[str] | None = Field(
        default=None, alias="selectedInspectorIds"
    )
    last_updated: str | None = Field(default=None, alias="lastUpdated")

    model_config = {"frozen": True, "populate_by_name": True}

    @classmethod
    def from_record(cls, record: AuditRecord) -> IncomingAudit:
        return cls(
            id=record.id,
            general_details=dict(record.details),
            selected_inspector_ids=list(record.inspector_ids),
            last_updated=record.updated_at,
        )


class IncomingAnswer(BaseModel):
    """Dirty answer as transmitted by a client."""

    audit_id: str = Field(alias="auditId")
    criterion_id: str = Field(alias="criterionId")
    value: str | None = None
    comment: str | None = None
    last_updated: str | None = Field(default=None, alias="lastUpdated")

    model_config = {"frozen": True, "populate_by_name": True}

    @classmethod
    def from_record(cls, record: AnswerRecord) -> IncomingAnswer:
        return cls(
            audit_id=record.audit_id,
            criterion_id=record.criterion_id,
            value=record.value,
            comment=record.comment,
            last_updated=record.updated_at,
        )


class SyncRequest(BaseModel):
    """Body of one reconciliation request."""

    audits: list[IncomingAudit] = Field(default_factory=list)
    answers: list[IncomingAnswer] = Field(default_factory=list)
    requested_audit_ids: list[str] = Field(
        default_factory=list, alias="requestedAuditIds"
    )

    model_config = {"frozen": True, "populate_by_name": True}

    @property
    def is_empty(self) -> bool:
        return not (self.audits or self.answers or self.requested_audit_ids)

    def to_payload(self) -> dict[str, Any]:
        """Serialize for transmission.

        Draft entries are dropped and empty arrays are omitted.
        """
        payload: dict[str, Any] = {}
        audits = [
            a.model_dump(by_alias=True)
            for a in self.audits
            if is_syncable_id(a.id)
        ]
        answers = [
            a.model_dump(by_alias=True)
            for a in self.answers
            if is_syncable_id(a.audit_id)
        ]
        requested = [
            i for i in self.requested_audit_ids if is_syncable_id(i)
        ]
        if audits:
            payload["audits"] = audits
        if answers:
            payload["answers"] = answers
        if requested:
            payload["requestedAuditIds"] = requested
        return payload


# ---------------------------------------------------------------------------
# Response
# ---------------------------------------------------------------------------


class AnswerSnapshot(BaseModel):
    """Server-resolved state of one answer."""

    criterion_id: str = Field(alias="criterionId")
    value: str | None = None
    comment: str | None = None
    updated_at: str = Field(alias="updatedAt")

    model_config = {"frozen": True, "populate_by_name": True}


class AuditSnapshot(BaseModel):
    """Server-resolved state of one audit with all of its answers."""

    id: str
    updated_at: str = Field(alias="updatedAt")
    general_details: ScalarFields = Field(
        default_factory=dict, alias="generalDetails"
    )
    selected_inspector_ids: list[str] = Field(
        default_factory=list, alias="selectedInspectorIds"
    )
    answers: list[AnswerSnapshot] = Field(default_factory=list)

    model_config = {"frozen": True, "populate_by_name": True}


class SyncResponse(BaseModel):
    """Reconciliation endpoint response (success or failure shape)."""

    ok: bool
    audits: list[AuditSnapshot] = Field(default_factory=list)
    error: str | None = None

    model_config = {"frozen": True, "populate_by_name": True}

    def to_payload(self) -> dict[str, Any]:
        if not self.ok:
            return {"ok": False, "error": self.error or "Unknown error"}
        return {
            "ok": True,
            "audits": [a.model_dump(by_alias=True) for a in self.audits],
        }


class DraftAnswer(BaseModel):
    value: str | None = None
    comment: str | None = None

    model_config = {"frozen": True}


class DraftAudit(BaseModel):
    """A locally drafted audit submitted for creation on the server."""

    general_details: ScalarFields = Field(
        default_factory=dict, alias="generalDetails"
    )
    selected_inspector_ids: list[str] = Field(
        default_factory=list, alias="selectedInspectorIds"
    )
    answers: dict[str, DraftAnswer] = Field(default_factory=dict)
    last_updated: str | None = Field(default=None, alias="lastUpdated")

    model_config = {"frozen": True, "populate_by_name": True}


# ---------------------------------------------------------------------------
# Cycle outcome
# ---------------------------------------------------------------------------


class SyncCycleResult(BaseModel):
    """Outcome of one client sync cycle.

    Attributes:
        status: Final engine status for the cycle.
        busy: True when the cycle was skipped because another was running.
        sent_audits: Dirty audits included in the request.
        sent_answers: Dirty answers included in the request.
        requested: Pull ids included in the request.
        received: Audit snapshots returned by the server.
        cleared: Records whose dirty flag was cleared.
        error: Error message when ``status`` is ``ERROR``.
        started_at: ISO 8601 timestamp when the cycle started.
        completed_at: ISO 8601 timestamp when the cycle completed.
    """

    status: SyncStatus
    busy: bool = False
    sent_audits: int = 0
    sent_answers: int = 0
    requested: int = 0
    received: int = 0
    cleared: int = 0
    error: str | None = None
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}

    @property
    def round_trip(self) -> bool:
        """Whether a request was actually sent."""
        return bool(self.sent_audits or self.sent_answers or self.requested)

    def summary(self) -> str:
        """One-line summary of the cycle."""
        if self.busy:
            return "Sync skipped: another cycle is running"
        text = (
            f"Sync {self.status.value}: "
            f"{self.sent_audits} audits, {self.sent_answers} answers sent, "
            f"{self.received} received, {self.cleared} cleared"
        )
        if self.error:
            text += f" ({self.error})"
        return text
