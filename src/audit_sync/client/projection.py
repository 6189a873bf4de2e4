"""State projection: merge server snapshots into live UI state.

The presentation layer owns a ``LiveAuditState`` for the record on screen
and passes a ``FocusContext`` describing the input that currently has
focus.  ``project_snapshot()`` applies a server-resolved audit to that
state without discarding in-progress input:

1. A field or criterion with input focus is never overwritten; it is
   reported as *deferred* and picked up by a later sync.
2. General-detail fields (and the inspector list) edited since the record
   was loaded keep their local value.
3. Answers are compared per criterion; the server value is applied only
   when its timestamp is strictly newer than the one held in memory.

State is a plain mutable dataclass, not a frozen model, so the tracker and
the projection can update it in place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..models import AnswerRecord, AuditRecord, AuditSnapshot
from ..timestamps import is_newer

logger = logging.getLogger(__name__)

# Focus/edit key used for the inspector multi-select.
INSPECTORS_KEY = "selectedInspectorIds"


@dataclass
class AnswerEntry:
    """In-memory answer for one criterion."""

    value: str | None = None
    comment: str | None = None
    updated_at: str | None = None


@dataclass
class FocusContext:
    """The input that currently has focus, supplied by the presentation layer.

    Attributes:
        field: Key of a focused general-details field (or
            ``INSPECTORS_KEY``).
        criterion_id: Criterion whose value/comment input is focused.
    """

    field: str | None = None
    criterion_id: str | None = None


@dataclass
class LiveAuditState:
    """In-memory copy of the audit currently displayed."""

    audit_id: str
    details: dict[str, Any] = field(default_factory=dict)
    inspector_ids: list[str] = field(default_factory=list)
    answers: dict[str, AnswerEntry] = field(default_factory=dict)
    edited_fields: set[str] = field(default_factory=set)
    inspectors_edited: bool = False
    read_only: bool = False

    @classmethod
    def from_records(
        cls,
        audit_id: str,
        audit: AuditRecord | None,
        answers: list[AnswerRecord],
        fallback_details: dict[str, Any] | None = None,
        fallback_inspector_ids: list[str] | None = None,
        fallback_answers: dict[str, AnswerEntry] | None = None,
        read_only: bool = False,
    ) -> LiveAuditState:
        """Build fresh state from stored records, falling back to defaults.

        A fresh load starts with empty edited-sets.
        """
        state = cls(
            audit_id=audit_id,
            details=dict(
                audit.details if audit else (fallback_details or {})
            ),
            inspector_ids=list(
                audit.inspector_ids
                if audit
                else (fallback_inspector_ids or [])
            ),
            answers={
                cid: AnswerEntry(e.value, e.comment, e.updated_at)
                for cid, e in (fallback_answers or {}).items()
            },
            read_only=read_only,
        )
        for row in answers:
            state.answers[row.criterion_id] = AnswerEntry(
                value=row.value,
                comment=row.comment,
                updated_at=row.updated_at,
            )
        return state


@dataclass(frozen=True)
class ProjectionOutcome:
    """What ``project_snapshot`` did with one snapshot."""

    stale_record: bool = False
    applied_fields: tuple[str, ...] = ()
    kept_fields: tuple[str, ...] = ()
    deferred: tuple[str, ...] = ()
    applied_answers: tuple[str, ...] = ()
    kept_answers: tuple[str, ...] = ()
    inspectors_applied: bool = False


def project_snapshot(
    state: LiveAuditState,
    snapshot: AuditSnapshot,
    focus: FocusContext | None = None,
) -> ProjectionOutcome:
    """Apply *snapshot* to *state* in place, honouring the focus and edit guards.

    Args:
        state: Live state of the displayed audit.
        snapshot: Server-resolved audit.
        focus: Currently focused input, if any.

    Returns:
        A ``ProjectionOutcome``; ``stale_record`` is set and nothing is
        touched when the snapshot belongs to a different audit.
    """
    if snapshot.id != state.audit_id:
        logger.debug(
            "Snapshot %s ignored, displayed audit is %s",
            snapshot.id,
            state.audit_id,
        )
        return ProjectionOutcome(stale_record=True)

    focus = focus or FocusContext()
    applied: list[str] = []
    kept: list[str] = []
    deferred: list[str] = []

    for key, value in snapshot.general_details.items():
        if focus.field == key:
            deferred.append(key)
        elif key in state.edited_fields:
            kept.append(key)
        elif state.details.get(key) != value or key not in state.details:
            state.details[key] = value
            applied.append(key)

    inspectors_applied = False
    if focus.field == INSPECTORS_KEY:
        deferred.append(INSPECTORS_KEY)
    elif state.inspectors_edited:
        kept.append(INSPECTORS_KEY)
    elif state.inspector_ids != list(snapshot.selected_inspector_ids):
        state.inspector_ids = list(snapshot.selected_inspector_ids)
        inspectors_applied = True

    applied_answers: list[str] = []
    kept_answers: list[str] = []
    for ans in snapshot.answers:
        cid = ans.criterion_id
        if focus.criterion_id == cid:
            deferred.append(cid)
            continue
        local = state.answers.get(cid)
        has_local = local is not None and local.updated_at is not None
        if not is_newer(
            ans.updated_at,
            local.updated_at if local else None,
            exists=has_local,
        ):
            kept_answers.append(cid)
            continue
        state.answers[cid] = AnswerEntry(
            value=ans.value,
            comment=ans.comment,
            updated_at=ans.updated_at,
        )
        applied_answers.append(cid)

    if deferred:
        logger.debug(
            "Deferred focused input for audit %s: %s",
            state.audit_id,
            ", ".join(deferred),
        )

    return ProjectionOutcome(
        applied_fields=tuple(applied),
        kept_fields=tuple(kept),
        deferred=tuple(deferred),
        applied_answers=tuple(applied_answers),
        kept_answers=tuple(kept_answers),
        inspectors_applied=inspectors_applied,
    )
