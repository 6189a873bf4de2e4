"""Remote reconciliation: merge a client batch into the authoritative store.

``reconcile_batch()`` runs one request in four passes inside a single
repository transaction:

1. Audits: an incoming audit replaces the stored one only when its
   ``lastUpdated`` is strictly newer.  Ids the server does not hold are
   skipped: audits are created only through ``create_audit_from_draft``,
   so a deleted audit cannot be brought back by a stale client.
2. Answers: compared per ``(auditId, criterionId)`` against timestamps
   fetched in one batched lookup; winners are upserted and mark their
   audit as changed.
3. Summary projection: for every changed audit the derived fields are
   recomputed from its committed answers in the summary category.
4. Response: the union of changed audits, audits whose incoming write
   lost (so the sender learns the winner) and pulled ids, each loaded in
   full.  Ids that no longer exist are dropped.

Malformed records are skipped one by one.  Any other failure aborts the
transaction and propagates to the HTTP layer.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from ..errors import ConflictSkipped, RecordValidationError, ServerError
from ..models import (
    AuditSnapshot,
    DraftAudit,
    IncomingAnswer,
    IncomingAudit,
)
from ..timestamps import is_newer, now_iso, to_millis
from ..validators import (
    DRAFT_ID,
    validate_audit_id,
    validate_criterion_id,
)
from .repository import BatchTransaction, ServerRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SummaryMapping:
    """Which answers feed which derived audit fields.

    Attributes:
        category: Name of the category holding the summary criteria.
        fields: Criterion label -> audit field name.
    """

    category: str = "סיכום"
    fields: dict[str, str] = field(
        default_factory=lambda: {
            "הערכת מבקר": "summaryEvaluation",
            "המלצות מבקר": "recommendations",
            "ציון": "finalScore",
        }
    )

    @property
    def derived_fields(self) -> tuple[str, ...]:
        return tuple(self.fields.values())


@dataclass
class BatchReport:
    """Outcome of one reconciliation request."""

    audits: list[AuditSnapshot] = field(default_factory=list)
    changed: set[str] = field(default_factory=set)
    conflicts: list[ConflictSkipped] = field(default_factory=list)
    invalid: list[RecordValidationError] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _parse_items(
    raw: Any, model: type, kind: str, report: BatchReport
) -> list[Any]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        report.invalid.append(
            RecordValidationError(kind, "expected a list of records")
        )
        return []
    parsed = []
    for item in raw:
        if not isinstance(item, dict):
            report.invalid.append(
                RecordValidationError(kind, "record is not an object")
            )
            continue
        try:
            parsed.append(model.model_validate(item))
        except ValidationError as exc:
            key = item.get("id") or item.get("criterionId")
            report.invalid.append(
                RecordValidationError(
                    kind, exc.errors()[0]["msg"], key=key and str(key)
                )
            )
    return parsed


def parse_batch(
    body: dict[str, Any], report: BatchReport
) -> tuple[list[IncomingAudit], list[IncomingAnswer], list[str]]:
    """Split a request body into valid audits, answers and pull ids.

    Draft entries are dropped silently; every other rejected record is
    appended to ``report.invalid``.
    """
    audits: list[IncomingAudit] = []
    for audit in _parse_items(body.get("audits"), IncomingAudit, "audit", report):
        if audit.id == DRAFT_ID:
            continue
        ok, reason = validate_audit_id(audit.id)
        if not ok:
            report.invalid.append(
                RecordValidationError("audit", reason, key=audit.id)
            )
            continue
        audits.append(audit)

    answers: list[IncomingAnswer] = []
    for answer in _parse_items(
        body.get("answers"), IncomingAnswer, "answer", report
    ):
        if answer.audit_id == DRAFT_ID:
            continue
        ok, reason = validate_audit_id(answer.audit_id)
        if ok:
            ok, reason = validate_criterion_id(answer.criterion_id)
        if not ok:
            report.invalid.append(
                RecordValidationError(
                    "answer",
                    reason,
                    key=f"{answer.audit_id}:{answer.criterion_id}",
                )
            )
            continue
        answers.append(answer)

    raw_ids = body.get("requestedAuditIds") or []
    requested = [
        i
        for i in (raw_ids if isinstance(raw_ids, list) else [])
        if isinstance(i, str) and validate_audit_id(i)[0]
    ]
    return audits, answers, requested


# ---------------------------------------------------------------------------
# Merge passes
# ---------------------------------------------------------------------------


def merge_audit(
    repo: ServerRepository,
    tx: BatchTransaction,
    incoming: IncomingAudit,
    stored_at: str,
    summary: SummaryMapping,
) -> ConflictSkipped | None:
    """Apply one incoming audit to an existing one if it wins.

    Returns the conflict when the stored audit is kept.
    """
    if not is_newer(incoming.last_updated, stored_at, exists=True):
        return ConflictSkipped(
            "audit", incoming.id, incoming.last_updated, stored_at
        )

    # Derived fields belong to the server; keep the stored values.
    current = repo.audit_details(tx, incoming.id)
    details = {
        k: v
        for k, v in incoming.general_details.items()
        if k not in summary.derived_fields
    }
    details.update(
        {k: current[k] for k in summary.derived_fields if k in current}
    )
    repo.upsert_audit(
        tx,
        incoming.id,
        details,
        incoming.selected_inspector_ids,
        _writer_timestamp(incoming.last_updated),
    )
    return None


def merge_answer(
    repo: ServerRepository,
    tx: BatchTransaction,
    incoming: IncomingAnswer,
    stored_at: str | None,
) -> ConflictSkipped | None:
    """Upsert one incoming answer if it wins; return the conflict otherwise."""
    key = f"{incoming.audit_id}:{incoming.criterion_id}"
    if not is_newer(
        incoming.last_updated, stored_at, exists=stored_at is not None
    ):
        return ConflictSkipped(
            "answer", key, incoming.last_updated, stored_at
        )
    repo.upsert_answer(
        tx,
        incoming.audit_id,
        incoming.criterion_id,
        incoming.value,
        incoming.comment,
        _writer_timestamp(incoming.last_updated),
    )
    return None


def project_summary(
    repo: ServerRepository,
    tx: BatchTransaction,
    audit_id: str,
    criteria: dict[str, str],
    summary: SummaryMapping,
) -> dict[str, str | None]:
    """Copy summary answers onto the audit's derived fields.

    Args:
        criteria: Criterion id -> label for the summary category.

    Returns:
        The derived fields written (empty when no summary answer exists).
    """
    mapped = {
        cid: summary.fields[label]
        for cid, label in criteria.items()
        if label in summary.fields
    }
    if not mapped:
        return {}
    values = repo.answer_values(tx, audit_id, list(mapped))
    derived = {mapped[cid]: value for cid, value in values.items()}
    if derived:
        repo.update_details(tx, audit_id, derived)
    return derived


def _writer_timestamp(value: str | None) -> str:
    # The writer's clock is stored as-is; missing timestamps get server time.
    return value if to_millis(value) > 0 else now_iso()


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def reconcile_batch(
    repo: ServerRepository,
    body: dict[str, Any],
    summary: SummaryMapping | None = None,
) -> BatchReport:
    """Merge one request body and collect the audits to return.

    Args:
        repo: Authoritative store.
        body: Decoded JSON request body.
        summary: Summary projection mapping; defaults to the built-in one.

    Returns:
        A ``BatchReport`` whose ``audits`` form the response payload.
    """
    summary = summary or SummaryMapping()
    report = BatchReport()
    audits, answers, requested = parse_batch(body, report)
    for problem in report.invalid:
        logger.warning("Skipping record: %s", problem)

    lost: set[str] = set()
    with repo.transaction() as tx:
        stored_audits = repo.audit_timestamps(
            tx, [a.id for a in audits] + [a.audit_id for a in answers]
        )

        for audit in audits:
            tx.check_deadline()
            stored_at = stored_audits.get(audit.id)
            if stored_at is None:
                problem = RecordValidationError(
                    "audit", "audit does not exist", key=audit.id
                )
                logger.warning("Skipping record: %s", problem)
                report.invalid.append(problem)
                continue
            conflict = merge_audit(repo, tx, audit, stored_at, summary)
            if conflict is None:
                report.changed.add(audit.id)
                stored_audits[audit.id] = audit.last_updated or now_iso()
            else:
                report.conflicts.append(conflict)
                lost.add(audit.id)

        stored_answers = repo.answer_timestamps(
            tx, {a.audit_id for a in answers}
        )
        for answer in answers:
            tx.check_deadline()
            if answer.audit_id not in stored_audits:
                logger.warning(
                    "Skipping answer %s: audit %s does not exist",
                    answer.criterion_id,
                    answer.audit_id,
                )
                continue
            key = (answer.audit_id, answer.criterion_id)
            conflict = merge_answer(repo, tx, answer, stored_answers.get(key))
            if conflict is None:
                report.changed.add(answer.audit_id)
                stored_answers[key] = answer.last_updated or now_iso()
            else:
                report.conflicts.append(conflict)
                lost.add(answer.audit_id)

        if report.changed:
            criteria = repo.criteria_for_category(tx, summary.category)
            if criteria:
                for audit_id in sorted(report.changed):
                    project_summary(repo, tx, audit_id, criteria, summary)

        for conflict in report.conflicts:
            logger.debug("Conflict: %s", conflict.describe())

        for audit_id in dict.fromkeys(
            [*sorted(report.changed), *sorted(lost - report.changed), *requested]
        ):
            snapshot = repo.load_snapshot(tx, audit_id)
            if snapshot is not None:
                report.audits.append(snapshot)

    logger.info(
        "Reconciled %d audits, %d answers: %d changed, %d stale, "
        "%d invalid, %d returned",
        len(audits),
        len(answers),
        len(report.changed),
        len(report.conflicts),
        len(report.invalid),
        len(report.audits),
    )
    return report


def create_audit_from_draft(
    repo: ServerRepository,
    draft: DraftAudit,
    summary: SummaryMapping | None = None,
    audit_id: str | None = None,
) -> AuditSnapshot:
    """Create a new audit with its answers and return the stored snapshot."""
    summary = summary or SummaryMapping()
    audit_id = audit_id or uuid.uuid4().hex
    stamp = _writer_timestamp(draft.last_updated)
    with repo.transaction() as tx:
        repo.upsert_audit(
            tx,
            audit_id,
            {
                k: v
                for k, v in draft.general_details.items()
                if k not in summary.derived_fields
            },
            list(draft.selected_inspector_ids),
            stamp,
        )
        for criterion_id, answer in draft.answers.items():
            ok, reason = validate_criterion_id(criterion_id)
            if not ok:
                logger.warning("Skipping draft answer: %s", reason)
                continue
            repo.upsert_answer(
                tx, audit_id, criterion_id, answer.value, answer.comment, stamp
            )
        criteria = repo.criteria_for_category(tx, summary.category)
        if criteria:
            project_summary(repo, tx, audit_id, criteria, summary)
        snapshot = repo.load_snapshot(tx, audit_id)
        if snapshot is None:
            raise ServerError(f"Audit {audit_id} vanished after creation")
    logger.info("Created audit %s from draft", audit_id)
    return snapshot
