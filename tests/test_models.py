"""Tests for the wire and record models."""

import pytest
from pydantic import ValidationError

from audit_sync.models import (
    AnswerRecord,
    AuditRecord,
    AuditSnapshot,
    IncomingAnswer,
    IncomingAudit,
    SyncCycleResult,
    SyncRequest,
    SyncResponse,
    SyncStatus,
    answer_key,
)


def test_answer_key():
    record = AnswerRecord(
        audit_id="a1", criterion_id="c1", updated_at="2026-01-01T00:00:00Z"
    )
    assert record.key == answer_key("a1", "c1") == "a1:c1"


def test_records_are_frozen():
    record = AuditRecord(id="a1", updated_at="2026-01-01T00:00:00Z")
    with pytest.raises(ValidationError):
        record.is_dirty = True


class TestSyncRequestPayload:
    def test_uses_camel_case(self):
        request = SyncRequest(
            audits=[
                IncomingAudit(
                    id="a1",
                    general_details={"unitName": "x"},
                    selected_inspector_ids=["i1"],
                    last_updated="2026-01-01T00:00:00.000Z",
                )
            ],
            answers=[
                IncomingAnswer(
                    audit_id="a1",
                    criterion_id="c1",
                    value="תקין",
                    last_updated="2026-01-01T00:00:00.000Z",
                )
            ],
        )
        payload = request.to_payload()
        assert payload["audits"][0] == {
            "id": "a1",
            "generalDetails": {"unitName": "x"},
            "selectedInspectorIds": ["i1"],
            "lastUpdated": "2026-01-01T00:00:00.000Z",
        }
        assert payload["answers"][0]["auditId"] == "a1"
        assert payload["answers"][0]["criterionId"] == "c1"

    def test_empty_arrays_omitted(self):
        payload = SyncRequest(requested_audit_ids=["a1"]).to_payload()
        assert payload == {"requestedAuditIds": ["a1"]}

    def test_drafts_filtered(self):
        request = SyncRequest(
            audits=[IncomingAudit(id="draft")],
            answers=[IncomingAnswer(audit_id="draft", criterion_id="c1")],
            requested_audit_ids=["draft"],
        )
        assert request.to_payload() == {}

    def test_is_empty(self):
        assert SyncRequest().is_empty
        assert not SyncRequest(requested_audit_ids=["a1"]).is_empty


class TestSyncResponse:
    def test_parses_wire_shape(self):
        response = SyncResponse.model_validate(
            {
                "ok": True,
                "audits": [
                    {
                        "id": "a1",
                        "updatedAt": "2026-01-01T00:00:00.000Z",
                        "generalDetails": {"unitName": "x"},
                        "selectedInspectorIds": ["i1"],
                        "answers": [
                            {
                                "criterionId": "c1",
                                "value": "תקין",
                                "comment": None,
                                "updatedAt": "2026-01-01T00:00:00.000Z",
                            }
                        ],
                    }
                ],
            }
        )
        snapshot = response.audits[0]
        assert isinstance(snapshot, AuditSnapshot)
        assert snapshot.answers[0].criterion_id == "c1"

    def test_failure_payload(self):
        assert SyncResponse(ok=False, error="boom").to_payload() == {
            "ok": False,
            "error": "boom",
        }


class TestSyncCycleResult:
    def test_round_trip_flag(self):
        idle = SyncCycleResult(status=SyncStatus.SYNCED, started_at="t")
        sent = SyncCycleResult(
            status=SyncStatus.SYNCED, sent_answers=2, started_at="t"
        )
        assert not idle.round_trip
        assert sent.round_trip

    def test_summary_mentions_error(self):
        result = SyncCycleResult(
            status=SyncStatus.ERROR, error="HTTP 500", started_at="t"
        )
        assert "HTTP 500" in result.summary()

    def test_busy_summary(self):
        result = SyncCycleResult(
            status=SyncStatus.SYNCING, busy=True, started_at="t"
        )
        assert "skipped" in result.summary()
