"""Tests for projecting server snapshots into live UI state."""

from audit_sync.client.projection import (
    INSPECTORS_KEY,
    AnswerEntry,
    FocusContext,
    LiveAuditState,
    project_snapshot,
)
from audit_sync.models import AnswerRecord, AnswerSnapshot, AuditRecord, AuditSnapshot
from conftest import ts


def _state(**kwargs):
    defaults = dict(
        audit_id="a1",
        details={"unitName": "local", "rabbiName": "local"},
        inspector_ids=["i1"],
        answers={"crit-1": AnswerEntry("תקין", None, ts(100))},
    )
    defaults.update(kwargs)
    return LiveAuditState(**defaults)


def _snapshot(audit_id="a1", answers=None, **details):
    return AuditSnapshot(
        id=audit_id,
        updated_at=ts(500),
        general_details=details or {"unitName": "server", "rabbiName": "server"},
        selected_inspector_ids=["i1", "i2"],
        answers=answers or [],
    )


class TestGuards:
    def test_other_record_is_ignored(self):
        state = _state()
        outcome = project_snapshot(state, _snapshot(audit_id="a2"))
        assert outcome.stale_record
        assert state.details["unitName"] == "local"

    def test_applies_unedited_fields(self):
        state = _state()
        outcome = project_snapshot(state, _snapshot())
        assert state.details == {"unitName": "server", "rabbiName": "server"}
        assert set(outcome.applied_fields) == {"unitName", "rabbiName"}
        assert state.inspector_ids == ["i1", "i2"]
        assert outcome.inspectors_applied

    def test_edited_field_keeps_local(self):
        state = _state(edited_fields={"unitName"})
        outcome = project_snapshot(state, _snapshot())
        assert state.details == {"unitName": "local", "rabbiName": "server"}
        assert outcome.kept_fields == ("unitName",)

    def test_focused_field_deferred_others_applied(self):
        state = _state()
        outcome = project_snapshot(
            state, _snapshot(), FocusContext(field="rabbiName")
        )
        assert state.details == {"unitName": "server", "rabbiName": "local"}
        assert outcome.deferred == ("rabbiName",)

    def test_deferred_value_applied_once_focus_moves(self):
        state = _state()
        project_snapshot(state, _snapshot(), FocusContext(field="rabbiName"))
        project_snapshot(state, _snapshot(), FocusContext())
        assert state.details["rabbiName"] == "server"

    def test_edited_inspectors_keep_local(self):
        state = _state(inspectors_edited=True)
        outcome = project_snapshot(state, _snapshot())
        assert state.inspector_ids == ["i1"]
        assert INSPECTORS_KEY in outcome.kept_fields

    def test_focused_inspector_picker_deferred(self):
        state = _state()
        outcome = project_snapshot(
            state, _snapshot(), FocusContext(field=INSPECTORS_KEY)
        )
        assert state.inspector_ids == ["i1"]
        assert INSPECTORS_KEY in outcome.deferred


class TestAnswers:
    def _answer(self, at, value="לא תקין", cid="crit-1"):
        return AnswerSnapshot(criterion_id=cid, value=value, updated_at=ts(at))

    def test_newer_answer_applied(self):
        state = _state()
        outcome = project_snapshot(state, _snapshot(answers=[self._answer(200)]))
        assert state.answers["crit-1"].value == "לא תקין"
        assert state.answers["crit-1"].updated_at == ts(200)
        assert outcome.applied_answers == ("crit-1",)

    def test_older_answer_kept_local(self):
        state = _state()
        outcome = project_snapshot(state, _snapshot(answers=[self._answer(50)]))
        assert state.answers["crit-1"].value == "תקין"
        assert outcome.kept_answers == ("crit-1",)

    def test_equal_answer_kept_local(self):
        state = _state()
        project_snapshot(state, _snapshot(answers=[self._answer(100)]))
        assert state.answers["crit-1"].value == "תקין"

    def test_new_criterion_applied(self):
        state = _state()
        project_snapshot(
            state, _snapshot(answers=[self._answer(10, value="x", cid="crit-9")])
        )
        assert state.answers["crit-9"].value == "x"

    def test_untimestamped_local_answer_replaced(self):
        state = _state(answers={"crit-1": AnswerEntry("תקין")})
        project_snapshot(state, _snapshot(answers=[self._answer(10)]))
        assert state.answers["crit-1"].value == "לא תקין"

    def test_focused_criterion_deferred(self):
        state = _state()
        outcome = project_snapshot(
            state,
            _snapshot(answers=[self._answer(200)]),
            FocusContext(criterion_id="crit-1"),
        )
        assert state.answers["crit-1"].value == "תקין"
        assert outcome.deferred == ("crit-1",)


class TestFromRecords:
    def test_stored_records_override_fallbacks(self):
        audit = AuditRecord(
            id="a1",
            details={"unitName": "stored"},
            inspector_ids=["i3"],
            updated_at=ts(0),
        )
        answer = AnswerRecord(
            audit_id="a1", criterion_id="crit-1", value="stored", updated_at=ts(0)
        )
        state = LiveAuditState.from_records(
            "a1",
            audit,
            [answer],
            fallback_details={"unitName": "page"},
            fallback_answers={"crit-1": AnswerEntry("page"), "crit-2": AnswerEntry("page")},
        )
        assert state.details == {"unitName": "stored"}
        assert state.inspector_ids == ["i3"]
        assert state.answers["crit-1"].value == "stored"
        assert state.answers["crit-2"].value == "page"
        assert state.edited_fields == set()

    def test_fallbacks_used_without_stored_audit(self):
        state = LiveAuditState.from_records(
            "a1", None, [], fallback_details={"unitName": "page"},
            fallback_inspector_ids=["i1"],
        )
        assert state.details == {"unitName": "page"}
        assert state.inspector_ids == ["i1"]
