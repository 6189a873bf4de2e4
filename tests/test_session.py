"""Tests for AuditSession: open, snapshot routing and the draft lifecycle."""

import pytest

from audit_sync.client.engine import SyncEngine
from audit_sync.client.projection import AnswerEntry, FocusContext
from audit_sync.client.session import AuditSession
from audit_sync.config import Config
from audit_sync.errors import AuditSyncError
from audit_sync.models import (
    AnswerRecord,
    AnswerSnapshot,
    AuditRecord,
    AuditSnapshot,
    RecordKind,
)
from conftest import seed_audit, ts


def _session(store, scheduler, clock, focus=None):
    return AuditSession(
        store,
        scheduler,
        delay=0.5,
        focus_provider=(lambda: focus) if focus else None,
        clock=clock,
    )


def _snapshot(audit_id="a1", at=5000, **details):
    return AuditSnapshot(
        id=audit_id,
        updated_at=ts(at),
        general_details=details or {"unitName": "שרת"},
        selected_inspector_ids=["i9"],
        answers=[
            AnswerSnapshot(criterion_id="crit-1", value="לא תקין", updated_at=ts(at))
        ],
    )


class TestOpen:
    async def test_fallbacks_used_when_nothing_stored(self, store, scheduler, clock):
        session = _session(store, scheduler, clock)
        state = await session.open(
            "a1",
            details={"unitName": "דף"},
            inspector_ids=["i1"],
            answers={"crit-1": AnswerEntry("תקין", None, ts(0))},
        )
        assert state.details == {"unitName": "דף"}
        assert state.inspector_ids == ["i1"]
        assert state.answers["crit-1"].value == "תקין"
        assert session.audit_id == "a1"

    async def test_stored_records_take_precedence(self, store, scheduler, clock):
        await store.put(
            RecordKind.AUDIT,
            AuditRecord(
                id="a1",
                details={"unitName": "מקומי"},
                inspector_ids=["i2"],
                updated_at=ts(10),
                is_dirty=True,
            ),
        )
        await store.put(
            RecordKind.ANSWER,
            AnswerRecord(
                audit_id="a1",
                criterion_id="crit-1",
                value="לא תקין",
                updated_at=ts(10),
                is_dirty=True,
            ),
        )
        session = _session(store, scheduler, clock)
        state = await session.open(
            "a1",
            details={"unitName": "דף"},
            answers={"crit-1": AnswerEntry("תקין", None, ts(0))},
        )
        assert state.details == {"unitName": "מקומי"}
        assert state.inspector_ids == ["i2"]
        assert state.answers["crit-1"].value == "לא תקין"
        assert state.edited_fields == set()

    async def test_reopen_flushes_pending_edits(self, store, scheduler, clock):
        session = _session(store, scheduler, clock)
        await session.open("a1")
        session.tracker.set_field("unitName", "x")
        await session.open("a2")
        stored = await store.get(RecordKind.AUDIT, "a1")
        assert stored.details == {"unitName": "x"}
        assert session.audit_id == "a2"

    async def test_close_clears_state(self, store, scheduler, clock):
        session = _session(store, scheduler, clock)
        await session.open("a1")
        await session.close()
        assert session.state is None
        assert session.tracker is None
        assert session.audit_id is None


class TestSnapshots:
    async def test_snapshot_for_other_audit_ignored(self, store, scheduler, clock):
        session = _session(store, scheduler, clock)
        await session.open("a1", details={"unitName": "דף"})
        assert session.handle_snapshot(_snapshot("a2")) is None
        assert session.state.details == {"unitName": "דף"}

    async def test_snapshot_without_open_audit(self, store, scheduler, clock):
        session = _session(store, scheduler, clock)
        assert session.handle_snapshot(_snapshot()) is None

    async def test_snapshot_projected(self, store, scheduler, clock):
        session = _session(store, scheduler, clock)
        await session.open("a1", details={"unitName": "דף"})
        outcome = session.handle_snapshot(_snapshot())
        assert outcome is session.last_projection
        assert session.state.details["unitName"] == "שרת"
        assert session.state.inspector_ids == ["i9"]
        assert session.state.answers["crit-1"].value == "לא תקין"

    async def test_focused_field_deferred(self, store, scheduler, clock):
        session = _session(
            store, scheduler, clock, focus=FocusContext(field="unitName")
        )
        await session.open("a1", details={"unitName": "דף", "rabbiName": "א"})
        outcome = session.handle_snapshot(
            _snapshot(unitName="שרת", rabbiName="ב")
        )
        assert "unitName" in outcome.deferred
        assert session.state.details == {"unitName": "דף", "rabbiName": "ב"}


class TestDraft:
    async def test_publish_rekeys_and_reopens(
        self, store, scheduler, clock, transport, repo
    ):
        session = _session(store, scheduler, clock)
        await session.open("draft")
        session.tracker.set_field("unitName", "גדוד 7")
        session.tracker.set_answer_value("crit-1", "תקין")
        clock.advance(1000)

        new_id = await session.publish_draft(transport)

        assert new_id != "draft"
        assert session.audit_id == new_id
        assert session.state.details == {"unitName": "גדוד 7"}
        assert await store.get(RecordKind.AUDIT, "draft") is None
        assert await store.query_by_parent("draft") == []
        moved = await store.get(RecordKind.ANSWER, f"{new_id}:crit-1")
        assert moved.value == "תקין"
        assert moved.is_dirty

        server = repo.get_snapshot(new_id)
        assert server.general_details == {"unitName": "גדוד 7"}
        assert server.answers[0].value == "תקין"

    async def test_publish_requires_open_draft(self, store, scheduler, clock, transport):
        session = _session(store, scheduler, clock)
        await session.open("a1")
        with pytest.raises(AuditSyncError):
            await session.publish_draft(transport)

    async def test_publish_without_open_audit(self, store, scheduler, clock, transport):
        session = _session(store, scheduler, clock)
        with pytest.raises(AuditSyncError, match="No draft"):
            await session.publish_draft(transport)
        assert transport.payloads == []

    async def test_publish_rejects_unusable_id(self, store, scheduler, clock):
        class BadTransport:
            async def create_audit(self, draft):
                return "draft"

        session = _session(store, scheduler, clock)
        await session.open("draft")
        with pytest.raises(AuditSyncError, match="unusable"):
            await session.publish_draft(BadTransport())
        assert session.audit_id == "draft"

    async def test_resent_rows_are_noop(
        self, store, scheduler, clock, transport, repo
    ):
        session = _session(store, scheduler, clock)
        await session.open("draft")
        session.tracker.set_field("unitName", "x")
        new_id = await session.publish_draft(transport)
        before = repo.get_snapshot(new_id)

        engine = SyncEngine(store, transport, scheduler)
        result = await session.sync(engine)
        assert result.sent_audits == 1
        assert repo.get_snapshot(new_id) == before
        assert await store.count_dirty() == {
            RecordKind.AUDIT: 0,
            RecordKind.ANSWER: 0,
        }


class TestSync:
    async def test_sync_flushes_and_pulls_open_audit(
        self, store, scheduler, clock, transport, repo
    ):
        seed_audit(repo, at=-1000)
        session = _session(store, scheduler, clock)
        await session.open("a1")
        session.tracker.set_field("unitName", "x")
        engine = SyncEngine(store, transport, scheduler)
        result = await session.sync(engine)
        assert transport.payloads[0]["requestedAuditIds"] == ["a1"]
        assert transport.payloads[0]["audits"][0]["id"] == "a1"
        assert result.cleared == 1
        assert repo.get_snapshot("a1").general_details == {"unitName": "x"}

    async def test_draft_not_pulled(self, store, scheduler, clock, transport):
        session = _session(store, scheduler, clock)
        await session.open("draft")
        session.tracker.set_field("unitName", "x")
        engine = SyncEngine(store, transport, scheduler)
        result = await session.sync(engine)
        assert not result.round_trip
        assert transport.payloads == []


class TestFromConfig:
    async def test_debounce_delay_from_config(self, store, scheduler, clock):
        session = AuditSession.from_config(
            store, scheduler, Config(debounce_delay=2.0), clock=clock
        )
        assert session.delay == 2.0
        await session.open("a1")
        session.tracker.set_field("unitName", "x")
        await scheduler.advance(1.5)
        assert await store.get(RecordKind.AUDIT, "a1") is None
        await scheduler.advance(0.5)
        stored = await store.get(RecordKind.AUDIT, "a1")
        assert stored.details == {"unitName": "x"}
