"""Tests for the client SyncEngine state machine."""

import asyncio
from unittest.mock import AsyncMock

from audit_sync.client.engine import SyncEngine
from audit_sync.client.transport import ConnectivityMonitor
from audit_sync.errors import NetworkError, ServerError, StorageError
from audit_sync.models import AnswerRecord, AuditRecord, RecordKind, SyncStatus
from conftest import seed_audit, ts


def _engine(store, transport, scheduler, **kwargs):
    statuses = []
    engine = SyncEngine(
        store,
        transport,
        scheduler,
        on_status=statuses.append,
        **kwargs,
    )
    return engine, statuses


async def _seed(store, repo, audit_id="a1", at=0):
    if audit_id != "draft":
        seed_audit(repo, audit_id, at=at - 1000)
    await store.put(
        RecordKind.AUDIT,
        AuditRecord(
            id=audit_id,
            details={"unitName": "גדוד 1"},
            inspector_ids=["i1"],
            updated_at=ts(at),
            is_dirty=True,
        ),
    )
    await store.put(
        RecordKind.ANSWER,
        AnswerRecord(
            audit_id=audit_id,
            criterion_id="crit-1",
            value="תקין",
            updated_at=ts(at),
            is_dirty=True,
        ),
    )


class TestCycle:
    async def test_nothing_to_do_short_circuits(self, store, transport, scheduler):
        engine, statuses = _engine(store, transport, scheduler)
        result = await engine.sync_once()
        assert result.status == SyncStatus.SYNCED
        assert not result.round_trip
        assert transport.payloads == []
        assert statuses == [SyncStatus.CHECKING, SyncStatus.SYNCED]

    async def test_pushes_dirty_and_clears(self, store, transport, repo, scheduler):

        await _seed(store, repo)
        engine, statuses = _engine(store, transport, scheduler)
        result = await engine.sync_once()
        assert result.status == SyncStatus.SYNCED
        assert (result.sent_audits, result.sent_answers) == (1, 1)
        assert result.received == 1
        assert result.cleared == 2
        assert await store.count_dirty() == {
            RecordKind.AUDIT: 0,
            RecordKind.ANSWER: 0,
        }
        assert statuses == [
            SyncStatus.CHECKING,
            SyncStatus.SYNCING,
            SyncStatus.SYNCED,
        ]

    async def test_request_shape(self, store, transport, repo, scheduler):

        await _seed(store, repo)
        engine, _ = _engine(store, transport, scheduler)
        await engine.sync_once(["a2", "a2", "draft"])
        payload = transport.payloads[0]
        assert payload["audits"][0]["lastUpdated"] == ts(0)
        assert payload["answers"][0]["criterionId"] == "crit-1"
        assert payload["requestedAuditIds"] == ["a2"]

    async def test_draft_never_sent(self, store, transport, repo, scheduler):

        await _seed(store, repo, audit_id="draft")
        engine, _ = _engine(store, transport, scheduler)
        result = await engine.sync_once()
        assert not result.round_trip
        assert transport.payloads == []
        assert (await store.count_dirty())[RecordKind.AUDIT] == 1

    async def test_pull_only_cycle(self, store, transport, repo, scheduler):

        await _seed(store, repo)
        engine, _ = _engine(store, transport, scheduler)
        await engine.sync_once()
        await store.delete_audit("a1")

        result = await engine.sync_once(["a1"])
        assert result.requested == 1
        assert result.received == 1
        assert await store.get(RecordKind.AUDIT, "a1") is not None

    async def test_snapshot_callback_invoked(self, store, transport, repo, scheduler):

        await _seed(store, repo)
        seen = []
        engine, _ = _engine(
            store, transport, scheduler, on_snapshot=lambda s: seen.append(s.id)
        )
        await engine.sync_once()
        assert seen == ["a1"]

    async def test_async_snapshot_callback_awaited(
        self, store, transport, repo, scheduler
    ):
        await _seed(store, repo)
        seen = []

        async def on_snapshot(snapshot):
            await asyncio.sleep(0)
            seen.append(snapshot.id)

        engine, _ = _engine(store, transport, scheduler, on_snapshot=on_snapshot)
        await engine.sync_once()
        assert seen == ["a1"]

    async def test_failing_callback_does_not_break_cycle(
        self, store, transport, repo, scheduler
    ):
        await _seed(store, repo)

        def boom(snapshot):
            raise RuntimeError("ui gone")

        engine, _ = _engine(store, transport, scheduler, on_snapshot=boom)
        result = await engine.sync_once()
        assert result.status == SyncStatus.SYNCED


class TestFailures:
    async def test_offline_makes_no_call(self, store, transport, repo, scheduler):

        await _seed(store, repo)
        engine, statuses = _engine(
            store,
            transport,
            scheduler,
            connectivity=ConnectivityMonitor(online=False),
        )
        result = await engine.sync_once()
        assert result.status == SyncStatus.OFFLINE
        assert transport.payloads == []
        assert statuses[-1] == SyncStatus.OFFLINE

    async def test_network_error_keeps_dirty(self, store, transport, repo, scheduler):

        await _seed(store, repo)
        transport.fail_next = NetworkError("HTTP 502: bad gateway", 502)
        engine, _ = _engine(store, transport, scheduler)
        result = await engine.sync_once()
        assert result.status == SyncStatus.ERROR
        assert "502" in result.error
        assert await store.count_dirty() == {
            RecordKind.AUDIT: 1,
            RecordKind.ANSWER: 1,
        }

    async def test_server_error_then_retry_succeeds(
        self, store, transport, repo, scheduler
    ):
        await _seed(store, repo)
        transport.fail_next = ServerError("db locked")
        engine, _ = _engine(store, transport, scheduler)
        assert (await engine.sync_once()).status == SyncStatus.ERROR
        retry = await engine.sync_once()
        assert retry.status == SyncStatus.SYNCED
        assert retry.cleared == 2
        assert len(transport.payloads) == 2
        assert transport.payloads[0] == transport.payloads[1]

    async def test_storage_error_reported(self, store, transport, scheduler):

        store.query_dirty = AsyncMock(side_effect=StorageError("corrupt"))
        engine, _ = _engine(store, transport, scheduler)
        result = await engine.sync_once()
        assert result.status == SyncStatus.ERROR
        assert result.error == "corrupt"

    async def test_unexpected_transport_error_reported(
        self, store, transport, repo, scheduler
    ):
        await _seed(store, repo)
        transport.fail_next = ConnectionResetError("reset by peer")
        engine, statuses = _engine(store, transport, scheduler)
        result = await engine.sync_once()
        assert result.status == SyncStatus.ERROR
        assert result.error == "reset by peer"
        assert statuses[-1] == SyncStatus.ERROR
        assert not engine.busy
        assert await store.count_dirty() == {
            RecordKind.AUDIT: 1,
            RecordKind.ANSWER: 1,
        }
        assert (await engine.sync_once()).status == SyncStatus.SYNCED

    async def test_unexpected_store_error_reported(self, store, transport, scheduler):
        store.query_dirty = AsyncMock(side_effect=ValueError())
        engine, _ = _engine(store, transport, scheduler)
        result = await engine.sync_once()
        assert result.status == SyncStatus.ERROR
        assert result.error == "ValueError"


class TestConcurrency:
    async def test_second_cycle_skipped_while_busy(
        self, store, transport, repo, scheduler
    ):
        await _seed(store, repo)
        engine, _ = _engine(store, transport, scheduler)
        gate = asyncio.Event()
        inner = []

        async def hold():
            inner.append(await engine.sync_once())
            await gate.wait()

        transport.before_response = hold
        first = asyncio.create_task(engine.sync_once())
        while not inner:
            await asyncio.sleep(0)
        gate.set()
        result = await first
        assert inner[0].busy
        assert result.status == SyncStatus.SYNCED
        assert len(transport.payloads) == 1

    async def test_edit_during_flight_stays_dirty(
        self, store, transport, repo, scheduler
    ):
        await _seed(store, repo)
        engine, _ = _engine(store, transport, scheduler)

        async def edit_mid_flight():
            await store.put(
                RecordKind.ANSWER,
                AnswerRecord(
                    audit_id="a1",
                    criterion_id="crit-1",
                    value="לא תקין",
                    updated_at=ts(1000),
                    is_dirty=True,
                ),
            )

        transport.before_response = edit_mid_flight
        result = await engine.sync_once()
        assert result.cleared == 1
        answer = await store.get(RecordKind.ANSWER, "a1:crit-1")
        assert answer.is_dirty
        assert answer.value == "לא תקין"

        transport.before_response = None
        await engine.sync_once()
        assert transport.payloads[1]["answers"][0]["value"] == "לא תקין"
        assert not (await store.get(RecordKind.ANSWER, "a1:crit-1")).is_dirty


class TestTriggers:
    async def test_start_runs_now_and_on_interval(
        self, store, transport, scheduler
    ):
        engine, _ = _engine(store, transport, scheduler, interval=30)
        engine.sync_once = AsyncMock(wraps=engine.sync_once)
        engine.start()
        assert engine.running
        await scheduler.advance(0)
        assert engine.sync_once.await_count == 1
        await scheduler.advance(30)
        await scheduler.advance(30)
        assert engine.sync_once.await_count == 3
        engine.stop()
        await scheduler.advance(120)
        assert engine.sync_once.await_count == 3
        assert not engine.running

    async def test_periodic_cycle_pulls_ids(self, store, transport, scheduler):
        engine, _ = _engine(
            store, transport, scheduler, pull_ids=lambda: ["a7"]
        )
        engine.start()
        await scheduler.advance(0)
        assert transport.payloads == [{"requestedAuditIds": ["a7"]}]
        engine.stop()

    async def test_online_transition_triggers_sync(
        self, store, transport, repo, scheduler
    ):
        await _seed(store, repo)
        monitor = ConnectivityMonitor(online=False)
        engine, statuses = _engine(
            store, transport, scheduler, connectivity=monitor
        )
        engine.start()
        await scheduler.advance(0)
        assert engine.status == SyncStatus.OFFLINE

        await monitor.set_online(True)
        assert len(transport.payloads) == 1
        assert engine.status == SyncStatus.SYNCED
        assert statuses == [
            SyncStatus.CHECKING,
            SyncStatus.OFFLINE,
            SyncStatus.SYNCING,
            SyncStatus.CHECKING,
            SyncStatus.SYNCING,
            SyncStatus.SYNCED,
        ]
        engine.stop()

    async def test_outcome_kept_until_stop(self, store, transport, scheduler):
        engine, statuses = _engine(store, transport, scheduler)
        assert engine.status == SyncStatus.IDLE
        engine.start()
        await scheduler.advance(0)
        assert engine.status == SyncStatus.SYNCED
        engine.stop()
        assert engine.status == SyncStatus.IDLE
        assert statuses == [
            SyncStatus.CHECKING,
            SyncStatus.SYNCED,
            SyncStatus.IDLE,
        ]

    async def test_stopped_engine_ignores_online(
        self, store, transport, repo, scheduler
    ):
        await _seed(store, repo)
        monitor = ConnectivityMonitor(online=False)
        engine, _ = _engine(store, transport, scheduler, connectivity=monitor)
        engine.start()
        engine.stop()
        await monitor.set_online(True)
        assert transport.payloads == []

    async def test_ping_refreshes_connectivity(self, store, transport, repo, scheduler):

        await _seed(store, repo)
        transport.online = False
        monitor = ConnectivityMonitor(probe=transport.ping)
        engine, _ = _engine(store, transport, scheduler, connectivity=monitor)
        assert (await engine.sync_once()).status == SyncStatus.OFFLINE
        assert not monitor.is_online
