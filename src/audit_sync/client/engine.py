"""Sync engine: one reconciliation cycle at a time, on a timer or on demand.

A cycle gathers every dirty audit and answer from the local store (drafts
excluded), sends them together with any audit ids the caller wants pulled,
merges each returned snapshot into the store, notifies the snapshot
callback, and finally clears the dirty flag of each record that was sent
and has not been edited since.

Triggers:

- ``start()`` runs a cycle immediately and then every ``interval``
  seconds until ``stop()``.
- The connectivity monitor's offline to online transition.
- Direct calls to ``sync_once()``.

A cycle requested while another is in flight is skipped, not queued.
Failures end the cycle with ``SyncStatus.ERROR``; dirty flags stay set and
the next cycle retries.

Status lifecycle: ``idle`` until the first cycle and again after
``stop()``.  A cycle moves through ``checking`` and, when there is
something to send, ``syncing``.  It ends on ``synced``, ``offline`` or
``error``, which stays visible until the next cycle begins.  An online
transition reports ``syncing`` before the cycle so the indicator reacts
before the connectivity check completes.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Iterable

from ..core.scheduler import Scheduler, TimerHandle
from ..errors import AuditSyncError
from ..models import (
    AuditSnapshot,
    IncomingAnswer,
    IncomingAudit,
    RecordKind,
    SyncCycleResult,
    SyncRequest,
    SyncStatus,
)
from ..timestamps import now_iso
from ..validators import is_syncable_id
from .store import LocalStore
from .transport import ConnectivityMonitor, Transport

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 30.0

SnapshotCallback = Callable[[AuditSnapshot], Any]
StatusCallback = Callable[[SyncStatus], Any]


class SyncEngine:
    """Drive reconciliation between a ``LocalStore`` and a ``Transport``.

    Args:
        store: Local durable store.
        transport: Server connection.
        scheduler: Timer source for the periodic cycle.
        connectivity: Reachability flag; a fresh online monitor if omitted.
        interval: Seconds between periodic cycles.
        derived_fields: General-detail keys the server computes; copied
            from snapshots even over newer local edits.
        on_snapshot: Called with each snapshot after it is merged.
        on_status: Called on every status change.
        pull_ids: Returns audit ids to request on periodic cycles.
    """

    def __init__(
        self,
        store: LocalStore,
        transport: Transport,
        scheduler: Scheduler,
        *,
        connectivity: ConnectivityMonitor | None = None,
        interval: float = DEFAULT_INTERVAL,
        derived_fields: Iterable[str] = (),
        on_snapshot: SnapshotCallback | None = None,
        on_status: StatusCallback | None = None,
        pull_ids: Callable[[], Iterable[str]] | None = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.scheduler = scheduler
        self.connectivity = connectivity or ConnectivityMonitor()
        self.interval = interval
        self.derived_fields = tuple(derived_fields)
        self.on_snapshot = on_snapshot
        self.on_status = on_status
        self.pull_ids = pull_ids
        self._status = SyncStatus.IDLE
        self._lock = asyncio.Lock()
        self._timer: TimerHandle | None = None

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @property
    def running(self) -> bool:
        return self._timer is not None

    def _set_status(self, status: SyncStatus) -> None:
        if status == self._status:
            return
        self._status = status
        logger.debug("Sync status: %s", status.value)
        if self.on_status is not None:
            try:
                self.on_status(status)
            except Exception:
                logger.exception("Status callback failed")

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Run a cycle now and then every ``interval`` seconds."""
        if self._timer is not None:
            return
        self.connectivity.subscribe(self.handle_online)
        self._timer = self.scheduler.call_later(0, self._tick)

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self.connectivity.unsubscribe(self.handle_online)
            self._set_status(SyncStatus.IDLE)

    async def _tick(self) -> None:
        self._timer = self.scheduler.call_later(self.interval, self._tick)
        requested = list(self.pull_ids()) if self.pull_ids else []
        await self.sync_once(requested)

    async def handle_online(self) -> SyncCycleResult | None:
        """Connectivity came back: sync right away unless a cycle is running."""
        if self.busy:
            return None
        self._set_status(SyncStatus.SYNCING)
        requested = list(self.pull_ids()) if self.pull_ids else []
        return await self.sync_once(requested)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def sync_once(
        self, requested_ids: Iterable[str] = ()
    ) -> SyncCycleResult:
        """Run one reconciliation cycle.

        Args:
            requested_ids: Audit ids whose current server state should be
                returned even if nothing local is dirty.

        Returns:
            A ``SyncCycleResult``; ``busy`` is set when the cycle was
            skipped because another one is in flight.
        """
        started_at = now_iso()
        if self._lock.locked():
            logger.debug("Sync already in flight, skipping")
            return SyncCycleResult(
                status=self._status,
                busy=True,
                started_at=started_at,
                completed_at=started_at,
            )

        async with self._lock:
            return await self._run_cycle(list(requested_ids), started_at)

    async def _run_cycle(
        self, requested_ids: list[str], started_at: str
    ) -> SyncCycleResult:
        self._set_status(SyncStatus.CHECKING)

        def finish(status: SyncStatus, **counts: Any) -> SyncCycleResult:
            self._set_status(status)
            return SyncCycleResult(
                status=status,
                started_at=started_at,
                completed_at=now_iso(),
                **counts,
            )

        if not await self.connectivity.check():
            logger.info("Offline, sync deferred")
            return finish(SyncStatus.OFFLINE)

        try:
            audits = [
                a
                for a in await self.store.query_dirty(RecordKind.AUDIT)
                if is_syncable_id(a.id)
            ]
            answers = [
                a
                for a in await self.store.query_dirty(RecordKind.ANSWER)
                if is_syncable_id(a.audit_id)
            ]
        except AuditSyncError as exc:
            logger.error("Could not read dirty records: %s", exc)
            return finish(SyncStatus.ERROR, error=str(exc))
        except Exception as exc:
            logger.exception("Unexpected error reading dirty records")
            return finish(SyncStatus.ERROR, error=_describe(exc))

        requested = [
            i for i in dict.fromkeys(requested_ids) if is_syncable_id(i)
        ]
        counts: dict[str, Any] = {
            "sent_audits": len(audits),
            "sent_answers": len(answers),
            "requested": len(requested),
        }
        if not (audits or answers or requested):
            return finish(SyncStatus.SYNCED)

        self._set_status(SyncStatus.SYNCING)
        request = SyncRequest(
            audits=[IncomingAudit.from_record(a) for a in audits],
            answers=[IncomingAnswer.from_record(a) for a in answers],
            requested_audit_ids=requested,
        )
        logger.info(
            "Syncing %d audits, %d answers, %d pulls",
            len(audits),
            len(answers),
            len(requested),
        )

        try:
            response = await self.transport.reconcile(request)
            received = 0
            for snapshot in response.audits:
                await self.store.merge_snapshot(
                    snapshot, derived_fields=self.derived_fields
                )
                received += 1
                await self._notify_snapshot(snapshot)

            synced_at = now_iso()
            cleared = 0
            for audit in audits:
                if await self.store.mark_synced(
                    RecordKind.AUDIT, audit.id, audit.updated_at, synced_at
                ):
                    cleared += 1
            for answer in answers:
                if await self.store.mark_synced(
                    RecordKind.ANSWER,
                    answer.key,
                    answer.updated_at,
                    synced_at,
                ):
                    cleared += 1
        except AuditSyncError as exc:
            logger.warning("Sync failed: %s", exc)
            return finish(SyncStatus.ERROR, error=str(exc), **counts)
        except Exception as exc:
            logger.exception("Unexpected error during sync")
            return finish(SyncStatus.ERROR, error=_describe(exc), **counts)

        logger.info(
            "Sync complete: %d snapshots received, %d records cleared",
            received,
            cleared,
        )
        return finish(
            SyncStatus.SYNCED, received=received, cleared=cleared, **counts
        )

    async def _notify_snapshot(self, snapshot: AuditSnapshot) -> None:
        if self.on_snapshot is None:
            return
        try:
            result = self.on_snapshot(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Snapshot callback failed for %s", snapshot.id)


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__
