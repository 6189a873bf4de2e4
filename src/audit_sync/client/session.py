"""Per-record session: the glue between the screen and the sync machinery.

An ``AuditSession`` owns the ``LiveAuditState`` of the audit on screen and
the ``MutationTracker`` that persists its edits.  It is registered as the
engine's snapshot callback; each incoming snapshot is projected into the
live state only if it belongs to the audit still being displayed.

The session also drives the draft lifecycle: a new audit is edited under
the reserved ``draft`` id, which never syncs, until ``publish_draft()``
asks the server for a permanent id and rekeys the local records.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from ..config import Config
from ..core.scheduler import Scheduler
from ..errors import AuditSyncError
from ..models import (
    AuditRecord,
    AuditSnapshot,
    DraftAnswer,
    DraftAudit,
    RecordKind,
    SyncCycleResult,
)
from ..timestamps import now_iso
from ..validators import DRAFT_ID, is_syncable_id
from .engine import SyncEngine
from .projection import (
    AnswerEntry,
    FocusContext,
    LiveAuditState,
    ProjectionOutcome,
    project_snapshot,
)
from .store import LocalStore
from .tracker import DEFAULT_DEBOUNCE, MutationTracker
from .transport import Transport

logger = logging.getLogger(__name__)


class AuditSession:
    """Edit one audit at a time with offline persistence.

    Args:
        store: Local durable store.
        scheduler: Timer source for debounced writes.
        delay: Debounce delay in seconds.
        focus_provider: Returns the input that currently has focus.
        clock: Timestamp source for writes.
    """

    def __init__(
        self,
        store: LocalStore,
        scheduler: Scheduler,
        *,
        delay: float = DEFAULT_DEBOUNCE,
        focus_provider: Callable[[], FocusContext | None] | None = None,
        clock: Callable[[], str] = now_iso,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.delay = delay
        self.focus_provider = focus_provider
        self.clock = clock
        self.state: LiveAuditState | None = None
        self.tracker: MutationTracker | None = None
        self.last_projection: ProjectionOutcome | None = None

    @classmethod
    def from_config(
        cls,
        store: LocalStore,
        scheduler: Scheduler,
        config: Config,
        **kwargs: Any,
    ) -> AuditSession:
        """Build a session whose debounce delay comes from *config*."""
        return cls(store, scheduler, delay=config.debounce_delay, **kwargs)

    @property
    def audit_id(self) -> str | None:
        return self.state.audit_id if self.state else None

    async def open(
        self,
        audit_id: str,
        *,
        details: dict[str, Any] | None = None,
        inspector_ids: list[str] | None = None,
        answers: dict[str, AnswerEntry] | None = None,
        read_only: bool = False,
    ) -> LiveAuditState:
        """Load *audit_id* for editing.

        Stored local records take precedence over the initial values
        supplied by the caller (typically the server-rendered page).
        Pending writes of the previously open audit are flushed first.
        """
        await self.close()
        audit = await self.store.get(RecordKind.AUDIT, audit_id)
        stored_answers = await self.store.query_by_parent(audit_id)
        self.state = LiveAuditState.from_records(
            audit_id,
            audit if isinstance(audit, AuditRecord) else None,
            stored_answers,
            fallback_details=details,
            fallback_inspector_ids=inspector_ids,
            fallback_answers=answers,
            read_only=read_only,
        )
        self.tracker = MutationTracker(
            self.store,
            self.scheduler,
            self.state,
            delay=self.delay,
            clock=self.clock,
        )
        logger.debug(
            "Opened audit %s (%d local answers)",
            audit_id,
            len(stored_answers),
        )
        return self.state

    async def close(self) -> None:
        if self.tracker is not None:
            await self.tracker.flush()
        self.tracker = None
        self.state = None

    def handle_snapshot(self, snapshot: AuditSnapshot) -> ProjectionOutcome | None:
        """Engine callback; project *snapshot* if its audit is on screen.

        The store merge has already happened inside the sync cycle.
        """
        if self.state is None or snapshot.id != self.state.audit_id:
            return None
        focus = self.focus_provider() if self.focus_provider else None
        self.last_projection = project_snapshot(self.state, snapshot, focus)
        return self.last_projection

    async def publish_draft(self, transport: Transport) -> str:
        """Create the open draft on the server and move it to its new id.

        Returns:
            The permanent audit id.

        Raises:
            AuditSyncError: If no draft is open or the server call fails.
        """
        if (
            self.state is None
            or self.tracker is None
            or self.state.audit_id != DRAFT_ID
        ):
            raise AuditSyncError("No draft audit is open")
        await self.tracker.flush()

        state = self.state
        draft = DraftAudit(
            general_details=dict(state.details),
            selected_inspector_ids=list(state.inspector_ids),
            answers={
                cid: DraftAnswer(value=e.value, comment=e.comment)
                for cid, e in state.answers.items()
                if e.value is not None or e.comment is not None
            },
            last_updated=self.clock(),
        )
        new_id = await transport.create_audit(draft)
        if not is_syncable_id(new_id):
            raise AuditSyncError(f"Server returned unusable id {new_id!r}")

        # Rekeyed rows stay dirty; resending them is a no-op on the server.
        await self.store.rekey(DRAFT_ID, new_id)
        logger.info("Draft published as audit %s", new_id)
        self.tracker = None
        await self.open(new_id, read_only=state.read_only)
        return new_id

    async def sync(self, engine: SyncEngine) -> SyncCycleResult:
        """Flush pending edits, then run a cycle pulling the open audit."""
        if self.tracker is not None:
            await self.tracker.flush()
        requested = (
            [self.state.audit_id]
            if self.state and is_syncable_id(self.state.audit_id)
            else []
        )
        return await engine.sync_once(requested)
