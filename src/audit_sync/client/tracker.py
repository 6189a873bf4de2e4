"""Mutation tracker: coalesce rapid edits into debounced durable writes.

Every edit updates the live state immediately and marks the field as
edited since the last load.  The durable write is deferred by a fixed
delay per *field group*: ``general`` for the scalar fields and inspector
list of the audit, one group per criterion for answers.  A new edit in the
same group cancels and reschedules the pending timer, so a burst of
keystrokes produces one write whose timestamp is taken when the write
happens.

A failed write is logged and retried the next time any debounce timer of
this tracker fires.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable

from ..core.scheduler import Scheduler, TimerHandle
from ..errors import StorageError
from ..models import AnswerRecord, AuditRecord, RecordKind
from ..timestamps import now_iso, to_millis
from .projection import AnswerEntry, LiveAuditState
from .store import LocalStore

logger = logging.getLogger(__name__)

GENERAL_GROUP = "general"
DEFAULT_DEBOUNCE = 0.5


class MutationTracker:
    """Debounce edits of one displayed audit into local store writes.

    Args:
        store: Local durable store.
        scheduler: Timer source for the debounce windows.
        state: Live state the edits are applied to.
        delay: Debounce delay in seconds.
        clock: Returns the ISO timestamp stamped on each write.
    """

    def __init__(
        self,
        store: LocalStore,
        scheduler: Scheduler,
        state: LiveAuditState,
        *,
        delay: float = DEFAULT_DEBOUNCE,
        clock: Callable[[], str] = now_iso,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.state = state
        self.delay = delay
        self.clock = clock
        self._timers: dict[str, TimerHandle] = {}
        self._failed: set[str] = set()

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def set_field(self, name: str, value: Any) -> None:
        """Change one general-details field."""
        if self.state.read_only:
            return
        self.state.details[name] = value
        self.state.edited_fields.add(name)
        self._schedule(GENERAL_GROUP)

    def set_inspectors(self, inspector_ids: Iterable[str]) -> None:
        """Replace the inspector selection."""
        if self.state.read_only:
            return
        self.state.inspector_ids = list(dict.fromkeys(inspector_ids))
        self.state.inspectors_edited = True
        self._schedule(GENERAL_GROUP)

    def toggle_inspector(self, inspector_id: str) -> None:
        current = self.state.inspector_ids
        if inspector_id in current:
            self.set_inspectors(i for i in current if i != inspector_id)
        else:
            self.set_inspectors([*current, inspector_id])

    def set_answer_value(self, criterion_id: str, value: str | None) -> None:
        """Change the value of one criterion's answer."""
        if self.state.read_only:
            return
        entry = self._touch_answer(criterion_id)
        entry.value = value
        self._schedule(criterion_id)

    def set_answer_comment(self, criterion_id: str, comment: str | None) -> None:
        """Change the comment of one criterion's answer; blank means none."""
        if self.state.read_only:
            return
        entry = self._touch_answer(criterion_id)
        entry.comment = comment or None
        self._schedule(criterion_id)

    def _touch_answer(self, criterion_id: str) -> AnswerEntry:
        entry = self.state.answers.setdefault(criterion_id, AnswerEntry())
        entry.updated_at = self.clock()
        return entry

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @property
    def pending_groups(self) -> set[str]:
        """Groups with a scheduled or failed write."""
        return set(self._timers) | self._failed

    def _schedule(self, group: str) -> None:
        previous = self._timers.pop(group, None)
        if previous is not None:
            previous.cancel()
        self._timers[group] = self.scheduler.call_later(
            self.delay, lambda: self._fire(group)
        )

    async def _fire(self, group: str) -> None:
        self._timers.pop(group, None)
        groups = [group, *sorted(self._failed - {group})]
        self._failed.clear()
        await self._write_groups(groups)

    async def flush(self) -> bool:
        """Write every pending group now.

        Returns:
            ``True`` if every write succeeded.
        """
        groups = sorted(self.pending_groups)
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._failed.clear()
        await self._write_groups(groups)
        return not self._failed

    def cancel(self) -> None:
        """Drop scheduled writes without performing them."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._failed.clear()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _write_groups(self, groups: Iterable[str]) -> None:
        for group in groups:
            try:
                await self._write(group)
            except StorageError as exc:
                logger.warning(
                    "Local write of %s/%s failed, will retry: %s",
                    self.state.audit_id,
                    group,
                    exc,
                )
                self._failed.add(group)

    async def _write(self, group: str) -> None:
        stamp = self.clock()
        state = self.state
        if group == GENERAL_GROUP:
            await self.store.put(
                RecordKind.AUDIT,
                AuditRecord(
                    id=state.audit_id,
                    details=dict(state.details),
                    inspector_ids=list(state.inspector_ids),
                    updated_at=stamp,
                    is_dirty=True,
                ),
            )
            logger.debug("Saved audit %s at %s", state.audit_id, stamp)
            return

        entry = state.answers.get(group) or AnswerEntry()
        await self.store.put(
            RecordKind.ANSWER,
            AnswerRecord(
                audit_id=state.audit_id,
                criterion_id=group,
                value=entry.value,
                comment=entry.comment,
                updated_at=stamp,
                is_dirty=True,
            ),
        )
        # A keystroke that landed while the write was in flight keeps its
        # own, later timestamp.
        if to_millis(entry.updated_at) <= to_millis(stamp):
            entry.updated_at = stamp
        logger.debug(
            "Saved answer %s/%s at %s", state.audit_id, group, stamp
        )
