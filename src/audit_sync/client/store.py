"""Local durable store for audits and answers.

An embedded sqlite database holding the two record kinds the client edits
offline.  Every record carries a dirty flag and the timestamp of its last
write; the sync engine reads dirty records from here and merges the
server's resolved view back in.

Key design choices:

* **Single-record atomicity**: every public call runs in its own sqlite
  transaction, serialised by a lock, so a record is never half-written.
  A parent plus its children are not atomic as a unit.
* **Blocking I/O off the loop**: public methods are coroutines that run
  the sqlite work through ``run_sync``.
* **Answers keyed like the wire**: an answer's primary key is
  ``audit_id:criterion_id``; ``(audit_id, criterion_id)`` is unique, so
  ``put`` is always an upsert.
* **No foreign key on answers**: a user may answer a criterion of a
  draft before its general details were ever saved; deleting an audit
  removes its answers explicitly.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from ..core.async_utils import run_sync
from ..errors import StorageError
from ..models import (
    AnswerRecord,
    AuditRecord,
    AuditSnapshot,
    RecordKind,
    answer_key,
)
from ..timestamps import is_newer, now_iso

logger = logging.getLogger(__name__)

Record = AuditRecord | AnswerRecord

_SCHEMA = """
CREATE TABLE IF NOT EXISTS audits (
    id TEXT PRIMARY KEY,
    details_json TEXT NOT NULL DEFAULT '{}',
    inspector_ids_json TEXT NOT NULL DEFAULT '[]',
    updated_at TEXT NOT NULL,
    is_dirty INTEGER NOT NULL DEFAULT 0,
    last_synced_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_audits_dirty ON audits (is_dirty);

CREATE TABLE IF NOT EXISTS answers (
    key TEXT PRIMARY KEY,
    audit_id TEXT NOT NULL,
    criterion_id TEXT NOT NULL,
    value TEXT,
    comment TEXT,
    updated_at TEXT NOT NULL,
    is_dirty INTEGER NOT NULL DEFAULT 0,
    last_synced_at TEXT,
    UNIQUE (audit_id, criterion_id)
);
CREATE INDEX IF NOT EXISTS idx_answers_dirty ON answers (is_dirty);
CREATE INDEX IF NOT EXISTS idx_answers_audit ON answers (audit_id);
"""


@dataclass(frozen=True)
class MergeOutcome:
    """What ``merge_snapshot`` changed locally."""

    audit_id: str
    audit_replaced: bool
    derived_refreshed: bool
    answers_replaced: int
    answers_kept: int


class LocalStore:
    """Async sqlite store for offline audit editing.

    Args:
        db_path: Database file path, or ``":memory:"``.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(
                self.db_path, check_same_thread=False
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise StorageError(
                f"Cannot open local store {self.db_path}: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection inside one transaction.

        Commits on success, rolls back on any failure, and converts
        ``sqlite3.Error`` into ``StorageError``.
        """
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as exc:
                logger.warning("Local store operation failed: %s", exc)
                raise StorageError(str(exc)) from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def get(self, kind: RecordKind, key: str) -> Record | None:
        """Load one record; answers are addressed as ``audit_id:criterion_id``."""
        return await run_sync(self._get, kind, key)

    async def put(self, kind: RecordKind, record: Record) -> None:
        """Full upsert of one record."""
        await run_sync(self._put, kind, record)

    async def query_dirty(self, kind: RecordKind) -> list[Record]:
        """All records of *kind* with unsynced local mutations."""
        return await run_sync(self._query_dirty, kind)

    async def query_by_parent(self, audit_id: str) -> list[AnswerRecord]:
        """All answers belonging to *audit_id*."""
        return await run_sync(self._query_by_parent, audit_id)

    async def merge_snapshot(
        self,
        snapshot: AuditSnapshot,
        derived_fields: Iterable[str] = (),
        synced_at: str | None = None,
    ) -> MergeOutcome:
        """Apply one server-resolved audit under last-write-wins.

        Args:
            snapshot: The server's view of the audit and its answers.
            derived_fields: Server-computed summary keys, refreshed even
                when the local audit is newer.
            synced_at: Timestamp recorded as ``last_synced_at``.
        """
        return await run_sync(
            self._merge_snapshot,
            snapshot,
            tuple(derived_fields),
            synced_at or now_iso(),
        )

    async def mark_synced(
        self,
        kind: RecordKind,
        key: str,
        sent_updated_at: str,
        synced_at: str | None = None,
    ) -> bool:
        """Clear the dirty flag if the record still has the sent timestamp.

        Returns:
            ``True`` if the flag was cleared, ``False`` if the record was
            written again while the request was in flight (or is gone).
        """
        return await run_sync(
            self._mark_synced,
            kind,
            key,
            sent_updated_at,
            synced_at or now_iso(),
        )

    async def rekey(self, old_id: str, new_id: str) -> None:
        """Move an audit and its answers to a new id (draft -> permanent)."""
        await run_sync(self._rekey, old_id, new_id)

    async def delete_audit(self, audit_id: str) -> None:
        """Delete an audit and cascade to its answers."""
        await run_sync(self._delete_audit, audit_id)

    async def count_dirty(self) -> dict[RecordKind, int]:
        return await run_sync(self._count_dirty)

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------

    def _get(self, kind: RecordKind, key: str) -> Record | None:
        with self._transaction() as conn:
            return self._get_in(conn, kind, key)

    def _get_in(
        self, conn: sqlite3.Connection, kind: RecordKind, key: str
    ) -> Record | None:
        if kind == RecordKind.AUDIT:
            return self._get_audit_in(conn, key)
        row = conn.execute(
            "SELECT * FROM answers WHERE key = ?", (key,)
        ).fetchone()
        return _row_to_answer(row) if row else None

    def _get_audit_in(
        self, conn: sqlite3.Connection, audit_id: str
    ) -> AuditRecord | None:
        row = conn.execute(
            "SELECT * FROM audits WHERE id = ?", (audit_id,)
        ).fetchone()
        return _row_to_audit(row) if row else None

    def _put(self, kind: RecordKind, record: Record) -> None:
        with self._transaction() as conn:
            self._put_in(conn, kind, record)

    def _put_in(
        self, conn: sqlite3.Connection, kind: RecordKind, record: Record
    ) -> None:
        if kind == RecordKind.AUDIT:
            if not isinstance(record, AuditRecord):
                raise TypeError("audit kind requires an AuditRecord")
            conn.execute(
                """
                INSERT INTO audits (id, details_json, inspector_ids_json,
                                    updated_at, is_dirty, last_synced_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    details_json = excluded.details_json,
                    inspector_ids_json = excluded.inspector_ids_json,
                    updated_at = excluded.updated_at,
                    is_dirty = excluded.is_dirty,
                    last_synced_at = excluded.last_synced_at
                """,
                (
                    record.id,
                    _dumps(record.details),
                    _dumps(record.inspector_ids),
                    record.updated_at,
                    int(record.is_dirty),
                    record.last_synced_at,
                ),
            )
            return

        if not isinstance(record, AnswerRecord):
            raise TypeError("answer kind requires an AnswerRecord")
        conn.execute(
            """
            INSERT INTO answers (key, audit_id, criterion_id, value, comment,
                                 updated_at, is_dirty, last_synced_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (key) DO UPDATE SET
                value = excluded.value,
                comment = excluded.comment,
                updated_at = excluded.updated_at,
                is_dirty = excluded.is_dirty,
                last_synced_at = excluded.last_synced_at
            """,
            (
                record.key,
                record.audit_id,
                record.criterion_id,
                record.value,
                record.comment,
                record.updated_at,
                int(record.is_dirty),
                record.last_synced_at,
            ),
        )

    def _query_dirty(self, kind: RecordKind) -> list[Record]:
        with self._transaction() as conn:
            if kind == RecordKind.AUDIT:
                rows = conn.execute(
                    "SELECT * FROM audits WHERE is_dirty = 1 ORDER BY updated_at"
                ).fetchall()
                return [_row_to_audit(r) for r in rows]
            rows = conn.execute(
                "SELECT * FROM answers WHERE is_dirty = 1 ORDER BY updated_at"
            ).fetchall()
            return [_row_to_answer(r) for r in rows]

    def _query_by_parent(self, audit_id: str) -> list[AnswerRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM answers WHERE audit_id = ? ORDER BY criterion_id",
                (audit_id,),
            ).fetchall()
            return [_row_to_answer(r) for r in rows]

    def _merge_snapshot(
        self,
        snapshot: AuditSnapshot,
        derived_fields: tuple[str, ...],
        synced_at: str,
    ) -> MergeOutcome:
        audit_replaced = False
        derived_refreshed = False
        replaced = kept = 0

        with self._transaction() as conn:
            local = self._get_audit_in(conn, snapshot.id)
            if local is None or is_newer(
                snapshot.updated_at, local.updated_at
            ):
                self._put_in(
                    conn,
                    RecordKind.AUDIT,
                    AuditRecord(
                        id=snapshot.id,
                        details=dict(snapshot.general_details),
                        inspector_ids=list(snapshot.selected_inspector_ids),
                        updated_at=snapshot.updated_at,
                        is_dirty=False,
                        last_synced_at=synced_at,
                    ),
                )
                audit_replaced = True
            else:
                derived = {
                    k: snapshot.general_details[k]
                    for k in derived_fields
                    if k in snapshot.general_details
                }
                if any(local.details.get(k) != v for k, v in derived.items()):
                    conn.execute(
                        "UPDATE audits SET details_json = ? WHERE id = ?",
                        (
                            _dumps({**local.details, **derived}),
                            snapshot.id,
                        ),
                    )
                    derived_refreshed = True
                logger.debug(
                    "Kept local audit %s (local=%s, server=%s)",
                    snapshot.id,
                    local.updated_at,
                    snapshot.updated_at,
                )

            for ans in snapshot.answers:
                key = answer_key(snapshot.id, ans.criterion_id)
                existing = self._get_in(conn, RecordKind.ANSWER, key)
                if existing is not None and not is_newer(
                    ans.updated_at, existing.updated_at
                ):
                    kept += 1
                    continue
                self._put_in(
                    conn,
                    RecordKind.ANSWER,
                    AnswerRecord(
                        audit_id=snapshot.id,
                        criterion_id=ans.criterion_id,
                        value=ans.value,
                        comment=ans.comment,
                        updated_at=ans.updated_at,
                        is_dirty=False,
                        last_synced_at=synced_at,
                    ),
                )
                replaced += 1

        return MergeOutcome(
            audit_id=snapshot.id,
            audit_replaced=audit_replaced,
            derived_refreshed=derived_refreshed,
            answers_replaced=replaced,
            answers_kept=kept,
        )

    def _mark_synced(
        self,
        kind: RecordKind,
        key: str,
        sent_updated_at: str,
        synced_at: str,
    ) -> bool:
        table, column = (
            ("audits", "id") if kind == RecordKind.AUDIT else ("answers", "key")
        )
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET is_dirty = 0, last_synced_at = ? "
                f"WHERE {column} = ? AND updated_at = ?",
                (synced_at, key, sent_updated_at),
            )
            return cursor.rowcount > 0

    def _rekey(self, old_id: str, new_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM answers WHERE audit_id = ?", (new_id,))
            conn.execute("DELETE FROM audits WHERE id = ?", (new_id,))
            conn.execute(
                "UPDATE audits SET id = ? WHERE id = ?", (new_id, old_id)
            )
            conn.execute(
                "UPDATE answers SET audit_id = ?, key = ? || ':' || criterion_id "
                "WHERE audit_id = ?",
                (new_id, new_id, old_id),
            )
        logger.info("Rekeyed local audit %s -> %s", old_id, new_id)

    def _delete_audit(self, audit_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM answers WHERE audit_id = ?", (audit_id,))
            conn.execute("DELETE FROM audits WHERE id = ?", (audit_id,))

    def _count_dirty(self) -> dict[RecordKind, int]:
        with self._transaction() as conn:
            audits = conn.execute(
                "SELECT COUNT(*) FROM audits WHERE is_dirty = 1"
            ).fetchone()[0]
            answers = conn.execute(
                "SELECT COUNT(*) FROM answers WHERE is_dirty = 1"
            ).fetchone()[0]
        return {RecordKind.AUDIT: audits, RecordKind.ANSWER: answers}


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _row_to_audit(row: sqlite3.Row) -> AuditRecord:
    return AuditRecord(
        id=row["id"],
        details=_loads(row["details_json"], {}),
        inspector_ids=_loads(row["inspector_ids_json"], []),
        updated_at=row["updated_at"],
        is_dirty=bool(row["is_dirty"]),
        last_synced_at=row["last_synced_at"],
    )


def _row_to_answer(row: sqlite3.Row) -> AnswerRecord:
    return AnswerRecord(
        audit_id=row["audit_id"],
        criterion_id=row["criterion_id"],
        value=row["value"],
        comment=row["comment"],
        updated_at=row["updated_at"],
        is_dirty=bool(row["is_dirty"]),
        last_synced_at=row["last_synced_at"],
    )


def _dumps(value: Any) -> str:
    """Encode a JSON column; dates and other scalars are stored as text."""
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError) as exc:
        raise StorageError(f"Value cannot be stored: {exc}") from exc


def _loads(raw: str | None, fallback):
    """Decode a JSON column; a corrupt value yields *fallback*."""
    if not raw:
        return fallback
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Corrupt JSON column in local store, using default")
        return fallback
    return value if isinstance(value, type(fallback)) else fallback
