"""Server-side persistence for audits, answers and summary reference data.

One sqlite database holds the authoritative copy shared by every client.
A reconciliation batch runs inside ``ServerRepository.transaction()``:
a process-wide lock plus ``BEGIN IMMEDIATE``, so a second batch cannot
interleave reads and writes with the first.  The transaction carries a
deadline; the reconciliation loop calls ``BatchTransaction.check_deadline``
between records and the whole batch rolls back if it runs too long.

Lookups inside a batch are chunked ``IN (...)`` queries rather than one
query per record.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

from ..errors import ServerError, StorageError
from ..models import AnswerSnapshot, AuditSnapshot

logger = logging.getLogger(__name__)

DEFAULT_TRANSACTION_TIMEOUT = 20.0
DEFAULT_MAX_BATCH_SIZE = 500

_SCHEMA = """
CREATE TABLE IF NOT EXISTS audits (
    id TEXT PRIMARY KEY,
    details_json TEXT NOT NULL DEFAULT '{}',
    updated_at TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS audit_inspectors (
    audit_id TEXT NOT NULL REFERENCES audits(id) ON DELETE CASCADE,
    inspector_id TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (audit_id, inspector_id)
);
CREATE TABLE IF NOT EXISTS answers (
    audit_id TEXT NOT NULL REFERENCES audits(id) ON DELETE CASCADE,
    criterion_id TEXT NOT NULL,
    value TEXT,
    comment TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (audit_id, criterion_id)
);
CREATE TABLE IF NOT EXISTS categories (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    position INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS criteria (
    id TEXT PRIMARY KEY,
    category_id TEXT NOT NULL REFERENCES categories(id) ON DELETE CASCADE,
    label TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_criteria_category ON criteria(category_id);
"""


def _chunks(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class BatchTransaction:
    """An open write transaction with a processing deadline."""

    def __init__(self, conn: sqlite3.Connection, timeout: float) -> None:
        self.conn = conn
        self.timeout = timeout
        self.started = time.monotonic()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def check_deadline(self) -> None:
        """Raise ``ServerError`` once the transaction has run too long."""
        if self.elapsed > self.timeout:
            raise ServerError(
                f"Transaction exceeded {self.timeout:.0f}s and was rolled back"
            )


class ServerRepository:
    """Authoritative sqlite store.

    Args:
        db_path: Database file, or ``":memory:"``.
        transaction_timeout: Seconds a batch may run (and wait for the
            sqlite write lock) before it is rolled back.
        max_batch_size: Maximum ids per ``IN (...)`` lookup.
    """

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        *,
        transaction_timeout: float = DEFAULT_TRANSACTION_TIMEOUT,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
    ) -> None:
        self.db_path = str(db_path)
        self.transaction_timeout = transaction_timeout
        self.max_batch_size = max_batch_size
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(
                self.db_path,
                timeout=transaction_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise StorageError(
                f"Cannot open server database {self.db_path}: {exc}"
            ) from exc
        logger.debug("Server database ready: %s", self.db_path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[BatchTransaction]:
        """Serialize one unit of work; commit on success, roll back on error."""
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StorageError(f"Cannot start transaction: {exc}") from exc
            tx = BatchTransaction(self._conn, self.transaction_timeout)
            try:
                yield tx
                tx.check_deadline()
                self._conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback()
                raise StorageError(f"Server transaction failed: {exc}") from exc
            except BaseException:
                self._rollback()
                raise
            logger.debug("Transaction committed in %.3fs", tx.elapsed)

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    # ------------------------------------------------------------------
    # Batched reads
    # ------------------------------------------------------------------

    def audit_timestamps(
        self, tx: BatchTransaction, audit_ids: Iterable[str]
    ) -> dict[str, str]:
        """Stored ``updated_at`` per existing audit id."""
        ids = list(dict.fromkeys(audit_ids))
        found: dict[str, str] = {}
        for chunk in _chunks(ids, self.max_batch_size):
            marks = ",".join("?" * len(chunk))
            rows = tx.conn.execute(
                f"SELECT id, updated_at FROM audits WHERE id IN ({marks})",
                tuple(chunk),
            )
            found.update({r["id"]: r["updated_at"] for r in rows})
        return found

    def answer_timestamps(
        self, tx: BatchTransaction, audit_ids: Iterable[str]
    ) -> dict[tuple[str, str], str]:
        """Stored ``updated_at`` per ``(audit_id, criterion_id)``."""
        ids = list(dict.fromkeys(audit_ids))
        found: dict[tuple[str, str], str] = {}
        for chunk in _chunks(ids, self.max_batch_size):
            marks = ",".join("?" * len(chunk))
            rows = tx.conn.execute(
                "SELECT audit_id, criterion_id, updated_at FROM answers "
                f"WHERE audit_id IN ({marks})",
                tuple(chunk),
            )
            found.update(
                {
                    (r["audit_id"], r["criterion_id"]): r["updated_at"]
                    for r in rows
                }
            )
        return found

    def criteria_for_category(
        self, tx: BatchTransaction, category_name: str
    ) -> dict[str, str]:
        """Map criterion id -> label for every criterion of a category."""
        rows = tx.conn.execute(
            "SELECT c.id, c.label FROM criteria c "
            "JOIN categories g ON g.id = c.category_id "
            "WHERE g.name = ? ORDER BY c.position",
            (category_name,),
        )
        return {r["id"]: r["label"] for r in rows}

    def answer_values(
        self,
        tx: BatchTransaction,
        audit_id: str,
        criterion_ids: Sequence[str],
    ) -> dict[str, str | None]:
        """Current answer values of *audit_id* for the given criteria."""
        values: dict[str, str | None] = {}
        for chunk in _chunks(list(criterion_ids), self.max_batch_size):
            marks = ",".join("?" * len(chunk))
            rows = tx.conn.execute(
                "SELECT criterion_id, value FROM answers "
                f"WHERE audit_id = ? AND criterion_id IN ({marks})",
                (audit_id, *chunk),
            )
            values.update({r["criterion_id"]: r["value"] for r in rows})
        return values

    def load_snapshot(
        self, tx: BatchTransaction, audit_id: str
    ) -> AuditSnapshot | None:
        """Full current state of one audit, or ``None`` if it is gone."""
        row = tx.conn.execute(
            "SELECT * FROM audits WHERE id = ?", (audit_id,)
        ).fetchone()
        if row is None:
            return None
        inspectors = [
            r["inspector_id"]
            for r in tx.conn.execute(
                "SELECT inspector_id FROM audit_inspectors "
                "WHERE audit_id = ? ORDER BY position",
                (audit_id,),
            )
        ]
        answers = [
            AnswerSnapshot(
                criterion_id=r["criterion_id"],
                value=r["value"],
                comment=r["comment"],
                updated_at=r["updated_at"],
            )
            for r in tx.conn.execute(
                "SELECT * FROM answers WHERE audit_id = ? ORDER BY criterion_id",
                (audit_id,),
            )
        ]
        return AuditSnapshot(
            id=row["id"],
            updated_at=row["updated_at"],
            general_details=json.loads(row["details_json"] or "{}"),
            selected_inspector_ids=inspectors,
            answers=answers,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert_audit(
        self,
        tx: BatchTransaction,
        audit_id: str,
        details: dict[str, Any],
        inspector_ids: list[str] | None,
        updated_at: str,
    ) -> None:
        """Replace an audit's scalar fields; ``None`` inspectors keeps the set."""
        tx.conn.execute(
            "INSERT INTO audits (id, details_json, updated_at, created_at) "
            "VALUES (?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET "
            "details_json = excluded.details_json, "
            "updated_at = excluded.updated_at",
            (
                audit_id,
                json.dumps(details, ensure_ascii=False, default=str),
                updated_at,
                updated_at,
            ),
        )
        if inspector_ids is not None:
            tx.conn.execute(
                "DELETE FROM audit_inspectors WHERE audit_id = ?", (audit_id,)
            )
            tx.conn.executemany(
                "INSERT INTO audit_inspectors (audit_id, inspector_id, position) "
                "VALUES (?, ?, ?)",
                [
                    (audit_id, inspector_id, pos)
                    for pos, inspector_id in enumerate(
                        dict.fromkeys(inspector_ids)
                    )
                ],
            )

    def update_details(
        self, tx: BatchTransaction, audit_id: str, fields: dict[str, Any]
    ) -> bool:
        """Merge *fields* into an audit's details without touching ``updated_at``."""
        row = tx.conn.execute(
            "SELECT details_json FROM audits WHERE id = ?", (audit_id,)
        ).fetchone()
        if row is None:
            return False
        details = json.loads(row["details_json"] or "{}")
        details.update(fields)
        tx.conn.execute(
            "UPDATE audits SET details_json = ? WHERE id = ?",
            (json.dumps(details, ensure_ascii=False, default=str), audit_id),
        )
        return True

    def audit_details(
        self, tx: BatchTransaction, audit_id: str
    ) -> dict[str, Any]:
        row = tx.conn.execute(
            "SELECT details_json FROM audits WHERE id = ?", (audit_id,)
        ).fetchone()
        return json.loads(row["details_json"] or "{}") if row else {}

    def upsert_answer(
        self,
        tx: BatchTransaction,
        audit_id: str,
        criterion_id: str,
        value: str | None,
        comment: str | None,
        updated_at: str,
    ) -> None:
        tx.conn.execute(
            "INSERT INTO answers "
            "(audit_id, criterion_id, value, comment, updated_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(audit_id, criterion_id) DO UPDATE SET "
            "value = excluded.value, comment = excluded.comment, "
            "updated_at = excluded.updated_at",
            (audit_id, criterion_id, value, comment, updated_at),
        )

    # ------------------------------------------------------------------
    # Administrative operations (each in its own transaction)
    # ------------------------------------------------------------------

    def add_category(
        self,
        name: str,
        labels: Sequence[str | tuple[str, str]],
        *,
        position: int = 0,
    ) -> dict[str, str]:
        """Create a category with its criteria.

        Args:
            name: Category name (unique).
            labels: Criterion labels, or ``(criterion_id, label)`` pairs
                when the ids must be fixed.
            position: Display order of the category.

        Returns:
            Map of label -> criterion id.
        """
        created: dict[str, str] = {}
        with self.transaction() as tx:
            category_id = uuid.uuid4().hex
            tx.conn.execute(
                "INSERT INTO categories (id, name, position) VALUES (?, ?, ?)",
                (category_id, name, position),
            )
            for pos, item in enumerate(labels):
                if isinstance(item, tuple):
                    criterion_id, label = item
                else:
                    criterion_id, label = uuid.uuid4().hex, item
                tx.conn.execute(
                    "INSERT INTO criteria (id, category_id, label, position) "
                    "VALUES (?, ?, ?, ?)",
                    (criterion_id, category_id, label, pos),
                )
                created[label] = criterion_id
        logger.info("Added category %s with %d criteria", name, len(created))
        return created

    def delete_audit(self, audit_id: str) -> bool:
        """Delete an audit; answers and inspector links cascade."""
        with self.transaction() as tx:
            cursor = tx.conn.execute(
                "DELETE FROM audits WHERE id = ?", (audit_id,)
            )
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted audit %s", audit_id)
        return deleted

    def get_snapshot(self, audit_id: str) -> AuditSnapshot | None:
        with self.transaction() as tx:
            return self.load_snapshot(tx, audit_id)
