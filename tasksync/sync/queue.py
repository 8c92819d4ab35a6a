"""Durable pending-operation queue backed by SQLite.

Operations are ordered by ``seq``. Draining is FIFO per table; the
engine passes the records it must hold back in ``skip`` so that a
record's later operations never overtake an earlier one.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from tasksync.core.errors import QueuePersistenceError
from tasksync.core.timeutil import now_iso

from .db import get_conn

logger = logging.getLogger(__name__)

CREATE = "create"
UPDATE = "update"
DELETE = "delete"
OPERATION_KINDS = (CREATE, UPDATE, DELETE)

STATUS_PENDING = "pending"
STATUS_FAILED = "failed"
STATUS_CONFLICT = "conflict"


@dataclass
class PendingOperation:
    kind: str
    table: str
    record_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    # Remote state the local edit was made against; None for creates or when unknown.
    base: Optional[dict[str, Any]] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    enqueued_at: str = field(default_factory=now_iso)
    attempts: int = 0
    last_error: Optional[str] = None
    next_retry_at: Optional[str] = None
    status: str = STATUS_PENDING
    seq: Optional[int] = None

    def __post_init__(self):
        if self.kind not in OPERATION_KINDS:
            raise ValueError(f"unknown operation kind: {self.kind}")

    @property
    def record_key(self) -> str:
        return self.record_id or self.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "table": self.table,
            "recordId": self.record_id,
            "payload": self.payload,
            "enqueuedAt": self.enqueued_at,
            "attempts": self.attempts,
            "lastError": self.last_error,
            "nextRetryAt": self.next_retry_at,
            "status": self.status,
        }


def _loads(raw: Optional[str]):
    if raw is None:
        return None
    return json.loads(raw)


def _row_to_op(row: sqlite3.Row) -> PendingOperation:
    return PendingOperation(
        kind=row["kind"],
        table=row["table_name"],
        record_id=row["record_id"],
        payload=_loads(row["payload_json"]) or {},
        base=_loads(row["base_json"]),
        id=row["id"],
        enqueued_at=row["enqueued_at"],
        attempts=int(row["attempts"] or 0),
        last_error=row["last_error"],
        next_retry_at=row["next_retry_at"],
        status=row["status"],
        seq=row["seq"],
    )


class PendingOperationQueue:
    def __init__(self, db_path: str):
        self.db_path = db_path

    def _db(self):
        return get_conn(self.db_path)

    def _write(self, sql: str, params: tuple = ()) -> int:
        try:
            conn = self._db()
            try:
                cur = conn.execute(sql, params)
                conn.commit()
                return cur.rowcount
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise QueuePersistenceError(f"queue_write_failed: {e}") from e

    def _read(self, sql: str, params: tuple = ()) -> list[PendingOperation]:
        conn = self._db()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [_row_to_op(r) for r in rows]

    def enqueue(self, op: PendingOperation) -> PendingOperation:
        try:
            conn = self._db()
            try:
                cur = conn.execute(
                    """
                    INSERT INTO pending_operations(
                        id,kind,table_name,record_id,payload_json,base_json,
                        enqueued_at,attempts,last_error,next_retry_at,status
                    ) VALUES (?,?,?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        op.id,
                        op.kind,
                        op.table,
                        op.record_id,
                        json.dumps(op.payload, ensure_ascii=False),
                        json.dumps(op.base, ensure_ascii=False) if op.base is not None else None,
                        op.enqueued_at,
                        op.attempts,
                        op.last_error,
                        op.next_retry_at,
                        op.status,
                    ),
                )
                conn.commit()
                op.seq = cur.lastrowid
            finally:
                conn.close()
        except (sqlite3.Error, TypeError, ValueError) as e:
            # TypeError/ValueError: payload is not JSON-serializable.
            raise QueuePersistenceError(f"enqueue_failed: {e}") from e
        logger.info("operation_enqueued id=%s table=%s kind=%s record=%s", op.id, op.table, op.kind, op.record_id)
        return op

    def get(self, op_id: str) -> Optional[PendingOperation]:
        ops = self._read("SELECT * FROM pending_operations WHERE id=?", (op_id,))
        return ops[0] if ops else None

    def peek_next(self, table: str, skip: Iterable[str] = ()) -> Optional[PendingOperation]:
        """Oldest pending operation for ``table`` whose record is not in ``skip``."""
        skip = [s for s in skip if s]
        sql = "SELECT * FROM pending_operations WHERE table_name=? AND status=?"
        params: list[Any] = [table, STATUS_PENDING]
        if skip:
            marks = ",".join("?" for _ in skip)
            sql += f" AND COALESCE(record_id, id) NOT IN ({marks})"
            params.extend(skip)
        sql += " ORDER BY seq LIMIT 1"
        ops = self._read(sql, tuple(params))
        return ops[0] if ops else None

    def tables_with_pending(self) -> list[str]:
        conn = self._db()
        try:
            rows = conn.execute(
                "SELECT table_name, MIN(seq) AS first_seq FROM pending_operations WHERE status=? "
                "GROUP BY table_name ORDER BY first_seq",
                (STATUS_PENDING,),
            ).fetchall()
        finally:
            conn.close()
        return [r["table_name"] for r in rows]

    def remove(self, op_id: str) -> bool:
        return self._write("DELETE FROM pending_operations WHERE id=?", (op_id,)) > 0

    def mark_failed(self, op_id: str, error: str, next_retry_at: Optional[str] = None) -> int:
        """Record a failed attempt and return the new attempt count."""
        self._write(
            "UPDATE pending_operations SET attempts=attempts+1, last_error=?, next_retry_at=? WHERE id=?",
            (error, next_retry_at, op_id),
        )
        op = self.get(op_id)
        return op.attempts if op else 0

    def mark_terminal(self, op_id: str, error: str):
        self._write(
            "UPDATE pending_operations SET status=?, last_error=?, next_retry_at=NULL WHERE id=?",
            (STATUS_FAILED, error, op_id),
        )
        logger.warning("operation_failed_terminal id=%s error=%s", op_id, error)

    def mark_conflict(self, op_id: str, note: str = "conflict_detected"):
        self._write(
            "UPDATE pending_operations SET status=?, last_error=?, next_retry_at=NULL WHERE id=?",
            (STATUS_CONFLICT, note, op_id),
        )

    def reissue(self, op_id: str, kind: str, payload: dict[str, Any], base: Optional[dict[str, Any]]) -> PendingOperation:
        """Replace an operation with a fresh one at the same queue position."""
        fresh = PendingOperation(kind=kind, table="", payload=payload, base=base)
        changed = self._write(
            """
            UPDATE pending_operations
               SET id=?, kind=?, payload_json=?, base_json=?, enqueued_at=?,
                   attempts=0, last_error=NULL, next_retry_at=NULL, status=?
             WHERE id=?
            """,
            (
                fresh.id,
                kind,
                json.dumps(payload, ensure_ascii=False),
                json.dumps(base, ensure_ascii=False) if base is not None else None,
                fresh.enqueued_at,
                STATUS_PENDING,
                op_id,
            ),
        )
        if not changed:
            raise QueuePersistenceError(f"reissue_missing_operation: {op_id}")
        reissued = self.get(fresh.id)
        logger.info("operation_reissued old=%s new=%s kind=%s", op_id, fresh.id, kind)
        return reissued

    def for_record(self, table: str, record_id: str) -> list[PendingOperation]:
        """Operations still carrying local intent for one record, in queue order.

        Terminally failed operations count: they stay queued until retried
        or cleared, and the store keeps showing their edit meanwhile.
        """
        return self._read(
            "SELECT * FROM pending_operations WHERE table_name=? AND record_id=? AND status IN (?,?,?) ORDER BY seq",
            (table, str(record_id), STATUS_PENDING, STATUS_FAILED, STATUS_CONFLICT),
        )

    def has_pending_for(self, table: str, record_id: str) -> bool:
        return bool(self.for_record(table, record_id))

    def discard_record(self, table: str, record_id: str) -> int:
        removed = self._write(
            "DELETE FROM pending_operations WHERE table_name=? AND record_id=? AND status IN (?,?,?)",
            (table, str(record_id), STATUS_PENDING, STATUS_FAILED, STATUS_CONFLICT),
        )
        if removed:
            logger.info("operations_discarded table=%s record=%s count=%s", table, record_id, removed)
        return removed

    def retarget_record(self, table: str, old_id: str, new_id: str) -> int:
        return self._write(
            "UPDATE pending_operations SET record_id=? WHERE table_name=? AND record_id=?",
            (str(new_id), table, str(old_id)),
        )

    def next_due_at(self) -> Optional[str]:
        conn = self._db()
        try:
            row = conn.execute(
                "SELECT MIN(next_retry_at) AS due FROM pending_operations WHERE status=? AND next_retry_at IS NOT NULL",
                (STATUS_PENDING,),
            ).fetchone()
        finally:
            conn.close()
        return row["due"] if row else None

    def all(self, status: Optional[str] = None) -> list[PendingOperation]:
        if status:
            return self._read("SELECT * FROM pending_operations WHERE status=? ORDER BY seq", (status,))
        return self._read("SELECT * FROM pending_operations ORDER BY seq")

    def count(self, status: Optional[str] = None) -> int:
        conn = self._db()
        try:
            if status:
                row = conn.execute("SELECT COUNT(*) AS n FROM pending_operations WHERE status=?", (status,)).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) AS n FROM pending_operations").fetchone()
        finally:
            conn.close()
        return int(row["n"])

    def clear(self) -> int:
        removed = self._write("DELETE FROM pending_operations")
        logger.warning("queue_cleared removed=%s", removed)
        return removed

    def retry_failed(self) -> int:
        return self._write(
            "UPDATE pending_operations SET status=?, attempts=0, next_retry_at=NULL WHERE status=?",
            (STATUS_PENDING, STATUS_FAILED),
        )
