"""User-facing writes: optimistic store update first, then a queued operation.

If the operation cannot be persisted the optimistic change is rolled
back and :class:`QueuePersistenceError` propagates, so the store never
shows a change that can never be sent.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from tasksync.core.errors import QueuePersistenceError, RecordNotFoundError, UnknownTableError
from tasksync.core.timeutil import now_iso

from .queue import CREATE, DELETE, UPDATE, PendingOperation
from .store import Add, Patch, Remove, Replace, SoftDelete

logger = logging.getLogger(__name__)

# Owned by the remote store or by the engine; never written from a user edit.
PROTECTED_FIELDS = {"id", "user_id", "created_at", "updated_at", "deleted", "deleted_at"}


class LocalMutations:
    def __init__(self, engine):
        self.engine = engine
        self.store = engine.store
        self.config = engine.config

    def _check_table(self, table: str):
        if table not in self.store.tables():
            raise UnknownTableError(f"unknown table: {table}")

    def _existing(self, table: str, record_id: str) -> dict[str, Any]:
        self._check_table(table)
        record = self.store.get(table, record_id)
        if record is None or record.get("deleted"):
            raise RecordNotFoundError(f"{table}/{record_id}")
        return record

    def _enqueue_or_rollback(self, op: PendingOperation, rollback) -> PendingOperation:
        try:
            return self.engine.queue_operation(op)
        except QueuePersistenceError:
            self.store.apply(rollback)
            logger.error("optimistic_change_rolled_back table=%s record=%s kind=%s", op.table, op.record_id, op.kind)
            raise

    def create(self, table: str, fields: dict[str, Any]) -> dict[str, Any]:
        self._check_table(table)
        stamp = now_iso()
        record = {k: v for k, v in fields.items() if k not in PROTECTED_FIELDS}
        record.update(id=str(uuid.uuid4()), created_at=stamp, updated_at=stamp)
        if self.config.entity(table).soft_delete:
            record.update(deleted=False, deleted_at=None)

        added = self.store.apply(Add(table, record))
        op = PendingOperation(kind=CREATE, table=table, record_id=record["id"], payload=record)
        self._enqueue_or_rollback(op, Remove(table, record["id"]))
        return added

    def update(self, table: str, record_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        before = self._existing(table, record_id)
        patch = {k: v for k, v in changes.items() if k not in PROTECTED_FIELDS}
        patch["updated_at"] = now_iso()

        updated = self.store.apply(Patch(table, record_id, patch))
        op = PendingOperation(kind=UPDATE, table=table, record_id=record_id, payload=patch, base=before)
        self._enqueue_or_rollback(op, Replace(table, record_id, before))
        return updated

    def delete(self, table: str, record_id: str) -> dict[str, Any] | None:
        before = self._existing(table, record_id)
        stamp = now_iso()
        if self.config.entity(table).soft_delete:
            result = self.store.apply(SoftDelete(table, record_id, stamp))
            payload = {"deleted": True, "deleted_at": stamp, "updated_at": stamp}
        else:
            self.store.apply(Remove(table, record_id))
            result = None
            payload = {}

        op = PendingOperation(kind=DELETE, table=table, record_id=record_id, payload=payload, base=before)
        self._enqueue_or_rollback(op, Replace(table, record_id, before))
        return result
