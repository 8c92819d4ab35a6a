"""Conflict detection and user-mediated resolution.

A conflict is raised when a record with pending local intent and the
remote copy disagree on a comparable field, or when one side deleted
the record while the other kept editing it. Conflicts are never
settled by timestamps: the user picks ``local`` or ``remote`` for each
one, or explicitly applies one side to all remaining conflicts.

Open conflicts are persisted next to the queue. The operations they
hold back survive a restart, so the conflicts must survive it too.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from tasksync.core.config import EntityConfig
from tasksync.core.errors import ConflictDetected, RejectedError
from tasksync.core.timeutil import now_iso, parse_timestamp

from .db import get_conn
from .queue import CREATE, DELETE, UPDATE, PendingOperation, PendingOperationQueue
from .store import LocalEntityStore, Patch, Remove, Replace

logger = logging.getLogger(__name__)

LOCAL = "local"
REMOTE = "remote"
CHOICES = (LOCAL, REMOTE)

# Never part of the comparison: identity, ownership and derived timestamps.
NON_COMPARABLE = {"id", "user_id", "created_at", "updated_at", "local_id"}


def _norm(value):
    if value == "":
        return None
    return value


class ConflictDetector:
    def __init__(self, entities: dict[str, EntityConfig]):
        self.entities = entities

    def _entity(self, table: str) -> EntityConfig:
        return self.entities.get(table) or EntityConfig()

    def comparable_fields(self, table: str, *records: Optional[dict]) -> list[str]:
        entity = self._entity(table)
        fields = list(entity.comparable_fields)
        if not fields:
            # No configured field set: compare every non-derived field either side carries.
            seen: dict[str, None] = {}
            for record in records:
                for key in record or {}:
                    if key not in NON_COMPARABLE and key != "deleted_at":
                        seen.setdefault(key)
            fields = list(seen)
        if entity.soft_delete and "deleted" not in fields:
            fields.append("deleted")
        return fields

    def differing_fields(self, table: str, local: Optional[dict], remote: Optional[dict]) -> list[str]:
        local = local or {}
        remote = remote or {}
        return [
            f
            for f in self.comparable_fields(table, local, remote)
            if _norm(local.get(f)) != _norm(remote.get(f))
        ]

    def diverges(
        self,
        table: str,
        local: Optional[dict],
        remote: Optional[dict],
        base: Optional[dict] = None,
    ) -> bool:
        """True when ``local`` and ``remote`` conflict.

        ``base`` is the remote state the local edit started from. When it
        is given and the remote has not moved away from it, the local
        edit is simply newer and nothing conflicts.
        """
        if local is None and remote is None:
            return False
        if local is None:
            # Local delete against a remote row that may have been edited meanwhile.
            if base is None:
                return True
            return bool(self.differing_fields(table, base, remote))
        if remote is None:
            return True

        if base is not None and not self.differing_fields(table, base, remote):
            return False

        if self._entity(table).soft_delete:
            local_deleted = bool(local.get("deleted"))
            remote_deleted = bool(remote.get("deleted"))
            if local_deleted != remote_deleted:
                deleted_side, other = (local, remote) if local_deleted else (remote, local)
                return _modified_after(other, deleted_side.get("deleted_at"))

        return bool(self.differing_fields(table, local, remote))


def _modified_after(record: dict, deleted_at) -> bool:
    changed = parse_timestamp(record.get("updated_at"))
    deleted = parse_timestamp(deleted_at)
    if changed is None or deleted is None:
        # Ordering unknown: let the user decide.
        return True
    return changed > deleted


@dataclass
class Conflict:
    table: str
    record_id: str
    local: Optional[dict[str, Any]]
    remote: Optional[dict[str, Any]]
    fields: list[str] = field(default_factory=list)
    op_id: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    detected_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @property
    def kind(self) -> str:
        if self.local is not None and self.remote is not None:
            return "modification"
        if self.local is not None:
            return "remote_deleted"
        return "local_deleted"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "table": self.table,
            "recordId": self.record_id,
            "kind": self.kind,
            "fields": self.fields,
            "local": self.local,
            "remote": self.remote,
            "detectedAt": self.detected_at,
        }


def _row_to_conflict(row) -> Conflict:
    return Conflict(
        id=row["id"],
        table=row["table_name"],
        record_id=row["record_id"],
        op_id=row["op_id"],
        local=json.loads(row["local_json"]) if row["local_json"] else None,
        remote=json.loads(row["remote_json"]) if row["remote_json"] else None,
        fields=json.loads(row["fields_json"] or "[]"),
        detected_at=row["detected_at"],
        updated_at=row["updated_at"],
    )


class ConflictResolver:
    def __init__(
        self,
        db_path: str,
        store: LocalEntityStore,
        queue: PendingOperationQueue,
        detector: ConflictDetector,
        entities: Optional[dict[str, EntityConfig]] = None,
    ):
        self.db_path = db_path
        self.store = store
        self.queue = queue
        self.detector = detector
        self.entities = entities if entities is not None else detector.entities
        self.on_all_resolved: Optional[Callable[[], None]] = None

    def _db(self):
        return get_conn(self.db_path)

    # ------------------------------------------------------------------
    # Open set
    # ------------------------------------------------------------------

    def open_conflicts(self) -> list[Conflict]:
        conn = self._db()
        try:
            rows = conn.execute("SELECT * FROM conflicts ORDER BY detected_at, rowid").fetchall()
        finally:
            conn.close()
        return [_row_to_conflict(r) for r in rows]

    def next_conflict(self) -> Optional[Conflict]:
        items = self.open_conflicts()
        return items[0] if items else None

    def get(self, conflict_id: str) -> Optional[Conflict]:
        conn = self._db()
        try:
            row = conn.execute("SELECT * FROM conflicts WHERE id=?", (conflict_id,)).fetchone()
        finally:
            conn.close()
        return _row_to_conflict(row) if row else None

    def find(self, table: str, record_id: str) -> Optional[Conflict]:
        conn = self._db()
        try:
            row = conn.execute(
                "SELECT * FROM conflicts WHERE table_name=? AND record_id=?", (table, str(record_id))
            ).fetchone()
        finally:
            conn.close()
        return _row_to_conflict(row) if row else None

    def has_open(self, table: str, record_id: str) -> bool:
        return self.find(table, record_id) is not None

    def held_records(self, table: str) -> set[str]:
        conn = self._db()
        try:
            rows = conn.execute("SELECT record_id FROM conflicts WHERE table_name=?", (table,)).fetchall()
        finally:
            conn.close()
        return {r["record_id"] for r in rows}

    def count(self) -> int:
        conn = self._db()
        try:
            row = conn.execute("SELECT COUNT(*) AS n FROM conflicts").fetchone()
        finally:
            conn.close()
        return int(row["n"])

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def raise_conflict(
        self,
        table: str,
        record_id: str,
        local: Optional[dict],
        remote: Optional[dict],
        op_id: Optional[str] = None,
    ) -> Conflict:
        """Open a conflict for the record, or refresh the one already open."""
        record_id = str(record_id)
        fields = self.detector.differing_fields(table, local, remote)
        existing = self.find(table, record_id)
        conn = self._db()
        try:
            if existing:
                conflict = existing
                conflict.local, conflict.remote, conflict.fields = local, remote, fields
                conflict.op_id = op_id or existing.op_id
                conflict.updated_at = now_iso()
                conn.execute(
                    """
                    UPDATE conflicts
                       SET local_json=?, remote_json=?, fields_json=?, op_id=?, updated_at=?
                     WHERE id=?
                    """,
                    (
                        _dumps(local),
                        _dumps(remote),
                        json.dumps(fields),
                        conflict.op_id,
                        conflict.updated_at,
                        conflict.id,
                    ),
                )
            else:
                conflict = Conflict(table=table, record_id=record_id, local=local, remote=remote, fields=fields, op_id=op_id)
                conn.execute(
                    """
                    INSERT INTO conflicts(id,table_name,record_id,op_id,local_json,remote_json,fields_json,detected_at,updated_at)
                    VALUES (?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        conflict.id,
                        table,
                        record_id,
                        op_id,
                        _dumps(local),
                        _dumps(remote),
                        json.dumps(fields),
                        conflict.detected_at,
                        conflict.updated_at,
                    ),
                )
            conn.commit()
        finally:
            conn.close()
        logger.warning(
            "conflict_%s id=%s table=%s record=%s fields=%s",
            "updated" if existing else "raised",
            conflict.id,
            table,
            record_id,
            ",".join(fields),
        )
        return conflict

    def report(
        self,
        table: str,
        record_id: str,
        local: Optional[dict],
        remote: Optional[dict],
        op_id: Optional[str],
        enabled: bool,
    ):
        """Route a detected divergence: open a conflict, or reject the operation when resolution is disabled."""
        if enabled:
            conflict = self.raise_conflict(table, record_id, local, remote, op_id=op_id)
            if op_id:
                self.queue.mark_conflict(op_id)
            return ConflictDetected(conflict)

        fields = self.detector.differing_fields(table, local, remote)
        message = f"conflict_rejected fields={','.join(fields) or '-'}"
        targets = [op_id] if op_id else [op.id for op in self.queue.for_record(table, record_id)[:1]]
        for target in targets:
            self.queue.mark_terminal(target, message)
        return RejectedError(message)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, conflict_id: str, choice: str) -> bool:
        """Apply ``local`` or ``remote`` to one conflict. A closed or unknown id is a no-op."""
        if choice not in CHOICES:
            raise ValueError(f"resolution must be one of {CHOICES}, got {choice!r}")
        conflict = self.get(conflict_id)
        if conflict is None:
            logger.info("conflict_resolve_ignored id=%s reason=not_open", conflict_id)
            return False

        if choice == REMOTE:
            self._take_remote(conflict)
        else:
            self._take_local(conflict)

        self._close(conflict)
        logger.info("conflict_resolved id=%s table=%s record=%s choice=%s", conflict.id, conflict.table, conflict.record_id, choice)
        if self.count() == 0 and self.on_all_resolved is not None:
            self.on_all_resolved()
        return True

    def clear(self) -> int:
        """Close every open conflict without applying either side."""
        conn = self._db()
        try:
            closed = conn.execute("DELETE FROM conflicts").rowcount
            conn.commit()
        finally:
            conn.close()
        if closed:
            logger.warning("conflicts_cleared closed=%s", closed)
        return closed

    def resolve_many(self, resolutions: dict[str, str]) -> int:
        done = 0
        for conflict_id, choice in resolutions.items():
            if self.resolve(conflict_id, choice):
                done += 1
        return done

    def resolve_all(self, choice: str) -> int:
        done = 0
        for conflict in self.open_conflicts():
            if self.resolve(conflict.id, choice):
                done += 1
        return done

    def _close(self, conflict: Conflict):
        conn = self._db()
        try:
            conn.execute("DELETE FROM conflicts WHERE id=?", (conflict.id,))
            conn.commit()
        finally:
            conn.close()

    def _take_remote(self, conflict: Conflict):
        self.queue.discard_record(conflict.table, conflict.record_id)
        if conflict.remote is None:
            self.store.apply(Remove(conflict.table, conflict.record_id))
        else:
            self.store.apply(Replace(conflict.table, conflict.record_id, conflict.remote))

    def _take_local(self, conflict: Conflict):
        table, record_id = conflict.table, conflict.record_id
        entity = self.entities.get(table) or EntityConfig()
        held = self.queue.for_record(table, record_id)
        first: Optional[PendingOperation] = held[0] if held else None
        local = self.store.get(table, record_id) or conflict.local
        stamp = now_iso()

        if (first is not None and first.kind == DELETE) or local is None:
            kind, payload = DELETE, {}
        elif conflict.remote is None:
            kind = CREATE
            payload = {k: v for k, v in local.items() if k not in ("user_id", "local_id")}
            payload["updated_at"] = stamp
        else:
            kind = UPDATE
            fields = self.detector.comparable_fields(table, local, conflict.remote)
            payload = {f: local.get(f) for f in fields if f in local}
            if entity.soft_delete and local.get("deleted"):
                payload["deleted_at"] = local.get("deleted_at")
            payload["updated_at"] = stamp

        if first is not None:
            self.queue.reissue(first.id, kind, payload, conflict.remote)
        else:
            self.queue.enqueue(
                PendingOperation(kind=kind, table=table, record_id=record_id, payload=payload, base=conflict.remote)
            )

        # The fresh timestamp makes the local version the newest one on later comparisons.
        if local is not None and self.store.get(table, record_id) is not None:
            self.store.apply(Patch(table, record_id, {"updated_at": stamp}))


def _dumps(value) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)
