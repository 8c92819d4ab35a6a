"""Local Entity Store.

Holds the best-known state of every synchronized table as an
insertion-ordered ``id -> record`` mapping. All reads for the
presentation layer come from here, and every write, whether a user
action, a realtime push or a conflict resolution, goes through
:func:`transition` via :meth:`LocalEntityStore.load` or
:meth:`LocalEntityStore.apply`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

Record = dict[str, Any]
TableState = dict[str, Record]
State = dict[str, TableState]


@dataclass(frozen=True)
class Load:
    table: str
    records: list[Record] = field(default_factory=list)


@dataclass(frozen=True)
class Add:
    table: str
    record: Record


@dataclass(frozen=True)
class Patch:
    table: str
    record_id: str
    changes: Record


@dataclass(frozen=True)
class SoftDelete:
    table: str
    record_id: str
    deleted_at: str


@dataclass(frozen=True)
class Remove:
    table: str
    record_id: str


@dataclass(frozen=True)
class Replace:
    """Swap the record stored under ``record_id`` for ``record``, re-keying when its id differs."""

    table: str
    record_id: str
    record: Record


Command = Union[Load, Add, Patch, SoftDelete, Remove, Replace]


def transition(state: State, command: Command) -> tuple[State, Record | None]:
    """Return ``(new_state, affected_record)``.

    Pure: the input mapping is never mutated and nothing here reads the
    clock. Callers put timestamps into the command.
    """
    table = command.table
    current = state.get(table, {})

    if isinstance(command, Load):
        rows = {str(r["id"]): dict(r) for r in command.records if r.get("id") is not None}
        return {**state, table: rows}, None

    if isinstance(command, Add):
        record = dict(command.record)
        rows = dict(current)
        rows[str(record["id"])] = record
        return {**state, table: rows}, record

    if isinstance(command, Patch):
        existing = current.get(command.record_id)
        if existing is None:
            return state, None
        record = {**existing, **command.changes, "id": existing["id"]}
        rows = dict(current)
        rows[command.record_id] = record
        return {**state, table: rows}, record

    if isinstance(command, SoftDelete):
        existing = current.get(command.record_id)
        if existing is None:
            return state, None
        record = {**existing, "deleted": True, "deleted_at": command.deleted_at, "updated_at": command.deleted_at}
        rows = dict(current)
        rows[command.record_id] = record
        return {**state, table: rows}, record

    if isinstance(command, Remove):
        if command.record_id not in current:
            return state, None
        rows = dict(current)
        removed = rows.pop(command.record_id)
        return {**state, table: rows}, removed

    if isinstance(command, Replace):
        record = dict(command.record)
        new_id = str(record.get("id") or command.record_id)
        record["id"] = record.get("id") or command.record_id
        if command.record_id not in current or new_id == command.record_id:
            rows = dict(current)
            rows[new_id] = record
        else:
            # Keep the original position when re-keying a provisional id.
            rows = {}
            for key, value in current.items():
                if key == command.record_id:
                    rows[new_id] = record
                elif key != new_id:
                    rows[key] = value
        return {**state, table: rows}, record

    raise TypeError(f"unknown store command: {command!r}")


class LocalEntityStore:
    def __init__(self, tables: list[str] | None = None):
        self._state: State = {t: {} for t in (tables or [])}
        # Write counter and the counter value of each record's latest write.
        self._generation = 0
        self._written: dict[tuple[str, str], int] = {}

    @property
    def generation(self) -> int:
        return self._generation

    def touch(self, table: str, record_id: str) -> None:
        """Mark a record as written now, e.g. when the remote store confirmed it."""
        self._generation += 1
        self._written[(table, str(record_id))] = self._generation

    def changed_since(self, table: str, record_id: str, generation: int) -> bool:
        return self._written.get((table, str(record_id)), 0) > generation

    def load(self, table: str, records: list[Record]) -> None:
        self._state, _ = transition(self._state, Load(table, list(records)))

    def apply(self, command: Command) -> Record | None:
        self._state, record = transition(self._state, command)
        if isinstance(command, Add):
            self.touch(command.table, command.record["id"])
        elif not isinstance(command, Load):
            self.touch(command.table, command.record_id)
            if record is not None and isinstance(command, Replace):
                self.touch(command.table, record["id"])
        return dict(record) if record is not None else None

    def get(self, table: str, record_id: str) -> Record | None:
        record = self._state.get(table, {}).get(str(record_id))
        return dict(record) if record is not None else None

    def all(self, table: str, include_deleted: bool = True) -> list[Record]:
        rows = self._state.get(table, {}).values()
        return [dict(r) for r in rows if include_deleted or not r.get("deleted")]

    def tables(self) -> list[str]:
        return list(self._state)

    def snapshot(self) -> State:
        return {t: dict(rows) for t, rows in self._state.items()}
