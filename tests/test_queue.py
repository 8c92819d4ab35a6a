from pathlib import Path

import pytest

from tasksync.core.errors import QueuePersistenceError
from tasksync.sync.db import init_db
from tasksync.sync.queue import (
    CREATE,
    DELETE,
    STATUS_CONFLICT,
    STATUS_FAILED,
    STATUS_PENDING,
    UPDATE,
    PendingOperation,
    PendingOperationQueue,
)


def _queue(tmp_path: Path) -> PendingOperationQueue:
    db_path = str(tmp_path / "runtime" / "tasksync.db")
    init_db(db_path)
    return PendingOperationQueue(db_path)


def _op(kind=UPDATE, table="tasks", record_id="t1", **payload) -> PendingOperation:
    return PendingOperation(kind=kind, table=table, record_id=record_id, payload=payload)


def test_unknown_kind_is_rejected():
    with pytest.raises(ValueError):
        PendingOperation(kind="upsert", table="tasks")


def test_queue_survives_restart_in_order(tmp_path: Path):
    queue = _queue(tmp_path)
    first = queue.enqueue(_op(title="a"))
    second = queue.enqueue(_op(kind=DELETE, record_id="t2"))

    reopened = PendingOperationQueue(queue.db_path)
    ops = reopened.all()

    assert [op.id for op in ops] == [first.id, second.id]
    assert ops[0].payload == {"title": "a"}
    assert ops[0].seq < ops[1].seq
    assert reopened.count() == 2


def test_peek_next_is_fifo_per_table_and_honours_skip(tmp_path: Path):
    queue = _queue(tmp_path)
    a = queue.enqueue(_op(record_id="t1"))
    queue.enqueue(_op(table="projects", record_id="p1"))
    b = queue.enqueue(_op(record_id="t2"))
    queue.enqueue(_op(record_id="t1"))

    assert queue.peek_next("tasks").id == a.id
    assert queue.peek_next("tasks", skip={"t1"}).id == b.id
    assert queue.peek_next("tasks", skip={"t1", "t2"}) is None
    assert queue.tables_with_pending() == ["tasks", "projects"]


def test_create_without_record_id_is_keyed_by_operation_id(tmp_path: Path):
    queue = _queue(tmp_path)
    op = queue.enqueue(PendingOperation(kind=CREATE, table="tasks", payload={"title": "x"}))

    assert op.record_key == op.id
    assert queue.peek_next("tasks", skip={op.id}) is None


def test_failed_and_conflicted_operations_are_not_drained(tmp_path: Path):
    queue = _queue(tmp_path)
    a = queue.enqueue(_op(record_id="t1"))
    b = queue.enqueue(_op(record_id="t2"))

    assert queue.mark_failed(a.id, "timeout", "2026-01-01T00:00:00.000+00:00") == 1
    assert queue.next_due_at() == "2026-01-01T00:00:00.000+00:00"
    queue.mark_terminal(a.id, "retries_exhausted")
    queue.mark_conflict(b.id)

    assert queue.peek_next("tasks") is None
    assert queue.next_due_at() is None
    assert queue.count(STATUS_FAILED) == 1
    assert [op.id for op in queue.for_record("tasks", "t2")] == [b.id]
    assert queue.get(b.id).status == STATUS_CONFLICT

    assert queue.retry_failed() == 1
    requeued = queue.get(a.id)
    assert requeued.status == STATUS_PENDING
    assert requeued.attempts == 0


def test_reissue_keeps_queue_position(tmp_path: Path):
    queue = _queue(tmp_path)
    a = queue.enqueue(_op(record_id="t1", title="mine"))
    queue.enqueue(_op(record_id="t2"))
    queue.mark_conflict(a.id)

    fresh = queue.reissue(a.id, UPDATE, {"title": "mine"}, {"id": "t1", "title": "theirs"})

    assert queue.get(a.id) is None
    assert fresh.seq == a.seq
    assert fresh.status == STATUS_PENDING
    assert fresh.base == {"id": "t1", "title": "theirs"}
    assert queue.peek_next("tasks").id == fresh.id


def test_reissue_of_missing_operation_raises(tmp_path: Path):
    queue = _queue(tmp_path)
    with pytest.raises(QueuePersistenceError):
        queue.reissue("missing", UPDATE, {}, None)


def test_retarget_and_discard_record(tmp_path: Path):
    queue = _queue(tmp_path)
    queue.enqueue(_op(record_id="tmp-1"))
    queue.enqueue(_op(record_id="tmp-1"))

    assert queue.retarget_record("tasks", "tmp-1", "srv-1") == 2
    assert queue.has_pending_for("tasks", "srv-1")
    assert not queue.has_pending_for("tasks", "tmp-1")
    assert queue.discard_record("tasks", "srv-1") == 2
    assert queue.count() == 0


def test_enqueue_of_unserializable_payload_raises_persistence_error(tmp_path: Path):
    queue = _queue(tmp_path)
    with pytest.raises(QueuePersistenceError):
        queue.enqueue(_op(title=object()))
    assert queue.count() == 0


def test_clear_removes_everything(tmp_path: Path):
    queue = _queue(tmp_path)
    queue.enqueue(_op())
    queue.enqueue(_op(record_id="t9"))
    assert queue.clear() == 2
    assert queue.all() == []
