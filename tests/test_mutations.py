import pytest
from fakes import seed

from tasksync.core.errors import RecordNotFoundError, UnknownTableError
from tasksync.sync.queue import CREATE, DELETE, UPDATE

CATEGORY = {"id": "c1", "name": "Work", "color": "#00f", "deleted": False, "deleted_at": None}


def test_create_assigns_id_and_timestamps(make_service):
    service = make_service()

    record = service.mutations.create("categories", {"name": "Home", "user_id": "spoofed", "deleted": True})

    assert record["id"]
    assert record["created_at"] == record["updated_at"]
    assert record["deleted"] is False
    assert "user_id" not in record
    op = service.queue.all()[0]
    assert op.kind == CREATE
    assert op.record_id == record["id"]
    assert op.payload["name"] == "Home"


def test_update_records_base_snapshot(make_service):
    service = make_service()
    seed(service, "categories", CATEGORY)

    updated = service.mutations.update("categories", "c1", {"color": "#f00", "id": "other"})

    assert updated["id"] == "c1"
    assert updated["color"] == "#f00"
    op = service.queue.all()[0]
    assert op.kind == UPDATE
    assert op.base == CATEGORY
    assert set(op.payload) == {"color", "updated_at"}


def test_soft_deleted_record_cannot_be_edited_again(make_service):
    service = make_service()
    seed(service, "categories", CATEGORY)

    deleted = service.mutations.delete("categories", "c1")

    assert deleted["deleted"] is True
    assert service.queue.all()[0].kind == DELETE
    assert service.queue.all()[0].payload["deleted"] is True
    with pytest.raises(RecordNotFoundError):
        service.mutations.update("categories", "c1", {"name": "x"})


def test_unknown_table_is_rejected(make_service):
    service = make_service()
    with pytest.raises(UnknownTableError):
        service.mutations.create("habits", {"name": "x"})
    assert service.queue.count() == 0


def test_enqueue_while_online_requests_a_sync(make_service):
    service = make_service()
    service.engine.set_online(True)
    service.engine._requested.clear()

    service.mutations.create("tasks", {"title": "x"})

    assert service.engine._requested == ["enqueue"]
