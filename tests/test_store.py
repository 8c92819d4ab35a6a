from tasksync.sync.store import Add, Load, LocalEntityStore, Patch, Remove, Replace, SoftDelete, transition


def test_transition_does_not_mutate_input_state():
    state = {"tasks": {"t1": {"id": "t1", "title": "A"}}}
    new_state, record = transition(state, Patch("tasks", "t1", {"title": "B"}))

    assert state == {"tasks": {"t1": {"id": "t1", "title": "A"}}}
    assert new_state["tasks"]["t1"]["title"] == "B"
    assert record == {"id": "t1", "title": "B"}


def test_patch_and_remove_of_missing_record_are_noops():
    state = {"tasks": {}}
    assert transition(state, Patch("tasks", "nope", {"title": "x"})) == (state, None)
    assert transition(state, Remove("tasks", "nope")) == (state, None)


def test_replace_rekeys_provisional_id_in_place():
    store = LocalEntityStore(["tasks"])
    store.load("tasks", [{"id": "a"}, {"id": "tmp-1", "title": "new"}, {"id": "c"}])

    store.apply(Replace("tasks", "tmp-1", {"id": "srv-9", "title": "new"}))

    assert [r["id"] for r in store.all("tasks")] == ["a", "srv-9", "c"]
    assert store.get("tasks", "tmp-1") is None
    assert store.get("tasks", "srv-9")["title"] == "new"


def test_soft_delete_marks_record_and_all_can_hide_it():
    store = LocalEntityStore(["categories"])
    store.apply(Add("categories", {"id": "c1", "name": "Work"}))

    record = store.apply(SoftDelete("categories", "c1", "2026-03-01T10:00:00.000+00:00"))

    assert record["deleted"] is True
    assert record["deleted_at"] == record["updated_at"] == "2026-03-01T10:00:00.000+00:00"
    assert store.all("categories", include_deleted=False) == []
    assert len(store.all("categories")) == 1


def test_load_replaces_table_and_returned_records_are_copies():
    store = LocalEntityStore(["tasks"])
    store.apply(Add("tasks", {"id": "old"}))
    store.load("tasks", [{"id": "n1", "title": "x"}, {"title": "no id"}])

    assert [r["id"] for r in store.all("tasks")] == ["n1"]
    got = store.get("tasks", "n1")
    got["title"] = "changed"
    assert store.get("tasks", "n1")["title"] == "x"


def test_load_command_for_unknown_table_adds_it():
    new_state, _ = transition({}, Load("events", [{"id": 1}]))
    assert new_state == {"events": {"1": {"id": 1}}}


def test_writes_are_stamped_with_store_generation():
    store = LocalEntityStore(["tasks"])
    store.load("tasks", [{"id": "t1", "title": "A"}, {"id": "t2", "title": "B"}])
    before = store.generation

    store.apply(Patch("tasks", "t1", {"title": "A2"}))
    store.apply(Replace("tasks", "tmp-1", {"id": "srv-1", "title": "C"}))
    store.touch("tasks", "t3")

    assert store.changed_since("tasks", "t1", before)
    assert store.changed_since("tasks", "srv-1", before)
    assert store.changed_since("tasks", "t3", before)
    assert not store.changed_since("tasks", "t2", before)
    assert not store.changed_since("tasks", "t1", store.generation)
