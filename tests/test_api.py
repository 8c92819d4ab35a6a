from fakes import seed
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tasksync.core.errors import QueuePersistenceError
from tasksync.remote.realtime_socket import UPDATE, ChangeEvent
from tasksync.web import api as api_module
from tasksync.web.security import NetworkAllowlistMiddleware

TASK = {"id": "t1", "title": "Write report", "priority": "low", "updated_at": "2026-03-01T09:00:00.000+00:00"}


def _build_client(service) -> TestClient:
    app = FastAPI()
    app.state.service = service
    api_module.install_error_handlers(app)
    app.include_router(api_module.router)
    return TestClient(app)


def test_healthz_returns_alive(make_service):
    with _build_client(make_service()) as client:
        resp = client.get("/api/healthz")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["ok"] is True
    assert payload["status"] == "alive"
    assert "checked_at" in payload


def test_create_entity_is_visible_and_queued(make_service):
    service = make_service()
    with _build_client(service) as client:
        resp = client.post("/api/entities/tasks", json={"title": "Buy milk", "priority": "high"})
        assert resp.status_code == 201
        created = resp.json()

        listed = client.get("/api/entities/tasks").json()
        status = client.get("/api/sync/status").json()
        queue = client.get("/api/sync/queue").json()

    assert listed["count"] == 1
    assert listed["items"][0]["id"] == created["id"]
    assert status["queueLength"] == 1
    assert status["isOnline"] is False
    assert queue["items"][0]["kind"] == "create"
    assert queue["items"][0]["recordId"] == created["id"]


def test_unknown_table_and_missing_record_return_404(make_service):
    with _build_client(make_service()) as client:
        assert client.get("/api/entities/habits").status_code == 404
        assert client.post("/api/entities/habits", json={"title": "x"}).status_code == 404
        resp = client.patch("/api/entities/tasks/nope", json={"title": "x"})
    assert resp.status_code == 404
    assert resp.json()["detail"].startswith("record_not_found")


def test_failed_enqueue_rolls_back_and_returns_503(make_service, monkeypatch):
    service = make_service()
    seed(service, "tasks", TASK)

    def _broken_enqueue(_op):
        raise QueuePersistenceError("disk full")

    monkeypatch.setattr(service.queue, "enqueue", _broken_enqueue)
    with _build_client(service) as client:
        resp = client.patch("/api/entities/tasks/t1", json={"title": "Lost edit"})
        created = client.post("/api/entities/tasks", json={"title": "Lost task"})

    assert resp.status_code == 503
    assert created.status_code == 503
    assert service.store.get("tasks", "t1")["title"] == TASK["title"]
    assert [r["id"] for r in service.store.all("tasks")] == ["t1"]


def test_settings_are_validated(make_service):
    service = make_service()
    with _build_client(service) as client:
        bad_interval = client.post("/api/sync/settings", json={"syncInterval": 12345})
        unknown = client.post("/api/sync/settings", json={"theme": "dark"})
        ok = client.post("/api/sync/settings", json={"syncInterval": 60000, "autoSync": False, "maxRetries": 5})
        current = client.get("/api/sync/settings").json()

    assert bad_interval.status_code == 400
    assert unknown.status_code == 400
    assert ok.status_code == 200
    assert current == {
        "autoSync": False,
        "syncInterval": 60000,
        "enableRealtime": True,
        "enableConflictResolution": True,
        "maxRetries": 5,
    }


def test_manual_sync_after_going_online(make_service):
    service = make_service()
    seed(service, "tasks", TASK)
    service.mutations.update("tasks", "t1", {"title": "Edited offline"})
    with _build_client(service) as client:
        offline = client.post("/api/sync/run").json()
        assert client.post("/api/sync/connectivity", json={"online": "yes"}).status_code == 400
        assert client.post("/api/sync/connectivity", json={"online": True}).json()["isOnline"] is True
        summary = client.post("/api/sync/run").json()
        stats = client.get("/api/sync/stats").json()
        history = client.get("/api/sync/history", params={"limit": 5}).json()

    assert offline["outcome"] == "offline"
    assert summary["outcome"] == "success"
    assert summary["sent"] == 1
    assert stats["successfulSyncs"] == 1
    assert history["items"][0]["trigger"] == "manual"
    assert service.gateway.rows["tasks"]["t1"]["title"] == "Edited offline"


def test_conflicts_are_listed_and_resolved(make_service):
    service = make_service()
    seed(service, "tasks", TASK)
    service.mutations.update("tasks", "t1", {"priority": "high"})
    service.listener.handle_change(ChangeEvent("tasks", UPDATE, before=TASK, after={**TASK, "priority": "urgent"}))

    with _build_client(service) as client:
        listed = client.get("/api/conflicts").json()
        conflict_id = listed["items"][0]["id"]
        invalid = client.post("/api/conflicts/resolve", json={conflict_id: "both"})
        resolved = client.post("/api/conflicts/resolve", json={conflict_id: "remote"}).json()
        again = client.post("/api/conflicts/resolve", json={conflict_id: "remote"}).json()

    assert listed["count"] == 1
    assert listed["items"][0]["fields"] == ["priority"]
    assert invalid.status_code == 400
    assert resolved == {"ok": True, "resolved": 1, "remaining": 0}
    assert again["resolved"] == 0
    assert service.store.get("tasks", "t1")["priority"] == "urgent"


def test_clear_queue_endpoint(make_service):
    service = make_service()
    with _build_client(service) as client:
        client.post("/api/entities/tasks", json={"title": "a"})
        client.post("/api/entities/tasks", json={"title": "b"})
        resp = client.delete("/api/sync/queue").json()
        listed = client.get("/api/entities/tasks").json()

    assert resp == {"ok": True, "removed": 2}
    assert listed["count"] == 2


def test_login_and_logout(make_service):
    service = make_service()
    service.gateway.authenticated = False
    with _build_client(service) as client:
        missing = client.post("/api/auth/login", json={"email": "me@example.com"})
        login = client.post("/api/auth/login", json={"email": "me@example.com", "password": "pw"}).json()
        logout = client.post("/api/auth/logout").json()

    assert missing.status_code == 400
    assert login == {"ok": True, "user_id": "user-1"}
    assert logout == {"ok": True}
    assert service.gateway.authenticated is False


def test_allowlist_rejects_unknown_source():
    app = FastAPI()
    app.add_middleware(NetworkAllowlistMiddleware, allowed_nets=["10.0.0.0/8"])
    app.include_router(api_module.router)
    resp = TestClient(app).get("/api/healthz")
    assert resp.status_code == 403


def test_invalid_allowlist_fails_closed():
    app = FastAPI()
    app.add_middleware(NetworkAllowlistMiddleware, allowed_nets=["not-a-network"])
    app.include_router(api_module.router)
    resp = TestClient(app).get("/api/healthz")
    assert resp.status_code == 503
