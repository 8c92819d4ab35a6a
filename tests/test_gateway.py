import json
import time
from pathlib import Path

import requests

from tasksync.core.errors import NetworkError, Ok, RejectedError
from tasksync.remote.gateway import RemoteGateway, classify_response


def _response(status: int, payload=None, text: str = "") -> requests.Response:
    res = requests.Response()
    res.status_code = status
    res._content = json.dumps(payload).encode() if payload is not None else text.encode()
    return res


class _FakeHttp:
    def __init__(self, responses=None, error: Exception | None = None):
        self.responses = list(responses or [])
        self.error = error
        self.requests: list[dict] = []

    def request(self, method, url, **kwargs):
        self.requests.append({"method": method, "url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)

    def get(self, url, **kwargs):
        return self.request("GET", url, **kwargs)


def _gateway(tmp_path: Path, http: _FakeHttp, signed_in: bool = True) -> RemoteGateway:
    session_file = tmp_path / "session.json"
    if signed_in:
        session_file.write_text(
            json.dumps(
                {
                    "access_token": "tok-1",
                    "refresh_token": "ref-1",
                    "expires_at": int(time.time()) + 3600,
                    "user": {"id": "user-1"},
                }
            ),
            encoding="utf-8",
        )
    return RemoteGateway("https://demo.example.co", "anon", session_file=str(session_file), http=http)


def test_classify_response_maps_status_codes():
    assert classify_response(_response(200, [{"id": "t1"}])) == Ok([{"id": "t1"}])
    assert classify_response(_response(204)) == Ok(None)
    assert isinstance(classify_response(_response(503, {"message": "down"})), NetworkError)
    assert isinstance(classify_response(_response(429, {"message": "slow down"})), NetworkError)

    rejected = classify_response(_response(403, {"message": "row-level security"}))
    assert rejected == RejectedError("row-level security", status=403)


def test_connection_failure_is_a_network_error(tmp_path: Path):
    gateway = _gateway(tmp_path, _FakeHttp(error=requests.ConnectionError("refused")))
    result = gateway.fetch_all("tasks")
    assert isinstance(result, NetworkError)
    assert "ConnectionError" in result.message


def test_create_stamps_owner_and_sends_bearer_token(tmp_path: Path):
    http = _FakeHttp([_response(201, [{"id": "srv-1", "title": "New", "user_id": "user-1"}])])
    gateway = _gateway(tmp_path, http)

    result = gateway.create("tasks", {"title": "New"})

    assert result == Ok({"id": "srv-1", "title": "New", "user_id": "user-1"})
    sent = http.requests[0]
    assert sent["method"] == "POST"
    assert sent["url"] == "https://demo.example.co/rest/v1/tasks"
    assert sent["json"] == {"title": "New", "user_id": "user-1"}
    assert sent["headers"]["Authorization"] == "Bearer tok-1"
    assert sent["headers"]["Prefer"] == "return=representation"


def test_update_of_missing_row_is_rejected(tmp_path: Path):
    gateway = _gateway(tmp_path, _FakeHttp([_response(200, [])]))
    result = gateway.update("tasks", "t1", {"title": "x"})
    assert result == RejectedError("not_found", status=404)


def test_fetch_one_returns_none_for_missing_row(tmp_path: Path):
    http = _FakeHttp([_response(200, [])])
    gateway = _gateway(tmp_path, http)

    assert gateway.fetch_one("tasks", "t1") == Ok(None)
    assert http.requests[0]["params"]["id"] == "eq.t1"


def test_sign_in_persists_session_and_sign_out_drops_it(tmp_path: Path):
    token = {"access_token": "tok-2", "refresh_token": "ref-2", "expires_in": 3600, "user": {"id": "user-2"}}
    http = _FakeHttp([_response(200, token), _response(204)])
    gateway = _gateway(tmp_path, http, signed_in=False)
    assert gateway.is_authenticated() is False

    result = gateway.sign_in("me@example.com", "secret")

    assert isinstance(result, Ok)
    assert gateway.is_authenticated() is True
    assert gateway.user_id() == "user-2"
    assert http.requests[0]["params"] == {"grant_type": "password"}

    gateway.sign_out()
    assert gateway.is_authenticated() is False
    assert not Path(gateway.session_file).exists()


def test_expired_session_is_refreshed_before_use(tmp_path: Path):
    refreshed = {"access_token": "tok-new", "refresh_token": "ref-new", "expires_in": 3600}
    http = _FakeHttp([_response(200, refreshed), _response(200, [])])
    gateway = _gateway(tmp_path, http)
    session = json.loads(Path(gateway.session_file).read_text(encoding="utf-8"))
    session["expires_at"] = int(time.time()) - 10
    Path(gateway.session_file).write_text(json.dumps(session), encoding="utf-8")

    gateway.fetch_all("tasks")

    assert http.requests[0]["json"] == {"refresh_token": "ref-1"}
    assert http.requests[1]["headers"]["Authorization"] == "Bearer tok-new"
    assert gateway.user_id() == "user-1"


def test_realtime_url_follows_rest_scheme(tmp_path: Path):
    gateway = _gateway(tmp_path, _FakeHttp())
    assert gateway.socket.url.startswith("wss://demo.example.co/realtime/v1/websocket?apikey=anon")
