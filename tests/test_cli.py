import json
from pathlib import Path

import pytest
from fakes import make_config
from typer.testing import CliRunner

from tasksync.cli import main as cli_main
from tasksync.cli.main import ServiceClient, app
from tasksync.core.config import load_config, save_config

runner = CliRunner()


class _Response:
    def __init__(self, payload, status_code: int = 200):
        self.payload = payload
        self.status_code = status_code
        self.ok = status_code < 400
        self.text = json.dumps(payload)

    def json(self):
        return self.payload


def _config_file(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    save_config(make_config(tmp_path), path)
    return path


@pytest.fixture
def no_running_service(monkeypatch):
    monkeypatch.setattr(ServiceClient, "available", lambda self: False)


@pytest.fixture
def running_service(monkeypatch):
    calls = []
    replies = {
        ("GET", "/api/healthz"): {"ok": True, "status": "alive"},
        ("POST", "/api/sync/run"): {"trigger": "manual", "outcome": "success", "sent": 2},
        ("POST", "/api/conflicts/resolve"): {"ok": True, "resolved": 1, "remaining": 0},
        ("POST", "/api/conflicts/resolve-all"): {"ok": True, "resolved": 3, "remaining": 0},
    }

    def _request(method, url, timeout=None, **kwargs):
        path = url[url.index("/api"):]
        calls.append((method, path, kwargs.get("json")))
        return _Response(replies[(method, path)])

    monkeypatch.setattr(cli_main.requests, "request", _request)
    monkeypatch.setattr(cli_main.requests, "get", lambda url, timeout=None: _request("GET", url))
    return calls


def test_stats_prints_counters(tmp_path: Path):
    path = _config_file(tmp_path)
    result = runner.invoke(app, ["stats", "--config", str(path)])
    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["totalSyncs"] == 0


def test_settings_set_persists_and_validates(tmp_path: Path):
    path = _config_file(tmp_path)

    ok = runner.invoke(app, ["settings-set", "--interval-ms", "300000", "--no-auto-sync", "--config", str(path)])
    bad = runner.invoke(app, ["settings-set", "--interval-ms", "1234", "--config", str(path)])

    assert ok.exit_code == 0, ok.output
    assert bad.exit_code == 2
    cfg = load_config(path)
    assert cfg.sync.sync_interval_ms == 300000
    assert cfg.sync.auto_sync is False


def test_queue_clear_and_conflicts_resolve_on_empty_state(tmp_path: Path, no_running_service):
    path = _config_file(tmp_path)

    cleared = runner.invoke(app, ["queue-clear", "--yes", "--config", str(path)])
    resolved = runner.invoke(app, ["conflicts-resolve", "--all", "--choice", "remote", "--config", str(path)])
    missing_choice = runner.invoke(app, ["conflicts-resolve", "--all", "--config", str(path)])

    assert cleared.exit_code == 0
    assert "removed=0" in cleared.output
    assert resolved.exit_code == 0
    assert "resolved=0" in resolved.output
    assert missing_choice.exit_code == 2


def test_sync_runs_inside_the_running_service(tmp_path: Path, running_service):
    path = _config_file(tmp_path)

    result = runner.invoke(app, ["sync", "--config", str(path)])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["sent"] == 2
    assert running_service == [("GET", "/api/healthz", None), ("POST", "/api/sync/run", None)]


def test_conflicts_resolve_goes_through_the_running_service(tmp_path: Path, running_service):
    path = _config_file(tmp_path)

    one = runner.invoke(app, ["conflicts-resolve", "--id", "c1", "--choice", "local", "--config", str(path)])
    every = runner.invoke(app, ["conflicts-resolve", "--all", "--choice", "remote", "--config", str(path)])

    assert one.exit_code == 0, one.output
    assert "resolved=1" in one.output
    assert every.exit_code == 0, every.output
    assert "resolved=3" in every.output
    posts = [c for c in running_service if c[0] == "POST"]
    assert posts == [
        ("POST", "/api/conflicts/resolve", {"c1": "local"}),
        ("POST", "/api/conflicts/resolve-all", {"choice": "remote"}),
    ]


def test_service_error_exits_with_failure(tmp_path: Path, monkeypatch):
    path = _config_file(tmp_path)
    monkeypatch.setattr(ServiceClient, "available", lambda self: True)
    monkeypatch.setattr(cli_main.requests, "request", lambda *a, **kw: _Response({"detail": "boom"}, 500))

    result = runner.invoke(app, ["sync", "--config", str(path)])

    assert result.exit_code == 2


def test_service_url_targets_loopback_for_wildcard_binds(tmp_path: Path):
    cfg = make_config(tmp_path)
    cfg.web_bind_host = "0.0.0.0"
    assert ServiceClient(cfg).base_url == f"http://127.0.0.1:{cfg.web_port}/api"
    cfg.web_bind_host = "::"
    assert ServiceClient(cfg).base_url == f"http://[::1]:{cfg.web_port}/api"
