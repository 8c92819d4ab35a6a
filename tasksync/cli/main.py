from __future__ import annotations

import asyncio
import json
from pathlib import Path

import requests
import typer
from rich.console import Console
from rich.table import Table

from tasksync.core.config import DEFAULT_CONFIG_PATH, AppConfig, load_config
from tasksync.core.errors import Ok
from tasksync.core.log_tail import build_log_tail_payload
from tasksync.sync.conflicts import CHOICES, LOCAL, REMOTE
from tasksync.sync.service import SyncService, build_sync_service

app = typer.Typer(add_completion=False)
console = Console()
err_console = Console(stderr=True)

# A manual sync drains the queue and refetches every table before the web service answers.
SERVICE_TIMEOUT_SEC = 300
SERVICE_PROBE_TIMEOUT_SEC = 2


def _config_option():
    return typer.Option(DEFAULT_CONFIG_PATH, "--config", help="Path to config.yaml.")


def _service(path: Path) -> SyncService:
    cfg = load_config(path)
    return build_sync_service(cfg, config_path=path)


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


class ServiceClient:
    """Calls the HTTP API of a running ``tasksync-web``.

    Operations that drain the queue or touch the in-memory store must run
    inside that process: a second process would drain the same queue
    concurrently and its store changes would never reach the service.
    """

    def __init__(self, cfg: AppConfig):
        host = cfg.web_bind_host
        if host in ("", "0.0.0.0"):
            host = "127.0.0.1"
        elif host == "::":
            host = "::1"
        if ":" in host:
            host = f"[{host}]"
        self.base_url = f"http://{host}:{cfg.web_port}/api"

    def available(self) -> bool:
        try:
            res = requests.get(f"{self.base_url}/healthz", timeout=SERVICE_PROBE_TIMEOUT_SEC)
        except requests.RequestException:
            return False
        return res.ok

    def call(self, method: str, path: str, **kwargs):
        try:
            res = requests.request(method, f"{self.base_url}{path}", timeout=SERVICE_TIMEOUT_SEC, **kwargs)
        except requests.RequestException as e:
            console.print(f"[red]service request failed: {e}[/red]")
            raise typer.Exit(2)
        if not res.ok:
            console.print(f"[red]service returned {res.status_code}: {res.text[:200]}[/red]")
            raise typer.Exit(2)
        return res.json()


def _running_service(cfg: AppConfig) -> ServiceClient | None:
    client = ServiceClient(cfg)
    if client.available():
        return client
    err_console.print(f"[yellow]no service at {client.base_url}; running in this process[/yellow]")
    return None


class _ServiceConflicts:
    def __init__(self, client: ServiceClient):
        self.client = client

    def open_conflicts(self) -> list[dict]:
        return self.client.call("GET", "/conflicts")["items"]

    def resolve(self, conflict_id: str, choice: str) -> int:
        return int(self.client.call("POST", "/conflicts/resolve", json={conflict_id: choice})["resolved"])

    def resolve_all(self, choice: str) -> int:
        return int(self.client.call("POST", "/conflicts/resolve-all", json={"choice": choice})["resolved"])


class _LocalConflicts:
    def __init__(self, service: SyncService):
        self.resolver = service.resolver

    def open_conflicts(self) -> list[dict]:
        return [c.to_dict() for c in self.resolver.open_conflicts()]

    def resolve(self, conflict_id: str, choice: str) -> int:
        return int(self.resolver.resolve(conflict_id, choice))

    def resolve_all(self, choice: str) -> int:
        return self.resolver.resolve_all(choice)


@app.command("config-show")
def config_show(path: Path = _config_option()):
    """Show current config.yaml."""
    cfg = load_config(path)
    _print_json(cfg.model_dump())


@app.command()
def status(path: Path = _config_option()):
    """Show queue, conflict and connectivity summary."""
    service = _service(path)
    st = service.engine.get_sync_status()
    cfg = service.config

    table = Table(title="tasksync status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(path))
    table.add_row("remote", cfg.remote.url or "(unset)")
    table.add_row("signed_in", "yes" if service.gateway.is_authenticated() else "no")
    table.add_row("queue_length", str(st["queueLength"]))
    table.add_row("failed_operations", str(st["failedCount"]))
    table.add_row("open_conflicts", str(st["conflictCount"]))
    table.add_row("last_sync", st["lastSync"] or "-")
    table.add_row("auto_sync", "on" if cfg.sync.auto_sync else "off")
    table.add_row("sync_interval_ms", str(cfg.sync.sync_interval_ms))
    table.add_row("db", cfg.database.path)
    table.add_row("log", cfg.logging.file)
    table.add_row("web", f"http://{cfg.web_bind_host}:{cfg.web_port}")
    console.print(table)


@app.command()
def stats(path: Path = _config_option()):
    """Show sync statistics."""
    _print_json(_service(path).engine.get_sync_stats().to_dict())


@app.command("stats-reset")
def stats_reset(path: Path = _config_option()):
    """Reset sync statistics to zero."""
    _print_json(_service(path).engine.reset_sync_stats().to_dict())


@app.command("queue-list")
def queue_list(
    status_filter: str | None = typer.Option(None, "--status", help="pending, failed or conflict."),
    path: Path = _config_option(),
):
    """List queued operations, oldest first."""
    ops = _service(path).queue.all(status_filter)
    table = Table(title=f"pending operations ({len(ops)})")
    for col in ("seq", "table", "kind", "record", "status", "attempts", "last_error"):
        table.add_column(col)
    for op in ops:
        table.add_row(
            str(op.seq),
            op.table,
            op.kind,
            op.record_id or "-",
            op.status,
            str(op.attempts),
            (op.last_error or "")[:60],
        )
    console.print(table)


@app.command("queue-clear")
def queue_clear(
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation."),
    path: Path = _config_option(),
):
    """Drop every queued operation. Local data is left as it is."""
    service = _service(path)
    if not yes and not typer.confirm(f"Discard {service.queue.count()} queued operation(s)?"):
        raise typer.Exit(1)
    print(f"OK: removed={service.engine.clear_offline_queue()}")


@app.command("queue-retry-failed")
def queue_retry_failed(path: Path = _config_option()):
    """Put terminally failed operations back in the queue."""
    print(f"OK: requeued={_service(path).engine.retry_failed()}")


@app.command()
def sync(path: Path = _config_option()):
    """Run one manual sync (drain + full refresh) and print the summary."""
    cfg = load_config(path)
    client = _running_service(cfg)
    if client is not None:
        summary = client.call("POST", "/sync/run")
    else:
        service = build_sync_service(cfg, config_path=path)

        async def _run():
            await service.engine.monitor.probe_once()
            return await service.engine.manual_sync()

        summary = asyncio.run(_run()).to_dict()
    _print_json(summary)
    if summary.get("outcome") != "success":
        raise typer.Exit(2)


@app.command("conflicts-list")
def conflicts_list(path: Path = _config_option()):
    """List open conflicts in resolution order."""
    conflicts = _service(path).resolver.open_conflicts()
    table = Table(title=f"open conflicts ({len(conflicts)})")
    for col in ("id", "table", "record", "kind", "fields", "detected_at"):
        table.add_column(col)
    for c in conflicts:
        table.add_row(c.id, c.table, c.record_id, c.kind, ",".join(c.fields), c.detected_at)
    console.print(table)


def _show_conflict(conflict: dict) -> None:
    table = Table(title=f"{conflict['table']}/{conflict['recordId']} ({conflict['kind']})")
    table.add_column("field")
    table.add_column("local")
    table.add_column("remote")
    local = conflict.get("local") or {}
    remote = conflict.get("remote") or {}
    for f in conflict.get("fields") or sorted(set(local) | set(remote)):
        table.add_row(f, json.dumps(local.get(f), ensure_ascii=False), json.dumps(remote.get(f), ensure_ascii=False))
    console.print(table)


@app.command("conflicts-resolve")
def conflicts_resolve(
    conflict_id: str | None = typer.Option(None, "--id", help="Resolve one conflict non-interactively."),
    choice: str | None = typer.Option(None, "--choice", help="local or remote."),
    apply_all: bool = typer.Option(False, "--all", help="Apply --choice to every open conflict."),
    path: Path = _config_option(),
):
    """Resolve conflicts one at a time, or all at once with --all.

    Goes through the running web service when there is one, so that its
    store and queue see the resolution.
    """
    if choice is not None and choice not in CHOICES:
        console.print(f"[red]invalid choice: {choice}[/red]")
        raise typer.Exit(2)
    if (apply_all or conflict_id is not None) and choice is None:
        console.print(f"[red]{'--all' if apply_all else '--id'} requires --choice[/red]")
        raise typer.Exit(2)

    cfg = load_config(path)
    client = _running_service(cfg)
    if client is not None:
        resolver = _ServiceConflicts(client)
    else:
        resolver = _LocalConflicts(build_sync_service(cfg, config_path=path))

    if apply_all:
        print(f"OK: resolved={resolver.resolve_all(choice)} choice={choice}")
        return

    if conflict_id is not None:
        print(f"OK: resolved={resolver.resolve(conflict_id, choice)}")
        return

    resolved = 0
    while conflicts := resolver.open_conflicts():
        conflict = conflicts[0]
        _show_conflict(conflict)
        answer = typer.prompt(
            "Keep [l]ocal, [r]emote, [L] local for all, [R] remote for all, [q] quit",
            default="q",
        )
        if answer == "l":
            resolved += resolver.resolve(conflict["id"], LOCAL)
        elif answer == "r":
            resolved += resolver.resolve(conflict["id"], REMOTE)
        elif answer in ("L", "R"):
            resolved += resolver.resolve_all(LOCAL if answer == "L" else REMOTE)
            break
        else:
            break
    print(f"OK: resolved={resolved} remaining={len(resolver.open_conflicts())}")


@app.command("settings-set")
def settings_set(
    auto_sync: bool | None = typer.Option(None, "--auto-sync/--no-auto-sync"),
    interval_ms: int | None = typer.Option(None, "--interval-ms", help="5000|10000|30000|60000|300000|600000"),
    realtime: bool | None = typer.Option(None, "--realtime/--no-realtime"),
    conflict_resolution: bool | None = typer.Option(None, "--conflict-resolution/--no-conflict-resolution"),
    max_retries: int | None = typer.Option(None, "--max-retries", help="1|3|5|10"),
    path: Path = _config_option(),
):
    """Change persisted sync settings."""
    changes = {
        "auto_sync": auto_sync,
        "sync_interval_ms": interval_ms,
        "enable_realtime": realtime,
        "enable_conflict_resolution": conflict_resolution,
        "max_retries": max_retries,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    if not changes:
        console.print("[yellow]nothing to change[/yellow]")
        return
    try:
        updated = _service(path).engine.update_settings(**changes)
    except ValueError as e:
        console.print(f"[red]invalid settings: {e}[/red]")
        raise typer.Exit(2)
    _print_json(updated.model_dump())


@app.command("auth-login")
def auth_login(
    email: str = typer.Option(..., "--email"),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True),
    path: Path = _config_option(),
):
    """Sign in to the remote store and persist the session."""
    result = _service(path).gateway.sign_in(email, password)
    if not isinstance(result, Ok):
        console.print(f"[red]sign-in failed: {result.message}[/red]")
        raise typer.Exit(2)
    print(f"OK: user={(result.value.get('user') or {}).get('id')}")


@app.command("auth-logout")
def auth_logout(path: Path = _config_option()):
    """Sign out and drop the persisted session."""
    _service(path).gateway.sign_out()
    print("OK")


@app.command("logs-tail")
def logs_tail(
    n: int = typer.Option(200, "--n", min=1),
    level: str | None = typer.Option(None, "--level", help="Filter by log level (e.g. INFO)."),
    module: str | None = typer.Option(None, "--module", help="Filter by logger name, e.g. tasksync.sync."),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON."),
    path: Path = _config_option(),
):
    """Tail service log file."""
    cfg = load_config(path)
    payload = build_log_tail_payload(cfg.logging.file, n=n, level=level, logger=module)
    if json_output:
        _print_json(payload)
        return
    print(payload.get("tail", ""))


def main():
    app()


if __name__ == "__main__":
    main()
