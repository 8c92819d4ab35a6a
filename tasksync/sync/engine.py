"""Sync Engine: decides when the pending-operation queue is drained.

One drain cycle runs at a time. Triggers are the periodic timer, an
offline-to-online transition, an explicit manual sync, a new operation
enqueued while online, and the retry timer of an operation backing off.
A trigger that arrives while a cycle is running is a no-op.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from tasksync.core.config import AppConfig, save_config
from tasksync.core.errors import ConflictDetected, NetworkError, Ok, RejectedError, TaskSyncError
from tasksync.core.tasks import BackgroundTasks
from tasksync.core.timeutil import now_iso, parse_timestamp, utc_now

from .conflicts import ConflictResolver
from .connectivity import ConnectivityMonitor
from .db import get_conn
from .queue import CREATE, DELETE, STATUS_FAILED, PendingOperation, PendingOperationQueue
from .realtime import RealtimeListener
from .stats import StatsStore, SyncStatistics
from .store import LocalEntityStore, Remove, Replace

logger = logging.getLogger(__name__)

SCHEDULER_POLL_GRANULARITY_SEC = 1

SUCCESS = "success"
ERROR = "error"
SKIPPED_BUSY = "skipped_busy"
OFFLINE = "offline"
UNAUTHENTICATED = "unauthenticated"

# Per-operation delivery results
SENT = "sent"
RETRY = "retry"
TERMINAL = "terminal"
REJECTED = "rejected"
CONFLICT = "conflict"


def backoff_delay(attempt: int, base_sec: float, max_sec: float) -> float:
    """Seconds to wait after the ``attempt``-th failed delivery (1-based)."""
    return min(max_sec, base_sec * 2 ** max(attempt - 1, 0))


@dataclass
class SyncSummary:
    trigger: str
    outcome: str = SUCCESS
    started_at: str = field(default_factory=now_iso)
    finished_at: Optional[str] = None
    duration_ms: int = 0
    sent: int = 0
    retried: int = 0
    terminal: int = 0
    rejected: int = 0
    conflicts: int = 0
    deferred: int = 0
    remaining: int = 0
    refreshed: Optional[bool] = None
    error: Optional[str] = None

    @property
    def attempted(self) -> int:
        return self.sent + self.retried + self.terminal + self.rejected + self.conflicts

    def count(self, result: str):
        if result == SENT:
            self.sent += 1
        elif result == RETRY:
            self.retried += 1
        elif result == TERMINAL:
            self.terminal += 1
        elif result == REJECTED:
            self.rejected += 1
        elif result == CONFLICT:
            self.conflicts += 1

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SyncEngine:
    def __init__(
        self,
        config: AppConfig,
        store: LocalEntityStore,
        queue: PendingOperationQueue,
        stats: StatsStore,
        resolver: ConflictResolver,
        gateway: Any,
        listener: Optional[RealtimeListener] = None,
        config_path: Optional[Path] = None,
        monitor: Optional[ConnectivityMonitor] = None,
    ):
        self.config = config
        self.store = store
        self.queue = queue
        self.stats = stats
        self.resolver = resolver
        self.detector = resolver.detector
        self.gateway = gateway
        self.listener = listener
        self.config_path = config_path
        self.monitor = monitor or ConnectivityMonitor(gateway.ping, interval_sec=config.sync.connectivity_probe_sec)
        self.monitor.on_connectivity_change(self._on_connectivity_change)
        self.resolver.on_all_resolved = self._on_all_resolved

        self._drain_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._requested: list[str] = []
        self._scheduler_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._tasks = BackgroundTasks("engine")
        self.skipped_busy_count = 0
        self.last_summary: Optional[SyncSummary] = None

    @property
    def settings(self):
        return self.config.sync

    @property
    def online(self) -> bool:
        return self.monitor.online

    @property
    def is_syncing(self) -> bool:
        return self._drain_lock.locked()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._scheduler_task and not self._scheduler_task.done():
            return
        self._stop_event = asyncio.Event()
        self._scheduler_task = asyncio.create_task(self._scheduler_loop(self._stop_event), name="tasksync_scheduler")
        if self.listener is not None:
            authenticated = await asyncio.to_thread(self.gateway.is_authenticated)
            await self.listener.start(online=self.online, authenticated=authenticated)
        self.monitor.start()
        # Operations left over from a previous run are due now.
        self.request_sync("startup")

    async def stop(self) -> None:
        await self.monitor.stop()
        if self.listener is not None:
            await self.listener.stop()
        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None
        await self._tasks.cancel_all()
        if self._stop_event is not None:
            self._stop_event.set()
        self._wake.set()
        if self._scheduler_task is not None:
            try:
                await self._scheduler_task
            except Exception:
                logger.exception("scheduler_stop_error")
        self._scheduler_task = None
        self._stop_event = None

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def request_sync(self, reason: str) -> None:
        """Ask the scheduler for a drain cycle. Requests arriving before it runs are coalesced."""
        if reason not in self._requested:
            self._requested.append(reason)
        self._wake.set()
        logger.debug("sync_requested reason=%s", reason)

    def _on_connectivity_change(self, online: bool) -> None:
        if self.listener is not None:
            self._tasks.spawn(self.listener.on_connectivity_change(online), name="tasksync_listener_connectivity")
        if online:
            self.request_sync("reconnect")

    def _on_all_resolved(self) -> None:
        logger.info("conflicts_all_resolved resuming_drain")
        self.request_sync("conflicts_resolved")

    async def _wait_wake_or_timeout(self, timeout_sec: float) -> None:
        if timeout_sec <= 0:
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout_sec)
        except asyncio.TimeoutError:
            pass

    async def _run_cycle(self, trigger: str) -> None:
        try:
            summary = await self.sync_once(trigger)
            logger.info(
                "sync_cycle_completed trigger=%s outcome=%s sent=%s retried=%s conflicts=%s remaining=%s",
                trigger,
                summary.outcome,
                summary.sent,
                summary.retried,
                summary.conflicts,
                summary.remaining,
            )
        except Exception as e:
            logger.exception("sync_cycle_failed trigger=%s: %s", trigger, e)

    async def _scheduler_loop(self, stop_event: asyncio.Event) -> None:
        next_run_at_ts: float | None = None
        previous_interval: float | None = None
        logger.info("scheduler_started")
        try:
            while not stop_event.is_set():
                if self._requested:
                    reasons, self._requested = self._requested, []
                    self._wake.clear()
                    await self._run_cycle("+".join(reasons))
                    continue

                if not self.settings.auto_sync:
                    next_run_at_ts = None
                    previous_interval = None
                    self._wake.clear()
                    await self._wait_wake_or_timeout(SCHEDULER_POLL_GRANULARITY_SEC)
                    continue

                interval = self.settings.sync_interval_ms / 1000.0
                now_ts = time.time()
                if next_run_at_ts is None or previous_interval != interval:
                    next_run_at_ts = now_ts + interval
                previous_interval = interval

                wait_sec = next_run_at_ts - now_ts
                if wait_sec > 0:
                    self._wake.clear()
                    await self._wait_wake_or_timeout(min(wait_sec, SCHEDULER_POLL_GRANULARITY_SEC))
                    continue

                if self.online:
                    await self._run_cycle("periodic")
                next_run_at_ts = time.time() + interval
        finally:
            logger.info("scheduler_stopped")

    def _arm_retry_timer(self) -> None:
        if self._scheduler_task is None:
            return
        due = parse_timestamp(self.queue.next_due_at())
        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None
        if due is None:
            return
        delay = max(0.0, (due - utc_now()).total_seconds())

        async def _fire():
            await asyncio.sleep(delay)
            self._retry_task = None
            self.request_sync("retry")

        self._retry_task = self._tasks.spawn(_fire(), name="tasksync_retry_timer")
        logger.debug("retry_timer_armed delay=%.1fs", delay)

    # ------------------------------------------------------------------
    # Drain cycle
    # ------------------------------------------------------------------

    async def sync_once(self, trigger: str = "manual") -> SyncSummary:
        return await self._cycle(trigger, refresh=False)

    async def manual_sync(self) -> SyncSummary:
        """Drain the queue, then reconcile every table with the remote store."""
        return await self._cycle("manual", refresh=True)

    async def _cycle(self, trigger: str, refresh: bool) -> SyncSummary:
        summary = SyncSummary(trigger=trigger)
        if self._drain_lock.locked():
            self.skipped_busy_count += 1
            summary.outcome = SKIPPED_BUSY
            summary.finished_at = now_iso()
            logger.warning("sync_skipped_busy trigger=%s", trigger)
            return summary

        async with self._drain_lock:
            if not self.online:
                summary.outcome = OFFLINE
                summary.remaining = self.queue.count()
                summary.finished_at = now_iso()
                logger.info("sync_skipped_offline trigger=%s", trigger)
                return summary
            if not await asyncio.to_thread(self.gateway.is_authenticated):
                summary.outcome = UNAUTHENTICATED
                summary.remaining = self.queue.count()
                summary.finished_at = now_iso()
                logger.warning("sync_skipped_unauthenticated trigger=%s", trigger)
                return summary

            started = time.monotonic()
            try:
                tables = self.queue.tables_with_pending()
                await asyncio.gather(*(self._drain_table(t, summary) for t in tables))
            except TaskSyncError as e:
                summary.error = str(e)
                logger.error("sync_drain_failed trigger=%s error=%s", trigger, e)

            if refresh and self.listener is not None:
                summary.refreshed = await self.listener.refetch_all()

            failed = summary.retried or summary.terminal or summary.rejected or summary.deferred or summary.error
            summary.outcome = ERROR if failed else SUCCESS
            summary.duration_ms = int((time.monotonic() - started) * 1000)
            summary.finished_at = now_iso()
            summary.remaining = self.queue.count()

            if refresh or summary.attempted:
                self.stats.record(summary.outcome == SUCCESS, summary.duration_ms, summary.finished_at)
            self._record_run(summary)
            self.last_summary = summary

        self._arm_retry_timer()
        return summary

    async def _drain_table(self, table: str, summary: SyncSummary) -> None:
        # Records whose earliest operation is not confirmed yet; nothing later for them may be sent.
        skip: set[str] = set(self.resolver.held_records(table))
        now = utc_now()
        while True:
            op = self.queue.peek_next(table, skip)
            if op is None:
                return
            due = parse_timestamp(op.next_retry_at)
            if due is not None and due > now:
                skip.add(op.record_key)
                summary.deferred += 1
                continue
            result = await self._deliver(op)
            summary.count(result)
            if result != SENT:
                skip.add(op.record_key)

    async def _deliver(self, op: PendingOperation) -> str:
        if op.kind == CREATE:
            return await self._deliver_create(op)

        fetched = await asyncio.to_thread(self.gateway.fetch_one, op.table, op.record_id)
        if not isinstance(fetched, Ok):
            return self._failed(op, fetched)
        remote = fetched.value

        if op.kind == DELETE:
            return await self._deliver_delete(op, remote)
        return await self._deliver_update(op, remote)

    async def _deliver_create(self, op: PendingOperation) -> str:
        body = {k: v for k, v in op.payload.items() if k not in ("id", "user_id", "local_id")}
        result = await asyncio.to_thread(self.gateway.create, op.table, body)
        if not isinstance(result, Ok):
            return self._failed(op, result)

        confirmed = dict(result.value or {})
        provisional = op.record_id
        new_id = str(confirmed.get("id") or provisional)
        self.queue.remove(op.id)
        if new_id != provisional:
            self.queue.retarget_record(op.table, provisional, new_id)
        self.store.touch(op.table, new_id)
        local = self.store.get(op.table, provisional)
        if local is not None:
            if self.queue.has_pending_for(op.table, new_id):
                # Later local edits are still queued; keep them and only adopt the confirmed identity.
                record = {**local, "id": confirmed.get("id", provisional)}
                if confirmed.get("user_id"):
                    record["user_id"] = confirmed["user_id"]
            else:
                record = confirmed
            self.store.apply(Replace(op.table, provisional, record))
        logger.info("operation_confirmed id=%s table=%s kind=create record=%s->%s", op.id, op.table, provisional, new_id)
        return SENT

    def _conflict(self, op: PendingOperation, local: Optional[dict], remote: Optional[dict]) -> str:
        outcome = self.resolver.report(
            op.table,
            op.record_id,
            local,
            remote,
            op_id=op.id,
            enabled=self.settings.enable_conflict_resolution,
        )
        return CONFLICT if isinstance(outcome, ConflictDetected) else REJECTED

    async def _deliver_update(self, op: PendingOperation, remote: Optional[dict]) -> str:
        intended = {**(op.base or remote or {}), **op.payload}
        local = self.store.get(op.table, op.record_id) or intended
        if remote is None or self.detector.diverges(op.table, intended, remote, base=op.base):
            return self._conflict(op, local, remote)

        result = await asyncio.to_thread(self.gateway.update, op.table, op.record_id, op.payload)
        if not isinstance(result, Ok):
            return self._failed(op, result)
        self._confirm(op, result.value)
        return SENT

    async def _deliver_delete(self, op: PendingOperation, remote: Optional[dict]) -> str:
        entity = self.config.entity(op.table)
        if remote is None:
            # Already gone remotely; the delete has nothing left to do.
            self.queue.remove(op.id)
            self.store.touch(op.table, op.record_id)
            if not self.queue.has_pending_for(op.table, op.record_id):
                self.store.apply(Remove(op.table, op.record_id))
            logger.info("operation_confirmed id=%s table=%s kind=delete record=%s already_absent", op.id, op.table, op.record_id)
            return SENT

        local = self.store.get(op.table, op.record_id) if entity.soft_delete else None
        if self.detector.diverges(op.table, local, remote, base=op.base):
            return self._conflict(op, local, remote)

        if entity.soft_delete:
            stamp = op.payload.get("deleted_at") or now_iso()
            patch = {"deleted": True, "deleted_at": stamp, "updated_at": op.payload.get("updated_at") or stamp}
            result = await asyncio.to_thread(self.gateway.update, op.table, op.record_id, patch)
        else:
            result = await asyncio.to_thread(self.gateway.delete, op.table, op.record_id)
        if not isinstance(result, Ok):
            return self._failed(op, result)
        self._confirm(op, result.value if entity.soft_delete else None)
        return SENT

    def _confirm(self, op: PendingOperation, confirmed: Any) -> None:
        self.queue.remove(op.id)
        # A full refresh that fetched before this point must not roll the record back.
        self.store.touch(op.table, op.record_id)
        if isinstance(confirmed, dict) and not self.queue.has_pending_for(op.table, op.record_id):
            if self.store.get(op.table, op.record_id) is not None:
                self.store.apply(Replace(op.table, op.record_id, confirmed))
        logger.info("operation_confirmed id=%s table=%s kind=%s record=%s", op.id, op.table, op.kind, op.record_id)

    def _failed(self, op: PendingOperation, result: Any) -> str:
        if isinstance(result, NetworkError):
            attempts = op.attempts + 1
            delay = backoff_delay(attempts, self.settings.retry_backoff_base_sec, self.settings.retry_backoff_max_sec)
            next_retry_at = (utc_now() + timedelta(seconds=delay)).isoformat(timespec="milliseconds")
            attempts = self.queue.mark_failed(op.id, result.message, next_retry_at)
            if attempts >= self.settings.max_retries:
                self.queue.mark_terminal(op.id, f"retries_exhausted: {result.message}")
                return TERMINAL
            logger.warning(
                "operation_retry_scheduled id=%s table=%s attempts=%s delay=%.1fs error=%s",
                op.id,
                op.table,
                attempts,
                delay,
                result.message,
            )
            return RETRY

        message = result.message if isinstance(result, RejectedError) else str(result)
        self.queue.mark_terminal(op.id, f"rejected: {message}")
        return REJECTED

    def _record_run(self, summary: SyncSummary) -> None:
        try:
            conn = get_conn(self.queue.db_path)
            try:
                conn.execute(
                    "INSERT INTO sync_runs(run_type,status,started_at,finished_at,summary_json) VALUES (?,?,?,?,?)",
                    (
                        summary.trigger,
                        summary.outcome,
                        summary.started_at,
                        summary.finished_at,
                        json.dumps(summary.to_dict(), ensure_ascii=False),
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning("sync_run_record_failed %s", e)

    def recent_runs(self, limit: int = 50) -> list[dict[str, Any]]:
        conn = get_conn(self.queue.db_path)
        try:
            rows = conn.execute(
                "SELECT summary_json FROM sync_runs ORDER BY id DESC LIMIT ?", (int(limit),)
            ).fetchall()
        finally:
            conn.close()
        return [json.loads(r["summary_json"]) for r in rows if r["summary_json"]]

    # ------------------------------------------------------------------
    # Presentation-layer operations
    # ------------------------------------------------------------------

    def queue_operation(self, op: PendingOperation) -> PendingOperation:
        """Persist ``op``; raises :class:`QueuePersistenceError` if it cannot be stored."""
        queued = self.queue.enqueue(op)
        if self.online and self.settings.auto_sync:
            self.request_sync("enqueue")
        return queued

    def clear_offline_queue(self) -> int:
        """Drop every queued operation. Conflicts holding those operations are closed with them."""
        removed = self.queue.clear()
        self.resolver.clear()
        if self._retry_task is not None:
            self._retry_task.cancel()
            self._retry_task = None
        return removed

    def retry_failed(self) -> int:
        requeued = self.queue.retry_failed()
        logger.info("failed_operations_requeued count=%s", requeued)
        if requeued and self.online:
            self.request_sync("retry_failed")
        return requeued

    def set_online(self, online: bool) -> bool:
        return self.monitor.set_online(online)

    def set_auto_sync(self, enabled: bool):
        return self.update_settings(auto_sync=bool(enabled))

    def set_sync_interval(self, interval_ms: int):
        return self.update_settings(sync_interval_ms=int(interval_ms))

    def update_settings(self, **changes):
        """Validate, apply and persist setting changes. Raises ``ValueError`` for unrecognized values."""
        current = self.settings
        updated = current.model_validate({**current.model_dump(), **changes})
        self.config.sync = updated
        if self.listener is not None:
            self.listener.settings = updated
        self.monitor.interval_sec = updated.connectivity_probe_sec
        if self.config_path is not None:
            save_config(self.config, self.config_path)
        logger.info("sync_settings_updated %s", ",".join(f"{k}={v}" for k, v in sorted(changes.items())))
        if self.listener is not None and updated.enable_realtime != current.enable_realtime:
            self._tasks.spawn(self.listener.refresh_subscriptions("settings"), name="tasksync_listener_settings")
        return updated

    def get_sync_status(self) -> dict[str, Any]:
        stats = self.stats.load()
        next_auto = None
        last = parse_timestamp(stats.last_sync)
        if self.settings.auto_sync and last is not None:
            next_auto = (last + timedelta(milliseconds=self.settings.sync_interval_ms)).isoformat(timespec="milliseconds")
        conflicts = self.resolver.count()
        return {
            "isOnline": self.online,
            "queueLength": self.queue.count(),
            "lastSync": stats.last_sync,
            "syncInProgress": self.is_syncing,
            "hasConflicts": conflicts > 0,
            "conflictCount": conflicts,
            "failedCount": self.queue.count(STATUS_FAILED),
            "nextAutoSync": next_auto,
            "autoSync": self.settings.auto_sync,
            "realtimeSubscribed": bool(self.listener and self.listener.subscribed),
        }

    def get_sync_stats(self) -> SyncStatistics:
        return self.stats.load()

    def reset_sync_stats(self) -> SyncStatistics:
        return self.stats.reset()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def sign_in(self, email: str, password: str):
        result = await asyncio.to_thread(self.gateway.sign_in, email, password)
        if isinstance(result, Ok):
            if self.listener is not None:
                await self.listener.on_auth_change(True)
            self.request_sync("signed_in")
        return result

    async def sign_out(self) -> None:
        await asyncio.to_thread(self.gateway.sign_out)
        if self.listener is not None:
            await self.listener.on_auth_change(False)
