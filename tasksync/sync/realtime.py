"""Realtime Change Listener.

Push events are queued by the subscription callbacks and applied one at
a time by a dedicated consumer task. A push for a record that still has
local intent (a queued operation or an open conflict) never overwrites
the local copy; it goes through the conflict check instead.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from tasksync.core.config import SyncSettings
from tasksync.core.errors import ConflictDetected, Ok
from tasksync.core.tasks import BackgroundTasks
from tasksync.remote.realtime_socket import DELETE, INSERT, ChangeEvent, SubscriptionHandle

from .conflicts import ConflictResolver
from .queue import CREATE, PendingOperationQueue
from .store import Add, LocalEntityStore, Remove, Replace

logger = logging.getLogger(__name__)

APPLIED = "applied"
IGNORED = "ignored"
HELD = "held"
CONFLICT = "conflict"
REJECTED = "rejected"


class RealtimeListener:
    def __init__(
        self,
        store: LocalEntityStore,
        queue: PendingOperationQueue,
        resolver: ConflictResolver,
        gateway: Any,
        settings: SyncSettings,
    ):
        self.store = store
        self.queue = queue
        self.resolver = resolver
        self.detector = resolver.detector
        self.gateway = gateway
        self.settings = settings
        self.online = False
        self.authenticated = False
        # Owner of the signed-in session, read off the event loop on start and on auth changes.
        self.owner_id: Optional[str] = None
        self.inbox: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._handles: dict[str, SubscriptionHandle] = {}
        self._consumer: Optional[asyncio.Task] = None
        self._refetches = BackgroundTasks("realtime_listener")

    @property
    def tables(self) -> list[str]:
        return list(self.settings.tables)

    @property
    def subscribed(self) -> bool:
        return bool(self._handles)

    def should_subscribe(self) -> bool:
        return bool(self.settings.enable_realtime and self.online and self.authenticated)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def _owned(self, event: ChangeEvent) -> bool:
        owner = self.owner_id
        row = event.after or event.before or {}
        row_owner = row.get("user_id")
        return not row_owner or not owner or str(row_owner) == str(owner)

    def handle_change(self, event: ChangeEvent) -> str:
        rid = event.record_id
        if event.table not in self.store.tables() or rid is None:
            return IGNORED
        if not self._owned(event):
            logger.debug("realtime_event_ignored reason=foreign_owner table=%s record=%s", event.table, rid)
            return IGNORED

        held = self.queue.for_record(event.table, rid)
        if held or self.resolver.has_open(event.table, rid):
            return self._check_against_local(event, rid, held)

        if event.event_type == DELETE:
            self.store.apply(Remove(event.table, rid))
        elif event.event_type == INSERT and self.store.get(event.table, rid) is None:
            self.store.apply(Add(event.table, event.after))
        else:
            self.store.apply(Replace(event.table, rid, event.after))
        logger.debug("realtime_event_applied table=%s record=%s type=%s", event.table, rid, event.event_type)
        return APPLIED

    def _check_against_local(self, event: ChangeEvent, rid: str, held: list) -> str:
        first = held[0] if held else None
        local = self.store.get(event.table, rid)
        if local is None and first is not None and first.kind == CREATE:
            local = dict(first.payload, id=rid)
        remote = None if event.event_type == DELETE else event.after
        base = first.base if first is not None else None

        if not self.detector.diverges(event.table, local, remote, base=base):
            logger.info("realtime_event_held table=%s record=%s", event.table, rid)
            return HELD

        outcome = self.resolver.report(
            event.table,
            rid,
            local,
            remote,
            op_id=first.id if first is not None else None,
            enabled=self.settings.enable_conflict_resolution,
        )
        return CONFLICT if isinstance(outcome, ConflictDetected) else REJECTED

    async def _consume(self) -> None:
        while True:
            event = await self.inbox.get()
            try:
                self.handle_change(event)
            except Exception as e:
                logger.exception("realtime_event_failed table=%s: %s", event.table, e)
            finally:
                self.inbox.task_done()

    # ------------------------------------------------------------------
    # Full refresh
    # ------------------------------------------------------------------

    def reconcile(
        self,
        table: str,
        remote_rows: list[dict[str, Any]],
        since: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Merge a full remote snapshot of ``table`` into the store and return the loaded rows.

        ``since`` is the store generation read before the snapshot was
        fetched. Records written locally after that point are newer than
        the snapshot and keep their local copy.
        """
        merged: list[dict[str, Any]] = []
        seen: set[str] = set()
        for remote in remote_rows:
            rid = str(remote.get("id"))
            seen.add(rid)
            held = self.queue.for_record(table, rid)
            newer = since is not None and self.store.changed_since(table, rid, since)
            if not held and not newer and not self.resolver.has_open(table, rid):
                merged.append(remote)
                continue
            local = self.store.get(table, rid)
            if local is None:
                # Deleted locally; the queued or confirmed delete decides.
                continue
            if held and self.detector.diverges(table, local, remote, base=held[0].base):
                self.resolver.report(
                    table, rid, local, remote, op_id=held[0].id, enabled=self.settings.enable_conflict_resolution
                )
            merged.append(local)

        for local in self.store.all(table):
            rid = str(local.get("id"))
            if rid in seen:
                continue
            if (
                self.queue.has_pending_for(table, rid)
                or self.resolver.has_open(table, rid)
                or (since is not None and self.store.changed_since(table, rid, since))
            ):
                merged.append(local)

        self.store.load(table, merged)
        return merged

    async def refetch(self, table: str) -> bool:
        since = self.store.generation
        result = await asyncio.to_thread(self.gateway.fetch_all, table)
        if not isinstance(result, Ok):
            logger.warning("refetch_failed table=%s error=%s", table, getattr(result, "message", result))
            return False
        rows = self.reconcile(table, list(result.value or []), since=since)
        logger.info("refetch_done table=%s rows=%s", table, len(rows))
        return True

    async def refetch_all(self) -> bool:
        results = await asyncio.gather(*(self.refetch(t) for t in self.tables))
        return all(results)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _on_push(self, event: ChangeEvent) -> None:
        self.inbox.put_nowait(event)

    def _on_socket_reconnect(self) -> None:
        logger.info("realtime_reconnected refetching")
        self._refetches.spawn(self.refetch_all(), name="tasksync_realtime_refetch")

    async def _subscribe_all(self) -> None:
        if self._handles:
            return
        self.gateway.set_reconnect_handler(self._on_socket_reconnect)
        for table in self.tables:
            self._handles[table] = self.gateway.subscribe(table, self._on_push)
        # Events missed while unsubscribed are never replayed.
        await self.refetch_all()

    def _unsubscribe_all(self, reason: str) -> None:
        if not self._handles:
            return
        for handle in self._handles.values():
            self.gateway.unsubscribe(handle)
        self._handles.clear()
        self.gateway.set_reconnect_handler(None)
        logger.info("realtime_torn_down reason=%s", reason)

    async def refresh_subscriptions(self, reason: str = "settings") -> None:
        if self.should_subscribe():
            await self._subscribe_all()
        else:
            self._unsubscribe_all(reason)

    async def on_connectivity_change(self, online: bool) -> None:
        self.online = bool(online)
        await self.refresh_subscriptions("offline" if not online else "online")

    async def on_auth_change(self, authenticated: bool) -> None:
        self.authenticated = bool(authenticated)
        self.owner_id = await asyncio.to_thread(self.gateway.user_id) if authenticated else None
        await self.refresh_subscriptions("signed_out" if not authenticated else "signed_in")

    async def start(self, online: bool, authenticated: bool) -> None:
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume(), name="tasksync_realtime_listener")
        self.online = online
        self.authenticated = authenticated
        self.owner_id = await asyncio.to_thread(self.gateway.user_id) if authenticated else None
        await self.refresh_subscriptions("start")

    async def stop(self) -> None:
        self._unsubscribe_all("stop")
        await self._refetches.cancel_all()
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass
