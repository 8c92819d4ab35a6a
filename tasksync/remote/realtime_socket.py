"""Push channel for row changes.

Speaks the Phoenix channel protocol used by the realtime endpoint: one
websocket, one ``realtime:<schema>:<table>`` topic per table, heartbeats
on the ``phoenix`` topic. Incoming ``postgres_changes`` messages become
:class:`ChangeEvent` objects handed to the registered callbacks.

The channel gives no gap-filling guarantee. Callers refetch after a
reconnect.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import websockets
from websockets.exceptions import WebSocketException

from tasksync.core.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None

    @property
    def record_id(self) -> Optional[str]:
        row = self.after or self.before or {}
        rid = row.get("id")
        return str(rid) if rid is not None else None


@dataclass(frozen=True)
class SubscriptionHandle:
    table: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


ChangeCallback = Callable[[ChangeEvent], None]


def parse_change_message(message: Dict[str, Any]) -> Optional[ChangeEvent]:
    if message.get("event") != "postgres_changes":
        return None
    data = (message.get("payload") or {}).get("data") or {}
    table = data.get("table")
    event_type = str(data.get("type") or data.get("eventType") or "").upper()
    if not table or event_type not in (INSERT, UPDATE, DELETE):
        return None
    before = data.get("old_record") or None
    after = data.get("record") or None
    if event_type == DELETE:
        after = None
    return ChangeEvent(table=table, event_type=event_type, before=before, after=after)


class RealtimeSocket:
    HEARTBEAT_SEC = 30.0

    def __init__(
        self,
        url: str,
        token_provider: Callable[[], Optional[str]],
        schema: str = "public",
        reconnect_delay_sec: float = 5.0,
        connect: Optional[Callable[..., Any]] = None,
    ):
        self.url = url
        self.token_provider = token_provider
        self.schema = schema
        self.reconnect_delay_sec = reconnect_delay_sec
        self._connect = connect or websockets.connect
        self._callbacks: Dict[str, Dict[str, ChangeCallback]] = {}
        self._refs = itertools.count(1)
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._sends = BackgroundTasks("realtime_socket")
        self._connections = 0
        # Called after every reconnection; events sent while disconnected are lost.
        self.on_reconnect: Optional[Callable[[], None]] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def _topic(self, table: str) -> str:
        return f"realtime:{self.schema}:{table}"

    def _frame(self, topic: str, event: str, payload: Dict[str, Any]) -> str:
        return json.dumps({"topic": topic, "event": event, "payload": payload, "ref": str(next(self._refs))})

    async def _access_token(self) -> Optional[str]:
        # The provider may refresh the session over HTTP and rewrite the session file.
        return await asyncio.to_thread(self.token_provider)

    def _join_frame(self, table: str, token: Optional[str]) -> str:
        payload = {
            "config": {"postgres_changes": [{"event": "*", "schema": self.schema, "table": table}]},
            "access_token": token,
        }
        return self._frame(self._topic(table), "phx_join", payload)

    async def _join(self, table: str) -> None:
        token = await self._access_token()
        if table in self._callbacks:
            await self._send(self._join_frame(table, token))

    def add(self, table: str, callback: ChangeCallback) -> SubscriptionHandle:
        """Register ``callback`` for ``table``. Must be called from the running event loop."""
        handle = SubscriptionHandle(table=table)
        first_for_table = table not in self._callbacks
        self._callbacks.setdefault(table, {})[handle.id] = callback
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run(), name="tasksync_realtime_socket")
        elif first_for_table and self._ws is not None:
            self._sends.spawn(self._join(table), name=f"tasksync_realtime_join_{table}")
        logger.info("realtime_subscribed table=%s handle=%s", table, handle.id)
        return handle

    def remove(self, handle: SubscriptionHandle) -> None:
        callbacks = self._callbacks.get(handle.table)
        if not callbacks or callbacks.pop(handle.id, None) is None:
            return
        logger.info("realtime_unsubscribed table=%s handle=%s", handle.table, handle.id)
        if callbacks:
            return
        del self._callbacks[handle.table]
        if self._ws is not None:
            leave = self._frame(self._topic(handle.table), "phx_leave", {})
            self._sends.spawn(self._send(leave), name="tasksync_realtime_leave")
        if not self._callbacks and self._task is not None:
            self._task.cancel()
            self._task = None

    async def close(self) -> None:
        self._callbacks.clear()
        await self._sends.cancel_all()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _send(self, frame: str) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(frame)
        except (OSError, WebSocketException) as e:
            logger.warning("realtime_send_failed %s", e)

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.HEARTBEAT_SEC)
            await self._send(self._frame("phoenix", "heartbeat", {}))

    def dispatch(self, raw: str | bytes) -> Optional[ChangeEvent]:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("realtime_message_unparseable")
            return None
        if message.get("event") == "phx_reply" and (message.get("payload") or {}).get("status") == "error":
            logger.error("realtime_join_rejected topic=%s payload=%s", message.get("topic"), message.get("payload"))
            return None
        event = parse_change_message(message)
        if event is None:
            return None
        for callback in list(self._callbacks.get(event.table, {}).values()):
            callback(event)
        return event

    async def _run(self) -> None:
        while self._callbacks:
            heartbeat: Optional[asyncio.Task] = None
            try:
                async with self._connect(self.url, ping_interval=None) as ws:
                    self._ws = ws
                    logger.info("realtime_connected tables=%s", ",".join(self._callbacks))
                    token = await self._access_token()
                    for table in list(self._callbacks):
                        await ws.send(self._join_frame(table, token))
                    self._connections += 1
                    if self._connections > 1 and self.on_reconnect is not None:
                        self.on_reconnect()
                    heartbeat = asyncio.create_task(self._heartbeat())
                    async for raw in ws:
                        self.dispatch(raw)
            except asyncio.CancelledError:
                raise
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                logger.warning("realtime_disconnected %s", e)
            finally:
                self._ws = None
                if heartbeat is not None:
                    heartbeat.cancel()
            if self._callbacks:
                await asyncio.sleep(self.reconnect_delay_sec)
