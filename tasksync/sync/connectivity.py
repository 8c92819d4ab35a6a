from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional

from tasksync.core.tasks import BackgroundTasks

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Probes the remote store periodically and reports online/offline transitions.

    The presentation layer may also report connectivity directly through
    :meth:`set_online`; both paths fire the same callbacks, once per
    transition.
    """

    def __init__(
        self,
        probe: Callable[[], bool],
        interval_sec: float = 15.0,
        initial_online: bool = False,
    ):
        self._probe = probe
        self.interval_sec = interval_sec
        self._online = initial_online
        self._callbacks: list[Callable[[bool], Any]] = []
        self._task: Optional[asyncio.Task] = None
        self._pending = BackgroundTasks("connectivity")
        self._stop_event: Optional[asyncio.Event] = None
        self.last_probe_at: Optional[float] = None

    @property
    def online(self) -> bool:
        return self._online

    def on_connectivity_change(self, callback: Callable[[bool], Any]) -> None:
        """Register ``callback(online)``; coroutine functions are scheduled on the loop."""
        self._callbacks.append(callback)

    def set_online(self, online: bool) -> bool:
        """Record the connectivity state; returns True when it changed."""
        online = bool(online)
        if online == self._online:
            return False
        self._online = online
        logger.info("connectivity_%s", "online" if online else "offline")
        for callback in list(self._callbacks):
            try:
                result = callback(online)
                if asyncio.iscoroutine(result):
                    self._pending.spawn(result, name="tasksync_connectivity_callback")
            except Exception as e:
                logger.exception("connectivity_callback_failed: %s", e)
        return True

    async def probe_once(self) -> bool:
        try:
            reachable = bool(await asyncio.to_thread(self._probe))
        except Exception as e:
            logger.debug("connectivity_probe_failed %s", e)
            reachable = False
        self.last_probe_at = time.time()
        self.set_online(reachable)
        return reachable

    async def _loop(self, stop_event: asyncio.Event) -> None:
        logger.info("connectivity_monitor_started interval=%.0fs", self.interval_sec)
        try:
            while not stop_event.is_set():
                await self.probe_once()
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.interval_sec)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("connectivity_monitor_stopped")

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event), name="tasksync_connectivity")

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except Exception:
                logger.exception("connectivity_monitor_stop_error")
        await self._pending.cancel_all()
        self._task = None
        self._stop_event = None
