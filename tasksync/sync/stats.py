from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import asdict, dataclass
from typing import Optional

from tasksync.core.errors import QueuePersistenceError
from tasksync.core.timeutil import now_iso

from .db import get_conn

logger = logging.getLogger(__name__)

STATS_KEY = "sync_stats"


@dataclass
class SyncStatistics:
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    last_sync_duration: int = 0  # ms
    average_sync_time: int = 0  # ms
    last_sync: Optional[str] = None

    @property
    def success_rate(self) -> int:
        if self.total_syncs == 0:
            return 0
        return round(self.successful_syncs / self.total_syncs * 100)

    def to_dict(self) -> dict:
        return {
            "totalSyncs": self.total_syncs,
            "successfulSyncs": self.successful_syncs,
            "failedSyncs": self.failed_syncs,
            "lastSyncDuration": self.last_sync_duration,
            "averageSyncTime": self.average_sync_time,
            "lastSync": self.last_sync,
            "successRate": self.success_rate,
        }


class StatsStore:
    """Process-wide sync counters, persisted in the ``settings`` table."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def load(self) -> SyncStatistics:
        conn = get_conn(self.db_path)
        try:
            row = conn.execute("SELECT value FROM settings WHERE key=?", (STATS_KEY,)).fetchone()
        finally:
            conn.close()
        if not row or not row["value"]:
            return SyncStatistics()
        try:
            data = json.loads(row["value"])
            return SyncStatistics(**{k: v for k, v in data.items() if k in SyncStatistics.__dataclass_fields__})
        except (ValueError, TypeError):
            logger.warning("sync_stats_unreadable resetting")
            return SyncStatistics()

    def save(self, stats: SyncStatistics):
        try:
            conn = get_conn(self.db_path)
            try:
                conn.execute(
                    """
                    INSERT INTO settings(key,value,updated_at) VALUES (?,?,CURRENT_TIMESTAMP)
                    ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=CURRENT_TIMESTAMP
                    """,
                    (STATS_KEY, json.dumps(asdict(stats))),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise QueuePersistenceError(f"stats_write_failed: {e}") from e

    def record(self, success: bool, duration_ms: int, finished_at: Optional[str] = None) -> SyncStatistics:
        stats = self.load()
        stats.total_syncs += 1
        if success:
            stats.successful_syncs += 1
        else:
            stats.failed_syncs += 1
        stats.last_sync_duration = int(duration_ms)
        stats.average_sync_time = round(
            (stats.average_sync_time * (stats.total_syncs - 1) + duration_ms) / stats.total_syncs
        )
        if success:
            stats.last_sync = finished_at or now_iso()
        self.save(stats)
        return stats

    def reset(self) -> SyncStatistics:
        stats = SyncStatistics()
        self.save(stats)
        logger.info("sync_stats_reset")
        return stats
