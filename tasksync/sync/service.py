from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from tasksync.core.config import AppConfig
from tasksync.remote.gateway import RemoteGateway

from .conflicts import ConflictDetector, ConflictResolver
from .connectivity import ConnectivityMonitor
from .db import init_db
from .engine import SyncEngine
from .mutations import LocalMutations
from .queue import PendingOperationQueue
from .realtime import RealtimeListener
from .stats import StatsStore
from .store import LocalEntityStore


@dataclass
class SyncService:
    """Everything one process needs, constructed once and passed by reference."""

    config: AppConfig
    store: LocalEntityStore
    queue: PendingOperationQueue
    stats: StatsStore
    resolver: ConflictResolver
    gateway: Any
    listener: RealtimeListener
    engine: SyncEngine
    mutations: LocalMutations


def build_gateway(cfg: AppConfig) -> RemoteGateway:
    return RemoteGateway(
        url=cfg.remote.url,
        anon_key=cfg.remote.anon_key,
        session_file=cfg.remote.session_file,
        schema=cfg.remote.schema_name,
        timeout=int(cfg.remote.timeout_sec),
    )


def build_sync_service(
    cfg: AppConfig,
    config_path: Optional[Path] = None,
    gateway: Any = None,
    monitor: Optional[ConnectivityMonitor] = None,
) -> SyncService:
    init_db(cfg.database.path)
    gateway = gateway or build_gateway(cfg)

    store = LocalEntityStore(list(cfg.sync.tables))
    queue = PendingOperationQueue(cfg.database.path)
    stats = StatsStore(cfg.database.path)
    detector = ConflictDetector(cfg.entities)
    resolver = ConflictResolver(cfg.database.path, store, queue, detector)
    listener = RealtimeListener(store, queue, resolver, gateway, cfg.sync)
    engine = SyncEngine(
        cfg,
        store,
        queue,
        stats,
        resolver,
        gateway,
        listener=listener,
        config_path=config_path,
        monitor=monitor,
    )
    return SyncService(
        config=cfg,
        store=store,
        queue=queue,
        stats=stats,
        resolver=resolver,
        gateway=gateway,
        listener=listener,
        engine=engine,
        mutations=LocalMutations(engine),
    )
