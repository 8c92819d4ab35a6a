from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI

from tasksync.core.config import DEFAULT_CONFIG_PATH, AppConfig, load_config
from tasksync.sync.service import SyncService, build_sync_service
from tasksync.web.api import install_error_handlers, router as api_router
from tasksync.web.security import NetworkAllowlistMiddleware

logger = logging.getLogger(__name__)


def build_app(
    cfg: Optional[AppConfig] = None,
    config_path: Path = DEFAULT_CONFIG_PATH,
    service: Optional[SyncService] = None,
) -> FastAPI:
    cfg = cfg or load_config(config_path)
    service = service or build_sync_service(cfg, config_path=config_path)

    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        await service.engine.start()
        logger.info("service_started tables=%s", ",".join(cfg.sync.tables))
        try:
            yield
        finally:
            await service.engine.stop()
            logger.info("service_stopped")

    api = FastAPI(title="tasksync", version="0.1.0", lifespan=lifespan)
    api.state.service = service
    api.add_middleware(NetworkAllowlistMiddleware, allowed_nets=cfg.allowed_nets)
    install_error_handlers(api)
    api.include_router(api_router)
    return api


def main():
    import uvicorn

    from tasksync.core.logging_setup import setup_logging

    cfg = load_config()
    setup_logging(cfg.logging.level, cfg.logging.file)

    uvicorn.run(
        build_app(cfg),
        host=cfg.web_bind_host,
        port=cfg.web_port,
        log_level=cfg.logging.level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
