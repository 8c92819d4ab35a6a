from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

PROJECT_ROOT = Path(os.environ.get("TASKSYNC_HOME") or Path.home() / ".tasksync")
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"

SYNC_INTERVAL_CHOICES_MS = (5000, 10000, 30000, 60000, 300000, 600000)
MAX_RETRIES_CHOICES = (1, 3, 5, 10)

DEFAULT_TABLES = ["categories", "tasks", "projects", "activity_log_categories", "events"]


def _expand_path(value: str) -> str:
    return str(Path(value).expanduser()) if value else value


class RemoteConfig(BaseModel):
    url: str = ""
    anon_key: str = ""
    session_file: str = str(RUNTIME_DIR / "session.json")
    schema_name: str = "public"
    # Fail fast; the engine adds no timeout layer of its own.
    timeout_sec: int = Field(default=10, ge=1, le=120)

    @field_validator("session_file")
    @classmethod
    def expand_session_file(cls, value: str) -> str:
        return _expand_path(value)


class EntityConfig(BaseModel):
    comparable_fields: list[str] = Field(default_factory=list)
    soft_delete: bool = False


def _default_entities() -> dict[str, EntityConfig]:
    named_color = ["name", "color", "predefined"]
    return {
        "tasks": EntityConfig(
            comparable_fields=[
                "title",
                "description",
                "due_date",
                "priority",
                "status",
                "categories",
                "notes",
                "checklist",
                "linked_project",
            ]
        ),
        "categories": EntityConfig(comparable_fields=list(named_color), soft_delete=True),
        "projects": EntityConfig(
            comparable_fields=[
                "title",
                "description",
                "status",
                "color",
                "participants",
                "linked_tasks",
                "archived",
            ]
        ),
        "activity_log_categories": EntityConfig(comparable_fields=list(named_color), soft_delete=True),
        "events": EntityConfig(
            comparable_fields=[
                "title",
                "location",
                "start_date",
                "end_date",
                "participation_type",
                "talk_title",
                "talk_date",
                "talk_time",
                "participants",
                "checklist",
                "notes",
            ]
        ),
    }


class SyncSettings(BaseModel):
    auto_sync: bool = True
    sync_interval_ms: int = 30000
    enable_realtime: bool = True
    enable_conflict_resolution: bool = True
    max_retries: int = 3
    retry_backoff_base_sec: float = Field(default=2.0, ge=0)
    retry_backoff_max_sec: float = Field(default=300.0, ge=0)
    connectivity_probe_sec: float = Field(default=15.0, gt=0)
    tables: list[str] = Field(default_factory=lambda: list(DEFAULT_TABLES))

    @field_validator("sync_interval_ms")
    @classmethod
    def check_interval(cls, value: int) -> int:
        if value not in SYNC_INTERVAL_CHOICES_MS:
            raise ValueError(f"sync_interval_ms must be one of {SYNC_INTERVAL_CHOICES_MS}")
        return value

    @field_validator("max_retries")
    @classmethod
    def check_max_retries(cls, value: int) -> int:
        if value not in MAX_RETRIES_CHOICES:
            raise ValueError(f"max_retries must be one of {MAX_RETRIES_CHOICES}")
        return value


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "tasksync.log")

    @field_validator("file")
    @classmethod
    def expand_file(cls, value: str) -> str:
        return _expand_path(value)


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "tasksync.db")

    @field_validator("path")
    @classmethod
    def expand_path(cls, value: str) -> str:
        return _expand_path(value)


class AppConfig(BaseModel):
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    entities: dict[str, EntityConfig] = Field(default_factory=_default_entities)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # Local HTTP surface for the presentation layer
    web_bind_host: str = "127.0.0.1"
    web_port: int = 8766
    allowed_nets: list[str] = Field(default_factory=lambda: ["127.0.0.1/32", "::1/128"])

    def entity(self, table: str) -> EntityConfig:
        return self.entities.get(table) or EntityConfig()


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)


def _dump(cfg: AppConfig) -> str:
    import yaml

    return yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        cfg = None
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
            try:
                cfg = AppConfig.model_validate(yaml.safe_load(template_text) or {})
                path.write_text(template_text, encoding="utf-8")
            except (yaml.YAMLError, ValueError):
                cfg = None
        if cfg is None:
            cfg = AppConfig()
            path.write_text(_dump(cfg), encoding="utf-8")
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = AppConfig.model_validate(data)
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_dump(cfg), encoding="utf-8")
