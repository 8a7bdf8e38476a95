from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

PERSISTENCE_MODES = ("local", "remote")

DEFAULT_MODELS = ["stepfun/step-3.5-flash:free", "stepfun/step-3.5-flash"]


@dataclass
class RuntimeEnv:
    user_id: str | None
    api_token: str | None


@dataclass
class AppConfig:
    persistence_mode: str
    api_base_url: str
    chat_endpoint: str
    memory_db_path: str
    catalog_path: str | None
    default_models: list[str]
    compaction_enabled: bool
    request_retries: int
    request_timeout_seconds: float
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def parse_app_config(config: dict) -> AppConfig:
    persistence_mode = str(config.get("PersistenceMode", "local")).strip().lower()
    if persistence_mode not in PERSISTENCE_MODES:
        raise ValueError(f"PersistenceMode must be one of {', '.join(PERSISTENCE_MODES)}, got {persistence_mode!r}")

    default_models = config.get("DefaultModels", DEFAULT_MODELS)
    if isinstance(default_models, str):
        default_models = [m.strip() for m in default_models.split(",") if m.strip()]

    return AppConfig(
        persistence_mode=persistence_mode,
        api_base_url=str(config.get("ApiBaseUrl", "http://localhost:3000")).rstrip("/"),
        chat_endpoint=str(config.get("ChatEndpoint", "/agent/chat")),
        memory_db_path=str(config.get("MemoryDbPath", ".thread_runtime/threads.db")),
        catalog_path=str(config.get("CatalogPath", "")).strip() or None,
        default_models=list(default_models),
        compaction_enabled=_to_bool(config.get("CompactionEnabled", True), default=True),
        request_retries=int(config.get("RequestRetries", 3)),
        request_timeout_seconds=float(config.get("RequestTimeoutSeconds", 60.0)),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        user_id=os.environ.get("THREAD_RUNTIME_USER_ID", "").strip() or None,
        api_token=os.environ.get("THREAD_RUNTIME_API_TOKEN", "").strip() or None,
    )
