from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

ConfigUpdateHandler = Callable[[dict[str, Any]], Awaitable[None]]


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or value == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _sanitize_bot_id(value: str, default: str) -> str:
    normalized = (value.strip() or default).replace("/", "-")
    return normalized or default


@dataclass(slots=True)
class StorageSettings:
    redis_enabled: bool
    redis_url: str
    redis_config_key: str
    firestore_enabled: bool
    firestore_project_id: str | None
    firestore_config_doc: str
    firestore_config_leaf_doc_id: str
    bot_collection: str
    bot_id: str
    dry_run: bool
    bot_env: str
    bot_run_id: str
    bot_runs_collection: str
    bot_events_collection: str
    bot_replicas_collection: str
    bot_daily_collection: str
    bot_metrics_collection: str
    bot_metrics_doc_id: str
    config_schema_version: int
    heartbeat_key: str
    heartbeat_interval_seconds: int
    processed_prefix: str
    processed_ttl_seconds: int

    @classmethod
    def from_env(cls) -> "StorageSettings":
        bot_collection = (os.getenv("BOT_COLLECTION", "bots").strip("/") or "bots")
        bot_id = _sanitize_bot_id(os.getenv("BOT_ID", "copy-trader"), "copy-trader")
        default_config_doc = f"{bot_collection}/{bot_id}/config/runtime"
        ledger_backend = os.getenv("LEDGER_BACKEND", "redis").strip().lower()

        return cls(
            redis_enabled=to_bool(os.getenv("REDIS_ENABLED"), ledger_backend != "memory"),
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            redis_config_key=os.getenv("REDIS_CONFIG_KEY", "config"),
            firestore_enabled=to_bool(os.getenv("FIRESTORE_ENABLED"), True),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or None,
            firestore_config_doc=os.getenv("FIRESTORE_CONFIG_DOC") or default_config_doc,
            firestore_config_leaf_doc_id=os.getenv("FIRESTORE_CONFIG_LEAF_DOC_ID", "runtime"),
            bot_collection=bot_collection,
            bot_id=bot_id,
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            bot_env=os.getenv("BOT_ENV", "dev"),
            bot_run_id=os.getenv("BOT_RUN_ID")
            or datetime.now(timezone.utc).strftime("run-%Y%m%dT%H%M%SZ"),
            bot_runs_collection=os.getenv("BOT_RUNS_COLLECTION", "runs"),
            bot_events_collection=os.getenv("BOT_EVENTS_COLLECTION", "events"),
            bot_replicas_collection=os.getenv("BOT_REPLICAS_COLLECTION", "replicas"),
            bot_daily_collection=os.getenv("BOT_DAILY_COLLECTION", "replicas_daily"),
            bot_metrics_collection=os.getenv("BOT_METRICS_COLLECTION", "metrics"),
            bot_metrics_doc_id=os.getenv("BOT_METRICS_DOC_ID", "runtime"),
            config_schema_version=max(1, to_int(os.getenv("CONFIG_SCHEMA_VERSION"), 1)),
            heartbeat_key=os.getenv("REDIS_HEARTBEAT_KEY", "bot:heartbeat"),
            heartbeat_interval_seconds=max(1, to_int(os.getenv("HEARTBEAT_INTERVAL_SECONDS"), 15)),
            processed_prefix=os.getenv("REDIS_PROCESSED_PREFIX", "processed").strip(":") or "processed",
            # 0 keeps processed entries forever.
            processed_ttl_seconds=max(0, to_int(os.getenv("REDIS_PROCESSED_TTL_SECONDS"), 0)),
        )
