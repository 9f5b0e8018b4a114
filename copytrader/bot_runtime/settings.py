from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or str(value).strip() == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or str(value).strip() == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def normalize_ledger_backend(value: str) -> str:
    backend = (value or "").strip().lower()
    if backend in {"redis", "memory"}:
        return backend
    return "redis"


def derive_ws_url(rpc_url: str) -> str:
    if rpc_url.startswith("https://"):
        return "wss://" + rpc_url[len("https://") :]
    if rpc_url.startswith("http://"):
        return "ws://" + rpc_url[len("http://") :]
    return ""


@dataclass(slots=True)
class AppSettings:
    solana_rpc_url: str
    solana_ws_url: str
    source_account: str
    private_key: str
    jupiter_quote_api: str
    jupiter_swap_api: str
    jupiter_api_key: str
    dry_run: bool
    ledger_backend: str
    worker_concurrency: int
    event_queue_size: int
    error_backoff_seconds: float
    subscription_reconnect_seconds: float
    subscription_signature_limit: int
    http_timeout_seconds: float
    recognized_swap_programs: str
    recovery_limit: int

    @classmethod
    def from_env(cls) -> "AppSettings":
        rpc_url = os.getenv("SOLANA_RPC_URL", "").strip()
        return cls(
            solana_rpc_url=rpc_url,
            solana_ws_url=os.getenv("SOLANA_WS_URL", "").strip() or derive_ws_url(rpc_url),
            source_account=os.getenv("SOURCE_ACCOUNT", "").strip(),
            private_key=os.getenv("PRIVATE_KEY", ""),
            jupiter_quote_api=os.getenv("JUPITER_QUOTE_API", "https://api.jup.ag/swap/v1/quote").strip(),
            jupiter_swap_api=os.getenv("JUPITER_SWAP_API", "https://api.jup.ag/swap/v1/swap").strip(),
            jupiter_api_key=os.getenv("JUPITER_API_KEY", "").strip(),
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            ledger_backend=normalize_ledger_backend(os.getenv("LEDGER_BACKEND", "redis")),
            worker_concurrency=max(1, to_int(os.getenv("WORKER_CONCURRENCY"), 4)),
            event_queue_size=max(1, to_int(os.getenv("EVENT_QUEUE_SIZE"), 256)),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 2.0)),
            subscription_reconnect_seconds=max(
                0.1,
                to_float(os.getenv("SUBSCRIPTION_RECONNECT_SECONDS"), 2.0),
            ),
            subscription_signature_limit=max(
                1,
                min(1000, to_int(os.getenv("SUBSCRIPTION_SIGNATURE_LIMIT"), 20)),
            ),
            http_timeout_seconds=max(1.0, to_float(os.getenv("HTTP_TIMEOUT_SECONDS"), 8.0)),
            recognized_swap_programs=os.getenv("RECOGNIZED_SWAP_PROGRAMS", "").strip(),
            recovery_limit=max(1, to_int(os.getenv("RECOVERY_LIMIT"), 500)),
        )

    def validate(self, *, redis_enabled: bool = True) -> None:
        missing = [
            name
            for name, value in (
                ("SOLANA_RPC_URL", self.solana_rpc_url),
                ("SOLANA_WS_URL", self.solana_ws_url),
                ("SOURCE_ACCOUNT", self.source_account),
                ("PRIVATE_KEY", self.private_key.strip()),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Missing required settings: {', '.join(missing)}")
        if self.ledger_backend == "redis" and not redis_enabled:
            raise ValueError(
                "LEDGER_BACKEND=redis requires REDIS_ENABLED=1; set LEDGER_BACKEND=memory to run without Redis"
            )
