from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

FAIL_REASON_INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
FAIL_REASON_NO_VIABLE_ROUTE = "NO_VIABLE_ROUTE"
FAIL_REASON_AGGREGATOR_UNAVAILABLE = "AGGREGATOR_UNAVAILABLE"
FAIL_REASON_QUOTE_EXPIRED = "QUOTE_EXPIRED"
FAIL_REASON_BUILD_FAILED = "BUILD_FAILED"
FAIL_REASON_SIGNING_REJECTED = "SIGNING_REJECTED"
FAIL_REASON_BROADCAST_EXHAUSTED = "BROADCAST_EXHAUSTED"
FAIL_REASON_BROADCAST_REJECTED = "BROADCAST_REJECTED"
FAIL_REASON_TX_FAILED = "TX_FAILED"
FAIL_REASON_CONFIRMATION_TIMEOUT = "CONFIRMATION_TIMEOUT"
FAIL_REASON_CANCELLED = "CANCELLED"
FAIL_REASON_INTERRUPTED = "INTERRUPTED"
FAIL_REASON_REPLICATION_DISABLED = "REPLICATION_DISABLED"
FAIL_REASON_BALANCE_UNAVAILABLE = "BALANCE_UNAVAILABLE"
FAIL_REASON_INTERNAL_ERROR = "INTERNAL_ERROR"

SubmissionStatus = Literal["pending", "broadcast", "confirmed", "failed", "unknown", "dry_run"]
FinalStatus = Literal["confirmed", "failed", "unknown", "dry_run"]
ConfirmationStatus = Literal["pending", "confirmed", "failed"]
SizingBasis = Literal["balance", "source"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"confirmed", "failed", "unknown", "dry_run"})
IN_FLIGHT_STATUS = "in_flight"


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or value == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError, OverflowError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or value == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError, OverflowError):
        return default


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def now_epoch_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def normalize_sizing_basis(value: Any) -> SizingBasis:
    basis = str(value or "").strip().lower()
    if basis == "source":
        return "source"
    return "balance"


@dataclass(slots=True, frozen=True)
class ReplicationContext:
    source_account: str
    target_account: str


@dataclass(slots=True, frozen=True)
class SourceTrade:
    signature: str
    source_account: str
    input_asset: str
    output_asset: str
    input_amount: int
    output_amount: int
    observed_at: str | None
    program_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class ReplicaOrder:
    derived_from_signature: str
    target_account: str
    input_asset: str
    output_asset: str
    requested_input_amount: int
    max_slippage_bps: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class Quote:
    route_id: str
    input_asset: str
    output_asset: str
    input_amount: int
    expected_output_amount: int
    price_impact_bps: float
    expires_at_ms: int
    quote_response: dict[str, Any] = field(default_factory=dict, compare=False)

    def is_expired(self, *, now_ms: int | None = None) -> bool:
        current = now_epoch_ms() if now_ms is None else now_ms
        return current >= self.expires_at_ms

    def compact(self) -> dict[str, Any]:
        route_plan = self.quote_response.get("routePlan")
        return {
            "route_id": self.route_id,
            "input_amount": self.input_amount,
            "expected_output_amount": self.expected_output_amount,
            "price_impact_bps": round(self.price_impact_bps, 4),
            "expires_at_ms": self.expires_at_ms,
            "context_slot": self.quote_response.get("contextSlot"),
            "route_hop_count": len(route_plan) if isinstance(route_plan, list) else 0,
        }


@dataclass(slots=True, frozen=True)
class StageFailure:
    reason: str
    message: str
    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class SubmissionRecord:
    derived_from_signature: str
    chosen_quote: Quote | None
    attempt_count: int = 0
    status: SubmissionStatus = "pending"
    last_error: str | None = None
    fail_reason: str | None = None
    tx_signature: str | None = None
    requote_count: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def fail(self, reason: str, error: str) -> "SubmissionRecord":
        self.status = "failed"
        self.fail_reason = reason
        self.last_error = error
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "derived_from_signature": self.derived_from_signature,
            "chosen_quote": self.chosen_quote.compact() if self.chosen_quote else None,
            "attempt_count": self.attempt_count,
            "status": self.status,
            "last_error": self.last_error,
            "fail_reason": self.fail_reason,
            "tx_signature": self.tx_signature,
            "requote_count": self.requote_count,
        }


@dataclass(slots=True, frozen=True)
class ProcessedEntry:
    signature: str
    final_status: str
    timestamp: str
    fail_reason: str | None = None
    tx_signature: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.final_status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class RuntimeConfig:
    config_schema_version: int
    scaling_ratio: float
    sizing_basis: SizingBasis
    min_trade_amount: int
    native_reserve_lamports: int
    max_price_impact_bps: float
    slippage_bps: int
    quote_ttl_seconds: float
    route_max_attempts: int
    route_retry_backoff_seconds: float
    max_requotes: int
    build_max_attempts: int
    build_retry_backoff_seconds: float
    broadcast_max_attempts: int
    broadcast_retry_backoff_seconds: float
    confirm_timeout_seconds: float
    confirm_poll_interval_seconds: float
    replication_enabled: bool

    @classmethod
    def from_env_defaults(cls) -> "RuntimeConfig":
        return cls(
            config_schema_version=max(1, to_int(os.getenv("CONFIG_SCHEMA_VERSION"), 1)),
            scaling_ratio=min(1.0, max(0.0, to_float(os.getenv("SCALING_RATIO"), 0.1))),
            sizing_basis=normalize_sizing_basis(os.getenv("SIZING_BASIS", "balance")),
            min_trade_amount=max(0, to_int(os.getenv("MIN_TRADE_AMOUNT"), 1_000_000)),
            native_reserve_lamports=max(0, to_int(os.getenv("NATIVE_RESERVE_LAMPORTS"), 20_000_000)),
            max_price_impact_bps=max(0.0, to_float(os.getenv("MAX_PRICE_IMPACT_BPS"), 100.0)),
            slippage_bps=max(1, to_int(os.getenv("SLIPPAGE_BPS"), 50)),
            quote_ttl_seconds=max(0.5, to_float(os.getenv("QUOTE_TTL_SECONDS"), 10.0)),
            route_max_attempts=max(1, to_int(os.getenv("ROUTE_MAX_ATTEMPTS"), 3)),
            route_retry_backoff_seconds=max(
                0.0,
                to_float(os.getenv("ROUTE_RETRY_BACKOFF_SECONDS"), 0.5),
            ),
            max_requotes=max(0, to_int(os.getenv("MAX_REQUOTES"), 2)),
            build_max_attempts=max(1, to_int(os.getenv("BUILD_MAX_ATTEMPTS"), 3)),
            build_retry_backoff_seconds=max(
                0.0,
                to_float(os.getenv("BUILD_RETRY_BACKOFF_SECONDS"), 0.5),
            ),
            broadcast_max_attempts=max(1, to_int(os.getenv("BROADCAST_MAX_ATTEMPTS"), 3)),
            broadcast_retry_backoff_seconds=max(
                0.0,
                to_float(os.getenv("BROADCAST_RETRY_BACKOFF_SECONDS"), 0.8),
            ),
            confirm_timeout_seconds=max(
                1.0,
                to_float(os.getenv("CONFIRM_TIMEOUT_SECONDS"), 45.0),
            ),
            confirm_poll_interval_seconds=max(
                0.05,
                to_float(os.getenv("CONFIRM_POLL_INTERVAL_SECONDS"), 1.0),
            ),
            replication_enabled=to_bool(os.getenv("REPLICATION_ENABLED"), True),
        )

    @classmethod
    def from_redis(cls, redis_config: dict[str, str], defaults: "RuntimeConfig") -> "RuntimeConfig":
        schema_raw = redis_config.get("schema_version") or redis_config.get("config_schema_version")
        impact_raw = redis_config.get("max_price_impact_bps") or redis_config.get("max_impact_bps")

        return cls(
            config_schema_version=max(1, to_int(schema_raw, defaults.config_schema_version)),
            scaling_ratio=min(
                1.0,
                max(0.0, to_float(redis_config.get("scaling_ratio"), defaults.scaling_ratio)),
            ),
            sizing_basis=normalize_sizing_basis(
                redis_config.get("sizing_basis") or defaults.sizing_basis
            ),
            min_trade_amount=max(
                0,
                to_int(redis_config.get("min_trade_amount"), defaults.min_trade_amount),
            ),
            native_reserve_lamports=max(
                0,
                to_int(
                    redis_config.get("native_reserve_lamports"),
                    defaults.native_reserve_lamports,
                ),
            ),
            max_price_impact_bps=max(0.0, to_float(impact_raw, defaults.max_price_impact_bps)),
            slippage_bps=max(1, to_int(redis_config.get("slippage_bps"), defaults.slippage_bps)),
            quote_ttl_seconds=max(
                0.5,
                to_float(redis_config.get("quote_ttl_seconds"), defaults.quote_ttl_seconds),
            ),
            route_max_attempts=max(
                1,
                to_int(redis_config.get("route_max_attempts"), defaults.route_max_attempts),
            ),
            route_retry_backoff_seconds=max(
                0.0,
                to_float(
                    redis_config.get("route_retry_backoff_seconds"),
                    defaults.route_retry_backoff_seconds,
                ),
            ),
            max_requotes=max(0, to_int(redis_config.get("max_requotes"), defaults.max_requotes)),
            build_max_attempts=max(
                1,
                to_int(redis_config.get("build_max_attempts"), defaults.build_max_attempts),
            ),
            build_retry_backoff_seconds=max(
                0.0,
                to_float(
                    redis_config.get("build_retry_backoff_seconds"),
                    defaults.build_retry_backoff_seconds,
                ),
            ),
            broadcast_max_attempts=max(
                1,
                to_int(redis_config.get("broadcast_max_attempts"), defaults.broadcast_max_attempts),
            ),
            broadcast_retry_backoff_seconds=max(
                0.0,
                to_float(
                    redis_config.get("broadcast_retry_backoff_seconds"),
                    defaults.broadcast_retry_backoff_seconds,
                ),
            ),
            confirm_timeout_seconds=max(
                1.0,
                to_float(
                    redis_config.get("confirm_timeout_seconds"),
                    defaults.confirm_timeout_seconds,
                ),
            ),
            confirm_poll_interval_seconds=max(
                0.05,
                to_float(
                    redis_config.get("confirm_poll_interval_seconds"),
                    defaults.confirm_poll_interval_seconds,
                ),
            ),
            replication_enabled=to_bool(
                redis_config.get("replication_enabled"),
                defaults.replication_enabled,
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
