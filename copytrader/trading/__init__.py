from .aggregator import AggregatorRequestError, AggregatorUnavailableError, JupiterAggregatorClient
from .decoder import TradeDecoder, parse_program_ids
from .gateway import LedgerRpcError, LedgerTransportError, SolanaLedgerGateway
from .ledger import InMemoryProcessedLedger, ProcessedTradeStore
from .orchestrator import ReplicationOrchestrator, ReplicationOutcome
from .router import RouteSelector, pick_best_quote, rank_quotes
from .signer import KeypairSigner, Signer, SigningRejectedError, transaction_signature
from .sizer import TradeSizer
from .submission import SubmissionEngine
from .types import (
    FAIL_REASON_AGGREGATOR_UNAVAILABLE,
    FAIL_REASON_BALANCE_UNAVAILABLE,
    FAIL_REASON_BROADCAST_EXHAUSTED,
    FAIL_REASON_BROADCAST_REJECTED,
    FAIL_REASON_BUILD_FAILED,
    FAIL_REASON_CANCELLED,
    FAIL_REASON_CONFIRMATION_TIMEOUT,
    FAIL_REASON_INSUFFICIENT_BALANCE,
    FAIL_REASON_INTERNAL_ERROR,
    FAIL_REASON_INTERRUPTED,
    FAIL_REASON_NO_VIABLE_ROUTE,
    FAIL_REASON_QUOTE_EXPIRED,
    FAIL_REASON_REPLICATION_DISABLED,
    FAIL_REASON_SIGNING_REJECTED,
    FAIL_REASON_TX_FAILED,
    ProcessedEntry,
    Quote,
    ReplicaOrder,
    ReplicationContext,
    RuntimeConfig,
    SourceTrade,
    StageFailure,
    SubmissionRecord,
)

__all__ = [
    "AggregatorRequestError",
    "AggregatorUnavailableError",
    "FAIL_REASON_AGGREGATOR_UNAVAILABLE",
    "FAIL_REASON_BALANCE_UNAVAILABLE",
    "FAIL_REASON_BROADCAST_EXHAUSTED",
    "FAIL_REASON_BROADCAST_REJECTED",
    "FAIL_REASON_BUILD_FAILED",
    "FAIL_REASON_CANCELLED",
    "FAIL_REASON_CONFIRMATION_TIMEOUT",
    "FAIL_REASON_INSUFFICIENT_BALANCE",
    "FAIL_REASON_INTERNAL_ERROR",
    "FAIL_REASON_INTERRUPTED",
    "FAIL_REASON_NO_VIABLE_ROUTE",
    "FAIL_REASON_QUOTE_EXPIRED",
    "FAIL_REASON_REPLICATION_DISABLED",
    "FAIL_REASON_SIGNING_REJECTED",
    "FAIL_REASON_TX_FAILED",
    "InMemoryProcessedLedger",
    "JupiterAggregatorClient",
    "KeypairSigner",
    "LedgerRpcError",
    "LedgerTransportError",
    "ProcessedEntry",
    "ProcessedTradeStore",
    "Quote",
    "ReplicaOrder",
    "ReplicationContext",
    "ReplicationOrchestrator",
    "ReplicationOutcome",
    "RouteSelector",
    "RuntimeConfig",
    "Signer",
    "SigningRejectedError",
    "SolanaLedgerGateway",
    "SourceTrade",
    "StageFailure",
    "SubmissionEngine",
    "SubmissionRecord",
    "TradeDecoder",
    "TradeSizer",
    "parse_program_ids",
    "pick_best_quote",
    "rank_quotes",
    "transaction_signature",
]
