from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from copytrader.common import compute_backoff_seconds, guarded_call, log_event

from .decoder import TradeDecoder
from .ledger import ProcessedTradeStore
from .router import RouteSelector
from .sizer import TradeSizer
from .submission import SubmissionEngine
from .types import (
    FAIL_REASON_BALANCE_UNAVAILABLE,
    FAIL_REASON_CANCELLED,
    FAIL_REASON_INTERNAL_ERROR,
    FAIL_REASON_INTERRUPTED,
    FAIL_REASON_REPLICATION_DISABLED,
    ProcessedEntry,
    ReplicaOrder,
    ReplicationContext,
    RuntimeConfig,
    SourceTrade,
    StageFailure,
    SubmissionRecord,
)

RuntimeConfigProvider = Callable[[], Awaitable[RuntimeConfig]]
SourceEvent = tuple[str, dict[str, Any] | None]


class BalanceSource(Protocol):
    async def get_balance(self, account: str, asset: str) -> int:
        ...


class ReplicationJournal(Protocol):
    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        ...

    async def record_replica(self, *, source_signature: str, replica: dict[str, Any]) -> None:
        ...


@dataclass(slots=True)
class ReplicationOutcome:
    status: str
    fail_reason: str | None = None
    message: str | None = None
    trade: SourceTrade | None = None
    order: ReplicaOrder | None = None
    record: SubmissionRecord | None = None

    @classmethod
    def from_failure(
        cls,
        failure: StageFailure,
        *,
        trade: SourceTrade,
        order: ReplicaOrder | None = None,
    ) -> "ReplicationOutcome":
        return cls(
            status="failed",
            fail_reason=failure.reason,
            message=failure.message,
            trade=trade,
            order=order,
        )

    @property
    def tx_signature(self) -> str | None:
        return self.record.tx_signature if self.record else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "fail_reason": self.fail_reason,
            "message": self.message,
            "tx_signature": self.tx_signature,
            "trade": self.trade.to_dict() if self.trade else None,
            "order": self.order.to_dict() if self.order else None,
            "submission": self.record.to_dict() if self.record else None,
        }


_OUTCOME_LOG_LEVELS = {
    "confirmed": "info",
    "dry_run": "info",
    "unknown": "warning",
    "failed": "warning",
}


class ReplicationOrchestrator:
    """Owns the processed-trade ledger and every run from source event to outcome."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        context: ReplicationContext,
        balances: BalanceSource,
        decoder: TradeDecoder,
        ledger: ProcessedTradeStore,
        sizer: TradeSizer,
        route_selector: RouteSelector,
        submission_engine: SubmissionEngine,
        runtime_config_provider: RuntimeConfigProvider,
        journal: ReplicationJournal | None = None,
        worker_concurrency: int = 4,
        queue_size: int = 256,
        balance_lookup_attempts: int = 3,
        error_backoff_seconds: float = 0.5,
    ) -> None:
        self._logger = logger
        self._context = context
        self._balances = balances
        self._decoder = decoder
        self._ledger = ledger
        self._sizer = sizer
        self._route_selector = route_selector
        self._submission_engine = submission_engine
        self._runtime_config_provider = runtime_config_provider
        self._journal = journal
        self._worker_concurrency = max(1, worker_concurrency)
        self._queue_size = max(1, queue_size)
        self._balance_lookup_attempts = max(1, balance_lookup_attempts)
        self._error_backoff_seconds = max(0.0, error_backoff_seconds)
        self._cancel_event = asyncio.Event()
        self._active_records: dict[str, SubmissionRecord] = {}

    @property
    def context(self) -> ReplicationContext:
        return self._context

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    def shutdown(self) -> None:
        if self._cancel_event.is_set():
            return
        self._cancel_event.set()
        log_event(
            self._logger,
            level="info",
            event="orchestrator_shutdown_requested",
            message="Shutdown requested; unbroadcast runs will be cancelled",
        )

    async def handle_event(self, signature: str, raw_tx: dict[str, Any] | None) -> ProcessedEntry | None:
        if await self._ledger.has_processed(signature):
            log_event(
                self._logger,
                level="debug",
                event="event_already_processed",
                message="Source signature already has a terminal outcome",
                source_signature=signature,
            )
            return None

        try:
            trade = self._decoder.decode(
                signature=signature,
                source_account=self._context.source_account,
                raw_tx=raw_tx,
            )
        except Exception as error:
            log_event(
                self._logger,
                level="warning",
                event="event_decode_failed",
                message="Source transaction could not be decoded; treated as not a swap",
                source_signature=signature,
                error=str(error),
                error_type=type(error).__name__,
            )
            trade = None
        if trade is None:
            log_event(
                self._logger,
                level="debug",
                event="event_not_a_swap",
                message="Source transaction is not a recognized swap",
                source_signature=signature,
            )
            return None

        if not await self._ledger.mark_in_flight(signature):
            log_event(
                self._logger,
                level="info",
                event="event_duplicate_skipped",
                message="Source signature is already in flight or processed",
                source_signature=signature,
            )
            return None

        log_event(
            self._logger,
            level="info",
            event="source_trade_detected",
            message="Replicating source trade",
            source_signature=signature,
            input_asset=trade.input_asset,
            output_asset=trade.output_asset,
            input_amount=trade.input_amount,
            output_amount=trade.output_amount,
            program_ids=list(trade.program_ids),
        )

        try:
            outcome = await self._replicate(trade)
        except asyncio.CancelledError:
            await self._finish(
                self._aborted_outcome(
                    trade,
                    self._active_records.get(signature),
                    fail_reason=FAIL_REASON_CANCELLED,
                    message="Run was cancelled",
                )
            )
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="error",
                event="replication_internal_error",
                message="Unexpected error while replicating trade",
                source_signature=signature,
                error=str(error),
                error_type=type(error).__name__,
            )
            outcome = self._aborted_outcome(
                trade,
                self._active_records.get(signature),
                fail_reason=FAIL_REASON_INTERNAL_ERROR,
                message=str(error),
            )
        finally:
            self._active_records.pop(signature, None)

        return await self._finish(outcome)

    @staticmethod
    def _aborted_outcome(
        trade: SourceTrade,
        record: SubmissionRecord | None,
        *,
        fail_reason: str,
        message: str,
    ) -> ReplicationOutcome:
        """Outcome for a run that stopped abnormally; once a send was attempted it can only be unknown."""
        if record is not None and record.is_terminal:
            return ReplicationOutcome(
                status=record.status,
                fail_reason=record.fail_reason,
                message=record.last_error,
                trade=trade,
                record=record,
            )
        if record is not None and record.attempt_count > 0:
            record.status = "unknown"
            record.fail_reason = FAIL_REASON_INTERRUPTED
            record.last_error = f"{message} after broadcast; on-chain status unresolved"
            return ReplicationOutcome(
                status="unknown",
                fail_reason=FAIL_REASON_INTERRUPTED,
                message=record.last_error,
                trade=trade,
                record=record,
            )
        return ReplicationOutcome(
            status="failed",
            fail_reason=fail_reason,
            message=message,
            trade=trade,
            record=record,
        )

    async def _replicate(self, trade: SourceTrade) -> ReplicationOutcome:
        runtime_config = await self._runtime_config_provider()
        if not runtime_config.replication_enabled:
            return ReplicationOutcome.from_failure(
                StageFailure(
                    reason=FAIL_REASON_REPLICATION_DISABLED,
                    message="Replication is disabled in runtime config",
                ),
                trade=trade,
            )

        balance = await self._lookup_balance(trade)
        if isinstance(balance, StageFailure):
            return ReplicationOutcome.from_failure(balance, trade=trade)

        sized = self._sizer.size(
            trade=trade,
            available_balance=balance,
            target_account=self._context.target_account,
            runtime_config=runtime_config,
        )
        if isinstance(sized, StageFailure):
            return ReplicationOutcome.from_failure(sized, trade=trade)

        quote = await self._route_selector.select_route(
            sized.input_asset,
            sized.output_asset,
            sized.requested_input_amount,
            slippage_bps=sized.max_slippage_bps,
            runtime_config=runtime_config,
            source_signature=trade.signature,
        )
        if isinstance(quote, StageFailure):
            return ReplicationOutcome.from_failure(quote, trade=trade, order=sized)

        record = SubmissionRecord(derived_from_signature=trade.signature, chosen_quote=quote)
        self._active_records[trade.signature] = record
        record = await self._submission_engine.submit(
            sized,
            quote,
            runtime_config=runtime_config,
            cancel_event=self._cancel_event,
            record=record,
        )
        return ReplicationOutcome(
            status=record.status,
            fail_reason=record.fail_reason,
            message=record.last_error,
            trade=trade,
            order=sized,
            record=record,
        )

    async def _lookup_balance(self, trade: SourceTrade) -> int | StageFailure:
        last_error: Exception | None = None
        for attempt in range(1, self._balance_lookup_attempts + 1):
            try:
                return await self._balances.get_balance(self._context.target_account, trade.input_asset)
            except Exception as error:
                last_error = error
                log_event(
                    self._logger,
                    level="warning",
                    event="balance_lookup_failed",
                    message="Target balance lookup failed",
                    source_signature=trade.signature,
                    asset=trade.input_asset,
                    attempt=attempt,
                    error=str(error),
                )
            if attempt < self._balance_lookup_attempts:
                await asyncio.sleep(
                    compute_backoff_seconds(attempt=attempt, base_seconds=self._error_backoff_seconds)
                )
        return StageFailure(
            reason=FAIL_REASON_BALANCE_UNAVAILABLE,
            message=f"Balance lookup failed after {self._balance_lookup_attempts} attempts: {last_error}",
            retryable=True,
        )

    async def _finish(self, outcome: ReplicationOutcome) -> ProcessedEntry | None:
        trade = outcome.trade
        if trade is None:
            raise ValueError("Outcome must carry the source trade")

        recorded = await self._ledger.record_outcome(
            trade.signature,
            outcome.status,
            fail_reason=outcome.fail_reason,
            tx_signature=outcome.tx_signature,
        )
        level = _OUTCOME_LOG_LEVELS.get(outcome.status, "warning")
        if outcome.fail_reason == FAIL_REASON_INTERNAL_ERROR:
            level = "error"
        log_event(
            self._logger,
            level=level,
            event="replication_outcome",
            message=f"Replication finished with status {outcome.status}",
            source_signature=trade.signature,
            status=outcome.status,
            fail_reason=outcome.fail_reason,
            reason_detail=outcome.message,
            tx_signature=outcome.tx_signature,
            requested_input_amount=outcome.order.requested_input_amount if outcome.order else None,
            ledger_updated=recorded,
        )
        await self._publish(outcome, level=level)
        return await self._ledger.get_entry(trade.signature)

    async def _publish(self, outcome: ReplicationOutcome, *, level: str) -> None:
        if self._journal is None or outcome.trade is None:
            return
        signature = outcome.trade.signature
        payload = outcome.to_dict()
        await guarded_call(
            lambda: self._journal.publish_event(
                level=level.upper(),
                event="replication_outcome",
                message=f"Replication finished with status {outcome.status}",
                details=payload,
                event_id=f"outcome-{signature}",
            ),
            logger=self._logger,
            event="outcome_publish_failed",
            message="Failed to publish replication outcome",
            source_signature=signature,
        )
        await guarded_call(
            lambda: self._journal.record_replica(source_signature=signature, replica=payload),
            logger=self._logger,
            event="replica_record_failed",
            message="Failed to persist replica record",
            source_signature=signature,
        )

    async def recover_interrupted(self, *, limit: int = 500) -> int:
        """Close out runs a dead process left in flight; they are never retried."""
        entries = await self._ledger.list_in_flight(limit=limit)
        recovered = 0
        for entry in entries:
            updated = await self._ledger.record_outcome(
                entry.signature,
                "unknown",
                fail_reason=FAIL_REASON_INTERRUPTED,
            )
            if not updated:
                continue
            recovered += 1
            log_event(
                self._logger,
                level="warning",
                event="interrupted_run_recovered",
                message="In-flight entry from a previous process marked unknown",
                source_signature=entry.signature,
                in_flight_since=entry.timestamp,
            )
            if self._journal is not None:
                await guarded_call(
                    lambda signature=entry.signature: self._journal.publish_event(
                        level="WARNING",
                        event="interrupted_run_recovered",
                        message="In-flight entry from a previous process marked unknown",
                        details={"source_signature": signature, "fail_reason": FAIL_REASON_INTERRUPTED},
                        event_id=f"recovered-{signature}",
                    ),
                    logger=self._logger,
                    event="outcome_publish_failed",
                    message="Failed to publish recovery event",
                    source_signature=entry.signature,
                )
        return recovered

    async def _worker(self, queue: asyncio.Queue[SourceEvent | None], worker_id: int) -> None:
        while True:
            item = await queue.get()
            try:
                if item is None:
                    return
                signature, raw_tx = item
                if self._cancel_event.is_set():
                    log_event(
                        self._logger,
                        level="info",
                        event="event_dropped_on_shutdown",
                        message="Queued source event dropped during shutdown",
                        source_signature=signature,
                        worker_id=worker_id,
                    )
                    continue
                await self.handle_event(signature, raw_tx)
            except asyncio.CancelledError:
                raise
            except Exception as error:
                log_event(
                    self._logger,
                    level="error",
                    event="worker_event_failed",
                    message="Worker failed to handle source event",
                    worker_id=worker_id,
                    source_signature=item[0] if item else None,
                    error=str(error),
                )
            finally:
                queue.task_done()

    async def _listen(
        self,
        events: AsyncIterator[SourceEvent],
        queue: asyncio.Queue[SourceEvent | None],
    ) -> None:
        iterator = events.__aiter__()
        cancel_wait = asyncio.create_task(self._cancel_event.wait())
        next_event: asyncio.Future[SourceEvent] | None = None
        try:
            while True:
                next_event = asyncio.ensure_future(iterator.__anext__())
                done, _ = await asyncio.wait(
                    {next_event, cancel_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_event not in done:
                    next_event.cancel()
                    await asyncio.gather(next_event, return_exceptions=True)
                    return
                try:
                    signature, raw_tx = next_event.result()
                except StopAsyncIteration:
                    return
                await queue.put((signature, raw_tx))
        finally:
            cancel_wait.cancel()
            if next_event is not None and not next_event.done():
                next_event.cancel()

    async def run(self, events: AsyncIterator[SourceEvent]) -> None:
        queue: asyncio.Queue[SourceEvent | None] = asyncio.Queue(maxsize=self._queue_size)
        workers = [
            asyncio.create_task(self._worker(queue, worker_id), name=f"replication-worker-{worker_id}")
            for worker_id in range(self._worker_concurrency)
        ]
        log_event(
            self._logger,
            level="info",
            event="orchestrator_started",
            message="Replication orchestrator started",
            source_account=self._context.source_account,
            target_account=self._context.target_account,
            worker_concurrency=self._worker_concurrency,
            queue_size=self._queue_size,
        )

        try:
            await self._listen(events, queue)
        except BaseException as error:
            log_event(
                self._logger,
                level="warning",
                event="orchestrator_listener_stopped",
                message="Event listener stopped abnormally; draining in-progress runs",
                error=str(error) or type(error).__name__,
            )
            self.shutdown()
            try:
                await self._stop_workers(queue, workers)
            except BaseException:
                for worker in workers:
                    worker.cancel()
                await asyncio.gather(*workers, return_exceptions=True)
            raise

        await self._stop_workers(queue, workers)
        log_event(
            self._logger,
            level="info",
            event="orchestrator_stopped",
            message="Replication orchestrator stopped",
        )

    async def _stop_workers(
        self,
        queue: asyncio.Queue[SourceEvent | None],
        workers: list[asyncio.Task[None]],
    ) -> None:
        await queue.join()
        for _ in workers:
            await queue.put(None)
        await asyncio.gather(*workers)
