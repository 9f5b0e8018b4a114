from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from copytrader.common import compute_backoff_seconds, log_event

from .aggregator import AggregatorRequestError, AggregatorUnavailableError
from .gateway import LedgerRpcError, LedgerTransportError
from .signer import Signer, SigningRejectedError, transaction_signature
from .types import (
    FAIL_REASON_BROADCAST_EXHAUSTED,
    FAIL_REASON_BROADCAST_REJECTED,
    FAIL_REASON_BUILD_FAILED,
    FAIL_REASON_CANCELLED,
    FAIL_REASON_CONFIRMATION_TIMEOUT,
    FAIL_REASON_QUOTE_EXPIRED,
    FAIL_REASON_SIGNING_REJECTED,
    FAIL_REASON_TX_FAILED,
    ConfirmationStatus,
    Quote,
    ReplicaOrder,
    RuntimeConfig,
    StageFailure,
    SubmissionRecord,
)


class SwapBuilder(Protocol):
    async def build_swap_transaction(self, quote: Quote, target_account: str) -> bytes:
        ...


class TransactionSender(Protocol):
    async def broadcast(self, signed_tx: bytes) -> str:
        ...

    async def get_confirmation_status(self, handle: str) -> ConfirmationStatus:
        ...


class Requoter(Protocol):
    async def select_route(
        self,
        input_asset: str,
        output_asset: str,
        amount: int,
        *,
        slippage_bps: int,
        runtime_config: RuntimeConfig,
        source_signature: str | None = None,
    ) -> Quote | StageFailure:
        ...


def _is_cancelled(cancel_event: asyncio.Event | None) -> bool:
    return bool(cancel_event and cancel_event.is_set())


class SubmissionEngine:
    """Drives one replica order from a chosen quote to a terminal record.

    building -> signed -> broadcast -> confirmed, with failed reachable from
    any state and unknown only after broadcast. A quote is checked for
    expiry right before building and again right before signing; an expired
    quote is replaced through the route selector and never signed.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        swap_builder: SwapBuilder,
        sender: TransactionSender,
        signer: Signer,
        route_selector: Requoter,
        dry_run: bool = False,
    ) -> None:
        self._logger = logger
        self._swap_builder = swap_builder
        self._sender = sender
        self._signer = signer
        self._route_selector = route_selector
        self._dry_run = dry_run

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    async def submit(
        self,
        order: ReplicaOrder,
        quote: Quote,
        *,
        runtime_config: RuntimeConfig,
        cancel_event: asyncio.Event | None = None,
        record: SubmissionRecord | None = None,
    ) -> SubmissionRecord:
        if record is None:
            record = SubmissionRecord(derived_from_signature=order.derived_from_signature, chosen_quote=quote)
        else:
            record.chosen_quote = quote

        signed_tx = await self._build_and_sign(
            order=order,
            record=record,
            runtime_config=runtime_config,
            cancel_event=cancel_event,
        )
        if signed_tx is None:
            return record

        if self._dry_run:
            record.status = "dry_run"
            log_event(
                self._logger,
                level="info",
                event="submission_dry_run",
                message="Dry run: signed replica transaction was not broadcast",
                source_signature=order.derived_from_signature,
                requested_input_amount=order.requested_input_amount,
                signed_tx_bytes=len(signed_tx),
                requote_count=record.requote_count,
            )
            return record

        if _is_cancelled(cancel_event):
            return record.fail(FAIL_REASON_CANCELLED, "Cancelled before broadcast")

        handle = await self._broadcast_with_retry(
            order=order,
            record=record,
            signed_tx=signed_tx,
            runtime_config=runtime_config,
        )
        if handle is None:
            return record

        record.status = "broadcast"
        record.tx_signature = handle
        log_event(
            self._logger,
            level="info",
            event="submission_broadcast",
            message="Replica transaction broadcast",
            source_signature=order.derived_from_signature,
            tx_signature=handle,
            attempt_count=record.attempt_count,
        )

        await self._await_confirmation(
            order=order,
            record=record,
            handle=handle,
            runtime_config=runtime_config,
        )
        return record

    async def _requote(
        self,
        *,
        order: ReplicaOrder,
        record: SubmissionRecord,
        runtime_config: RuntimeConfig,
        stage: str,
    ) -> bool:
        expired = record.chosen_quote
        if record.requote_count >= runtime_config.max_requotes:
            record.fail(
                FAIL_REASON_QUOTE_EXPIRED,
                f"Quote expired {stage} and requote budget ({runtime_config.max_requotes}) is spent",
            )
            return False

        record.requote_count += 1
        log_event(
            self._logger,
            level="info",
            event="submission_requote",
            message="Quote expired; requesting a fresh route",
            source_signature=order.derived_from_signature,
            stage=stage,
            requote_count=record.requote_count,
            expired_route_id=expired.route_id if expired else None,
        )
        result = await self._route_selector.select_route(
            order.input_asset,
            order.output_asset,
            order.requested_input_amount,
            slippage_bps=order.max_slippage_bps,
            runtime_config=runtime_config,
            source_signature=order.derived_from_signature,
        )
        if isinstance(result, StageFailure):
            record.fail(result.reason, result.message)
            return False

        record.chosen_quote = result
        return True

    async def _build_and_sign(
        self,
        *,
        order: ReplicaOrder,
        record: SubmissionRecord,
        runtime_config: RuntimeConfig,
        cancel_event: asyncio.Event | None,
    ) -> bytes | None:
        max_build_attempts = max(1, runtime_config.build_max_attempts)
        build_attempt = 0

        while True:
            if _is_cancelled(cancel_event):
                record.fail(FAIL_REASON_CANCELLED, "Cancelled before signing")
                return None

            quote = record.chosen_quote
            if quote is None or quote.is_expired():
                if not await self._requote(
                    order=order,
                    record=record,
                    runtime_config=runtime_config,
                    stage="before build",
                ):
                    return None
                build_attempt = 0
                continue

            build_attempt += 1
            try:
                unsigned_tx = await self._swap_builder.build_swap_transaction(quote, order.target_account)
            except AggregatorUnavailableError as error:
                record.last_error = str(error)
                if build_attempt < max_build_attempts:
                    backoff_seconds = compute_backoff_seconds(
                        attempt=build_attempt,
                        base_seconds=runtime_config.build_retry_backoff_seconds,
                    )
                    log_event(
                        self._logger,
                        level="warning",
                        event="submission_build_retry",
                        message="Aggregator unavailable while building swap transaction; retrying",
                        source_signature=order.derived_from_signature,
                        route_id=quote.route_id,
                        attempt=build_attempt,
                        max_attempts=max_build_attempts,
                        backoff_seconds=round(backoff_seconds, 3),
                        error=str(error),
                    )
                    await asyncio.sleep(backoff_seconds)
                    continue

                record.fail(
                    FAIL_REASON_BUILD_FAILED,
                    f"Build failed after {max_build_attempts} attempts: {error}",
                )
                log_event(
                    self._logger,
                    level="warning",
                    event="submission_build_failed",
                    message="Swap transaction build failed",
                    source_signature=order.derived_from_signature,
                    route_id=quote.route_id,
                    attempts=build_attempt,
                    error=str(error),
                )
                return None
            except AggregatorRequestError as error:
                record.fail(FAIL_REASON_BUILD_FAILED, str(error))
                log_event(
                    self._logger,
                    level="warning",
                    event="submission_build_failed",
                    message="Swap transaction build failed",
                    source_signature=order.derived_from_signature,
                    route_id=quote.route_id,
                    error=str(error),
                )
                return None

            if _is_cancelled(cancel_event):
                record.fail(FAIL_REASON_CANCELLED, "Cancelled before signing")
                return None

            # No await between this check and sign().
            if quote.is_expired():
                if not await self._requote(
                    order=order,
                    record=record,
                    runtime_config=runtime_config,
                    stage="before signing",
                ):
                    return None
                continue

            try:
                return self._signer.sign(unsigned_tx)
            except SigningRejectedError as error:
                record.fail(FAIL_REASON_SIGNING_REJECTED, str(error))
                log_event(
                    self._logger,
                    level="error",
                    event="submission_signing_rejected",
                    message="Signer refused the replica transaction",
                    source_signature=order.derived_from_signature,
                    error=str(error),
                )
                return None

    async def _broadcast_with_retry(
        self,
        *,
        order: ReplicaOrder,
        record: SubmissionRecord,
        signed_tx: bytes,
        runtime_config: RuntimeConfig,
    ) -> str | None:
        max_attempts = max(1, runtime_config.broadcast_max_attempts)
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            record.attempt_count = attempt
            try:
                return await self._sender.broadcast(signed_tx)
            except LedgerRpcError as error:
                if last_error is not None:
                    # An earlier send may have landed; its response was lost.
                    return self._resolve_ambiguous_broadcast(
                        order=order,
                        record=record,
                        signed_tx=signed_tx,
                        error=error,
                    )
                record.fail(FAIL_REASON_BROADCAST_REJECTED, str(error))
                log_event(
                    self._logger,
                    level="error",
                    event="submission_broadcast_rejected",
                    message="RPC rejected the replica transaction",
                    source_signature=order.derived_from_signature,
                    attempt=attempt,
                    rpc_code=error.code,
                    error=str(error),
                )
                return None
            except LedgerTransportError as error:
                last_error = error
                record.last_error = str(error)
                if attempt >= max_attempts:
                    break
                backoff_seconds = compute_backoff_seconds(
                    attempt=attempt,
                    base_seconds=runtime_config.broadcast_retry_backoff_seconds,
                )
                log_event(
                    self._logger,
                    level="warning",
                    event="submission_broadcast_retry",
                    message="Broadcast failed at network level; retrying",
                    source_signature=order.derived_from_signature,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    backoff_seconds=round(backoff_seconds, 3),
                    error=str(error),
                )
                await asyncio.sleep(backoff_seconds)

        record.fail(
            FAIL_REASON_BROADCAST_EXHAUSTED,
            f"Broadcast failed after {max_attempts} attempts: {last_error}",
        )
        return None

    def _resolve_ambiguous_broadcast(
        self,
        *,
        order: ReplicaOrder,
        record: SubmissionRecord,
        signed_tx: bytes,
        error: LedgerRpcError,
    ) -> str | None:
        record.last_error = str(error)
        handle = transaction_signature(signed_tx)
        log_event(
            self._logger,
            level="warning",
            event="submission_broadcast_ambiguous",
            message="Retry was rejected after a lost send response; resolving by transaction signature",
            source_signature=order.derived_from_signature,
            attempt=record.attempt_count,
            rpc_code=error.code,
            tx_signature=handle,
            error=str(error),
        )
        if handle is None:
            record.status = "unknown"
            record.fail_reason = FAIL_REASON_BROADCAST_REJECTED
            return None
        return handle

    async def _await_confirmation(
        self,
        *,
        order: ReplicaOrder,
        record: SubmissionRecord,
        handle: str,
        runtime_config: RuntimeConfig,
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + runtime_config.confirm_timeout_seconds
        poll_interval = max(0.01, runtime_config.confirm_poll_interval_seconds)

        while True:
            try:
                status = await self._sender.get_confirmation_status(handle)
            except Exception as error:
                status = "pending"
                record.last_error = str(error)
                log_event(
                    self._logger,
                    level="debug",
                    event="submission_confirm_poll_error",
                    message="Confirmation poll failed; will retry until deadline",
                    source_signature=order.derived_from_signature,
                    tx_signature=handle,
                    error=str(error),
                )

            if status == "confirmed":
                record.status = "confirmed"
                return
            if status == "failed":
                record.fail(FAIL_REASON_TX_FAILED, f"Transaction {handle} failed on-chain")
                return

            remaining = deadline - loop.time()
            if remaining <= 0:
                record.status = "unknown"
                record.fail_reason = FAIL_REASON_CONFIRMATION_TIMEOUT
                record.last_error = (
                    f"No definitive status within {runtime_config.confirm_timeout_seconds}s"
                )
                log_event(
                    self._logger,
                    level="warning",
                    event="submission_confirmation_unknown",
                    message="Confirmation window closed without a definitive status",
                    source_signature=order.derived_from_signature,
                    tx_signature=handle,
                    confirm_timeout_seconds=runtime_config.confirm_timeout_seconds,
                )
                return
            await asyncio.sleep(min(poll_interval, remaining))
