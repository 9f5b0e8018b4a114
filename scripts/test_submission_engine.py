from __future__ import annotations

import asyncio
import logging
import unittest
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from copytrader.trading import (
    FAIL_REASON_BROADCAST_EXHAUSTED,
    FAIL_REASON_BROADCAST_REJECTED,
    FAIL_REASON_BUILD_FAILED,
    FAIL_REASON_CANCELLED,
    FAIL_REASON_CONFIRMATION_TIMEOUT,
    FAIL_REASON_NO_VIABLE_ROUTE,
    FAIL_REASON_QUOTE_EXPIRED,
    FAIL_REASON_SIGNING_REJECTED,
    FAIL_REASON_TX_FAILED,
    AggregatorRequestError,
    AggregatorUnavailableError,
    LedgerRpcError,
    LedgerTransportError,
    Quote,
    ReplicaOrder,
    RuntimeConfig,
    SigningRejectedError,
    StageFailure,
    SubmissionEngine,
)
from copytrader.trading.types import SOL_MINT, USDC_MINT, now_epoch_ms


def _signed_transfer() -> bytes:
    payer = Keypair()
    instruction = transfer(
        TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Keypair().pubkey(), lamports=1_000)
    )
    message = MessageV0.try_compile(payer.pubkey(), [instruction], [], Hash.default())
    return bytes(VersionedTransaction(message, [payer]))


def _make_runtime_config(**overrides: object) -> RuntimeConfig:
    config = RuntimeConfig(
        config_schema_version=1,
        scaling_ratio=0.1,
        sizing_basis="balance",
        min_trade_amount=0,
        native_reserve_lamports=0,
        max_price_impact_bps=100.0,
        slippage_bps=50,
        quote_ttl_seconds=10.0,
        route_max_attempts=1,
        route_retry_backoff_seconds=0.0,
        max_requotes=2,
        build_max_attempts=3,
        build_retry_backoff_seconds=0.0,
        broadcast_max_attempts=3,
        broadcast_retry_backoff_seconds=0.0,
        confirm_timeout_seconds=0.2,
        confirm_poll_interval_seconds=0.01,
        replication_enabled=True,
    )
    return replace(config, **overrides)


def _make_order() -> ReplicaOrder:
    return ReplicaOrder(
        derived_from_signature="source-sig",
        target_account="TargetWallet",
        input_asset=SOL_MINT,
        output_asset=USDC_MINT,
        requested_input_amount=1_000_000,
        max_slippage_bps=50,
    )


def _make_quote(route_id: str, *, expires_at_ms: int | None = None) -> Quote:
    return Quote(
        route_id=route_id,
        input_asset=SOL_MINT,
        output_asset=USDC_MINT,
        input_amount=1_000_000,
        expected_output_amount=150_000,
        price_impact_bps=3.0,
        expires_at_ms=now_epoch_ms() + 60_000 if expires_at_ms is None else expires_at_ms,
    )


async def _build_tx(quote: Quote, target_account: str) -> bytes:
    return f"unsigned:{quote.route_id}:{target_account}".encode()


def _sign(unsigned_tx: bytes) -> bytes:
    return b"signed:" + unsigned_tx


class SubmissionEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.swap_builder = AsyncMock()
        self.swap_builder.build_swap_transaction.side_effect = _build_tx
        self.sender = AsyncMock()
        self.sender.broadcast.return_value = "replica-sig"
        self.sender.get_confirmation_status.return_value = "confirmed"
        self.signer = MagicMock()
        self.signer.sign.side_effect = _sign
        self.route_selector = AsyncMock()
        self.route_selector.select_route.return_value = _make_quote("fresh")

    def _make_engine(self, *, dry_run: bool = False) -> SubmissionEngine:
        return SubmissionEngine(
            logger=logging.getLogger("test.submission"),
            swap_builder=self.swap_builder,
            sender=self.sender,
            signer=self.signer,
            route_selector=self.route_selector,
            dry_run=dry_run,
        )

    async def test_submit_confirms_replica(self) -> None:
        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(),
        )

        self.assertEqual(record.status, "confirmed")
        self.assertEqual(record.tx_signature, "replica-sig")
        self.assertEqual(record.attempt_count, 1)
        self.assertEqual(record.requote_count, 0)
        self.sender.broadcast.assert_awaited_once_with(b"signed:unsigned:best:TargetWallet")

    async def test_expired_quote_is_replaced_before_build(self) -> None:
        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("stale", expires_at_ms=now_epoch_ms() - 1),
            runtime_config=_make_runtime_config(),
        )

        self.assertEqual(record.status, "confirmed")
        self.assertEqual(record.requote_count, 1)
        assert record.chosen_quote is not None
        self.assertEqual(record.chosen_quote.route_id, "fresh")
        built_routes = [call.args[0].route_id for call in self.swap_builder.build_swap_transaction.await_args_list]
        self.assertEqual(built_routes, ["fresh"])
        self.signer.sign.assert_called_once_with(b"unsigned:fresh:TargetWallet")

    async def test_quote_expiring_during_build_is_never_signed(self) -> None:
        async def slow_build(quote: Quote, target_account: str) -> bytes:
            if quote.route_id == "short-lived":
                await asyncio.sleep(0.1)
            return await _build_tx(quote, target_account)

        self.swap_builder.build_swap_transaction.side_effect = slow_build

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("short-lived", expires_at_ms=now_epoch_ms() + 30),
            runtime_config=_make_runtime_config(),
        )

        self.assertEqual(record.status, "confirmed")
        self.assertEqual(record.requote_count, 1)
        signed_payloads = [call.args[0] for call in self.signer.sign.call_args_list]
        self.assertEqual(signed_payloads, [b"unsigned:fresh:TargetWallet"])

    async def test_requote_budget_exhaustion_fails_with_quote_expired(self) -> None:
        self.route_selector.select_route.return_value = _make_quote("also-stale", expires_at_ms=0)

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("stale", expires_at_ms=0),
            runtime_config=_make_runtime_config(max_requotes=2),
        )

        self.assertEqual(record.status, "failed")
        self.assertEqual(record.fail_reason, FAIL_REASON_QUOTE_EXPIRED)
        self.assertEqual(record.requote_count, 2)
        self.signer.sign.assert_not_called()
        self.sender.broadcast.assert_not_awaited()

    async def test_requote_without_route_keeps_selector_reason(self) -> None:
        self.route_selector.select_route.return_value = StageFailure(
            reason=FAIL_REASON_NO_VIABLE_ROUTE,
            message="nothing left",
        )

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("stale", expires_at_ms=0),
            runtime_config=_make_runtime_config(),
        )

        self.assertEqual(record.fail_reason, FAIL_REASON_NO_VIABLE_ROUTE)
        self.signer.sign.assert_not_called()

    async def test_build_failure_is_terminal(self) -> None:
        self.swap_builder.build_swap_transaction.side_effect = AggregatorRequestError("bad quote", status=422)

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(),
        )

        self.assertEqual(record.fail_reason, FAIL_REASON_BUILD_FAILED)
        self.signer.sign.assert_not_called()

    async def test_build_retries_when_aggregator_is_unavailable(self) -> None:
        self.swap_builder.build_swap_transaction.side_effect = [
            AggregatorUnavailableError("429 Too Many Requests", status=429),
            b"unsigned:best:TargetWallet",
        ]

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(build_max_attempts=3),
        )

        self.assertEqual(record.status, "confirmed")
        self.assertEqual(self.swap_builder.build_swap_transaction.await_count, 2)
        self.signer.sign.assert_called_once_with(b"unsigned:best:TargetWallet")

    async def test_build_gives_up_after_configured_attempts(self) -> None:
        self.swap_builder.build_swap_transaction.side_effect = AggregatorUnavailableError("503", status=503)

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(build_max_attempts=3),
        )

        self.assertEqual(record.status, "failed")
        self.assertEqual(record.fail_reason, FAIL_REASON_BUILD_FAILED)
        self.assertEqual(self.swap_builder.build_swap_transaction.await_count, 3)
        self.signer.sign.assert_not_called()

    async def test_build_retry_stops_when_cancelled(self) -> None:
        cancel_event = asyncio.Event()

        async def unavailable_then_cancel(quote: Quote, target_account: str) -> bytes:
            cancel_event.set()
            raise AggregatorUnavailableError("timeout")

        self.swap_builder.build_swap_transaction.side_effect = unavailable_then_cancel

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(build_max_attempts=5),
            cancel_event=cancel_event,
        )

        self.assertEqual(record.fail_reason, FAIL_REASON_CANCELLED)
        self.assertEqual(self.swap_builder.build_swap_transaction.await_count, 1)

    async def test_signing_rejection_is_reported(self) -> None:
        self.signer.sign.side_effect = SigningRejectedError("fee payer mismatch")

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(),
        )

        self.assertEqual(record.status, "failed")
        self.assertEqual(record.fail_reason, FAIL_REASON_SIGNING_REJECTED)
        self.sender.broadcast.assert_not_awaited()

    async def test_broadcast_retries_transport_errors_then_gives_up(self) -> None:
        self.sender.broadcast.side_effect = LedgerTransportError("connection reset")

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(broadcast_max_attempts=3),
        )

        self.assertEqual(record.status, "failed")
        self.assertEqual(record.fail_reason, FAIL_REASON_BROADCAST_EXHAUSTED)
        self.assertEqual(record.attempt_count, 3)
        self.assertEqual(self.sender.broadcast.await_count, 3)

    async def test_broadcast_recovers_after_transport_error(self) -> None:
        self.sender.broadcast.side_effect = [LedgerTransportError("timeout"), "replica-sig"]

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(),
        )

        self.assertEqual(record.status, "confirmed")
        self.assertEqual(record.attempt_count, 2)

    async def test_rpc_rejection_is_not_retried(self) -> None:
        self.sender.broadcast.side_effect = LedgerRpcError(
            method="sendTransaction",
            message="Blockhash not found",
            code=-32002,
        )

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(),
        )

        self.assertEqual(record.fail_reason, FAIL_REASON_BROADCAST_REJECTED)
        self.assertEqual(self.sender.broadcast.await_count, 1)

    async def test_rejected_retry_after_lost_send_resolves_by_signature(self) -> None:
        signed_tx = _signed_transfer()
        expected_signature = str(VersionedTransaction.from_bytes(signed_tx).signatures[0])
        self.signer.sign.side_effect = None
        self.signer.sign.return_value = signed_tx
        self.sender.broadcast.side_effect = [
            LedgerTransportError("response lost"),
            LedgerRpcError(
                method="sendTransaction",
                message="This transaction has already been processed",
                code=-32002,
            ),
        ]

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(),
        )

        self.assertEqual(record.status, "confirmed")
        self.assertEqual(record.tx_signature, expected_signature)
        self.sender.get_confirmation_status.assert_awaited_with(expected_signature)

    async def test_rejected_retry_after_lost_send_can_end_unknown(self) -> None:
        self.signer.sign.side_effect = None
        self.signer.sign.return_value = _signed_transfer()
        self.sender.broadcast.side_effect = [
            LedgerTransportError("response lost"),
            LedgerRpcError(method="sendTransaction", message="already processed", code=-32002),
        ]
        self.sender.get_confirmation_status.return_value = "pending"

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(confirm_timeout_seconds=0.05),
        )

        self.assertEqual(record.status, "unknown")
        self.assertIsNotNone(record.tx_signature)

    async def test_failed_transaction_is_reported(self) -> None:
        self.sender.get_confirmation_status.return_value = "failed"

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(),
        )

        self.assertEqual(record.fail_reason, FAIL_REASON_TX_FAILED)
        self.assertEqual(record.tx_signature, "replica-sig")

    async def test_confirmation_timeout_ends_unknown(self) -> None:
        self.sender.get_confirmation_status.return_value = "pending"

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(confirm_timeout_seconds=0.05),
        )

        self.assertEqual(record.status, "unknown")
        self.assertEqual(record.fail_reason, FAIL_REASON_CONFIRMATION_TIMEOUT)
        self.assertEqual(record.tx_signature, "replica-sig")
        self.assertGreaterEqual(self.sender.get_confirmation_status.await_count, 2)

    async def test_confirmation_poll_errors_are_retried(self) -> None:
        self.sender.get_confirmation_status.side_effect = [
            LedgerTransportError("timeout"),
            "confirmed",
        ]

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(),
        )

        self.assertEqual(record.status, "confirmed")

    async def test_cancel_before_signing_skips_broadcast(self) -> None:
        cancel_event = asyncio.Event()
        cancel_event.set()

        record = await self._make_engine().submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(),
            cancel_event=cancel_event,
        )

        self.assertEqual(record.fail_reason, FAIL_REASON_CANCELLED)
        self.signer.sign.assert_not_called()
        self.sender.broadcast.assert_not_awaited()

    async def test_dry_run_signs_without_broadcasting(self) -> None:
        record = await self._make_engine(dry_run=True).submit(
            _make_order(),
            _make_quote("best"),
            runtime_config=_make_runtime_config(),
        )

        self.assertEqual(record.status, "dry_run")
        self.assertIsNone(record.tx_signature)
        self.signer.sign.assert_called_once()
        self.sender.broadcast.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
