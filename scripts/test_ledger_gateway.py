from __future__ import annotations

import asyncio
import logging
import unittest
from collections import OrderedDict
from typing import Any
from unittest.mock import AsyncMock, patch

from solders.keypair import Keypair

from copytrader.trading import LedgerRpcError, SolanaLedgerGateway
from copytrader.trading.types import SOL_MINT, USDC_MINT


class _FakeConnection:
    def __init__(self, websocket: Any) -> None:
        self._websocket = websocket

    async def __aenter__(self) -> Any:
        return self._websocket

    async def __aexit__(self, *exc_info: Any) -> bool:
        return False


def _make_gateway() -> SolanaLedgerGateway:
    return SolanaLedgerGateway(
        logger=logging.getLogger("test.gateway"),
        rpc_url="http://rpc.invalid",
        ws_url="ws://rpc.invalid",
        signature_limit=10,
        transaction_fetch_attempts=1,
    )


def _token_account(amount: str) -> dict[str, Any]:
    return {"account": {"data": {"parsed": {"info": {"tokenAmount": {"amount": amount}}}}}}


class SolanaLedgerGatewayTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.gateway = _make_gateway()
        self.rpc_call = AsyncMock()
        self.gateway._rpc_call = self.rpc_call  # type: ignore[method-assign]

    async def test_native_balance_uses_get_balance(self) -> None:
        self.rpc_call.return_value = {"context": {"slot": 1}, "value": 2_500_000_000}

        balance = await self.gateway.get_balance("TargetWallet", SOL_MINT)

        self.assertEqual(balance, 2_500_000_000)
        self.assertEqual(self.rpc_call.await_args.args[0], "getBalance")

    async def test_token_balance_sums_all_token_accounts(self) -> None:
        self.rpc_call.return_value = {"value": [_token_account("1500"), _token_account("500"), {"account": {}}]}

        balance = await self.gateway.get_balance("TargetWallet", USDC_MINT)

        self.assertEqual(balance, 2000)
        method, params = self.rpc_call.await_args.args
        self.assertEqual(method, "getTokenAccountsByOwner")
        self.assertEqual(params[1], {"mint": USDC_MINT})

    async def test_broadcast_sends_base64_without_node_retries(self) -> None:
        self.rpc_call.return_value = "replica-sig"

        handle = await self.gateway.broadcast(b"\x01\x02")

        self.assertEqual(handle, "replica-sig")
        method, params = self.rpc_call.await_args.args
        self.assertEqual(method, "sendTransaction")
        self.assertEqual(params[0], "AQI=")
        self.assertEqual(params[1]["maxRetries"], 0)

    async def test_broadcast_without_signature_is_rejected(self) -> None:
        self.rpc_call.return_value = None

        with self.assertRaises(LedgerRpcError):
            await self.gateway.broadcast(b"\x01")

    async def test_confirmation_status_mapping(self) -> None:
        cases = [
            ({"value": [None]}, "pending"),
            ({"value": [{"confirmationStatus": "processed", "err": None}]}, "pending"),
            ({"value": [{"confirmationStatus": "confirmed", "err": None}]}, "confirmed"),
            ({"value": [{"confirmationStatus": "finalized", "err": None}]}, "confirmed"),
            ({"value": [{"confirmationStatus": "confirmed", "err": {"InstructionError": [0, "x"]}}]}, "failed"),
        ]
        for payload, expected in cases:
            with self.subTest(expected=expected, payload=payload):
                self.rpc_call.return_value = payload
                self.assertEqual(await self.gateway.get_confirmation_status("replica-sig"), expected)

    async def test_subscription_skips_history_and_emits_new_signatures_oldest_first(self) -> None:
        account = str(Keypair().pubkey())
        websocket = AsyncMock()
        websocket.recv.return_value = [{"result": 1}]
        self.gateway.get_recent_signatures = AsyncMock(  # type: ignore[method-assign]
            side_effect=[
                ["sig-2", "sig-1"],
                ["sig-4", "sig-3", "sig-2", "sig-1"],
            ]
        )
        self.gateway.get_transaction = AsyncMock(  # type: ignore[method-assign]
            side_effect=lambda signature: {"signature": signature}
        )
        stop_event = asyncio.Event()

        with patch("copytrader.trading.gateway.ws_connect", return_value=_FakeConnection(websocket)):
            stream = self.gateway.subscribe_account_changes(account, stop_event=stop_event)
            received = [await stream.__anext__(), await stream.__anext__()]
            stop_event.set()
            await stream.aclose()

        self.assertEqual(
            received,
            [("sig-3", {"signature": "sig-3"}), ("sig-4", {"signature": "sig-4"})],
        )
        websocket.account_subscribe.assert_awaited_once()


    async def test_catch_up_pages_back_until_a_known_signature(self) -> None:
        gateway = SolanaLedgerGateway(
            logger=logging.getLogger("test.gateway"),
            rpc_url="http://rpc.invalid",
            ws_url="ws://rpc.invalid",
            signature_limit=2,
            transaction_fetch_attempts=1,
        )
        pages = {
            None: ["sig-6", "sig-5"],
            "sig-5": ["sig-4", "sig-3"],
            "sig-3": ["sig-2", "sig-1"],
        }
        gateway.get_recent_signatures = AsyncMock(  # type: ignore[method-assign]
            side_effect=lambda account, limit=None, *, before=None: pages[before]
        )
        gateway.get_transaction = AsyncMock(  # type: ignore[method-assign]
            side_effect=lambda signature: {"signature": signature}
        )
        seen: OrderedDict[str, None] = OrderedDict((signature, None) for signature in ("sig-1", "sig-2"))

        received = [signature async for signature, _ in gateway._drain_new_signatures("Source", seen)]

        self.assertEqual(received, ["sig-3", "sig-4", "sig-5", "sig-6"])
        befores = [call.kwargs.get("before") for call in gateway.get_recent_signatures.await_args_list]
        self.assertEqual(befores, [None, "sig-5", "sig-3"])

    async def test_catch_up_warns_when_no_known_signature_is_reached(self) -> None:
        gateway = SolanaLedgerGateway(
            logger=logging.getLogger("test.gateway"),
            rpc_url="http://rpc.invalid",
            ws_url="ws://rpc.invalid",
            signature_limit=2,
            transaction_fetch_attempts=1,
            max_catchup_pages=2,
        )
        pages = {None: ["sig-6", "sig-5"], "sig-5": ["sig-4", "sig-3"]}
        gateway.get_recent_signatures = AsyncMock(  # type: ignore[method-assign]
            side_effect=lambda account, limit=None, *, before=None: pages[before]
        )
        gateway.get_transaction = AsyncMock(  # type: ignore[method-assign]
            side_effect=lambda signature: {"signature": signature}
        )
        seen: OrderedDict[str, None] = OrderedDict([("sig-1", None)])

        with self.assertLogs("test.gateway", level="WARNING") as captured:
            received = [signature async for signature, _ in gateway._drain_new_signatures("Source", seen)]

        self.assertEqual(received, ["sig-3", "sig-4", "sig-5", "sig-6"])
        self.assertIn("subscription_gap_suspected", [getattr(record, "event", None) for record in captured.records])

    async def test_unavailable_transaction_is_retried_on_later_drains(self) -> None:
        gateway = SolanaLedgerGateway(
            logger=logging.getLogger("test.gateway"),
            rpc_url="http://rpc.invalid",
            ws_url="ws://rpc.invalid",
            signature_limit=10,
            transaction_fetch_attempts=1,
            unresolved_fetch_rounds=3,
        )
        gateway.get_recent_signatures = AsyncMock(return_value=["sig-2", "sig-1"])  # type: ignore[method-assign]
        gateway.get_transaction = AsyncMock(  # type: ignore[method-assign]
            side_effect=[None, None, {"signature": "sig-2"}]
        )
        seen: OrderedDict[str, None] = OrderedDict([("sig-1", None)])

        first = [item async for item in gateway._drain_new_signatures("Source", seen)]
        second = [item async for item in gateway._drain_new_signatures("Source", seen)]
        third = [item async for item in gateway._drain_new_signatures("Source", seen)]

        self.assertEqual(first, [])
        self.assertEqual(second, [])
        self.assertEqual(third, [("sig-2", {"signature": "sig-2"})])
        self.assertIn("sig-2", seen)

    async def test_transaction_that_never_resolves_is_emitted_without_payload(self) -> None:
        gateway = SolanaLedgerGateway(
            logger=logging.getLogger("test.gateway"),
            rpc_url="http://rpc.invalid",
            ws_url="ws://rpc.invalid",
            signature_limit=10,
            transaction_fetch_attempts=1,
            unresolved_fetch_rounds=2,
        )
        gateway.get_recent_signatures = AsyncMock(return_value=["sig-2", "sig-1"])  # type: ignore[method-assign]
        gateway.get_transaction = AsyncMock(return_value=None)  # type: ignore[method-assign]
        seen: OrderedDict[str, None] = OrderedDict([("sig-1", None)])

        first = [item async for item in gateway._drain_new_signatures("Source", seen)]
        second = [item async for item in gateway._drain_new_signatures("Source", seen)]

        self.assertEqual(first, [])
        self.assertEqual(second, [("sig-2", None)])
        self.assertIn("sig-2", seen)


if __name__ == "__main__":
    unittest.main()
