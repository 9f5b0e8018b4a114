from __future__ import annotations

import asyncio
import base64
import logging
from collections import OrderedDict
from typing import Any, AsyncIterator

import aiohttp
from solana.rpc.commitment import Confirmed
from solana.rpc.websocket_api import connect as ws_connect
from solders.pubkey import Pubkey

from copytrader.common import compute_backoff_seconds, log_event, wait_with_stop

from .types import SOL_MINT, ConfirmationStatus, to_int


class LedgerTransportError(RuntimeError):
    """The RPC node could not be reached or answered with a transport-level failure."""


class LedgerRpcError(RuntimeError):
    def __init__(
        self,
        *,
        method: str,
        message: str,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.method = method
        self.code = code
        self.data = data


def _error_payload_to_message(payload: Any) -> str:
    if isinstance(payload, dict):
        message = payload.get("message")
        if message:
            return str(message)
    return str(payload)


class SolanaLedgerGateway:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        ws_url: str,
        timeout_seconds: float = 8.0,
        signature_limit: int = 20,
        reconnect_backoff_seconds: float = 2.0,
        receive_timeout_seconds: float = 30.0,
        transaction_fetch_attempts: int = 3,
        seen_capacity: int = 5000,
        max_catchup_pages: int = 5,
        unresolved_fetch_rounds: int = 3,
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url
        self._ws_url = ws_url
        self._timeout_seconds = timeout_seconds
        self._signature_limit = max(1, signature_limit)
        self._reconnect_backoff_seconds = max(0.1, reconnect_backoff_seconds)
        self._receive_timeout_seconds = max(1.0, receive_timeout_seconds)
        self._transaction_fetch_attempts = max(1, transaction_fetch_attempts)
        self._seen_capacity = max(self._signature_limit * 4, seen_capacity)
        self._max_catchup_pages = max(1, max_catchup_pages)
        self._unresolved_fetch_rounds = max(1, unresolved_fetch_rounds)
        self._unresolved_fetches: dict[str, int] = {}
        self._http_session: aiohttp.ClientSession | None = None
        self._request_id = 0

    async def connect(self) -> None:
        if not self._rpc_url:
            raise ValueError("SOLANA_RPC_URL is required.")
        if self._http_session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._http_session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    async def healthcheck(self) -> None:
        await self._rpc_call("getLatestBlockhash", [{"commitment": "processed"}])

    async def _rpc_call(self, method: str, params: list[Any] | None = None) -> Any:
        if self._http_session is None:
            await self.connect()
        if self._http_session is None:
            raise RuntimeError("RPC HTTP session is not initialized.")

        self._request_id += 1
        payload: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        try:
            async with self._http_session.post(self._rpc_url, json=payload) as response:
                status = response.status
                body = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as error:
            raise LedgerTransportError(f"RPC transport error for {method}: {error}") from error

        if status == 429 or status >= 500:
            raise LedgerTransportError(f"RPC call failed: method={method} status={status}")
        if not isinstance(body, dict):
            raise LedgerTransportError(f"Invalid RPC response for {method}: {body}")

        error_payload = body.get("error")
        if error_payload:
            code = to_int(error_payload.get("code"), 0) if isinstance(error_payload, dict) else None
            raise LedgerRpcError(
                method=method,
                code=code or None,
                data=error_payload,
                message=f"RPC error for {method}: {_error_payload_to_message(error_payload)}",
            )
        if status >= 400:
            raise LedgerRpcError(method=method, message=f"RPC call failed: method={method} status={status}")

        return body.get("result")

    async def get_recent_signatures(
        self,
        account: str,
        limit: int | None = None,
        *,
        before: str | None = None,
    ) -> list[str]:
        options: dict[str, Any] = {"limit": max(1, limit or self._signature_limit), "commitment": "confirmed"}
        if before:
            options["before"] = before
        result = await self._rpc_call("getSignaturesForAddress", [account, options])
        if not isinstance(result, list):
            raise LedgerRpcError(
                method="getSignaturesForAddress",
                message=f"Unexpected getSignaturesForAddress response: {result}",
            )
        return [str(item["signature"]) for item in result if isinstance(item, dict) and item.get("signature")]

    async def get_transaction(self, signature: str) -> dict[str, Any] | None:
        result = await self._rpc_call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        return result if isinstance(result, dict) else None

    async def get_balance(self, account: str, asset: str) -> int:
        if asset == SOL_MINT:
            result = await self._rpc_call("getBalance", [account, {"commitment": "confirmed"}])
            if not isinstance(result, dict):
                raise LedgerRpcError(method="getBalance", message=f"Unexpected getBalance response: {result}")
            return max(0, to_int(result.get("value"), 0))

        result = await self._rpc_call(
            "getTokenAccountsByOwner",
            [account, {"mint": asset}, {"encoding": "jsonParsed", "commitment": "confirmed"}],
        )
        if not isinstance(result, dict) or not isinstance(result.get("value"), list):
            raise LedgerRpcError(
                method="getTokenAccountsByOwner",
                message=f"Unexpected getTokenAccountsByOwner response: {result}",
            )

        total = 0
        for entry in result["value"]:
            try:
                token_amount = entry["account"]["data"]["parsed"]["info"]["tokenAmount"]
            except (KeyError, TypeError):
                continue
            total += to_int(token_amount.get("amount"), 0)
        return max(0, total)

    async def broadcast(self, signed_tx: bytes) -> str:
        encoded = base64.b64encode(signed_tx).decode("ascii")
        result = await self._rpc_call(
            "sendTransaction",
            [
                encoded,
                {
                    "encoding": "base64",
                    "skipPreflight": False,
                    "preflightCommitment": "confirmed",
                    "maxRetries": 0,
                },
            ],
        )
        if not isinstance(result, str) or not result:
            raise LedgerRpcError(method="sendTransaction", message=f"sendTransaction returned no signature: {result}")
        return result

    async def get_confirmation_status(self, handle: str) -> ConfirmationStatus:
        result = await self._rpc_call(
            "getSignatureStatuses",
            [[handle], {"searchTransactionHistory": False}],
        )
        if not isinstance(result, dict):
            raise LedgerRpcError(
                method="getSignatureStatuses",
                message=f"Unexpected getSignatureStatuses response: {result}",
            )

        values = result.get("value")
        status = values[0] if isinstance(values, list) and values else None
        if not isinstance(status, dict):
            return "pending"
        if status.get("err") is not None:
            return "failed"
        if str(status.get("confirmationStatus") or "") in {"confirmed", "finalized"}:
            return "confirmed"
        return "pending"

    def _remember(self, seen: OrderedDict[str, None], signature: str) -> None:
        seen[signature] = None
        seen.move_to_end(signature)
        while len(seen) > self._seen_capacity:
            seen.popitem(last=False)

    async def _fetch_transaction_with_retry(self, signature: str) -> dict[str, Any] | None:
        for attempt in range(1, self._transaction_fetch_attempts + 1):
            try:
                raw_tx = await self.get_transaction(signature)
            except LedgerTransportError as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="ledger_transaction_fetch_retry",
                    message="getTransaction failed; retrying",
                    source_signature=signature,
                    attempt=attempt,
                    error=str(error),
                )
                raw_tx = None
            if raw_tx is not None:
                return raw_tx
            if attempt < self._transaction_fetch_attempts:
                await asyncio.sleep(compute_backoff_seconds(attempt=attempt, base_seconds=0.5, max_seconds=4.0))
        return None

    async def _drain_new_signatures(
        self,
        account: str,
        seen: OrderedDict[str, None],
    ) -> AsyncIterator[tuple[str, dict[str, Any] | None]]:
        fresh: list[str] = []
        before: str | None = None
        for _ in range(self._max_catchup_pages):
            signatures = await self.get_recent_signatures(account, self._signature_limit, before=before)
            page_fresh = [signature for signature in signatures if signature not in seen]
            fresh.extend(page_fresh)
            if len(page_fresh) < len(signatures) or len(signatures) < self._signature_limit:
                break
            before = signatures[-1]
        else:
            log_event(
                self._logger,
                level="warning",
                event="subscription_gap_suspected",
                message="No known signature found within the catch-up window; older source transactions may be missed",
                source_account=account,
                fetched_count=len(fresh),
                max_catchup_pages=self._max_catchup_pages,
            )

        # RPC returns newest first; emit in ledger order.
        for signature in reversed(fresh):
            raw_tx = await self._fetch_transaction_with_retry(signature)
            if raw_tx is None:
                rounds = self._unresolved_fetches.get(signature, 0) + 1
                if rounds < self._unresolved_fetch_rounds:
                    self._unresolved_fetches[signature] = rounds
                    if len(self._unresolved_fetches) > self._seen_capacity:
                        self._unresolved_fetches.pop(next(iter(self._unresolved_fetches)))
                    continue
                log_event(
                    self._logger,
                    level="warning",
                    event="ledger_transaction_unresolved",
                    message="Transaction body never became available; emitting without payload",
                    source_signature=signature,
                    rounds=rounds,
                )
            self._unresolved_fetches.pop(signature, None)
            self._remember(seen, signature)
            yield signature, raw_tx

    async def subscribe_account_changes(
        self,
        account: str,
        *,
        stop_event: asyncio.Event,
    ) -> AsyncIterator[tuple[str, dict[str, Any] | None]]:
        """Yield ``(signature, raw_tx)`` for every new transaction touching ``account``.

        Signatures that already existed on the first connect are treated as
        history and never emitted. After a reconnect, anything that landed
        while the socket was down is caught up before live notifications resume.
        """
        if not self._ws_url:
            raise ValueError("SOLANA_WS_URL is required.")

        seen: OrderedDict[str, None] = OrderedDict()
        primed = False
        attempt = 0
        pubkey = Pubkey.from_string(account)

        while not stop_event.is_set():
            try:
                if not primed:
                    for signature in reversed(await self.get_recent_signatures(account, self._signature_limit)):
                        self._remember(seen, signature)
                    primed = True
                    log_event(
                        self._logger,
                        level="info",
                        event="subscription_baseline_primed",
                        message="Existing source signatures recorded as history",
                        source_account=account,
                        baseline_count=len(seen),
                    )

                async with ws_connect(self._ws_url) as websocket:
                    await websocket.account_subscribe(pubkey, commitment=Confirmed, encoding="jsonParsed")
                    await asyncio.wait_for(websocket.recv(), timeout=self._receive_timeout_seconds)
                    log_event(
                        self._logger,
                        level="info",
                        event="subscription_connected",
                        message="Subscribed to source account changes",
                        source_account=account,
                        reconnect_attempt=attempt,
                    )
                    attempt = 0

                    async for item in self._drain_new_signatures(account, seen):
                        yield item

                    while not stop_event.is_set():
                        try:
                            await asyncio.wait_for(websocket.recv(), timeout=self._receive_timeout_seconds)
                        except asyncio.TimeoutError:
                            # Quiet socket: fall through to a poll so missed notifications are caught.
                            pass
                        async for item in self._drain_new_signatures(account, seen):
                            yield item
            except asyncio.CancelledError:
                raise
            except Exception as error:
                attempt += 1
                backoff_seconds = compute_backoff_seconds(
                    attempt=attempt,
                    base_seconds=self._reconnect_backoff_seconds,
                    max_seconds=60.0,
                )
                log_event(
                    self._logger,
                    level="warning",
                    event="subscription_reconnect",
                    message="Source account subscription dropped; reconnecting",
                    source_account=account,
                    attempt=attempt,
                    backoff_seconds=round(backoff_seconds, 3),
                    error=str(error),
                )
                if await wait_with_stop(stop_event, backoff_seconds):
                    break

        log_event(
            self._logger,
            level="info",
            event="subscription_stopped",
            message="Source account subscription stopped",
            source_account=account,
        )
