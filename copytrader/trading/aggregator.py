from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
from typing import Any

import aiohttp

from copytrader.common import log_event

from .types import Quote, now_epoch_ms, to_float, to_int

DEFAULT_QUOTE_API_URL = "https://api.jup.ag/swap/v1/quote"
DEFAULT_SWAP_API_URL = "https://api.jup.ag/swap/v1/swap"

QUOTE_STRATEGIES: tuple[tuple[str, dict[str, str]], ...] = (
    ("default", {}),
    ("direct_only", {"onlyDirectRoutes": "true"}),
    (
        "restricted_intermediate",
        {
            "restrictIntermediateTokens": "true",
            "maxAccounts": "48",
        },
    ),
)


class AggregatorUnavailableError(RuntimeError):
    """Network failure, rate limit or 5xx from the aggregator; safe to retry."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class AggregatorRequestError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None, payload: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.payload = payload


def _error_message_from_payload(payload: Any) -> str:
    if isinstance(payload, dict):
        for key in ("error", "message", "details"):
            value = payload.get(key)
            if value:
                return str(value)
    return str(payload)


def _normalize_dex_label(label: str) -> str:
    return " ".join(str(label or "").replace(",", " ").split())


def extract_route_labels(quote_response: dict[str, Any]) -> tuple[str, ...]:
    route_plan = quote_response.get("routePlan")
    if not isinstance(route_plan, list):
        return ()

    labels: list[str] = []
    for hop in route_plan:
        if not isinstance(hop, dict):
            continue
        swap_info = hop.get("swapInfo")
        if not isinstance(swap_info, dict):
            continue
        label = _normalize_dex_label(swap_info.get("label") or swap_info.get("ammKey") or "")
        amm_key = str(swap_info.get("ammKey") or "").strip()
        if label:
            labels.append(f"{label}:{amm_key}" if amm_key else label)
    return tuple(labels)


def route_id_for(quote_response: dict[str, Any]) -> str:
    labels = extract_route_labels(quote_response)
    fingerprint = ">".join(labels).lower() if labels else "unknown"
    return hashlib.sha1(fingerprint.encode("utf-8")).hexdigest()[:16]


def quote_from_response(
    quote_response: dict[str, Any],
    *,
    quote_ttl_seconds: float,
    fetched_at_ms: int | None = None,
) -> Quote | None:
    input_asset = str(quote_response.get("inputMint") or "")
    output_asset = str(quote_response.get("outputMint") or "")
    in_amount = to_int(quote_response.get("inAmount"), 0)
    out_amount = to_int(quote_response.get("outAmount"), 0)
    if not input_asset or not output_asset or in_amount <= 0 or out_amount <= 0:
        return None

    fetched = now_epoch_ms() if fetched_at_ms is None else fetched_at_ms
    # priceImpactPct is a fraction (0.0012 == 12 bps).
    price_impact_bps = abs(to_float(quote_response.get("priceImpactPct"), 0.0)) * 10_000
    return Quote(
        route_id=route_id_for(quote_response),
        input_asset=input_asset,
        output_asset=output_asset,
        input_amount=in_amount,
        expected_output_amount=out_amount,
        price_impact_bps=price_impact_bps,
        expires_at_ms=fetched + int(max(0.0, quote_ttl_seconds) * 1000),
        quote_response=dict(quote_response),
    )


class JupiterAggregatorClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        quote_api_url: str = DEFAULT_QUOTE_API_URL,
        swap_api_url: str = DEFAULT_SWAP_API_URL,
        api_key: str | None = None,
        timeout_seconds: float = 8.0,
        strategies: tuple[tuple[str, dict[str, str]], ...] = QUOTE_STRATEGIES,
    ) -> None:
        self._logger = logger
        self._quote_api_url = quote_api_url.strip() or DEFAULT_QUOTE_API_URL
        self._swap_api_url = swap_api_url.strip() or DEFAULT_SWAP_API_URL
        self._api_key = (api_key or "").strip()
        self._timeout_seconds = timeout_seconds
        self._strategies = strategies or (("default", {}),)
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def healthcheck(self) -> None:
        await self.connect()

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": "solana-copy-trader/1.0",
        }
        if self._api_key:
            headers["x-api-key"] = self._api_key
        return headers

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> tuple[int, Any]:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("Jupiter HTTP session is not initialized.")

        try:
            async with self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers(),
            ) as response:
                status = response.status
                body = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as error:
            raise AggregatorUnavailableError(f"Jupiter request failed: {error}") from error

        if status == 429 or status >= 500:
            raise AggregatorUnavailableError(
                f"Jupiter request failed: status={status} body={body[:240]}",
                status=status,
            )

        try:
            data = json.loads(body) if body else {}
        except json.JSONDecodeError as error:
            raise AggregatorRequestError(
                f"Jupiter returned a non-JSON body: status={status}",
                status=status,
                payload=body[:240],
            ) from error
        return status, data

    async def _quote_once(
        self,
        *,
        strategy: str,
        params: dict[str, str],
    ) -> dict[str, Any] | None:
        status, data = await self._request_json("GET", self._quote_api_url, params=params)
        if status >= 400:
            message = _error_message_from_payload(data)
            # Jupiter answers 400 when no route exists for the pair/amount.
            if "route" in message.lower() or "liquidity" in message.lower():
                log_event(
                    self._logger,
                    level="debug",
                    event="jupiter_quote_no_route",
                    message="Jupiter found no route for quote strategy",
                    strategy=strategy,
                    status=status,
                    error=message,
                )
                return None
            raise AggregatorRequestError(
                f"Jupiter quote failed: status={status} error={message}",
                status=status,
                payload=data,
            )

        if not isinstance(data, dict) or "outAmount" not in data:
            raise AggregatorRequestError(f"Unexpected Jupiter quote response: {data}", payload=data)
        return data

    async def quote(
        self,
        input_asset: str,
        output_asset: str,
        amount: int,
        *,
        slippage_bps: int,
        quote_ttl_seconds: float,
    ) -> list[Quote]:
        base_params = {
            "inputMint": input_asset,
            "outputMint": output_asset,
            "amount": str(int(amount)),
            "slippageBps": str(int(slippage_bps)),
        }
        names = [name for name, _ in self._strategies]
        results = await asyncio.gather(
            *(
                self._quote_once(strategy=name, params={**base_params, **extra})
                for name, extra in self._strategies
            ),
            return_exceptions=True,
        )

        quotes: dict[str, Quote] = {}
        errors: list[BaseException] = []
        fetched_at_ms = now_epoch_ms()
        for name, result in zip(names, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                errors.append(result)
                log_event(
                    self._logger,
                    level="warning",
                    event="jupiter_quote_strategy_failed",
                    message="Jupiter quote strategy failed",
                    strategy=name,
                    error=str(result),
                )
                continue
            if result is None:
                continue

            quote = quote_from_response(
                result,
                quote_ttl_seconds=quote_ttl_seconds,
                fetched_at_ms=fetched_at_ms,
            )
            if quote is None:
                continue
            existing = quotes.get(quote.route_id)
            if existing is None or quote.expected_output_amount > existing.expected_output_amount:
                quotes[quote.route_id] = quote

        if not quotes and errors and len(errors) == len(results):
            transient = [error for error in errors if isinstance(error, AggregatorUnavailableError)]
            if transient:
                raise transient[0]
            first = errors[0]
            if isinstance(first, Exception):
                raise first
        return list(quotes.values())

    async def build_swap_transaction(self, quote: Quote, target_account: str) -> bytes:
        payload = {
            "quoteResponse": quote.quote_response,
            "userPublicKey": target_account,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        status, data = await self._request_json("POST", self._swap_api_url, json_body=payload)
        if status >= 400 or not isinstance(data, dict):
            raise AggregatorRequestError(
                f"Jupiter swap build failed: status={status} error={_error_message_from_payload(data)}",
                status=status,
                payload=data,
            )

        encoded = data.get("swapTransaction")
        if not isinstance(encoded, str) or not encoded:
            raise AggregatorRequestError(
                f"swapTransaction is missing in Jupiter swap response: {data}",
                payload=data,
            )
        try:
            return base64.b64decode(encoded)
        except ValueError as error:
            raise AggregatorRequestError("swapTransaction is not valid base64") from error
