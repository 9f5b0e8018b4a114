from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Protocol

from copytrader.common import compute_backoff_seconds, log_event

from .aggregator import AggregatorRequestError, AggregatorUnavailableError
from .types import (
    FAIL_REASON_AGGREGATOR_UNAVAILABLE,
    FAIL_REASON_NO_VIABLE_ROUTE,
    Quote,
    RuntimeConfig,
    StageFailure,
)


class QuoteSource(Protocol):
    async def quote(
        self,
        input_asset: str,
        output_asset: str,
        amount: int,
        *,
        slippage_bps: int,
        quote_ttl_seconds: float,
    ) -> list[Quote]:
        ...


def _ranking_key(quote: Quote) -> tuple[int, float, int]:
    return (-quote.expected_output_amount, quote.price_impact_bps, quote.expires_at_ms)


def rank_quotes(quotes: Iterable[Quote], *, max_price_impact_bps: float) -> list[Quote]:
    """Viable quotes, best first.

    Best means highest expected output, then lowest price impact, then the
    quote that expires first.
    """
    viable = [
        quote
        for quote in quotes
        if quote.expected_output_amount > 0 and quote.price_impact_bps <= max_price_impact_bps
    ]
    return sorted(viable, key=_ranking_key)


def pick_best_quote(quotes: Iterable[Quote], *, max_price_impact_bps: float) -> Quote | None:
    ranked = rank_quotes(quotes, max_price_impact_bps=max_price_impact_bps)
    return ranked[0] if ranked else None


class RouteSelector:
    def __init__(self, *, logger: logging.Logger, aggregator: QuoteSource) -> None:
        self._logger = logger
        self._aggregator = aggregator

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
        max_attempts = max(1, runtime_config.route_max_attempts)
        last_transient_error: Exception | None = None
        last_request_error: Exception | None = None
        rejected_count = 0

        for attempt in range(1, max_attempts + 1):
            try:
                quotes = await self._aggregator.quote(
                    input_asset,
                    output_asset,
                    amount,
                    slippage_bps=slippage_bps,
                    quote_ttl_seconds=runtime_config.quote_ttl_seconds,
                )
            except AggregatorUnavailableError as error:
                last_transient_error = error
                quotes = []
            except AggregatorRequestError as error:
                last_request_error = error
                quotes = []
            else:
                last_transient_error = None

            best = pick_best_quote(quotes, max_price_impact_bps=runtime_config.max_price_impact_bps)
            if best is not None:
                log_event(
                    self._logger,
                    level="info",
                    event="route_selected",
                    message="Best route selected",
                    source_signature=source_signature,
                    attempt=attempt,
                    candidate_count=len(quotes),
                    **best.compact(),
                )
                return best

            rejected_count = len(quotes)
            log_event(
                self._logger,
                level="warning",
                event="route_attempt_empty",
                message="No viable route on this attempt",
                source_signature=source_signature,
                attempt=attempt,
                max_attempts=max_attempts,
                candidate_count=len(quotes),
                max_price_impact_bps=runtime_config.max_price_impact_bps,
                error=str(last_transient_error or last_request_error or ""),
            )
            if attempt < max_attempts:
                await asyncio.sleep(
                    compute_backoff_seconds(
                        attempt=attempt,
                        base_seconds=runtime_config.route_retry_backoff_seconds,
                    )
                )

        if last_transient_error is not None:
            return StageFailure(
                reason=FAIL_REASON_AGGREGATOR_UNAVAILABLE,
                message=f"Aggregator unavailable after {max_attempts} attempts: {last_transient_error}",
                retryable=True,
            )
        return StageFailure(
            reason=FAIL_REASON_NO_VIABLE_ROUTE,
            message=(
                f"No route within {runtime_config.max_price_impact_bps} bps impact after "
                f"{max_attempts} attempts (last candidates={rejected_count})"
            ),
        )
