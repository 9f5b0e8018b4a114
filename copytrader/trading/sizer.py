from __future__ import annotations

from decimal import ROUND_FLOOR, Decimal

from .types import (
    FAIL_REASON_INSUFFICIENT_BALANCE,
    SOL_MINT,
    ReplicaOrder,
    RuntimeConfig,
    SourceTrade,
    StageFailure,
)


class TradeSizer:
    def size(
        self,
        *,
        trade: SourceTrade,
        available_balance: int,
        target_account: str,
        runtime_config: RuntimeConfig,
    ) -> ReplicaOrder | StageFailure:
        available = max(0, int(available_balance))
        if trade.input_asset == SOL_MINT:
            available = max(0, available - runtime_config.native_reserve_lamports)

        if available < runtime_config.min_trade_amount:
            return StageFailure(
                reason=FAIL_REASON_INSUFFICIENT_BALANCE,
                message=(
                    f"Available balance {available} is below minimum trade size "
                    f"{runtime_config.min_trade_amount}"
                ),
            )

        ratio = Decimal(str(runtime_config.scaling_ratio))
        basis = trade.input_amount if runtime_config.sizing_basis == "source" else available
        scaled = (Decimal(basis) * ratio).to_integral_value(rounding=ROUND_FLOOR)
        requested = min(int(scaled), available)

        if requested <= 0:
            return StageFailure(
                reason=FAIL_REASON_INSUFFICIENT_BALANCE,
                message=f"Scaled order size is zero (available={available})",
            )

        return ReplicaOrder(
            derived_from_signature=trade.signature,
            target_account=target_account,
            input_asset=trade.input_asset,
            output_asset=trade.output_asset,
            requested_input_amount=requested,
            max_slippage_bps=runtime_config.slippage_bps,
        )
