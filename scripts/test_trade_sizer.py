from __future__ import annotations

import os
import unittest
from dataclasses import replace
from unittest.mock import patch

from copytrader.trading import (
    FAIL_REASON_INSUFFICIENT_BALANCE,
    ReplicaOrder,
    RuntimeConfig,
    SourceTrade,
    StageFailure,
    TradeSizer,
)
from copytrader.trading.types import SOL_MINT, USDC_MINT

TOKEN_A = "TokenAMint111111111111111111111111111111111"


def _make_runtime_config(**overrides: object) -> RuntimeConfig:
    config = RuntimeConfig(
        config_schema_version=1,
        scaling_ratio=0.1,
        sizing_basis="source",
        min_trade_amount=0,
        native_reserve_lamports=0,
        max_price_impact_bps=100.0,
        slippage_bps=50,
        quote_ttl_seconds=10.0,
        route_max_attempts=1,
        route_retry_backoff_seconds=0.0,
        max_requotes=1,
        build_max_attempts=3,
        build_retry_backoff_seconds=0.0,
        broadcast_max_attempts=1,
        broadcast_retry_backoff_seconds=0.0,
        confirm_timeout_seconds=1.0,
        confirm_poll_interval_seconds=0.05,
        replication_enabled=True,
    )
    return replace(config, **overrides)


def _make_trade(*, input_asset: str = TOKEN_A, input_amount: int = 100) -> SourceTrade:
    return SourceTrade(
        signature="source-sig",
        source_account="SourceWallet",
        input_asset=input_asset,
        output_asset=USDC_MINT,
        input_amount=input_amount,
        output_amount=42,
        observed_at=None,
    )


class TradeSizerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.sizer = TradeSizer()

    def test_source_basis_scales_source_amount(self) -> None:
        order = self.sizer.size(
            trade=_make_trade(input_amount=100),
            available_balance=500,
            target_account="TargetWallet",
            runtime_config=_make_runtime_config(),
        )

        assert isinstance(order, ReplicaOrder)
        self.assertEqual(order.requested_input_amount, 10)
        self.assertEqual(order.derived_from_signature, "source-sig")
        self.assertEqual(order.target_account, "TargetWallet")
        self.assertEqual(order.input_asset, TOKEN_A)
        self.assertEqual(order.output_asset, USDC_MINT)
        self.assertEqual(order.max_slippage_bps, 50)

    def test_balance_basis_scales_available_balance(self) -> None:
        order = self.sizer.size(
            trade=_make_trade(input_amount=100),
            available_balance=500,
            target_account="TargetWallet",
            runtime_config=_make_runtime_config(sizing_basis="balance"),
        )

        assert isinstance(order, ReplicaOrder)
        self.assertEqual(order.requested_input_amount, 50)

    def test_default_basis_scales_balance_not_source_amount(self) -> None:
        with patch.dict(os.environ, {"SCALING_RATIO": "0.1"}, clear=True):
            defaults = RuntimeConfig.from_env_defaults()
        config = _make_runtime_config(sizing_basis=defaults.sizing_basis, scaling_ratio=defaults.scaling_ratio)

        order = self.sizer.size(
            trade=_make_trade(input_amount=500),
            available_balance=100,
            target_account="TargetWallet",
            runtime_config=config,
        )

        self.assertEqual(defaults.sizing_basis, "balance")
        assert isinstance(order, ReplicaOrder)
        self.assertEqual(order.requested_input_amount, 10)

    def test_scaled_amount_rounds_down(self) -> None:
        order = self.sizer.size(
            trade=_make_trade(input_amount=999),
            available_balance=10_000,
            target_account="TargetWallet",
            runtime_config=_make_runtime_config(scaling_ratio=0.05),
        )

        assert isinstance(order, ReplicaOrder)
        self.assertEqual(order.requested_input_amount, 49)

    def test_order_never_exceeds_available_balance(self) -> None:
        order = self.sizer.size(
            trade=_make_trade(input_amount=10_000),
            available_balance=300,
            target_account="TargetWallet",
            runtime_config=_make_runtime_config(scaling_ratio=0.5),
        )

        assert isinstance(order, ReplicaOrder)
        self.assertEqual(order.requested_input_amount, 300)

    def test_balance_below_minimum_is_insufficient(self) -> None:
        result = self.sizer.size(
            trade=_make_trade(),
            available_balance=5,
            target_account="TargetWallet",
            runtime_config=_make_runtime_config(min_trade_amount=10),
        )

        assert isinstance(result, StageFailure)
        self.assertEqual(result.reason, FAIL_REASON_INSUFFICIENT_BALANCE)

    def test_zero_scaled_amount_is_insufficient(self) -> None:
        result = self.sizer.size(
            trade=_make_trade(input_amount=5),
            available_balance=500,
            target_account="TargetWallet",
            runtime_config=_make_runtime_config(),
        )

        assert isinstance(result, StageFailure)
        self.assertEqual(result.reason, FAIL_REASON_INSUFFICIENT_BALANCE)

    def test_native_input_keeps_fee_reserve(self) -> None:
        config = _make_runtime_config(
            sizing_basis="balance",
            scaling_ratio=1.0,
            native_reserve_lamports=20_000_000,
        )

        order = self.sizer.size(
            trade=_make_trade(input_asset=SOL_MINT, input_amount=1_000_000_000),
            available_balance=120_000_000,
            target_account="TargetWallet",
            runtime_config=config,
        )

        assert isinstance(order, ReplicaOrder)
        self.assertEqual(order.requested_input_amount, 100_000_000)

    def test_native_reserve_can_leave_nothing_to_trade(self) -> None:
        result = self.sizer.size(
            trade=_make_trade(input_asset=SOL_MINT, input_amount=1_000_000_000),
            available_balance=15_000_000,
            target_account="TargetWallet",
            runtime_config=_make_runtime_config(native_reserve_lamports=20_000_000, min_trade_amount=1),
        )

        assert isinstance(result, StageFailure)
        self.assertEqual(result.reason, FAIL_REASON_INSUFFICIENT_BALANCE)


if __name__ == "__main__":
    unittest.main()
