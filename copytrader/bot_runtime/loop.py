from __future__ import annotations

import asyncio
import logging

from copytrader.common import guarded_call, log_event, wait_with_stop
from copytrader.storage import ConfigUpdateHandler, StorageGateway
from copytrader.trading import (
    JupiterAggregatorClient,
    ReplicationContext,
    ReplicationOrchestrator,
    RuntimeConfig,
    SolanaLedgerGateway,
)
from copytrader.trading.orchestrator import RuntimeConfigProvider
from copytrader.trading.types import SOL_MINT

from .settings import AppSettings


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    gateway: SolanaLedgerGateway,
    aggregator: JupiterAggregatorClient,
    config_listener_loop: asyncio.AbstractEventLoop,
    on_config_update: ConfigUpdateHandler,
) -> None:
    while not stop_event.is_set():
        try:
            await storage.connect()
            storage.start_config_listener(config_listener_loop, on_update=on_config_update)
            await gateway.connect()
            await gateway.healthcheck()
            await aggregator.connect()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="bootstrap_error",
                    message="Failed to initialize dependencies",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="bootstrap_publish_error_failed",
                message="Failed to publish bootstrap error",
            )
            await guarded_call(
                aggregator.close,
                logger=logger,
                event="bootstrap_aggregator_close_failed",
                message="Failed to close aggregator client during bootstrap retry",
            )
            await guarded_call(
                gateway.close,
                logger=logger,
                event="bootstrap_gateway_close_failed",
                message="Failed to close ledger gateway during bootstrap retry",
            )
            await guarded_call(
                storage.close,
                logger=logger,
                event="bootstrap_storage_close_failed",
                message="Failed to close storage during bootstrap retry",
            )

            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


def make_runtime_config_provider(
    *,
    logger: logging.Logger,
    storage: StorageGateway,
    defaults: RuntimeConfig,
) -> RuntimeConfigProvider:
    last_known: list[RuntimeConfig] = [defaults]

    async def provide() -> RuntimeConfig:
        try:
            redis_config = await storage.get_runtime_config()
        except Exception as error:
            log_event(
                logger,
                level="warning",
                event="runtime_config_read_failed",
                message="Runtime config read failed; using last known values",
                error=str(error),
            )
            return last_known[0]

        runtime_config = RuntimeConfig.from_redis(redis_config, defaults)
        last_known[0] = runtime_config
        return runtime_config

    return provide


async def log_target_balance(
    *,
    logger: logging.Logger,
    gateway: SolanaLedgerGateway,
    context: ReplicationContext,
) -> int | None:
    balance = await guarded_call(
        lambda: gateway.get_balance(context.target_account, SOL_MINT),
        logger=logger,
        event="target_balance_lookup_failed",
        message="Failed to read target wallet balance at start-up",
        target_account=context.target_account,
    )
    if balance is not None:
        log_event(
            logger,
            level="info",
            event="target_balance",
            message="Target wallet native balance",
            target_account=context.target_account,
            balance_lamports=balance,
            balance_sol=round(balance / 1_000_000_000, 9),
        )
    return balance


async def run_heartbeat(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    storage: StorageGateway,
    interval_seconds: float,
) -> None:
    while not stop_event.is_set():
        await guarded_call(
            storage.update_heartbeat,
            logger=logger,
            event="heartbeat_update_failed",
            message="Failed to update heartbeat",
        )
        await wait_with_stop(stop_event, interval_seconds)


async def run_replication(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    storage: StorageGateway,
    gateway: SolanaLedgerGateway,
    orchestrator: ReplicationOrchestrator,
) -> None:
    async def shutdown_on_stop() -> None:
        await stop_event.wait()
        orchestrator.shutdown()

    heartbeat_task = asyncio.create_task(
        run_heartbeat(
            logger=logger,
            stop_event=stop_event,
            storage=storage,
            interval_seconds=storage.settings.heartbeat_interval_seconds,
        ),
        name="heartbeat",
    )
    stop_task = asyncio.create_task(shutdown_on_stop(), name="shutdown-on-stop")

    try:
        events = gateway.subscribe_account_changes(
            orchestrator.context.source_account,
            stop_event=stop_event,
        )
        await orchestrator.run(events)
    finally:
        stop_task.cancel()
        heartbeat_task.cancel()
        await asyncio.gather(stop_task, heartbeat_task, return_exceptions=True)
