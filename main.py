from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import Any

from dotenv import load_dotenv

from copytrader.bot_runtime import (
    AppSettings,
    bootstrap_dependencies,
    make_runtime_config_provider,
    run_replication,
    setup_logger,
)
from copytrader.bot_runtime.loop import log_target_balance
from copytrader.common import guarded_call, log_event
from copytrader.storage import StorageGateway, StorageSettings
from copytrader.trading import (
    InMemoryProcessedLedger,
    JupiterAggregatorClient,
    KeypairSigner,
    ProcessedTradeStore,
    ReplicationContext,
    ReplicationOrchestrator,
    RouteSelector,
    RuntimeConfig,
    SolanaLedgerGateway,
    SubmissionEngine,
    TradeDecoder,
    TradeSizer,
    parse_program_ids,
)


async def main() -> None:
    load_dotenv()
    logger = setup_logger()

    app_settings = AppSettings.from_env()
    storage_settings = StorageSettings.from_env()
    app_settings.validate(redis_enabled=storage_settings.redis_enabled)
    runtime_defaults = RuntimeConfig.from_env_defaults()

    signer = KeypairSigner.from_private_key(app_settings.private_key)
    context = ReplicationContext(
        source_account=app_settings.source_account,
        target_account=signer.pubkey,
    )

    storage = StorageGateway(storage_settings, logger)
    gateway = SolanaLedgerGateway(
        logger=logger,
        rpc_url=app_settings.solana_rpc_url,
        ws_url=app_settings.solana_ws_url,
        timeout_seconds=app_settings.http_timeout_seconds,
        signature_limit=app_settings.subscription_signature_limit,
        reconnect_backoff_seconds=app_settings.subscription_reconnect_seconds,
    )
    aggregator = JupiterAggregatorClient(
        logger=logger,
        quote_api_url=app_settings.jupiter_quote_api,
        swap_api_url=app_settings.jupiter_swap_api,
        api_key=app_settings.jupiter_api_key,
        timeout_seconds=app_settings.http_timeout_seconds,
    )
    route_selector = RouteSelector(logger=logger, aggregator=aggregator)
    submission_engine = SubmissionEngine(
        logger=logger,
        swap_builder=aggregator,
        sender=gateway,
        signer=signer,
        route_selector=route_selector,
        dry_run=app_settings.dry_run,
    )

    if app_settings.ledger_backend == "memory":
        ledger: ProcessedTradeStore = InMemoryProcessedLedger()
        log_event(
            logger,
            level="warning",
            event="ledger_in_memory",
            message="Processed-trade ledger is in memory; signatures may be replayed after a restart",
        )
    else:
        ledger = storage

    orchestrator = ReplicationOrchestrator(
        logger=logger,
        context=context,
        balances=gateway,
        decoder=TradeDecoder(swap_program_ids=parse_program_ids(app_settings.recognized_swap_programs)),
        ledger=ledger,
        sizer=TradeSizer(),
        route_selector=route_selector,
        submission_engine=submission_engine,
        runtime_config_provider=make_runtime_config_provider(
            logger=logger,
            storage=storage,
            defaults=runtime_defaults,
        ),
        journal=storage,
        worker_concurrency=app_settings.worker_concurrency,
        queue_size=app_settings.event_queue_size,
        error_backoff_seconds=app_settings.error_backoff_seconds,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    async def on_config_update(config: dict[str, Any]) -> None:
        log_event(
            logger,
            level="info",
            event="runtime_config_updated",
            message="Runtime config updated",
            items=len(config),
        )

    await bootstrap_dependencies(
        logger=logger,
        stop_event=stop_event,
        app_settings=app_settings,
        storage=storage,
        gateway=gateway,
        aggregator=aggregator,
        config_listener_loop=loop,
        on_config_update=on_config_update,
    )

    try:
        await log_target_balance(logger=logger, gateway=gateway, context=context)
        recovered = await orchestrator.recover_interrupted(limit=app_settings.recovery_limit)

        await storage.publish_event(
            level="INFO",
            event="bot_started",
            message="Copy trader started",
            details={
                "source_account": context.source_account,
                "target_account": context.target_account,
                "dry_run": app_settings.dry_run,
                "ledger_backend": app_settings.ledger_backend,
                "recovered_in_flight": recovered,
                "runtime_defaults": runtime_defaults.to_dict(),
            },
        )

        await run_replication(
            logger=logger,
            stop_event=stop_event,
            storage=storage,
            gateway=gateway,
            orchestrator=orchestrator,
        )
    finally:
        orchestrator.shutdown()
        await guarded_call(
            lambda: storage.publish_event(
                level="INFO",
                event="bot_stopped",
                message="Copy trader stopped gracefully",
            ),
            logger=logger,
            event="shutdown_publish_failed",
            message="Failed to publish shutdown event",
        )
        await guarded_call(
            lambda: storage.mark_run_stopped(reason="shutdown"),
            logger=logger,
            event="shutdown_run_status_failed",
            message="Failed to mark run stopped",
        )
        await guarded_call(
            aggregator.close,
            logger=logger,
            event="shutdown_aggregator_close_failed",
            message="Failed to close aggregator client",
        )
        await guarded_call(
            gateway.close,
            logger=logger,
            event="shutdown_gateway_close_failed",
            message="Failed to close ledger gateway",
        )
        await guarded_call(
            storage.close,
            logger=logger,
            event="shutdown_storage_close_failed",
            message="Failed to close storage",
        )

        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")


if __name__ == "__main__":
    asyncio.run(main())
