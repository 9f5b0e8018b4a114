from __future__ import annotations

import asyncio
import logging
import unittest
from unittest.mock import AsyncMock, MagicMock

from copytrader.storage import StorageGateway, StorageSettings
from copytrader.trading import InMemoryProcessedLedger


def _make_settings(*, processed_ttl_seconds: int = 0) -> StorageSettings:
    return StorageSettings(
        redis_enabled=True,
        redis_url="redis://localhost:6379/0",
        redis_config_key="config",
        firestore_enabled=False,
        firestore_project_id=None,
        firestore_config_doc="bots/copy-trader/config/runtime",
        firestore_config_leaf_doc_id="runtime",
        bot_collection="bots",
        bot_id="copy-trader",
        dry_run=True,
        bot_env="test",
        bot_run_id="run-test",
        bot_runs_collection="runs",
        bot_events_collection="events",
        bot_replicas_collection="replicas",
        bot_daily_collection="replicas_daily",
        bot_metrics_collection="metrics",
        bot_metrics_doc_id="runtime",
        config_schema_version=1,
        heartbeat_key="bot:heartbeat",
        heartbeat_interval_seconds=15,
        processed_prefix="processed",
        processed_ttl_seconds=processed_ttl_seconds,
    )


def _make_redis_client() -> MagicMock:
    pipeline = MagicMock()
    pipeline.execute = AsyncMock(return_value=[1])

    client = MagicMock()
    client.set = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.eval = AsyncMock(return_value=1)
    client.hgetall = AsyncMock(return_value={})
    client.pipeline = MagicMock(return_value=pipeline)
    return client


class InMemoryProcessedLedgerTests(unittest.IsolatedAsyncioTestCase):
    async def test_concurrent_mark_in_flight_admits_exactly_one(self) -> None:
        ledger = InMemoryProcessedLedger()

        results = await asyncio.gather(*(ledger.mark_in_flight("sig-1") for _ in range(10)))

        self.assertEqual(results.count(True), 1)
        self.assertFalse(await ledger.has_processed("sig-1"))

    async def test_record_outcome_only_moves_in_flight_entries_once(self) -> None:
        ledger = InMemoryProcessedLedger()
        self.assertFalse(await ledger.record_outcome("sig-1", "confirmed"))

        await ledger.mark_in_flight("sig-1")
        self.assertTrue(await ledger.record_outcome("sig-1", "confirmed", tx_signature="replica-1"))
        self.assertFalse(await ledger.record_outcome("sig-1", "failed", fail_reason="TX_FAILED"))

        entry = await ledger.get_entry("sig-1")
        assert entry is not None
        self.assertEqual(entry.final_status, "confirmed")
        self.assertEqual(entry.tx_signature, "replica-1")
        self.assertTrue(await ledger.has_processed("sig-1"))
        self.assertFalse(await ledger.mark_in_flight("sig-1"))

    async def test_record_outcome_rejects_non_terminal_status(self) -> None:
        ledger = InMemoryProcessedLedger()
        await ledger.mark_in_flight("sig-1")

        with self.assertRaises(ValueError):
            await ledger.record_outcome("sig-1", "in_flight")

    async def test_list_in_flight_skips_terminal_entries(self) -> None:
        ledger = InMemoryProcessedLedger()
        await ledger.mark_in_flight("sig-1")
        await ledger.mark_in_flight("sig-2")
        await ledger.record_outcome("sig-2", "failed", fail_reason="NO_VIABLE_ROUTE")

        pending = await ledger.list_in_flight(limit=10)

        self.assertEqual([entry.signature for entry in pending], ["sig-1"])


class RedisProcessedLedgerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.storage = StorageGateway(_make_settings(), logging.getLogger("test.storage"))
        self.redis = _make_redis_client()
        self.storage._redis = self.redis

    async def test_mark_in_flight_uses_set_nx(self) -> None:
        acquired = await self.storage.mark_in_flight("sig-1")

        self.assertTrue(acquired)
        self.redis.set.assert_awaited_once_with("processed:sig-1", "in_flight", ex=None, nx=True)
        pipeline = self.redis.pipeline.return_value
        pipeline.hset.assert_called_once()
        self.assertEqual(pipeline.hset.call_args.args[0], "processed:meta:sig-1")
        pipeline.execute.assert_awaited_once()

    async def test_mark_in_flight_returns_false_when_key_exists(self) -> None:
        self.redis.set.return_value = None

        acquired = await self.storage.mark_in_flight("sig-1")

        self.assertFalse(acquired)
        self.redis.pipeline.assert_not_called()

    async def test_mark_in_flight_applies_ttl_when_configured(self) -> None:
        self.storage.settings = _make_settings(processed_ttl_seconds=3600)

        await self.storage.mark_in_flight("sig-1")

        self.redis.set.assert_awaited_once_with("processed:sig-1", "in_flight", ex=3600, nx=True)
        self.redis.pipeline.return_value.expire.assert_called_once_with("processed:meta:sig-1", 3600)

    async def test_record_outcome_runs_compare_and_set_script(self) -> None:
        updated = await self.storage.record_outcome(
            "sig-1",
            "failed",
            fail_reason="NO_VIABLE_ROUTE",
        )

        self.assertTrue(updated)
        args = self.redis.eval.await_args.args
        self.assertEqual(args[1:6], (2, "processed:sig-1", "processed:meta:sig-1", "in_flight", "failed"))
        self.assertEqual(args[7], "NO_VIABLE_ROUTE")
        self.assertEqual(args[8], "")
        self.assertEqual(args[9], "0")

    async def test_record_outcome_reports_lost_race(self) -> None:
        self.redis.eval.return_value = 0

        self.assertFalse(await self.storage.record_outcome("sig-1", "confirmed"))

    async def test_has_processed_only_for_terminal_status(self) -> None:
        self.redis.get.return_value = "in_flight"
        self.assertFalse(await self.storage.has_processed("sig-1"))

        self.redis.get.return_value = "dry_run"
        self.assertTrue(await self.storage.has_processed("sig-1"))

    async def test_get_entry_reads_meta_hash(self) -> None:
        self.redis.get.return_value = "confirmed"
        self.redis.hgetall.return_value = {
            "timestamp": "2026-01-01T00:00:00+00:00",
            "fail_reason": "",
            "tx_signature": "replica-1",
        }

        entry = await self.storage.get_entry("sig-1")

        assert entry is not None
        self.assertEqual(entry.final_status, "confirmed")
        self.assertIsNone(entry.fail_reason)
        self.assertEqual(entry.tx_signature, "replica-1")

    async def test_ledger_calls_require_redis(self) -> None:
        self.storage._redis = None

        with self.assertRaises(RuntimeError):
            await self.storage.mark_in_flight("sig-1")


if __name__ == "__main__":
    unittest.main()
