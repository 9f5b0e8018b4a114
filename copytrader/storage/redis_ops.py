from __future__ import annotations

from typing import Any

from redis.asyncio.client import Redis

from copytrader.common import log_event
from copytrader.trading.types import IN_FLIGHT_STATUS, TERMINAL_STATUSES, ProcessedEntry

from .helpers import now_iso as _now_iso
from .helpers import optional_text as _optional_text
from .helpers import serialize_for_redis as _serialize_for_redis

_RECORD_OUTCOME_SCRIPT = """
if redis.call('get', KEYS[1]) ~= ARGV[1] then
  return 0
end
if tonumber(ARGV[6]) > 0 then
  redis.call('set', KEYS[1], ARGV[2], 'EX', ARGV[6])
else
  redis.call('set', KEYS[1], ARGV[2])
end
redis.call('hset', KEYS[2],
  'status', ARGV[2],
  'timestamp', ARGV[3],
  'fail_reason', ARGV[4],
  'tx_signature', ARGV[5])
if tonumber(ARGV[6]) > 0 then
  redis.call('expire', KEYS[2], ARGV[6])
end
return 1
"""


class RedisStorageOps:
    """Runtime config hash, processed-trade ledger and heartbeat.

    Ledger layout: ``<prefix>:<signature>`` holds the status string and is the
    test-and-set guard; ``<prefix>:meta:<signature>`` holds the entry details.
    """

    def _processed_key(self, signature: str) -> str:
        return f"{self.settings.processed_prefix}:{signature}"

    def _processed_meta_key(self, signature: str) -> str:
        return f"{self.settings.processed_prefix}:meta:{signature}"

    async def sync_config_to_redis(self, config: dict[str, Any], *, source: str) -> None:
        mapping = {str(key): _serialize_for_redis(value) for key, value in config.items()}
        self._config_cache = dict(mapping)

        if self._redis is not None:
            pipeline = self._redis.pipeline(transaction=True)
            pipeline.delete(self.settings.redis_config_key)
            if mapping:
                pipeline.hset(self.settings.redis_config_key, mapping=mapping)
            await pipeline.execute()

        log_event(
            self._logger,
            level="info",
            event="config_synced",
            message="Runtime config synced",
            items=len(mapping),
            source=source,
            redis=self._redis is not None,
        )

    async def get_runtime_config(self) -> dict[str, str]:
        if self._redis is None:
            return dict(self._config_cache)
        return await self._redis.hgetall(self.settings.redis_config_key)

    async def has_processed(self, signature: str) -> bool:
        redis_client = self._require_redis()
        status = await redis_client.get(self._processed_key(signature))
        return status in TERMINAL_STATUSES

    async def mark_in_flight(self, signature: str) -> bool:
        redis_client = self._require_redis()
        ttl_seconds = self.settings.processed_ttl_seconds
        acquired = await redis_client.set(
            self._processed_key(signature),
            IN_FLIGHT_STATUS,
            ex=ttl_seconds if ttl_seconds > 0 else None,
            nx=True,
        )
        if not acquired:
            return False

        meta_key = self._processed_meta_key(signature)
        pipeline = redis_client.pipeline(transaction=True)
        pipeline.hset(
            meta_key,
            mapping={
                "signature": signature,
                "status": IN_FLIGHT_STATUS,
                "timestamp": _now_iso(),
                "run_id": self.settings.bot_run_id,
            },
        )
        if ttl_seconds > 0:
            pipeline.expire(meta_key, ttl_seconds)
        await pipeline.execute()
        return True

    async def record_outcome(
        self,
        signature: str,
        status: str,
        *,
        fail_reason: str | None = None,
        tx_signature: str | None = None,
    ) -> bool:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Outcome status must be terminal, got {status!r}")

        redis_client = self._require_redis()
        updated = await redis_client.eval(
            _RECORD_OUTCOME_SCRIPT,
            2,
            self._processed_key(signature),
            self._processed_meta_key(signature),
            IN_FLIGHT_STATUS,
            status,
            _now_iso(),
            fail_reason or "",
            tx_signature or "",
            str(self.settings.processed_ttl_seconds),
        )
        return bool(updated)

    async def get_entry(self, signature: str) -> ProcessedEntry | None:
        redis_client = self._require_redis()
        status = await redis_client.get(self._processed_key(signature))
        if status is None:
            return None

        meta = await redis_client.hgetall(self._processed_meta_key(signature))
        return ProcessedEntry(
            signature=signature,
            final_status=str(status),
            timestamp=str(meta.get("timestamp") or ""),
            fail_reason=_optional_text(meta.get("fail_reason")),
            tx_signature=_optional_text(meta.get("tx_signature")),
        )

    async def list_in_flight(self, *, limit: int = 100) -> list[ProcessedEntry]:
        redis_client = self._require_redis()
        normalized_limit = max(1, limit)
        meta_marker = f"{self.settings.processed_prefix}:meta:"
        pattern = f"{self.settings.processed_prefix}:*"

        entries: list[ProcessedEntry] = []
        async for key in redis_client.scan_iter(match=pattern, count=min(1000, normalized_limit * 4)):
            if key.startswith(meta_marker):
                continue
            status = await redis_client.get(key)
            if status != IN_FLIGHT_STATUS:
                continue
            signature = key[len(self.settings.processed_prefix) + 1 :]
            meta = await redis_client.hgetall(self._processed_meta_key(signature))
            entries.append(
                ProcessedEntry(
                    signature=signature,
                    final_status=IN_FLIGHT_STATUS,
                    timestamp=str(meta.get("timestamp") or ""),
                )
            )
            if len(entries) >= normalized_limit:
                break

        entries.sort(key=lambda entry: entry.timestamp)
        return entries

    async def update_heartbeat(self) -> None:
        if self._redis is None:
            return
        await self._redis.set(self.settings.heartbeat_key, _now_iso())

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
