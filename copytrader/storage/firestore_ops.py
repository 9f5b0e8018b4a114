from __future__ import annotations

import asyncio
import contextlib
import hashlib
import os
from datetime import datetime, timezone
from typing import Any, Awaitable

from google.cloud import firestore

from copytrader.common import guarded_call, log_event

from .helpers import utc_day_id as _utc_day_id
from .settings import ConfigUpdateHandler


class FirestoreStorageOps:
    @staticmethod
    def _normalize_doc_path(doc_path: str, leaf_doc_id: str) -> tuple[str, bool]:
        normalized = doc_path.strip("/")
        if not normalized:
            raise ValueError("FIRESTORE_CONFIG_DOC must not be empty.")

        segments = [part for part in normalized.split("/") if part]
        if len(segments) % 2 == 0:
            return normalized, False

        return f"{normalized}/{leaf_doc_id}", True

    @staticmethod
    def _doc_id_from_text(value: str) -> str:
        normalized = value.strip().replace("/", "_")
        if not normalized:
            raise ValueError("Document id source must not be empty.")

        if len(normalized) <= 128:
            return normalized

        digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
        return f"{normalized[:96]}-{digest}"

    def _firestore_ready(self, *, skip_event: str) -> bool:
        if self._firestore is not None:
            return True
        if not self._firestore_skip_logged:
            self._firestore_skip_logged = True
            log_event(
                self._logger,
                level="warning",
                event=skip_event,
                message="Firestore is disabled or not connected; journal writes are skipped",
                firestore_enabled=self.settings.firestore_enabled,
            )
        return False

    async def mark_run_stopped(self, *, reason: str) -> None:
        if self._run_doc_ref is None:
            return

        payload = {
            "status": "stopped",
            "stop_reason": reason,
            "stopped_at": firestore.SERVER_TIMESTAMP,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }
        await guarded_call(
            lambda: asyncio.to_thread(self._run_doc_ref.set, payload, merge=True),
            logger=self._logger,
            event="run_status_update_failed",
            message="Failed to update run status",
        )

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        if not self._firestore_ready(skip_event="publish_skipped") or self._events_collection_ref is None:
            return

        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc),
            "server_timestamp": firestore.SERVER_TIMESTAMP,
            "level": level,
            "event": event,
            "message": message,
            "bot_id": self.settings.bot_id,
            "run_id": self.settings.bot_run_id,
            "env": self.settings.bot_env,
            "dry_run": self.settings.dry_run,
            "schema_version": self.settings.config_schema_version,
        }
        if details:
            payload["details"] = details
            source_signature = details.get("source_signature") or (details.get("trade") or {}).get("signature")
            if source_signature:
                payload["source_signature"] = str(source_signature)

        async def write_event() -> None:
            if event_id:
                document_id = self._doc_id_from_text(event_id)
                event_ref = self._events_collection_ref.document(document_id)
                await asyncio.to_thread(event_ref.set, payload, merge=True)
                return

            await asyncio.to_thread(self._events_collection_ref.add, payload)

        await guarded_call(
            write_event,
            logger=self._logger,
            event="publish_failed",
            message="Failed to publish Firestore event",
            level="error",
        )

    async def record_replica(self, *, source_signature: str, replica: dict[str, Any]) -> None:
        if not self._firestore_ready(skip_event="replica_persist_skipped") or self._replicas_collection_ref is None:
            return

        document_id = self._doc_id_from_text(source_signature)
        payload = dict(replica)
        payload["source_signature"] = source_signature
        payload["bot_id"] = self.settings.bot_id
        payload["run_id"] = self.settings.bot_run_id
        payload["env"] = self.settings.bot_env
        payload["dry_run"] = self.settings.dry_run
        payload["schema_version"] = self.settings.config_schema_version
        payload["updated_at"] = firestore.SERVER_TIMESTAMP

        replica_ref = self._replicas_collection_ref.document(document_id)

        async def write_replica() -> bool:
            await asyncio.to_thread(replica_ref.set, payload, merge=True)
            return True

        written = await guarded_call(
            write_replica,
            logger=self._logger,
            event="replica_persist_failed",
            message="Failed to persist replica record",
            level="error",
            default=False,
            source_signature=source_signature,
        )
        if not written:
            return

        await guarded_call(
            lambda: self._update_replica_aggregates(
                source_signature=source_signature,
                status=str(payload.get("status") or ""),
                fail_reason=str(payload.get("fail_reason") or ""),
            ),
            logger=self._logger,
            event="replica_aggregate_update_failed",
            message="Failed to update replica aggregates",
            level="error",
            source_signature=source_signature,
        )

    async def _update_replica_aggregates(
        self,
        *,
        source_signature: str,
        status: str,
        fail_reason: str,
    ) -> None:
        if self._metrics_doc_ref is None or self._daily_collection_ref is None:
            return

        base_payload: dict[str, Any] = {
            "updated_at": firestore.SERVER_TIMESTAMP,
            "replica_count": firestore.Increment(1),
            f"status_{status or 'none'}_count": firestore.Increment(1),
            "bot_id": self.settings.bot_id,
            "env": self.settings.bot_env,
            "schema_version": self.settings.config_schema_version,
        }
        if fail_reason:
            base_payload[f"fail_{fail_reason.lower()}_count"] = firestore.Increment(1)

        runtime_payload = dict(base_payload)
        runtime_payload["run_id"] = self.settings.bot_run_id
        runtime_payload["last_source_signature"] = source_signature
        runtime_payload["last_status"] = status

        day_id = _utc_day_id()
        daily_payload = dict(base_payload)
        daily_payload["day_id"] = day_id

        daily_doc_ref = self._daily_collection_ref.document(day_id)
        await asyncio.gather(
            asyncio.to_thread(self._metrics_doc_ref.set, runtime_payload, merge=True),
            asyncio.to_thread(daily_doc_ref.set, daily_payload, merge=True),
        )

    def start_config_listener(
        self,
        loop: asyncio.AbstractEventLoop,
        on_update: ConfigUpdateHandler | None = None,
    ) -> None:
        if self._config_doc_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="config_watch_skipped",
                message="Firestore config document is unavailable; runtime config stays at env defaults",
            )
            return
        if self._watch is not None:
            return

        def schedule(coro: Awaitable[None]) -> None:
            task = asyncio.create_task(coro)

            def on_done(done_task: asyncio.Task[None]) -> None:
                with contextlib.suppress(asyncio.CancelledError):
                    error = done_task.exception()
                    if error:
                        log_event(
                            self._logger,
                            level="error",
                            event="config_sync_failed",
                            message="Config sync task failed",
                            error=str(error),
                        )

            task.add_done_callback(on_done)

        def on_snapshot(doc_snapshot: list[Any], _changes: list[Any], _read_time: Any) -> None:
            if not doc_snapshot or loop.is_closed():
                return
            snapshot = doc_snapshot[0]
            data = snapshot.to_dict() if snapshot.exists else {}
            if data is None:
                data = {}
            loop.call_soon_threadsafe(schedule, self._handle_config_update(data, on_update))

        self._watch = self._config_doc_ref.on_snapshot(on_snapshot)
        log_event(
            self._logger,
            level="info",
            event="config_watch_started",
            message="Config watcher started",
        )

    async def _handle_config_update(
        self,
        config: dict[str, Any],
        on_update: ConfigUpdateHandler | None,
    ) -> None:
        await self.sync_config_to_redis(config, source="snapshot")
        if on_update:
            await on_update(config)

    async def _ensure_bot_namespace(self) -> None:
        if self._bot_doc_ref is None or self._run_doc_ref is None:
            raise RuntimeError("Firestore namespace references are not initialized.")

        bot_payload: dict[str, Any] = {
            "bot_id": self.settings.bot_id,
            "env": self.settings.bot_env,
            "schema_version": self.settings.config_schema_version,
            "config_doc": self._resolved_firestore_config_doc,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }

        run_payload: dict[str, Any] = {
            "run_id": self.settings.bot_run_id,
            "bot_id": self.settings.bot_id,
            "env": self.settings.bot_env,
            "dry_run": self.settings.dry_run,
            "status": "running",
            "ledger": "redis" if self._redis is not None else "memory",
            "pid": os.getpid(),
            "started_at": firestore.SERVER_TIMESTAMP,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }

        await asyncio.gather(
            asyncio.to_thread(self._bot_doc_ref.set, bot_payload, merge=True),
            asyncio.to_thread(self._run_doc_ref.set, run_payload, merge=True),
        )

    def _initialize_namespace_refs(self) -> None:
        firestore_client = self._require_firestore()

        bot_doc_path = f"{self.settings.bot_collection}/{self.settings.bot_id}"
        self._bot_doc_ref = firestore_client.document(bot_doc_path)
        self._run_doc_ref = self._bot_doc_ref.collection(self.settings.bot_runs_collection).document(
            self.settings.bot_run_id
        )
        self._events_collection_ref = self._run_doc_ref.collection(self.settings.bot_events_collection)
        self._replicas_collection_ref = self._bot_doc_ref.collection(self.settings.bot_replicas_collection)
        self._daily_collection_ref = self._bot_doc_ref.collection(self.settings.bot_daily_collection)
        self._metrics_doc_ref = self._bot_doc_ref.collection(self.settings.bot_metrics_collection).document(
            self.settings.bot_metrics_doc_id
        )

    def _require_firestore(self) -> firestore.Client:
        if self._firestore is None:
            raise RuntimeError("Firestore client is not initialized.")
        return self._firestore
