from __future__ import annotations

import asyncio
from typing import Protocol

from .types import IN_FLIGHT_STATUS, TERMINAL_STATUSES, ProcessedEntry, now_iso


class ProcessedTradeStore(Protocol):
    async def has_processed(self, signature: str) -> bool:
        ...

    async def mark_in_flight(self, signature: str) -> bool:
        ...

    async def record_outcome(
        self,
        signature: str,
        status: str,
        *,
        fail_reason: str | None = None,
        tx_signature: str | None = None,
    ) -> bool:
        ...

    async def get_entry(self, signature: str) -> ProcessedEntry | None:
        ...

    async def list_in_flight(self, *, limit: int = 100) -> list[ProcessedEntry]:
        ...


class InMemoryProcessedLedger:
    """Signature -> status map behind one asyncio lock.

    Nothing is persisted: after a restart every signature is unknown again.
    """

    def __init__(self) -> None:
        self._entries: dict[str, ProcessedEntry] = {}
        self._lock = asyncio.Lock()

    async def has_processed(self, signature: str) -> bool:
        async with self._lock:
            entry = self._entries.get(signature)
            return entry is not None and entry.is_terminal

    async def mark_in_flight(self, signature: str) -> bool:
        async with self._lock:
            if signature in self._entries:
                return False
            self._entries[signature] = ProcessedEntry(
                signature=signature,
                final_status=IN_FLIGHT_STATUS,
                timestamp=now_iso(),
            )
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

        async with self._lock:
            current = self._entries.get(signature)
            if current is None or current.final_status != IN_FLIGHT_STATUS:
                return False
            self._entries[signature] = ProcessedEntry(
                signature=signature,
                final_status=status,
                timestamp=now_iso(),
                fail_reason=fail_reason,
                tx_signature=tx_signature,
            )
            return True

    async def get_entry(self, signature: str) -> ProcessedEntry | None:
        async with self._lock:
            return self._entries.get(signature)

    async def list_in_flight(self, *, limit: int = 100) -> list[ProcessedEntry]:
        async with self._lock:
            pending = [
                entry for entry in self._entries.values() if entry.final_status == IN_FLIGHT_STATUS
            ]
        pending.sort(key=lambda entry: entry.timestamp)
        return pending[: max(1, limit)]
