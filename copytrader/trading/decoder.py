from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

from .types import SOL_MINT, SourceTrade, to_int

JUPITER_V6_PROGRAM_ID = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"
JUPITER_V4_PROGRAM_ID = "JUP4Fb2cqiRUcaTHdrPC8h2gNsA2ETXiPDD33WcGuJB"
RAYDIUM_AMM_V4_PROGRAM_ID = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"
RAYDIUM_CLMM_PROGRAM_ID = "CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK"
RAYDIUM_CPMM_PROGRAM_ID = "CPMMoo8L3F4NbTegBCKVNunggL7H1ZpdTHKxQB5qKP1C"
ORCA_WHIRLPOOL_PROGRAM_ID = "whirLbMiicVdio4qvUfM5KAg6Ct8VwpYzGff3uctyCc"
METEORA_DLMM_PROGRAM_ID = "LBUZKhRxPF3XUpBCjp4YzTKgLccjZhTSDM9YuVaPwxo"
PUMP_FUN_PROGRAM_ID = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"

DEFAULT_SWAP_PROGRAM_IDS: frozenset[str] = frozenset(
    {
        JUPITER_V6_PROGRAM_ID,
        JUPITER_V4_PROGRAM_ID,
        RAYDIUM_AMM_V4_PROGRAM_ID,
        RAYDIUM_CLMM_PROGRAM_ID,
        RAYDIUM_CPMM_PROGRAM_ID,
        ORCA_WHIRLPOOL_PROGRAM_ID,
        METEORA_DLMM_PROGRAM_ID,
        PUMP_FUN_PROGRAM_ID,
    }
)

# Rent-exempt minimum for one SPL token account; smaller native moves are fees/rent.
DEFAULT_NATIVE_DUST_LAMPORTS = 2_039_280


def parse_program_ids(raw: str | None) -> frozenset[str]:
    if not raw or not raw.strip():
        return DEFAULT_SWAP_PROGRAM_IDS
    return frozenset(item.strip() for item in raw.split(",") if item.strip())


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _account_key(entry: Any) -> str:
    if isinstance(entry, dict):
        return str(entry.get("pubkey") or "")
    return str(entry or "")


def _iter_instructions(transaction: dict[str, Any], meta: dict[str, Any]) -> Iterable[dict[str, Any]]:
    message = _as_dict(transaction.get("message"))
    for instruction in _as_list(message.get("instructions")):
        if isinstance(instruction, dict):
            yield instruction
    for inner in _as_list(meta.get("innerInstructions")):
        if not isinstance(inner, dict):
            continue
        for instruction in _as_list(inner.get("instructions")):
            if isinstance(instruction, dict):
                yield instruction


def _invoked_program_ids(
    transaction: dict[str, Any],
    meta: dict[str, Any],
    account_keys: list[str],
) -> set[str]:
    program_ids: set[str] = set()
    for instruction in _iter_instructions(transaction, meta):
        program_id = instruction.get("programId")
        if program_id:
            program_ids.add(str(program_id))
            continue
        index = instruction.get("programIdIndex")
        if isinstance(index, int) and 0 <= index < len(account_keys):
            program_ids.add(account_keys[index])
    return program_ids


def _token_amounts_by_mint(balances: Any, owner: str) -> dict[str, int]:
    amounts: dict[str, int] = {}
    for balance in _as_list(balances):
        if not isinstance(balance, dict) or str(balance.get("owner") or "") != owner:
            continue
        mint = str(balance.get("mint") or "")
        if not mint:
            continue
        ui_amount = _as_dict(balance.get("uiTokenAmount"))
        amounts[mint] = amounts.get(mint, 0) + to_int(ui_amount.get("amount"), 0)
    return amounts


def _block_time_iso(raw_tx: dict[str, Any]) -> str | None:
    block_time = raw_tx.get("blockTime")
    if not isinstance(block_time, (int, float)) or isinstance(block_time, bool):
        return None
    try:
        return datetime.fromtimestamp(block_time, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


class TradeDecoder:
    """Turns a ``getTransaction`` (jsonParsed) payload into a ``SourceTrade``.

    Anything that cannot be positively identified as a swap on a recognized
    program yields ``None`` instead of raising.
    """

    def __init__(
        self,
        *,
        swap_program_ids: Iterable[str] | None = None,
        native_dust_lamports: int = DEFAULT_NATIVE_DUST_LAMPORTS,
    ) -> None:
        self._swap_program_ids = frozenset(swap_program_ids or DEFAULT_SWAP_PROGRAM_IDS)
        self._native_dust_lamports = max(0, int(native_dust_lamports))

    @property
    def swap_program_ids(self) -> frozenset[str]:
        return self._swap_program_ids

    def decode(
        self,
        *,
        signature: str,
        source_account: str,
        raw_tx: dict[str, Any] | None,
    ) -> SourceTrade | None:
        if not isinstance(raw_tx, dict):
            return None

        meta = raw_tx.get("meta")
        transaction = raw_tx.get("transaction")
        if not isinstance(meta, dict) or not isinstance(transaction, dict):
            return None
        if meta.get("err") is not None:
            return None

        message = transaction.get("message")
        if not isinstance(message, dict):
            return None
        account_keys = [_account_key(entry) for entry in _as_list(message.get("accountKeys"))]

        program_ids = _invoked_program_ids(transaction, meta, account_keys)
        matched_programs = tuple(sorted(program_ids & self._swap_program_ids))
        if not matched_programs:
            return None

        deltas = self._asset_deltas(meta=meta, account_keys=account_keys, owner=source_account)
        legs = self._pick_legs(deltas)
        if legs is None:
            return None

        input_asset, output_asset = legs
        return SourceTrade(
            signature=signature,
            source_account=source_account,
            input_asset=input_asset,
            output_asset=output_asset,
            input_amount=-deltas[input_asset],
            output_amount=deltas[output_asset],
            observed_at=_block_time_iso(raw_tx),
            program_ids=matched_programs,
        )

    def _asset_deltas(
        self,
        *,
        meta: dict[str, Any],
        account_keys: list[str],
        owner: str,
    ) -> dict[str, int]:
        pre = _token_amounts_by_mint(meta.get("preTokenBalances"), owner)
        post = _token_amounts_by_mint(meta.get("postTokenBalances"), owner)

        deltas: dict[str, int] = {}
        for mint in set(pre) | set(post):
            delta = post.get(mint, 0) - pre.get(mint, 0)
            if delta != 0:
                deltas[mint] = delta

        native_delta = self._native_delta(meta=meta, account_keys=account_keys, owner=owner)
        if native_delta:
            deltas[SOL_MINT] = deltas.get(SOL_MINT, 0) + native_delta
            if deltas[SOL_MINT] == 0:
                del deltas[SOL_MINT]
        return deltas

    def _native_delta(
        self,
        *,
        meta: dict[str, Any],
        account_keys: list[str],
        owner: str,
    ) -> int:
        if owner not in account_keys:
            return 0
        index = account_keys.index(owner)
        pre_balances = _as_list(meta.get("preBalances"))
        post_balances = _as_list(meta.get("postBalances"))
        if index >= len(pre_balances) or index >= len(post_balances):
            return 0

        delta = to_int(post_balances[index], 0) - to_int(pre_balances[index], 0)
        if index == 0:
            delta += to_int(meta.get("fee"), 0)
        if abs(delta) <= self._native_dust_lamports:
            return 0
        return delta

    @staticmethod
    def _pick_legs(deltas: dict[str, int]) -> tuple[str, str] | None:
        outgoing = [mint for mint, delta in deltas.items() if delta < 0]
        incoming = [mint for mint, delta in deltas.items() if delta > 0]
        if not outgoing or not incoming:
            return None

        def prefer_token(candidates: list[str]) -> list[str]:
            tokens = [mint for mint in candidates if mint != SOL_MINT]
            return tokens or candidates

        input_asset = max(prefer_token(outgoing), key=lambda mint: (-deltas[mint], mint))
        output_asset = max(prefer_token(incoming), key=lambda mint: (deltas[mint], mint))
        if input_asset == output_asset:
            return None
        return input_asset, output_asset
