from __future__ import annotations

import contextlib
import json
from typing import Protocol

from solders.keypair import Keypair
from solders.transaction import VersionedTransaction


class SigningRejectedError(RuntimeError):
    pass


class Signer(Protocol):
    @property
    def pubkey(self) -> str:
        ...

    def sign(self, unsigned_tx: bytes) -> bytes:
        ...


def parse_private_key(raw: str) -> Keypair:
    value = raw.strip()

    if value.startswith("["):
        arr = json.loads(value)
        if not isinstance(arr, list):
            raise ValueError("PRIVATE_KEY JSON must be an integer array.")
        return Keypair.from_bytes(bytes(arr))

    with contextlib.suppress(Exception):
        return Keypair.from_base58_string(value)

    raise ValueError("Unsupported PRIVATE_KEY format.")


def transaction_signature(signed_tx: bytes) -> str | None:
    """Base58 fee-payer signature of a serialized transaction, or None if it does not decode."""
    with contextlib.suppress(Exception):
        signatures = VersionedTransaction.from_bytes(signed_tx).signatures
        if signatures:
            return str(signatures[0])
    return None


class KeypairSigner:
    """Signs aggregator-built versioned transactions with a local keypair."""

    def __init__(self, keypair: Keypair) -> None:
        self._keypair = keypair

    @classmethod
    def from_private_key(cls, raw: str) -> "KeypairSigner":
        if not raw or not raw.strip():
            raise ValueError("PRIVATE_KEY is required.")
        return cls(parse_private_key(raw))

    @property
    def pubkey(self) -> str:
        return str(self._keypair.pubkey())

    def sign(self, unsigned_tx: bytes) -> bytes:
        try:
            transaction = VersionedTransaction.from_bytes(unsigned_tx)
        except Exception as error:
            raise SigningRejectedError(f"Transaction payload could not be decoded: {error}") from error

        account_keys = transaction.message.account_keys
        if not account_keys or account_keys[0] != self._keypair.pubkey():
            fee_payer = str(account_keys[0]) if account_keys else "<none>"
            raise SigningRejectedError(
                f"Fee payer {fee_payer} does not match signer {self.pubkey}"
            )

        try:
            signed = VersionedTransaction(transaction.message, [self._keypair])
        except Exception as error:
            raise SigningRejectedError(f"Keypair refused to sign transaction: {error}") from error
        return bytes(signed)
