from __future__ import annotations

from app.core.config import settings
from signing.base import SignedTransaction, Signer
from signing.recorder import RecordingSigner
from signing.wallet import Wallet


def get_signer() -> Signer:
    """
    Build the gateway signer from settings: mnemonic-derived accounts first, then any
    raw private keys, wrapped so every signature is recorded in the logs.
    """
    wallet = Wallet([])
    if settings.MNEMONIC:
        wallet = Wallet.from_mnemonic(settings.MNEMONIC, settings.PASSWORD, settings.ACCOUNT_COUNT)
    if settings.PRIVATE_KEYS:
        wallet = wallet.merged(Wallet.from_private_keys(settings.PRIVATE_KEYS))
    return RecordingSigner(wallet)


__all__ = ["RecordingSigner", "SignedTransaction", "Signer", "Wallet", "get_signer"]
