from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List


@dataclass(frozen=True)
class SignedTransaction:
    raw_transaction: str
    tx_hash: str


class Signer(ABC):
    """
    The signing capability the gateway holds for its accounts.

    Implementations own the key material; callers only ever see addresses and signatures.
    Every method raises on an unknown account.
    """

    @abstractmethod
    def accounts(self) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    def sign_message(self, account: str, message: bytes) -> str:
        """Sign an EIP-191 personal message; returns the 65-byte signature as 0x hex."""
        raise NotImplementedError

    @abstractmethod
    def sign_transaction(self, account: str, transaction: Dict[str, Any]) -> SignedTransaction:
        raise NotImplementedError

    @abstractmethod
    def sign_typed_data(self, account: str, typed_data: Dict[str, Any]) -> str:
        """Sign EIP-712 typed data; returns the 65-byte signature as 0x hex."""
        raise NotImplementedError
