from __future__ import annotations

from typing import Any, Dict, List

from observability import build_log_context, log_event
from signing.base import SignedTransaction, Signer

_CTX = build_log_context(tool="signer")


class RecordingSigner(Signer):
    """
    Wrapping signer that logs every signature it produces.

    Only successful signatures are recorded; failures propagate untouched to the caller.
    """

    def __init__(self, inner: Signer) -> None:
        self.inner = inner

    def accounts(self) -> List[str]:
        return self.inner.accounts()

    def sign_message(self, account: str, message: bytes) -> str:
        signature = self.inner.sign_message(account, message)
        log_event(
            "signed_message",
            ctx=_CTX,
            data={"account": account, "message": "0x" + bytes(message).hex(), "signature": signature},
        )
        return signature

    def sign_transaction(self, account: str, transaction: Dict[str, Any]) -> SignedTransaction:
        signed = self.inner.sign_transaction(account, transaction)
        log_event(
            "signed_transaction",
            ctx=_CTX,
            data={"account": account, "transaction": transaction, "tx_hash": signed.tx_hash},
        )
        return signed

    def sign_typed_data(self, account: str, typed_data: Dict[str, Any]) -> str:
        signature = self.inner.sign_typed_data(account, typed_data)
        log_event(
            "signed_typed_data",
            ctx=_CTX,
            data={
                "account": account,
                "primary_type": typed_data.get("primaryType"),
                "domain": typed_data.get("domain"),
                "signature": signature,
            },
        )
        return signature
