from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from common.errors import AppError, error_for_code


class Variant(str, Enum):
    TRANSACTION = "transaction"
    TYPED_DATA = "typed_data"
    MESSAGE = "message"


@dataclass(frozen=True)
class Verdict:
    """
    Outcome of a single check (chain guard, nonce reservation, one validator) or of the
    whole policy chain. Verdicts combine by conjunction: any Deny vetoes.
    """

    allowed: bool
    reason: str = ""
    code: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls) -> "Verdict":
        return _ALLOW

    @classmethod
    def deny(cls, reason: str, *, code: str = "policy_rejected", **data: Any) -> "Verdict":
        return cls(allowed=False, reason=reason, code=code, data=dict(data))

    def to_error(self) -> AppError:
        if self.allowed:
            raise ValueError("an Allow verdict has no error")
        return error_for_code(self.code, self.reason, self.data)


_ALLOW = Verdict(allowed=True)


Payload = Union[Dict[str, Any], bytes]


@dataclass(frozen=True)
class SigningRequest:
    """
    An intercepted call reduced to what the signing core needs.

    - TRANSACTION: normalized transaction dict (integer quantities, `data` as 0x hex)
    - TYPED_DATA: the EIP-712 object (`types`, `domain`, `primaryType`, `message`)
    - MESSAGE: raw message bytes
    """

    variant: Variant
    account: str
    payload: Payload
    chain_id: Optional[int] = None
    method: str = ""

    @property
    def nonce(self) -> Optional[int]:
        if self.variant is not Variant.TRANSACTION:
            return None
        return self.payload.get("nonce")

    def with_payload(self, **updates: Any) -> "SigningRequest":
        if not isinstance(self.payload, dict):
            raise TypeError("only dict payloads can be updated")
        payload = dict(self.payload)
        payload.update(updates)
        chain_id = payload.get("chainId", self.chain_id) if self.variant is Variant.TRANSACTION else self.chain_id
        return SigningRequest(
            variant=self.variant,
            account=self.account,
            payload=payload,
            chain_id=chain_id,
            method=self.method,
        )

    def summary(self) -> Dict[str, Any]:
        """Loggable view of the request. Message bytes are reduced to their length."""
        out: Dict[str, Any] = {"variant": self.variant.value, "account": self.account, "method": self.method}
        if self.chain_id is not None:
            out["chain_id"] = self.chain_id
        if self.variant is Variant.TRANSACTION:
            out["transaction"] = self.payload
        elif self.variant is Variant.TYPED_DATA:
            out["primary_type"] = self.payload.get("primaryType")
            out["domain"] = self.payload.get("domain")
        else:
            out["message_len"] = len(self.payload)
        return out


class Status(str, Enum):
    SIGNED = "signed"
    REJECTED = "rejected"
    ERRORED = "errored"


@dataclass(frozen=True)
class SigningOutcome:
    """
    Terminal state of one pass through the signing core.

    Signed outcomes carry either a 65-byte signature (message / typed data) or a raw signed
    transaction plus its hash. Rejected and errored outcomes carry the taxonomy error.
    """

    status: Status
    signature: Optional[str] = None
    raw_transaction: Optional[str] = None
    tx_hash: Optional[str] = None
    error: Optional[AppError] = None

    @property
    def signed(self) -> bool:
        return self.status is Status.SIGNED

    @classmethod
    def rejected(cls, error: AppError) -> "SigningOutcome":
        return cls(status=Status.REJECTED, error=error)

    @classmethod
    def errored(cls, error: AppError) -> "SigningOutcome":
        return cls(status=Status.ERRORED, error=error)
