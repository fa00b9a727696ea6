from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional


@dataclass
class NonceState:
    first_nonce: int = 0
    last_issued: Optional[int] = None
    in_flight: bool = False
    pending: Optional[int] = None

    def expected(self) -> int:
        return self.first_nonce if self.last_issued is None else self.last_issued + 1


@dataclass
class Account:
    """
    One managed key. The gateway owns the signing capability for `address`; nothing
    outside the signing core touches `nonce` or the locks.

    `state_lock` guards transitions of `nonce` and `halted` and is only ever held briefly.
    `sign_lock` is held around the signing capability call (and the nonce commit that
    follows it), so two signatures for one account are never produced concurrently.
    """

    address: str
    nonce: NonceState = field(default_factory=NonceState)
    halted: bool = False
    state_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    sign_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


class AccountBook:
    """
    Arena of managed accounts indexed by lower-case address.

    The book itself is immutable after construction; there is no global lock.
    """

    def __init__(self, accounts: Iterable[Account] = ()) -> None:
        self._accounts: Dict[str, Account] = {}
        for account in accounts:
            key = account.address.lower()
            if key in self._accounts:
                raise ValueError(f"duplicate account {account.address}")
            self._accounts[key] = account

    @classmethod
    def from_addresses(cls, addresses: Iterable[str], first_nonces: Optional[Dict[str, int]] = None) -> "AccountBook":
        first_nonces = {k.lower(): v for k, v in (first_nonces or {}).items()}
        return cls(
            Account(address=a, nonce=NonceState(first_nonce=int(first_nonces.get(a.lower(), 0))))
            for a in addresses
        )

    def get(self, address: str) -> Optional[Account]:
        return self._accounts.get((address or "").lower())

    def addresses(self) -> List[str]:
        return [a.address for a in self._accounts.values()]

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and address.lower() in self._accounts

    def __iter__(self) -> Iterator[Account]:
        return iter(self._accounts.values())

    def __len__(self) -> int:
        return len(self._accounts)
