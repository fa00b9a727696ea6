from __future__ import annotations

from typing import Any, Dict, Iterable, List

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data
from eth_account.signers.local import LocalAccount

from signing.base import SignedTransaction, Signer

# BIP-44 path for Ethereum accounts; the last component is the account index.
DERIVATION_PATH = "m/44'/60'/0'/0/{index}"


def _hex(value: bytes) -> str:
    return "0x" + bytes(value).hex()


class UnknownSignerError(KeyError):
    def __init__(self, account: str) -> None:
        super().__init__(account)
        self.account = account

    def __str__(self) -> str:
        return f"unknown signer {self.account}"


class Wallet(Signer):
    """
    A collection of local keys that perform Ethereum ECDSA operations.
    """

    def __init__(self, keys: Iterable[LocalAccount]) -> None:
        self._addresses: List[str] = []
        self._keys: Dict[str, LocalAccount] = {}
        for key in keys:
            if key.address.lower() in self._keys:
                continue
            self._addresses.append(key.address)
            self._keys[key.address.lower()] = key

    @classmethod
    def from_mnemonic(cls, mnemonic: str, password: str = "", count: int = 1) -> "Wallet":
        """
        Derive `count` accounts from a BIP-39 mnemonic, salting the seed with `password`.
        """
        Account.enable_unaudited_hdwallet_features()
        return cls(
            Account.from_mnemonic(mnemonic, passphrase=password, account_path=DERIVATION_PATH.format(index=i))
            for i in range(count)
        )

    @classmethod
    def from_private_keys(cls, private_keys: Iterable[str]) -> "Wallet":
        return cls(Account.from_key(k) for k in private_keys)

    def merged(self, other: "Wallet") -> "Wallet":
        return Wallet([*self._keys.values(), *other._keys.values()])

    def accounts(self) -> List[str]:
        return list(self._addresses)

    def _key(self, account: str) -> LocalAccount:
        key = self._keys.get((account or "").lower())
        if key is None:
            raise UnknownSignerError(account)
        return key

    def sign_message(self, account: str, message: bytes) -> str:
        signed = self._key(account).sign_message(encode_defunct(primitive=bytes(message)))
        return _hex(signed.signature)

    def sign_transaction(self, account: str, transaction: Dict[str, Any]) -> SignedTransaction:
        signed = self._key(account).sign_transaction(dict(transaction))
        return SignedTransaction(raw_transaction=_hex(signed.raw_transaction), tx_hash=_hex(signed.hash))

    def sign_typed_data(self, account: str, typed_data: Dict[str, Any]) -> str:
        signed = self._key(account).sign_message(encode_typed_data(full_message=typed_data))
        return _hex(signed.signature)
