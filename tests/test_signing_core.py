import threading
import time

from eth_account import Account
from eth_account.messages import encode_defunct, encode_typed_data

from conftest import ADDRESS_1, ADDRESS_2
from core.accounts import NonceState
from core.models import SigningRequest, Status, Variant
from signing.base import Signer

RECIPIENT = "0x9008D19f58AAbD9eD0D60971565AA8510560ab41"

MAIL = {
    "types": {
        "EIP712Domain": [
            {"name": "name", "type": "string"},
            {"name": "version", "type": "string"},
            {"name": "chainId", "type": "uint256"},
            {"name": "verifyingContract", "type": "address"},
        ],
        "Person": [{"name": "name", "type": "string"}, {"name": "wallet", "type": "address"}],
        "Mail": [
            {"name": "from", "type": "Person"},
            {"name": "to", "type": "Person"},
            {"name": "contents", "type": "string"},
        ],
    },
    "primaryType": "Mail",
    "domain": {
        "name": "Ether Mail",
        "version": "1",
        "chainId": 1,
        "verifyingContract": "0xCcCCccccCCCCcCCCCCCcCcCccCcCCCcCcccccccC",
    },
    "message": {
        "from": {"name": "Cow", "wallet": "0xCD2a3d9F938E13CD947Ec05AbC7FE734Df8DD826"},
        "to": {"name": "Bob", "wallet": "0xbBbBBBBbbBBBbbbBbbBbbbbBBbBbbbbBbBbbBBbB"},
        "contents": "Hello, Bob!",
    },
}


def _tx(nonce=None, account=ADDRESS_1, chain_id=1, **overrides):
    tx = {
        "to": RECIPIENT,
        "value": 1,
        "gas": 21000,
        "maxFeePerGas": 2_000_000_000,
        "maxPriorityFeePerGas": 1_000_000_000,
        "data": "0x",
        "type": 2,
        "accessList": [],
    }
    if nonce is not None:
        tx["nonce"] = nonce
    if chain_id is not None:
        tx["chainId"] = chain_id
    tx.update(overrides)
    return SigningRequest(variant=Variant.TRANSACTION, account=account, payload=tx, chain_id=chain_id, method="eth_signTransaction")


def _message(data=b"hello", account=ADDRESS_1):
    return SigningRequest(variant=Variant.MESSAGE, account=account, payload=data, method="personal_sign")


def _nonce_state(core, address=ADDRESS_1):
    return core.accounts.get(address).nonce


def test_stale_retry_scenario(make_core):
    core = make_core()
    core.accounts.get(ADDRESS_1).nonce = NonceState(last_issued=5)

    first = core.process(_tx(6))
    assert first.status is Status.SIGNED
    assert Account.recover_transaction(first.raw_transaction) == ADDRESS_1
    assert _nonce_state(core).last_issued == 6

    stale = core.process(_tx(6))
    assert stale.status is Status.REJECTED
    assert stale.error.code == "nonce_conflict"
    assert stale.error.message == "nonce mismatch: expected 7, got 6"

    third = core.process(_tx(7))
    assert third.status is Status.SIGNED
    assert _nonce_state(core).last_issued == 7


def test_chain_mismatch_rejected_even_when_policy_allows(make_core, write_validator):
    allow_all = write_validator("allow_all", "def validate_transaction(account, transaction):\n    return True\n")
    core = make_core([allow_all])
    outcome = core.process(_tx(0, chain_id=5))
    assert outcome.status is Status.REJECTED
    assert outcome.error.code == "chain_mismatch"
    assert not _nonce_state(core).in_flight
    assert _nonce_state(core).last_issued is None


def test_policy_denial_releases_reservation(make_core, write_validator):
    deny_big = write_validator(
        "deny_big",
        "def validate_transaction(account, transaction):\n"
        "    if transaction['value'] > 100:\n"
        "        return 'value too large'\n"
        "    return True\n",
    )
    core = make_core([deny_big])

    denied = core.process(_tx(0, value=1000))
    assert denied.status is Status.REJECTED
    assert denied.error.code == "policy_rejected"
    assert denied.error.message == "value too large"
    assert not _nonce_state(core).in_flight

    retried = core.process(_tx(0))
    assert retried.status is Status.SIGNED
    assert _nonce_state(core).last_issued == 0


def test_typed_data_denied_by_first_module_never_reaches_second(make_core, write_validator):
    gnosis_only = write_validator(
        "gnosis_only",
        "def validate_typed_data(account, typed_data):\n"
        "    return typed_data['domain']['name'] == 'Gnosis Protocol'\n",
    )
    second = write_validator("second", "def validate_typed_data(account, typed_data):\n    return True\n")
    core = make_core([gnosis_only, second])

    request = SigningRequest(variant=Variant.TYPED_DATA, account=ADDRESS_1, payload=MAIL, chain_id=1)
    outcome = core.process(request)
    assert outcome.status is Status.REJECTED
    assert outcome.error.code == "policy_rejected"
    timers = core.metrics.snapshot()["timers"]
    assert "validator_gnosis_only_ms" in timers
    assert "validator_second_ms" not in timers


def test_typed_data_and_message_signatures_recover(make_core):
    core = make_core()

    typed = core.process(SigningRequest(variant=Variant.TYPED_DATA, account=ADDRESS_2, payload=MAIL, chain_id=1))
    assert typed.status is Status.SIGNED
    assert Account.recover_message(encode_typed_data(full_message=MAIL), signature=typed.signature) == ADDRESS_2

    message = core.process(_message(b"hello", account=ADDRESS_2))
    assert message.status is Status.SIGNED
    assert Account.recover_message(encode_defunct(primitive=b"hello"), signature=message.signature) == ADDRESS_2


def test_transaction_without_nonce_or_chain_id_is_completed(make_core):
    core = make_core(first_nonces={ADDRESS_1: 4})
    outcome = core.process(_tx(None, chain_id=None))
    assert outcome.status is Status.SIGNED
    assert _nonce_state(core).last_issued == 4


def test_unknown_account_rejected(make_core):
    core = make_core()
    outcome = core.process(_message(account="0x0000000000000000000000000000000000000001"))
    assert outcome.status is Status.REJECTED
    assert outcome.error.code == "unknown_account"


def test_halted_account_refuses_every_variant(make_core):
    core = make_core()
    core.accounts.get(ADDRESS_1).halted = True
    for request in (_tx(0), _message()):
        outcome = core.process(request)
        assert outcome.status is Status.ERRORED
        assert outcome.error.code == "nonce_state_corrupted"
    # Other accounts keep working.
    assert core.process(_message(account=ADDRESS_2)).status is Status.SIGNED


class _FailingSigner(Signer):
    def __init__(self, inner):
        self.inner = inner

    def accounts(self):
        return self.inner.accounts()

    def sign_message(self, account, message):
        raise RuntimeError("device unplugged")

    def sign_transaction(self, account, transaction):
        raise RuntimeError("device unplugged")

    def sign_typed_data(self, account, typed_data):
        raise RuntimeError("device unplugged")


def test_signing_failure_is_errored_and_releases_nonce(make_core, wallet):
    core = make_core(signer=_FailingSigner(wallet))
    outcome = core.process(_tx(0))
    assert outcome.status is Status.ERRORED
    assert outcome.error.code == "signing_failed"
    assert outcome.error.message == "signing failed: device unplugged"
    assert _nonce_state(core).last_issued is None
    assert not _nonce_state(core).in_flight


class _ExclusiveSigner(Signer):
    """Records the highest number of concurrent sign calls per account."""

    def __init__(self, inner):
        self.inner = inner
        self.lock = threading.Lock()
        self.active = {}
        self.max_active = 0

    def accounts(self):
        return self.inner.accounts()

    def _enter(self, account):
        with self.lock:
            self.active[account] = self.active.get(account, 0) + 1
            self.max_active = max(self.max_active, self.active[account])

    def _leave(self, account):
        with self.lock:
            self.active[account] -= 1

    def sign_message(self, account, message):
        self._enter(account)
        try:
            time.sleep(0.001)
            return self.inner.sign_message(account, message)
        finally:
            self._leave(account)

    def sign_transaction(self, account, transaction):
        self._enter(account)
        try:
            return self.inner.sign_transaction(account, transaction)
        finally:
            self._leave(account)

    def sign_typed_data(self, account, typed_data):
        return self.inner.sign_typed_data(account, typed_data)


def test_sign_step_is_mutually_exclusive_per_account(make_core, wallet):
    signer = _ExclusiveSigner(wallet)
    core = make_core(signer=signer)

    def worker():
        for _ in range(10):
            assert core.process(_message()).status is Status.SIGNED

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert signer.max_active == 1


def test_concurrent_transactions_sign_gapless_nonces(make_core, wallet):
    signer = _ExclusiveSigner(wallet)
    core = make_core(signer=signer, first_nonces={ADDRESS_1: 10})
    account = core.accounts.get(ADDRESS_1)
    signed = []
    signed_lock = threading.Lock()

    def worker():
        for _ in range(15):
            proposed = core.sequencer.next_nonce(account)
            outcome = core.process(_tx(proposed))
            if outcome.status is Status.SIGNED:
                with signed_lock:
                    signed.append(proposed)
            else:
                assert outcome.error.code == "nonce_conflict"

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert signed
    assert sorted(signed) == list(range(10, 10 + len(signed)))
    assert account.nonce.last_issued == 10 + len(signed) - 1
    assert signer.max_active == 1
    assert not account.halted


def test_validator_timeout_releases_reservation(make_core, write_validator):
    stall_on_value = write_validator(
        "stall_on_value",
        "def validate_transaction(account, transaction):\n"
        "    while transaction['value'] > 0:\n"
        "        pass\n"
        "    return True\n",
    )
    core = make_core([stall_on_value], timeout_ms=100)

    stalled = core.process(_tx(0))
    assert stalled.status is Status.REJECTED
    assert stalled.error.code == "validator_fault"
    assert stalled.error.message == "validator timeout"
    assert not _nonce_state(core).in_flight

    retried = core.process(_tx(0, value=0))
    assert retried.status is Status.SIGNED
    assert _nonce_state(core).last_issued == 0


def test_accounts_sign_independently(make_core):
    core = make_core()
    results = []

    def worker():
        results.append(core.process(_tx(0, account=ADDRESS_2)))

    # ADDRESS_1 is mid-signature; ADDRESS_2 must not wait for it.
    with core.accounts.get(ADDRESS_1).sign_lock:
        t = threading.Thread(target=worker, daemon=True)
        t.start()
        t.join(timeout=5)
        assert not t.is_alive()
    assert results[0].status is Status.SIGNED
    assert _nonce_state(core, ADDRESS_2).last_issued == 0


def test_chain_mismatch_comes_before_account_checks(make_core):
    core = make_core()
    core.accounts.get(ADDRESS_1).halted = True

    halted = core.process(_tx(0, chain_id=5))
    assert halted.status is Status.REJECTED
    assert halted.error.code == "chain_mismatch"

    stranger = core.process(_tx(0, account="0x0000000000000000000000000000000000000001", chain_id=5))
    assert stranger.status is Status.REJECTED
    assert stranger.error.code == "chain_mismatch"
