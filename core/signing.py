"""
Signing core.

Per request:

    ChainCheck -> NonceReserve (transactions only) -> PolicyEvaluate -> Sign -> Finalize

with terminal states Signed, Rejected and Errored. A nonce reservation taken in
NonceReserve is released on every path that does not reach Finalize; Finalize commits it
while the account's signing lock is still held, so nobody observes an advanced nonce
without the signature that consumed it.
"""

from __future__ import annotations

from typing import Optional

from common.errors import NonceStateCorrupted, SigningCapabilityFailure, UnknownAccount
from core.accounts import Account, AccountBook
from core.chain import ChainIdentityGuard
from core.models import SigningOutcome, SigningRequest, Status, Variant, Verdict
from core.nonce import NonceSequencer
from core.policy import PolicyEngine
from observability import Metrics, build_log_context, log_event
from signing.base import Signer

_CTX = build_log_context(tool="signing_core")


class SigningCore:
    def __init__(
        self,
        *,
        signer: Signer,
        accounts: AccountBook,
        chain_guard: ChainIdentityGuard,
        sequencer: NonceSequencer,
        policy: PolicyEngine,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.signer = signer
        self.accounts = accounts
        self.chain_guard = chain_guard
        self.sequencer = sequencer
        self.policy = policy
        self.metrics = metrics or Metrics()

    def process(self, request: SigningRequest) -> SigningOutcome:
        with self.metrics.timer(f"signing_{request.variant.value}_ms"):
            outcome = self._process(request)
        self._record(request, outcome)
        return outcome

    def _process(self, request: SigningRequest) -> SigningOutcome:
        if request.variant is Variant.TRANSACTION and request.chain_id is None:
            request = request.with_payload(chainId=self.chain_guard.chain_id)

        # Chain identity goes first: a wrong-chain request is a ChainMismatch whatever
        # else is wrong with it.
        verdict = self.chain_guard.check_request(request)
        if not verdict.allowed:
            return _denied(verdict)

        account = self.accounts.get(request.account)
        if account is None:
            return SigningOutcome.rejected(
                UnknownAccount(f"unknown account {request.account}", {"account": request.account})
            )
        if account.halted:
            return SigningOutcome.errored(
                NonceStateCorrupted(
                    f"signing halted for {account.address} pending manual intervention",
                    {"account": account.address},
                )
            )

        if request.variant is not Variant.TRANSACTION:
            return self._authorize_and_sign(account, request, reserved=False)

        verdict = self.sequencer.reserve(account, request.nonce)
        if not verdict.allowed:
            return _denied(verdict)
        request = request.with_payload(nonce=verdict.data["nonce"])
        return self._authorize_and_sign(account, request, reserved=True)

    def _authorize_and_sign(self, account: Account, request: SigningRequest, *, reserved: bool) -> SigningOutcome:
        committed = False
        try:
            verdict = self.policy.evaluate(request)
            if not verdict.allowed:
                return _denied(verdict)
            with account.sign_lock:
                outcome = self._sign(request)
                if reserved and outcome.signed:
                    self.sequencer.commit(account)
                    committed = True
            return outcome
        except NonceStateCorrupted as e:
            return SigningOutcome.errored(e)
        finally:
            if reserved and not committed:
                self.sequencer.release(account)

    def _sign(self, request: SigningRequest) -> SigningOutcome:
        try:
            if request.variant is Variant.TRANSACTION:
                signed = self.signer.sign_transaction(request.account, request.payload)
                return SigningOutcome(
                    status=Status.SIGNED,
                    raw_transaction=signed.raw_transaction,
                    tx_hash=signed.tx_hash,
                )
            if request.variant is Variant.TYPED_DATA:
                return SigningOutcome(status=Status.SIGNED, signature=self.signer.sign_typed_data(request.account, request.payload))
            return SigningOutcome(status=Status.SIGNED, signature=self.signer.sign_message(request.account, request.payload))
        except Exception as e:
            log_event(
                "signing_capability_failed",
                ctx=_CTX,
                data={"account": request.account, "variant": request.variant.value, "error": str(e)},
                level="error",
            )
            return SigningOutcome.errored(
                SigningCapabilityFailure(f"signing failed: {e}", {"account": request.account})
            )

    def _record(self, request: SigningRequest, outcome: SigningOutcome) -> None:
        data = request.summary()
        error_code = None
        if outcome.error is not None:
            error_code = outcome.error.code
            data["error"] = {"code": error_code, "message": outcome.error.message}
        if outcome.tx_hash:
            data["tx_hash"] = outcome.tx_hash
        level = {Status.SIGNED: "info", Status.REJECTED: "info", Status.ERRORED: "error"}[outcome.status]
        log_event(f"signing_{outcome.status.value}", ctx=_CTX, data=data, level=level)
        self.metrics.record_signing_outcome(request.variant.value, outcome.status.value, error_code)


def _denied(verdict: Verdict) -> SigningOutcome:
    error = verdict.to_error()
    if isinstance(error, NonceStateCorrupted):
        return SigningOutcome.errored(error)
    return SigningOutcome.rejected(error)
