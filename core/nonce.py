"""
Per-account nonce sequencing.

Each account has at most one transaction nonce in flight, and that nonce must be exactly
the next expected value: no gaps, no reordering, no speculative parallel signing.

State machine per account:

    idle --reserve(expected)--> in_flight --commit--> idle (last_issued advanced)
                                    \\------release--> idle (last_issued unchanged)

Any other transition means the bookkeeping is broken; the account is halted until an
operator calls `resume`.
"""

from __future__ import annotations

from typing import Optional

from common.errors import NonceStateCorrupted
from core.accounts import Account
from core.models import Verdict
from observability import build_log_context, log_event

_CTX = build_log_context(tool="nonce_sequencer")


class NonceSequencer:
    def next_nonce(self, account: Account) -> int:
        with account.state_lock:
            return account.nonce.expected()

    def reserve(self, account: Account, proposed_nonce: Optional[int]) -> Verdict:
        """
        Reserve `proposed_nonce` for a signing attempt.

        A `None` proposal (transaction without a nonce) reserves the expected nonce; the
        granted value is reported in the verdict's `data["nonce"]`.
        """
        with account.state_lock:
            if account.halted:
                return Verdict.deny(
                    "account halted: nonce state corrupted",
                    code="nonce_state_corrupted",
                    account=account.address,
                )
            state = account.nonce
            if state.in_flight:
                return Verdict.deny("account busy", code="nonce_conflict", account=account.address)
            expected = state.expected()
            if proposed_nonce is not None and proposed_nonce != expected:
                return Verdict.deny(
                    f"nonce mismatch: expected {expected}, got {proposed_nonce}",
                    code="nonce_conflict",
                    account=account.address,
                    expected=expected,
                    proposed=proposed_nonce,
                )
            state.in_flight = True
            state.pending = expected
            return Verdict(allowed=True, data={"nonce": expected})

    def commit(self, account: Account) -> int:
        """
        Consume the reserved nonce. Only called after a signature was produced.
        """
        with account.state_lock:
            state = account.nonce
            if not state.in_flight or state.pending is None:
                self._halt(account, "commit without a reservation in flight")
            if state.pending != state.expected():
                self._halt(account, f"reserved nonce {state.pending} is no longer the expected {state.expected()}")
            state.last_issued = state.pending
            state.pending = None
            state.in_flight = False
            return state.last_issued

    def release(self, account: Account) -> None:
        """
        Drop the reservation without consuming the nonce.

        Releasing a halted account is a no-op: the halt already froze its state.
        """
        with account.state_lock:
            if account.halted:
                return
            state = account.nonce
            if not state.in_flight:
                self._halt(account, "release without a reservation in flight")
            state.pending = None
            state.in_flight = False

    def resume(self, account: Account, last_issued: Optional[int] = None) -> None:
        """
        Manual intervention after a halt: clear the in-flight flag and optionally reset the
        last issued nonce.
        """
        with account.state_lock:
            state = account.nonce
            if last_issued is not None:
                state.last_issued = int(last_issued)
            state.in_flight = False
            state.pending = None
            account.halted = False
        log_event(
            "nonce_account_resumed",
            ctx=_CTX,
            data={"account": account.address, "last_issued": account.nonce.last_issued},
            level="warn",
        )

    def _halt(self, account: Account, detail: str) -> None:
        # Caller holds account.state_lock.
        account.halted = True
        log_event(
            "nonce_state_corrupted",
            ctx=_CTX,
            data={
                "account": account.address,
                "detail": detail,
                "last_issued": account.nonce.last_issued,
                "pending": account.nonce.pending,
                "in_flight": account.nonce.in_flight,
            },
            level="error",
        )
        raise NonceStateCorrupted(
            f"nonce state corrupted for {account.address}: {detail}",
            {"account": account.address},
        )
