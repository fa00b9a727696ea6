from __future__ import annotations

from typing import Optional

from core.models import SigningRequest, Verdict


def check(claimed_chain_id: int, configured_chain_id: int) -> Verdict:
    if claimed_chain_id != configured_chain_id:
        return Verdict.deny(
            "chain id mismatch",
            code="chain_mismatch",
            claimed=claimed_chain_id,
            configured=configured_chain_id,
        )
    return Verdict.allow()


class ChainIdentityGuard:
    """
    Rejects any request that claims a chain other than the one the gateway serves.

    Runs before every other check. Requests that declare no chain id (messages, typed data
    without `domain.chainId`) are not subject to it.
    """

    def __init__(self, chain_id: int) -> None:
        self.chain_id = int(chain_id)

    def check(self, claimed_chain_id: Optional[int]) -> Verdict:
        if claimed_chain_id is None:
            return Verdict.allow()
        return check(claimed_chain_id, self.chain_id)

    def check_request(self, request: SigningRequest) -> Verdict:
        return self.check(request.chain_id)
