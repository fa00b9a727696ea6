from typing import Dict, List

from app.core.config import settings
from common.retry import with_retry
from core.accounts import AccountBook
from core.chain import ChainIdentityGuard
from core.nonce import NonceSequencer
from core.policy import PolicyEngine
from core.signing import SigningCore
from observability import Metrics, build_log_context, log_event
from rpc import eth
from rpc.router import RpcRouter
from rpc.upstream import UpstreamNode
from signing import get_signer

_CTX = build_log_context(tool="container")


def _resolve_chain_id(upstream: UpstreamNode) -> int:
    if settings.CHAIN_ID is not None:
        return settings.CHAIN_ID
    return with_retry("eth_chainId", lambda: eth.chain_id(upstream))


def _resolve_first_nonces(upstream: UpstreamNode, addresses: List[str]) -> Dict[str, int]:
    nonces: Dict[str, int] = {}
    for address in addresses:
        configured = settings.START_NONCES.get(address.lower())
        if configured is not None:
            nonces[address] = configured
        elif settings.SYNC_NONCES:
            nonces[address] = with_retry(
                "eth_getTransactionCount",
                lambda a=address: eth.transaction_count(upstream, a, "pending"),
            )
        else:
            nonces[address] = 0
    return nonces


class Container:
    def __init__(self):
        # Observability
        self.metrics = Metrics()

        # Upstream node
        self.upstream = UpstreamNode(settings.REMOTE_NODE_URL, timeout=settings.UPSTREAM_TIMEOUT_SEC)

        # Keys and per-account state
        self.signer = get_signer()
        addresses = self.signer.accounts()
        self.accounts = AccountBook.from_addresses(addresses, _resolve_first_nonces(self.upstream, addresses))

        # Signing core
        self.chain_guard = ChainIdentityGuard(_resolve_chain_id(self.upstream))
        self.nonce_sequencer = NonceSequencer()
        self.policy_engine = PolicyEngine.from_paths(
            settings.VALIDATORS,
            timeout_ms=settings.VALIDATOR_TIMEOUT_MS,
            max_workers=settings.VALIDATOR_WORKERS,
            metrics=self.metrics,
        )
        self.signing_core = SigningCore(
            signer=self.signer,
            accounts=self.accounts,
            chain_guard=self.chain_guard,
            sequencer=self.nonce_sequencer,
            policy=self.policy_engine,
            metrics=self.metrics,
        )

        # RPC surface
        self.router = RpcRouter(self.signing_core, self.upstream, metrics=self.metrics)

        log_event(
            "container_ready",
            ctx=_CTX,
            data={
                "chain_id": self.chain_guard.chain_id,
                "accounts": self.accounts.addresses(),
                "validators": [m.name for m in self.policy_engine.modules],
            },
        )

    def close(self) -> None:
        self.policy_engine.close()
        self.upstream.close()


global_container = Container()
