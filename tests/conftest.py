import os
import sys

import pytest

# Add root directory to sys.path to allow imports from top-level modules
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

KEY_1 = "0x0000000000000000000000000000000000000000000000000000000000000001"
KEY_2 = "0x0000000000000000000000000000000000000000000000000000000000000002"
ADDRESS_1 = "0x7E5F4552091A69125d5DfCb7b8C2659029395Bdf"
ADDRESS_2 = "0x2B5AD5c4795c026514f8317c7a215E218DcCD6cF"

# Set environment variables BEFORE modules are imported
os.environ["HDNODE_PRIVATE_KEYS"] = f"{KEY_1},{KEY_2}"
os.environ["HDNODE_CHAIN_ID"] = "1"
os.environ["HDNODE_SYNC_NONCES"] = "false"
os.environ["HDNODE_REMOTE_NODE_URL"] = "http://127.0.0.1:8545"
os.environ["HDNODE_VALIDATORS"] = ""
os.environ["HDNODE_LOG_LEVEL"] = "info"


@pytest.fixture
def wallet():
    from signing.wallet import Wallet
    return Wallet.from_private_keys([KEY_1, KEY_2])


@pytest.fixture
def write_validator(tmp_path):
    """Write a validator script into tmp_path and return its path."""

    def _write(name, source):
        path = tmp_path / f"{name}.py"
        path.write_text(source, encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def make_core(wallet):
    """Build a signing core over the test wallet; nonces start at 0 unless overridden."""
    from core.accounts import AccountBook
    from core.chain import ChainIdentityGuard
    from core.nonce import NonceSequencer
    from core.policy import PolicyEngine
    from core.signing import SigningCore
    from observability import Metrics

    engines = []

    def _make(validators=(), *, chain_id=1, first_nonces=None, signer=None, timeout_ms=1000):
        metrics = Metrics()
        policy = PolicyEngine.from_paths(list(validators), timeout_ms=timeout_ms, metrics=metrics)
        engines.append(policy)
        return SigningCore(
            signer=signer or wallet,
            accounts=AccountBook.from_addresses(wallet.accounts(), first_nonces),
            chain_guard=ChainIdentityGuard(chain_id),
            sequencer=NonceSequencer(),
            policy=policy,
            metrics=metrics,
        )

    yield _make
    for engine in engines:
        engine.close()


@pytest.fixture
def container():
    from app.core.container import global_container
    return global_container
