import os
from typing import Dict, List, Optional

from dotenv import load_dotenv

load_dotenv()


def _csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    return int(value.strip(), 0)


def _start_nonces(value: Optional[str]) -> Dict[str, int]:
    """
    Parse `0xabc...=5,0xdef...=0` into {lower-case address: first nonce}.
    """
    out: Dict[str, int] = {}
    for part in _csv(value):
        address, sep, nonce = part.partition("=")
        if not sep:
            raise ValueError(f"HDNODE_START_NONCES entry '{part}' must look like <address>=<nonce>")
        out[address.strip().lower()] = int(nonce.strip(), 0)
    return out


class Settings:
    PROJECT_NAME: str = "hdnode"
    VERSION: str = "0.1.0"

    # Upstream node being proxied
    REMOTE_NODE_URL: str = os.getenv("HDNODE_REMOTE_NODE_URL", "http://127.0.0.1:8545")
    UPSTREAM_TIMEOUT_SEC: float = float(os.getenv("HDNODE_UPSTREAM_TIMEOUT_SEC", "10"))

    # Chain identity; queried from the upstream node at startup when unset
    CHAIN_ID: Optional[int] = _optional_int(os.getenv("HDNODE_CHAIN_ID"))

    # Accounts: BIP-39 mnemonic (BIP-44 derivation) and/or raw private keys
    MNEMONIC: str = os.getenv("HDNODE_MNEMONIC", "")
    PASSWORD: str = os.getenv("HDNODE_PASSWORD", "")
    ACCOUNT_COUNT: int = int(os.getenv("HDNODE_ACCOUNT_COUNT", "1"))
    PRIVATE_KEYS: List[str] = _csv(os.getenv("HDNODE_PRIVATE_KEYS"))

    # Nonces
    START_NONCES: Dict[str, int] = _start_nonces(os.getenv("HDNODE_START_NONCES"))
    SYNC_NONCES: bool = os.getenv("HDNODE_SYNC_NONCES", "true").strip().lower() == "true"

    # Policy validators
    VALIDATORS: List[str] = _csv(os.getenv("HDNODE_VALIDATORS"))
    VALIDATOR_TIMEOUT_MS: int = int(os.getenv("HDNODE_VALIDATOR_TIMEOUT_MS", "1000"))
    VALIDATOR_WORKERS: int = int(os.getenv("HDNODE_VALIDATOR_WORKERS", "8"))

    # HTTP surface
    API_HOST: str = os.getenv("API_HOST", "127.0.0.1")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))


settings = Settings()
