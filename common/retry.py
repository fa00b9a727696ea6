"""
Backoff for the gateway's own reads from the upstream node.

Before serving anything the gateway may need two answers from the node: the chain id
(when HDNODE_CHAIN_ID is unset) and, with HDNODE_SYNC_NONCES=true, every account's pending
transaction count, which seeds the nonce sequencer. A node that is still starting up
should not take the gateway down with it, so those reads back off and try again.

Signing attempts never come through here. A retried signature is a new request and has to
propose the next nonce itself.
"""

from __future__ import annotations

import os
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

import requests

from common.errors import AppError, classify_exception
from observability import build_log_context, log_event

T = TypeVar("T")

_CTX = build_log_context(tool="upstream_retry")

_TRANSIENT_MARKERS = ("timeout", "timed out", "connection", "temporarily unavailable", "rate limit", "429", "502", "503")


def _env_number(name: str, default: float, cast: Callable[[str], float]) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Backoff:
    max_attempts: int = 3
    base_delay_sec: float = 0.5
    max_delay_sec: float = 5.0

    @classmethod
    def from_env(cls) -> "Backoff":
        """
        UPSTREAM_RETRY_MAX_ATTEMPTS, UPSTREAM_RETRY_BASE_DELAY_SEC and
        UPSTREAM_RETRY_MAX_DELAY_SEC override the defaults.
        """
        base = max(0.05, _env_number("UPSTREAM_RETRY_BASE_DELAY_SEC", 0.5, float))
        return cls(
            max_attempts=max(1, int(_env_number("UPSTREAM_RETRY_MAX_ATTEMPTS", 3, int))),
            base_delay_sec=base,
            max_delay_sec=max(base, _env_number("UPSTREAM_RETRY_MAX_DELAY_SEC", 5.0, float)),
        )

    def delay(self, attempt: int) -> float:
        # Full exponential step, then jitter into its upper half.
        step = min(self.max_delay_sec, self.base_delay_sec * (2 ** (attempt - 1)))
        return step * (0.5 + random.random() * 0.5)


def should_retry(e: Exception) -> bool:
    """
    Unreachable or overloaded nodes are worth waiting for. A node that answers with a
    JSON-RPC error will give the same answer again.
    """
    for exc in (e, e.__cause__):
        if isinstance(exc, (requests.ConnectionError, requests.Timeout, ConnectionError, TimeoutError)):
            return True
    err_str = str(e).lower()
    return any(marker in err_str for marker in _TRANSIENT_MARKERS)


def with_retry(op: str, fn: Callable[[], T], backoff: Backoff | None = None) -> T:
    """
    Run the node query `fn`, retrying transient failures. The final failure is raised as an
    AppError naming `op` and the number of attempts made.
    """
    backoff = backoff or Backoff.from_env()
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as e:
            if not should_retry(e) or attempt >= backoff.max_attempts:
                ae = classify_exception(e)
                raise AppError(
                    ae.code,
                    f"{op} failed after {attempt} attempt(s): {ae.message}",
                    {"attempts": attempt, "op": op},
                ) from e
            delay = backoff.delay(attempt)
            log_event(
                "upstream_retry",
                ctx=_CTX,
                data={"op": op, "attempt": attempt, "delay_sec": round(delay, 3), "error": str(e)},
                level="warn",
            )
            time.sleep(delay)
