from __future__ import annotations

import itertools
import json
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from common.errors import UpstreamForwardingFailure
from observability import build_log_context, log_event

_CTX = build_log_context(tool="upstream")

JSON_MEDIA_TYPE = "application/json"


@dataclass(frozen=True)
class RpcReply:
    status_code: int
    content: bytes
    media_type: str = JSON_MEDIA_TYPE


class UpstreamRpcError(Exception):
    """
    The upstream node answered with a JSON-RPC error object.
    """

    def __init__(self, method: str, error: Dict[str, Any]) -> None:
        super().__init__(f"{method}: {error.get('message', error)}")
        self.method = method
        self.error = error


class UpstreamNode:
    """
    Client for the Ethereum node the gateway fronts.

    `forward` relays opaque request bytes; `call` issues the gateway's own queries.
    """

    def __init__(self, url: str, timeout: float = 10.0, session: Optional[requests.Session] = None) -> None:
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()

    def _post(self, body: bytes) -> requests.Response:
        try:
            return self.session.post(
                self.url,
                data=body,
                headers={"Content-Type": JSON_MEDIA_TYPE},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            log_event("upstream_unreachable", ctx=_CTX, data={"url": self.url, "error": str(e)}, level="warn")
            raise UpstreamForwardingFailure(f"upstream node unavailable: {e}", {"url": self.url}) from e

    def forward(self, body: bytes) -> RpcReply:
        response = self._post(body)
        media_type = response.headers.get("Content-Type", JSON_MEDIA_TYPE)
        return RpcReply(status_code=response.status_code, content=response.content, media_type=media_type)

    def _next_id(self) -> int:
        with self._id_lock:
            return next(self._ids)

    def call(self, method: str, params: List[Any]) -> Any:
        request = {"jsonrpc": "2.0", "method": method, "params": params, "id": self._next_id()}
        response = self._post(json.dumps(request).encode("utf-8"))
        try:
            reply = response.json()
        except ValueError as e:
            raise UpstreamForwardingFailure(
                f"upstream node returned a non-JSON response to {method} (HTTP {response.status_code})",
                {"method": method, "status_code": response.status_code},
            ) from e
        if not isinstance(reply, dict):
            raise UpstreamForwardingFailure(f"unexpected upstream reply to {method}", {"method": method})
        if reply.get("error") is not None:
            raise UpstreamRpcError(method, reply["error"])
        if "result" not in reply:
            raise UpstreamForwardingFailure(f"upstream reply to {method} has no result", {"method": method})
        return reply["result"]

    def close(self) -> None:
        self.session.close()
