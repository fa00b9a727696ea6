"""
RPC interception router.

Every inbound JSON-RPC call is either forwarded to the upstream node untouched or
intercepted because it needs one of the gateway's keys. Intercepted calls go through the
signing core; nothing else ever sees the keys.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from common.errors import AppError, UpstreamForwardingFailure
from core.models import SigningOutcome, SigningRequest, Variant
from core.signing import SigningCore
from observability import Metrics, build_log_context, log_event
from observability.logging import set_current_context
from rpc import eth
from rpc.jsonrpc import (
    error_response,
    internal_error,
    invalid_request,
    parse_error,
    parse_request,
    request_id,
    result_response,
)
from rpc.params import parse_signing_request
from rpc.upstream import RpcReply, UpstreamNode, UpstreamRpcError


class Category(str, Enum):
    PASSTHROUGH = "passthrough"
    TRANSACTION = "transaction"
    TYPED_DATA = "typed_data"
    MESSAGE = "message"


@dataclass(frozen=True)
class Route:
    category: Category
    submit: bool = False


INTERCEPTED: Dict[str, Route] = {
    "eth_sendTransaction": Route(Category.TRANSACTION, submit=True),
    "eth_signTransaction": Route(Category.TRANSACTION),
    "eth_signTypedData_v4": Route(Category.TYPED_DATA),
    "eth_signTypedData": Route(Category.TYPED_DATA),
    "eth_sign": Route(Category.MESSAGE),
    "personal_sign": Route(Category.MESSAGE),
}


def classify(method: str) -> Category:
    route = INTERCEPTED.get(method)
    return route.category if route is not None else Category.PASSTHROUGH


def _is_passthrough(obj: Any) -> bool:
    # Anything carrying a method name we do not intercept belongs to the node, including
    # requests the node itself will reject.
    return isinstance(obj, dict) and isinstance(obj.get("method"), str) and classify(obj["method"]) is Category.PASSTHROUGH


def _encode(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


class RpcRouter:
    def __init__(self, core: SigningCore, upstream: UpstreamNode, metrics: Optional[Metrics] = None) -> None:
        self.core = core
        self.upstream = upstream
        self.metrics = metrics or core.metrics

    def dispatch(self, body: bytes) -> RpcReply:
        try:
            obj = json.loads(body)
        except ValueError:
            self.metrics.inc("rpc_parse_error_total")
            return self._reply(parse_error())

        if isinstance(obj, list):
            return self._dispatch_batch(body, obj)
        if _is_passthrough(obj):
            self.metrics.record_rpc_call(Category.PASSTHROUGH.value)
            try:
                return self.upstream.forward(body)
            except UpstreamForwardingFailure as e:
                return self._reply(error_response(request_id(obj), e.to_rpc_error()))
        return self._reply(self._handle(obj))

    def _dispatch_batch(self, body: bytes, batch: List[Any]) -> RpcReply:
        if not batch:
            return self._reply(invalid_request(None, "empty batch"))
        if all(_is_passthrough(e) for e in batch):
            self.metrics.record_rpc_call(Category.PASSTHROUGH.value)
            try:
                return self.upstream.forward(body)
            except UpstreamForwardingFailure as err:
                return self._reply([error_response(request_id(item), err.to_rpc_error()) for item in batch])
        return self._reply([self._handle(e) for e in batch])

    def _handle(self, obj: Any) -> Dict[str, Any]:
        """
        Handle a single request object and return its JSON-RPC response object.
        """
        rid = request_id(obj)
        if _is_passthrough(obj):
            self.metrics.record_rpc_call(Category.PASSTHROUGH.value)
            return self._forward_one(obj)
        try:
            request = parse_request(obj)
        except AppError as e:
            return invalid_request(rid, e.data.get("reason"))

        route = INTERCEPTED[request.method]
        self.metrics.record_rpc_call(route.category.value)
        ctx = build_log_context(tool="rpc_router", rpc_id=request.id)
        set_current_context(ctx)
        try:
            signing_request = parse_signing_request(request.method, request.positional_params())
            if signing_request.variant is Variant.TRANSACTION:
                signing_request = self._fill(signing_request)
            outcome = self.core.process(signing_request)
            return self._respond(request.id, request.method, route, outcome)
        except AppError as e:
            return error_response(request.id, e.to_rpc_error())
        except Exception as e:
            log_event(
                "rpc_internal_error",
                ctx=ctx,
                data={"method": request.method, "error": str(e), "error_type": type(e).__name__},
                level="error",
            )
            return internal_error(request.id)
        finally:
            set_current_context(None)

    def _forward_one(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        rid = request_id(obj)
        try:
            reply = self.upstream.forward(_encode(obj))
            return json.loads(reply.content)
        except UpstreamForwardingFailure as e:
            return error_response(rid, e.to_rpc_error())
        except ValueError:
            return error_response(
                rid,
                UpstreamForwardingFailure("upstream node returned a non-JSON response").to_rpc_error(),
            )

    def _fill(self, request: SigningRequest) -> SigningRequest:
        guard = self.core.chain_guard
        if request.chain_id is None:
            request = request.with_payload(chainId=guard.chain_id)
        if not guard.check_request(request).allowed or request.account not in self.core.accounts:
            # The signing core rejects these without the node's help.
            return request
        filled = eth.fill_transaction(self.upstream, request.account, request.payload)
        return request.with_payload(**filled)

    def _respond(self, rid: Any, method: str, route: Route, outcome: SigningOutcome) -> Dict[str, Any]:
        if not outcome.signed:
            return error_response(rid, outcome.error.to_rpc_error())
        if route.category is not Category.TRANSACTION:
            return result_response(rid, outcome.signature)
        if not route.submit:
            return result_response(rid, outcome.raw_transaction)

        # The nonce is already consumed: the signature exists whether or not the node takes it.
        try:
            tx_hash = self.upstream.call("eth_sendRawTransaction", [outcome.raw_transaction])
        except UpstreamRpcError as e:
            log_event(
                "raw_transaction_rejected",
                ctx=build_log_context(tool="rpc_router", rpc_id=rid),
                data={"method": method, "tx_hash": outcome.tx_hash, "upstream_error": e.error},
                level="warn",
            )
            return error_response(rid, e.error)
        return result_response(rid, tx_hash)

    @staticmethod
    def _reply(payload: Any) -> RpcReply:
        return RpcReply(status_code=200, content=_encode(payload))
