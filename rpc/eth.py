"""
Typed wrappers around the handful of node queries the gateway issues itself.
"""

from __future__ import annotations

from typing import Any, Dict

from common.errors import InvalidParams, UpstreamForwardingFailure
from rpc.params import TYPE_DYNAMIC_FEE, parse_quantity
from rpc.upstream import UpstreamNode, UpstreamRpcError


def _quantity(method: str, value: Any) -> int:
    try:
        return parse_quantity(value, method)
    except InvalidParams as e:
        raise UpstreamForwardingFailure(f"upstream returned an invalid quantity for {method}", {"method": method}) from e


def _query(node: UpstreamNode, method: str, params: list) -> Any:
    try:
        return node.call(method, params)
    except UpstreamRpcError as e:
        raise UpstreamForwardingFailure(f"upstream {method} failed: {e.error.get('message')}", {"method": method, "upstream_error": e.error}) from e


def chain_id(node: UpstreamNode) -> int:
    return _quantity("eth_chainId", _query(node, "eth_chainId", []))


def transaction_count(node: UpstreamNode, address: str, block: str = "pending") -> int:
    return _quantity("eth_getTransactionCount", _query(node, "eth_getTransactionCount", [address, block]))


def base_fee(node: UpstreamNode) -> int:
    block = _query(node, "eth_getBlockByNumber", ["latest", False])
    if not isinstance(block, dict) or block.get("baseFeePerGas") is None:
        raise UpstreamForwardingFailure("upstream latest block has no baseFeePerGas", {"method": "eth_getBlockByNumber"})
    return _quantity("eth_getBlockByNumber", block["baseFeePerGas"])


def fill_transaction(node: UpstreamNode, account: str, tx: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fill missing gas and fee fields from the node. The nonce is left alone: the nonce
    sequencer assigns it.
    """
    filled = dict(tx)
    if "gas" not in filled:
        estimate: Dict[str, Any] = {"from": account, "value": hex(filled.get("value", 0)), "data": filled.get("data", "0x")}
        if filled.get("to"):
            estimate["to"] = filled["to"]
        filled["gas"] = _quantity("eth_estimateGas", _query(node, "eth_estimateGas", [estimate]))

    if filled.get("type") == TYPE_DYNAMIC_FEE:
        if "maxPriorityFeePerGas" not in filled:
            filled["maxPriorityFeePerGas"] = _quantity(
                "eth_maxPriorityFeePerGas", _query(node, "eth_maxPriorityFeePerGas", [])
            )
        if "maxFeePerGas" not in filled:
            filled["maxFeePerGas"] = 2 * base_fee(node) + filled["maxPriorityFeePerGas"]
    elif "gasPrice" not in filled:
        filled["gasPrice"] = _quantity("eth_gasPrice", _query(node, "eth_gasPrice", []))
    return filled
