"""
Parse the parameters of intercepted methods into signing requests.

Transactions are normalized so the signer and validators see one shape: integer
quantities, checksummed addresses, `data` as 0x hex and an explicit `type` for typed
(EIP-2718) envelopes.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from eth_utils import is_address, to_checksum_address

from common.errors import InvalidParams
from core.models import SigningRequest, Variant

QUANTITY_FIELDS = ("gas", "gasPrice", "maxFeePerGas", "maxPriorityFeePerGas", "value", "nonce", "chainId")
TRANSACTION_FIELDS = frozenset(QUANTITY_FIELDS + ("type", "from", "to", "data", "input", "accessList"))

TYPE_LEGACY = 0
TYPE_ACCESS_LIST = 1
TYPE_DYNAMIC_FEE = 2

_TYPED_DATA_FIELDS = ("types", "primaryType", "domain", "message")


def _invalid(reason: str, **data: Any) -> InvalidParams:
    return InvalidParams("Invalid params", {"reason": reason, **data})


def parse_quantity(value: Any, field: str) -> int:
    """
    JSON-RPC quantities are 0x-prefixed hex strings; plain non-negative integers are
    accepted as well.
    """
    if isinstance(value, bool):
        raise _invalid(f"{field}: expected a quantity", field=field)
    if isinstance(value, int):
        if value < 0:
            raise _invalid(f"{field}: quantity must not be negative", field=field)
        return value
    if isinstance(value, str) and value[:2].lower() == "0x" and len(value) > 2:
        try:
            return int(value[2:], 16)
        except ValueError:
            pass
    raise _invalid(f"{field}: expected a 0x-prefixed hex quantity", field=field)


def parse_bytes(value: Any, field: str) -> bytes:
    if not isinstance(value, str) or value[:2].lower() != "0x":
        raise _invalid(f"{field}: expected 0x-prefixed hex data", field=field)
    try:
        return bytes.fromhex(value[2:])
    except ValueError as e:
        raise _invalid(f"{field}: invalid hex data", field=field) from e


def parse_address(value: Any, field: str) -> str:
    if not isinstance(value, str) or not is_address(value):
        raise _invalid(f"{field}: expected an address", field=field)
    return to_checksum_address(value)


def parse_chain_id(value: Any, field: str = "chainId") -> int:
    """
    Permissive chain id: integer, decimal string or 0x hex string.
    """
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    if isinstance(value, str):
        text = value.strip()
        if text[:2].lower() == "0x":
            return parse_quantity(text, field)
        if text.isdigit():
            return int(text)
    raise _invalid(f"{field}: expected an integer chain id", field=field)


def _access_list(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        raise _invalid("accessList: expected an array", field="accessList")
    out: List[Dict[str, Any]] = []
    for entry in value:
        if not isinstance(entry, dict) or set(entry) != {"address", "storageKeys"}:
            raise _invalid("accessList: entries need exactly address and storageKeys", field="accessList")
        keys = entry["storageKeys"]
        if not isinstance(keys, list):
            raise _invalid("accessList: storageKeys must be an array", field="accessList")
        storage_keys = []
        for key in keys:
            raw = parse_bytes(key, "accessList")
            if len(raw) != 32:
                raise _invalid("accessList: storage keys are 32 bytes", field="accessList")
            storage_keys.append("0x" + raw.hex())
        out.append({"address": parse_address(entry["address"], "accessList"), "storageKeys": storage_keys})
    return out


def _transaction_type(tx: Dict[str, Any]) -> int:
    has_gas_price = "gasPrice" in tx
    has_dynamic_fee = "maxFeePerGas" in tx or "maxPriorityFeePerGas" in tx
    declared = tx.get("type")

    if has_gas_price and has_dynamic_fee:
        raise _invalid("malformed transaction: gasPrice mixed with EIP-1559 fee fields")
    if declared is None:
        if not has_gas_price:
            return TYPE_DYNAMIC_FEE
        return TYPE_ACCESS_LIST if "accessList" in tx else TYPE_LEGACY
    if declared == TYPE_DYNAMIC_FEE and not has_gas_price:
        return TYPE_DYNAMIC_FEE
    if declared == TYPE_ACCESS_LIST and not has_dynamic_fee:
        return TYPE_ACCESS_LIST
    if declared == TYPE_LEGACY and not has_dynamic_fee and "accessList" not in tx:
        return TYPE_LEGACY
    raise _invalid(f"malformed transaction: fields do not match type {declared}")


def parse_transaction(obj: Any) -> Dict[str, Any]:
    """
    Normalize an `eth_sendTransaction` / `eth_signTransaction` argument.

    Returns the transaction including its `from` address.
    """
    if not isinstance(obj, dict):
        raise _invalid("expected a transaction object")
    unknown = sorted(set(obj) - TRANSACTION_FIELDS)
    if unknown:
        raise _invalid(f"unknown transaction fields: {', '.join(unknown)}", fields=unknown)
    if "from" not in obj:
        raise _invalid("transaction is missing 'from'", field="from")

    tx: Dict[str, Any] = {"from": parse_address(obj["from"], "from")}
    if obj.get("to") is not None:
        tx["to"] = parse_address(obj["to"], "to")
    for field in QUANTITY_FIELDS:
        if obj.get(field) is not None:
            tx[field] = parse_quantity(obj[field], field)
    if obj.get("type") is not None:
        tx["type"] = parse_quantity(obj["type"], "type")

    data = obj.get("data")
    alias = obj.get("input")
    if data is not None and alias is not None and parse_bytes(data, "data") != parse_bytes(alias, "input"):
        raise _invalid("transaction has conflicting data and input", field="data")
    raw = data if data is not None else alias
    tx["data"] = "0x" + (parse_bytes(raw, "data").hex() if raw is not None else "")
    tx.setdefault("value", 0)

    if obj.get("accessList") is not None:
        tx["accessList"] = _access_list(obj["accessList"])

    kind = _transaction_type(tx)
    if kind == TYPE_LEGACY:
        tx.pop("type", None)
    else:
        tx["type"] = kind
        tx.setdefault("accessList", [])
    return tx


def parse_typed_data(obj: Any) -> Dict[str, Any]:
    if isinstance(obj, str):
        try:
            obj = json.loads(obj)
        except ValueError as e:
            raise _invalid("typed data is not valid JSON") from e
    if not isinstance(obj, dict):
        raise _invalid("expected an EIP-712 typed data object")
    missing = [k for k in _TYPED_DATA_FIELDS if k not in obj]
    if missing:
        raise _invalid(f"typed data is missing {', '.join(missing)}", fields=missing)
    if not isinstance(obj["types"], dict) or not isinstance(obj["domain"], dict) or not isinstance(obj["message"], dict):
        raise _invalid("typed data types, domain and message must be objects")
    if not isinstance(obj["primaryType"], str) or obj["primaryType"] not in obj["types"]:
        raise _invalid("typed data primaryType is not defined in types")

    typed = dict(obj)
    domain = dict(obj["domain"])
    if domain.get("chainId") is not None:
        domain["chainId"] = parse_chain_id(domain["chainId"], "domain.chainId")
    typed["domain"] = domain
    return typed


def _expect(params: List[Any], minimum: int, maximum: Optional[int], method: str) -> None:
    if len(params) < minimum or (maximum is not None and len(params) > maximum):
        raise _invalid(f"{method}: wrong number of parameters", method=method)


def parse_signing_request(method: str, params: List[Any]) -> SigningRequest:
    """
    Reduce an intercepted call's positional parameters to a SigningRequest.
    """
    if method in ("eth_sendTransaction", "eth_signTransaction"):
        _expect(params, 1, 1, method)
        tx = parse_transaction(params[0])
        account = tx.pop("from")
        return SigningRequest(
            variant=Variant.TRANSACTION,
            account=account,
            payload=tx,
            chain_id=tx.get("chainId"),
            method=method,
        )

    if method in ("eth_signTypedData_v4", "eth_signTypedData"):
        _expect(params, 2, 2, method)
        account = parse_address(params[0], "address")
        typed = parse_typed_data(params[1])
        return SigningRequest(
            variant=Variant.TYPED_DATA,
            account=account,
            payload=typed,
            chain_id=typed["domain"].get("chainId"),
            method=method,
        )

    if method == "eth_sign":
        _expect(params, 2, 2, method)
        account = parse_address(params[0], "address")
        message = parse_bytes(params[1], "data")
    elif method == "personal_sign":
        # A trailing password argument is accepted and ignored.
        _expect(params, 2, 3, method)
        message = parse_bytes(params[0], "data")
        account = parse_address(params[1], "address")
    else:
        raise _invalid(f"{method} is not a signing method", method=method)
    return SigningRequest(variant=Variant.MESSAGE, account=account, payload=message, method=method)
