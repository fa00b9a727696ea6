"""
JSON-RPC 2.0 framing.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, StrictInt, StrictStr, ValidationError

from common.errors import INTERNAL_ERROR, INVALID_REQUEST, PARSE_ERROR, InvalidParams, InvalidRequest

# The id MUST be a string, a number or null. Booleans are not numbers here.
RpcId = Union[StrictStr, StrictInt, float, None]


class JsonRpcRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    jsonrpc: Literal["2.0"]
    method: StrictStr
    params: Optional[Union[List[Any], Dict[str, Any]]] = None
    id: RpcId

    def positional_params(self) -> List[Any]:
        if self.params is None:
            return []
        if isinstance(self.params, dict):
            # Ethereum JSON-RPC methods take positional parameters only.
            raise InvalidParams("Invalid params", {"reason": "expected a parameter array"})
        return list(self.params)


def parse_request(obj: Any) -> JsonRpcRequest:
    try:
        return JsonRpcRequest.model_validate(obj)
    except ValidationError as e:
        raise InvalidRequest("Invalid Request", {"reason": e.errors(include_url=False)[0]["msg"]}) from e


def request_id(obj: Any) -> Any:
    """Best-effort id of a possibly malformed request, for error responses."""
    if isinstance(obj, dict):
        rid = obj.get("id")
        if rid is None or isinstance(rid, (str, float)) or (isinstance(rid, int) and not isinstance(rid, bool)):
            return rid
    return None


def result_response(rid: Any, result: Any) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "result": result, "id": rid}


def error_response(rid: Any, error: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "error": error, "id": rid}


def parse_error() -> Dict[str, Any]:
    return error_response(None, {"code": PARSE_ERROR, "message": "Parse error"})


def invalid_request(rid: Any = None, reason: str | None = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {"code": INVALID_REQUEST, "message": "Invalid Request"}
    if reason:
        error["data"] = {"reason": reason}
    return error_response(rid, error)


def internal_error(rid: Any = None) -> Dict[str, Any]:
    return error_response(rid, {"code": INTERNAL_ERROR, "message": "Internal error"})
