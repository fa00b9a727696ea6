from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Type

# JSON-RPC 2.0 reserved error codes.
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


@dataclass
class AppError(Exception):
    code: str
    message: str
    data: Dict[str, Any]

    rpc_code = INTERNAL_ERROR

    def __str__(self) -> str:
        return self.message

    def to_rpc_error(self) -> Dict[str, Any]:
        return {
            "code": self.rpc_code,
            "message": self.message,
            "data": {"code": self.code, **(self.data or {})},
        }


class InvalidRequest(AppError):
    rpc_code = INVALID_REQUEST

    def __init__(self, message: str = "Invalid Request", data: Dict[str, Any] = None):
        super().__init__("invalid_request", message, data or {})


class InvalidParams(AppError):
    rpc_code = INVALID_PARAMS

    def __init__(self, message: str = "Invalid params", data: Dict[str, Any] = None):
        super().__init__("invalid_params", message, data or {})


class ChainMismatch(AppError):
    rpc_code = -32001

    def __init__(self, message: str = "chain id mismatch", data: Dict[str, Any] = None):
        super().__init__("chain_mismatch", message, data or {})


class NonceConflict(AppError):
    """Covers both the "account busy" and "nonce mismatch" cases; the message tells them apart."""

    rpc_code = -32002

    def __init__(self, message: str = "account busy", data: Dict[str, Any] = None):
        super().__init__("nonce_conflict", message, data or {})


class PolicyRejected(AppError):
    rpc_code = -32003

    def __init__(self, message: str = "policy rejected", data: Dict[str, Any] = None):
        super().__init__("policy_rejected", message, data or {})


class ValidatorFault(AppError):
    rpc_code = -32004

    def __init__(self, message: str = "validator error", data: Dict[str, Any] = None):
        super().__init__("validator_fault", message, data or {})


class UnknownAccount(AppError):
    rpc_code = -32005

    def __init__(self, message: str = "unknown account", data: Dict[str, Any] = None):
        super().__init__("unknown_account", message, data or {})


class SigningCapabilityFailure(AppError):
    rpc_code = -32010

    def __init__(self, message: str = "signing failed", data: Dict[str, Any] = None):
        super().__init__("signing_failed", message, data or {})


class NonceStateCorrupted(AppError):
    """
    An impossible nonce state transition was observed.

    This is the one fatal condition of the signing core: the affected account is halted
    until an operator resumes it.
    """

    rpc_code = -32011

    def __init__(self, message: str = "nonce state corrupted", data: Dict[str, Any] = None):
        super().__init__("nonce_state_corrupted", message, data or {})


class UpstreamForwardingFailure(AppError):
    rpc_code = -32012

    def __init__(self, message: str = "upstream node unavailable", data: Dict[str, Any] = None):
        super().__init__("upstream_unavailable", message, data or {})


class ValidatorLoadError(AppError):
    def __init__(self, message: str, data: Dict[str, Any] = None):
        super().__init__("validator_load_error", message, data or {})


_BY_CODE: Dict[str, Type[AppError]] = {
    "invalid_request": InvalidRequest,
    "invalid_params": InvalidParams,
    "chain_mismatch": ChainMismatch,
    "nonce_conflict": NonceConflict,
    "policy_rejected": PolicyRejected,
    "validator_fault": ValidatorFault,
    "unknown_account": UnknownAccount,
    "signing_failed": SigningCapabilityFailure,
    "nonce_state_corrupted": NonceStateCorrupted,
    "upstream_unavailable": UpstreamForwardingFailure,
}


def error_for_code(code: str, message: str, data: Optional[Dict[str, Any]] = None) -> AppError:
    """
    Build the taxonomy error matching a stable error code string.
    """
    cls = _BY_CODE.get(code)
    if cls is None:
        return AppError(code, message, data or {})
    return cls(message, data or {})


def classify_exception(e: Exception) -> AppError:
    """
    Map common upstream / network issues into stable error codes.
    """
    if isinstance(e, AppError):
        return e

    err_str = str(e).lower()

    if "rate limit" in err_str or "429" in err_str:
        return AppError("rate_limited", str(e), {})
    if "timeout" in err_str or "timed out" in err_str:
        return AppError("timeout", str(e), {})
    if "unauthorized" in err_str or "forbidden" in err_str or "401" in err_str or "403" in err_str:
        return AppError("auth_error", str(e), {})
    if "network" in err_str or "connection" in err_str:
        return AppError("network_error", str(e), {})

    return AppError("unknown_error", str(e), {})
