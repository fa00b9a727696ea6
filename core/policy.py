"""
Scripted signing policy.

Operators supply an ordered list of validator scripts written in restricted Python. A
script may define any of:

    def validate_transaction(account, transaction): ...
    def validate_typed_data(account, typed_data): ...
    def validate_message(account, message): ...

Each handler returns True (allow), False (deny) or a non-empty string (deny with that
reason). A script that does not define the handler for a request's variant does not apply
to that variant and counts as an Allow: validators specialize, they do not have to cover
every kind of signature.

Every invocation gets a fresh sandbox namespace built from the bytecode compiled at
startup, so no state survives between requests. Handlers get a deep copy of the payload
and never see the signer or the nonce state.
"""

from __future__ import annotations

import ast
import contextvars
import copy
import operator
import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from types import CodeType
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence

from RestrictedPython import compile_restricted, limited_builtins, safe_builtins, utility_builtins
from RestrictedPython.Guards import full_write_guard, guarded_iter_unpack_sequence, guarded_unpack_sequence
from RestrictedPython.transformer import RestrictingNodeTransformer

from common.errors import ValidatorLoadError
from core.models import SigningRequest, Variant, Verdict
from observability import Metrics, build_log_context, log_event

_CTX = build_log_context(tool="policy_engine")

HANDLERS: Dict[Variant, str] = {
    Variant.TRANSACTION: "validate_transaction",
    Variant.TYPED_DATA: "validate_typed_data",
    Variant.MESSAGE: "validate_message",
}

_IMPORT_WHITELIST = ("math", "re", "string")
_BLOCKED_ATTRIBUTES = ("format", "format_map", "mro", "gi_frame", "gi_code", "f_globals", "f_locals")

# Wall-clock slack granted to a worker after its deadline tracer should have fired.
_GRACE_SEC = 0.25


class ValidatorTimeout(BaseException):
    """
    Raised inside a sandboxed frame once the invocation budget is spent.

    Derives from BaseException so `except Exception` in a script cannot swallow it.
    """


@dataclass(frozen=True)
class ValidatorModule:
    name: str
    path: str
    code: CodeType
    handlers: FrozenSet[Variant]

    @property
    def filename(self) -> str:
        return self.code.co_filename

    def handles(self, variant: Variant) -> bool:
        return variant in self.handlers


def _safe_getattr(obj, name):
    if name.startswith("_"):
        raise AttributeError(f"Access to private attribute '{name}' is forbidden")
    if name in _BLOCKED_ATTRIBUTES:
        raise AttributeError(f"Access to attribute '{name}' is forbidden")
    return getattr(obj, name)


def _safe_import(name, *args, **kwargs):
    if name in _IMPORT_WHITELIST:
        return __import__(name, *args, **kwargs)
    raise ImportError(f"Importing '{name}' is forbidden.")


def _safe_getitem(obj, key):
    if isinstance(key, str) and key.startswith("_"):
        raise KeyError("Access to private keys is forbidden")
    return obj[key]


_INPLACE_OPS: Dict[str, Callable[[Any, Any], Any]] = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
}


def _inplacevar(op: str, x: Any, y: Any) -> Any:
    return _INPLACE_OPS[op](x, y)


def _apply(f, *args, **kwargs):
    return f(*args, **kwargs)


def _printer(module_name: str):
    """
    `print` inside a script becomes a debug log line; it never feeds into the verdict.
    """

    class _LogPrinter:
        def __init__(self, _getattr_=None) -> None:
            self.txt: List[str] = []

        def write(self, text: str) -> None:
            self.txt.append(text)

        def __call__(self) -> str:
            return "".join(self.txt)

        def _call_print(self, *objects, **kwargs) -> None:
            sep = kwargs.get("sep")
            line = (" " if sep is None else str(sep)).join(str(o) for o in objects)
            self.txt.append(line + "\n")
            log_event("validator_print", ctx=_CTX, data={"module": module_name, "line": line}, level="debug")

    return _LogPrinter


_EXTRA_BUILTINS = {
    "all": all,
    "any": any,
    "dict": dict,
    "enumerate": enumerate,
    "max": max,
    "min": min,
    "reversed": reversed,
    "sum": sum,
}


_DEADLINE_HOOK = "_deadline_"

# Exceptions a script could name to catch ValidatorTimeout.
_HIDDEN_BUILTINS = ("BaseException", "GeneratorExit", "KeyboardInterrupt", "SystemExit")


def _deadline_call(node: ast.AST) -> ast.stmt:
    name = ast.copy_location(ast.Name(id=_DEADLINE_HOOK, ctx=ast.Load()), node)
    call = ast.copy_location(ast.Call(func=name, args=[], keywords=[]), node)
    return ast.copy_location(ast.Expr(value=call), node)


class ValidatorPolicy(RestrictingNodeTransformer):
    """
    RestrictedPython policy for validator scripts.

    Every loop body, function body, exception handler and `finally` block starts with a
    deadline check. The trace hook stops firing once it has raised, so these checks are
    what keeps a script that catches ValidatorTimeout from running on.
    """

    def visit_While(self, node):
        node = super().visit_While(node)
        node.body.insert(0, _deadline_call(node))
        return node

    def visit_For(self, node):
        node = super().visit_For(node)
        node.body.insert(0, _deadline_call(node))
        return node

    def visit_FunctionDef(self, node):
        node = super().visit_FunctionDef(node)
        node.body.insert(0, _deadline_call(node))
        return node

    def visit_ExceptHandler(self, node):
        node = super().visit_ExceptHandler(node)
        node.body.insert(0, _deadline_call(node))
        return node

    def visit_Try(self, node):
        node = super().visit_Try(node)
        if node.finalbody:
            node.finalbody.insert(0, _deadline_call(node.finalbody[0]))
        return node


def _deadline_check(deadline: float) -> Callable[[], None]:
    def check() -> None:
        if time.monotonic() > deadline:
            raise ValidatorTimeout()

    return check


def _sandbox_globals(module_name: str, deadline: float) -> Dict[str, Any]:
    builtins = dict(safe_builtins)
    builtins.update(limited_builtins)
    builtins.update(_EXTRA_BUILTINS)
    for name in _HIDDEN_BUILTINS:
        builtins.pop(name, None)
    builtins["__import__"] = _safe_import

    scope: Dict[str, Any] = {"__builtins__": builtins, "__name__": f"validator_{module_name}", "__metaclass__": type}
    scope.update(utility_builtins)
    scope["_getattr_"] = _safe_getattr
    scope["_getitem_"] = _safe_getitem
    scope["_getiter_"] = iter
    scope["_write_"] = full_write_guard
    scope["_iter_unpack_sequence_"] = guarded_iter_unpack_sequence
    scope["_unpack_sequence_"] = guarded_unpack_sequence
    scope["_inplacevar_"] = _inplacevar
    scope["_apply_"] = _apply
    scope["_print_"] = _printer(module_name)
    scope[_DEADLINE_HOOK] = _deadline_check(deadline)
    return scope


def _deadline_tracer(filename: str, deadline: float):
    def local(frame, event, arg):
        if time.monotonic() > deadline:
            raise ValidatorTimeout()
        return local

    def tracer(frame, event, arg):
        if frame.f_code.co_filename != filename:
            return None
        return local(frame, event, arg)

    return tracer


def _run_sandboxed(module: ValidatorModule, deadline: float, handler_name: Optional[str], args: Sequence[Any]) -> Any:
    """
    Execute the module's top level in a fresh namespace and, if requested, call one handler.

    Returns the namespace when no handler is requested.
    """
    previous = sys.gettrace()
    sys.settrace(_deadline_tracer(module.filename, deadline))
    try:
        scope = _sandbox_globals(module.name, deadline)
        # RestrictedPython sandbox: exec is required to evaluate operator validator code.
        exec(module.code, scope, scope)  # nosec B102
        if handler_name is None:
            return scope
        return scope[handler_name](*args)
    finally:
        sys.settrace(previous)


def load_validator(path: str, *, timeout_ms: int = 1000) -> ValidatorModule:
    """
    Compile a validator script and discover which handlers it defines.
    """
    name = os.path.splitext(os.path.basename(path))[0]
    try:
        with open(path, "r", encoding="utf-8") as f:
            source = f.read()
    except OSError as e:
        raise ValidatorLoadError(f"cannot read validator '{path}': {e}", {"path": path}) from e

    try:
        code = compile_restricted(source, f"<validator:{name}>", "exec", policy=ValidatorPolicy)
    except SyntaxError as e:
        raise ValidatorLoadError(f"validator '{name}' failed to compile: {e}", {"path": path}) from e

    loading = ValidatorModule(name=name, path=path, code=code, handlers=frozenset())
    deadline = time.monotonic() + timeout_ms / 1000.0
    try:
        scope = _run_sandboxed(loading, deadline, None, ())
    except ValidatorTimeout as e:
        raise ValidatorLoadError(f"validator '{name}' timed out while loading", {"path": path}) from e
    except Exception as e:
        raise ValidatorLoadError(f"validator '{name}' failed to load: {e}", {"path": path}) from e

    handlers = frozenset(v for v, fn in HANDLERS.items() if callable(scope.get(fn)))
    if not handlers:
        log_event("validator_without_handlers", ctx=_CTX, data={"module": name, "path": path}, level="warn")
    log_event(
        "validator_loaded",
        ctx=_CTX,
        data={"module": name, "path": path, "handlers": sorted(v.value for v in handlers)},
    )
    return ValidatorModule(name=name, path=path, code=code, handlers=handlers)


def _verdict_from_result(module: ValidatorModule, variant: Variant, result: Any) -> Verdict:
    if isinstance(result, bool):
        if result:
            return Verdict.allow()
        return Verdict.deny(f"validator '{module.name}' denied {variant.value}", code="policy_rejected", module=module.name)
    if isinstance(result, str) and result.strip():
        return Verdict.deny(result.strip(), code="policy_rejected", module=module.name)
    return Verdict.deny(
        f"validator error: handler returned {type(result).__name__}, expected bool or reason string",
        code="validator_fault",
        module=module.name,
    )


class PolicyEngine:
    """
    Ordered chain of validator modules combined by conjunction.

    The first Deny wins and no later module runs. A handler that raises is a Deny
    ("validator error: ..."), and one that exceeds its budget is a Deny ("validator timeout").
    """

    def __init__(
        self,
        modules: Sequence[ValidatorModule] = (),
        *,
        timeout_ms: int = 1000,
        max_workers: int = 8,
        metrics: Optional[Metrics] = None,
    ) -> None:
        names = [m.name for m in modules]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValidatorLoadError(f"duplicate validator module names: {', '.join(dupes)}", {"modules": dupes})
        self._modules = tuple(modules)
        self.timeout_sec = max(1, int(timeout_ms)) / 1000.0
        self._metrics = metrics
        self._pool = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="validator")

    @classmethod
    def from_paths(cls, paths: Sequence[str], *, timeout_ms: int = 1000, **kwargs: Any) -> "PolicyEngine":
        modules = [load_validator(p, timeout_ms=timeout_ms) for p in paths]
        return cls(modules, timeout_ms=timeout_ms, **kwargs)

    @property
    def modules(self) -> Sequence[ValidatorModule]:
        return self._modules

    def evaluate(self, request: SigningRequest) -> Verdict:
        for module in self._modules:
            if not module.handles(request.variant):
                continue
            verdict = self._invoke(module, request)
            if not verdict.allowed:
                log_event(
                    "policy_denied",
                    ctx=_CTX,
                    data={"module": module.name, "account": request.account, "variant": request.variant.value, "reason": verdict.reason},
                )
                return verdict
        return Verdict.allow()

    def _invoke(self, module: ValidatorModule, request: SigningRequest) -> Verdict:
        if isinstance(request.payload, (bytes, bytearray)):
            payload: Any = "0x" + bytes(request.payload).hex()
        else:
            payload = copy.deepcopy(request.payload)

        deadline = time.monotonic() + self.timeout_sec
        started = time.perf_counter()
        future = self._pool.submit(
            contextvars.copy_context().run,
            _run_sandboxed,
            module,
            deadline,
            HANDLERS[request.variant],
            (request.account, payload),
        )
        try:
            result = future.result(timeout=self.timeout_sec + _GRACE_SEC)
        except (ValidatorTimeout, FutureTimeout):
            future.cancel()
            return Verdict.deny("validator timeout", code="validator_fault", module=module.name)
        except Exception as e:
            return Verdict.deny(f"validator error: {e}", code="validator_fault", module=module.name)
        finally:
            if self._metrics is not None:
                self._metrics.observe_ms(f"validator_{module.name}_ms", (time.perf_counter() - started) * 1000.0)
        return _verdict_from_result(module, request.variant, result)

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
