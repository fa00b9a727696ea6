"""
Prometheus text-format exporter.

This does NOT start its own HTTP server. The gateway API serves the rendered text at `GET /metrics`
so operators can scrape it alongside the JSON-RPC endpoint.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List

_re_non_ident = re.compile(r"[^a-zA-Z0-9_]")


def _to_number(v: Any) -> float | None:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return float(v)
    if isinstance(v, str):
        try:
            return float(v.strip())
        except ValueError:
            return None
    return None


def _fmt(v: float) -> str:
    return str(int(v)) if float(v).is_integer() else repr(float(v))


def _name(s: str) -> str:
    s2 = _re_non_ident.sub("_", (s or "").strip())
    s2 = re.sub(r"_+", "_", s2)
    s2 = s2.strip("_")
    return s2.lower() or "unnamed"


def _emit(lines: List[str], name: str, kind: str, value: float) -> None:
    lines.append(f"# TYPE {name} {kind}")
    lines.append(f"{name} {_fmt(value)}")


def render_prometheus(snapshot: Dict[str, Any], *, namespace: str = "hdnode") -> str:
    """
    Render Metrics.snapshot() into Prometheus exposition format.

    Counters keep their registry name (conventionally ending in `_total`), gauges are
    emitted as-is, and every timer becomes a `<name>_count` / `_sum_ms` / `_max_ms` triple.
    """
    ns = _name(namespace)
    lines: list[str] = []

    uptime = _to_number(snapshot.get("uptime_sec"))
    if uptime is not None:
        _emit(lines, f"{ns}_uptime_seconds", "gauge", uptime)

    counters = snapshot.get("counters") or {}
    for k, v in sorted(counters.items(), key=lambda kv: str(kv[0])):
        fv = _to_number(v)
        if fv is not None:
            _emit(lines, f"{ns}_{_name(str(k))}", "counter", fv)

    gauges = snapshot.get("gauges") or {}
    for k, v in sorted(gauges.items(), key=lambda kv: str(kv[0])):
        fv = _to_number(v)
        if fv is not None:
            _emit(lines, f"{ns}_{_name(str(k))}", "gauge", fv)

    timers = snapshot.get("timers") or {}
    for k, agg in sorted(timers.items(), key=lambda kv: str(kv[0])):
        if not isinstance(agg, dict):
            continue
        base = f"{ns}_{_name(str(k))}"
        for field, suffix, kind in (
            ("count", "count", "counter"),
            ("total_ms", "sum_ms", "counter"),
            ("max_ms", "max_ms", "gauge"),
        ):
            fv = _to_number(agg.get(field))
            if fv is not None:
                _emit(lines, f"{base}_{suffix}", kind, fv)

    return "\n".join(lines) + "\n"
