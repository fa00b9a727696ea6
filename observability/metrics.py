from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator


@dataclass
class _Counter:
    value: int = 0


@dataclass
class _TimerAgg:
    count: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    def observe(self, ms: float) -> None:
        self.count += 1
        self.total_ms += ms
        self.max_ms = max(self.max_ms, ms)


@dataclass
class _Gauge:
    value: float = 0.0


class Metrics:
    """
    Minimal in-memory metrics registry.

    Exposed over HTTP in Prometheus text format (`GET /metrics`).
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, _Counter] = {}
        self._timers: Dict[str, _TimerAgg] = {}
        self._gauges: Dict[str, _Gauge] = {}
        self._started_at = time.time()

    def inc(self, name: str, value: int = 1) -> None:
        with self._lock:
            c = self._counters.setdefault(name, _Counter())
            c.value += int(value)

    def observe_ms(self, name: str, ms: float) -> None:
        with self._lock:
            t = self._timers.setdefault(name, _TimerAgg())
            t.observe(float(ms))

    @contextmanager
    def timer(self, name: str) -> Iterator[None]:
        """Observe the wall-clock duration of the wrapped block, even when it raises."""
        started = time.perf_counter()
        try:
            yield
        finally:
            self.observe_ms(name, (time.perf_counter() - started) * 1000.0)

    def set_gauge(self, name: str, value: float) -> None:
        with self._lock:
            g = self._gauges.setdefault(name, _Gauge())
            g.value = float(value)

    def record_signing_outcome(self, variant: str, status: str, error_code: str | None = None) -> None:
        """Count a terminal signing state, e.g. ('transaction', 'rejected', 'nonce_conflict')."""
        self.inc(f"signing_{variant}_{status}_total")
        if error_code:
            self.inc(f"signing_error_{error_code}_total")

    def record_rpc_call(self, category: str) -> None:
        """Count inbound RPC calls per router category ('passthrough', 'transaction', ...)."""
        self.inc(f"rpc_{category}_total")

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            counters = {k: v.value for k, v in self._counters.items()}
            timers = {
                k: {
                    "count": v.count,
                    "total_ms": round(v.total_ms, 3),
                    "avg_ms": round(v.total_ms / v.count, 3) if v.count else 0.0,
                    "max_ms": round(v.max_ms, 3),
                }
                for k, v in self._timers.items()
            }
            gauges = {k: round(v.value, 6) for k, v in self._gauges.items()}
        return {
            "uptime_sec": int(time.time() - self._started_at),
            "counters": counters,
            "timers": timers,
            "gauges": gauges,
        }

