from observability.metrics import Metrics
from observability.prometheus import render_prometheus


def test_render_prometheus_contains_expected_lines():
    m = Metrics()
    m.inc("rpc_passthrough_total", 2)
    m.set_gauge("validators_loaded", 1.25)
    m.observe_ms("signing_transaction_ms", 10.0)
    out = render_prometheus(m.snapshot(), namespace="hdnode")
    assert "# TYPE hdnode_uptime_seconds gauge" in out
    assert "# TYPE hdnode_rpc_passthrough_total counter" in out
    assert "hdnode_rpc_passthrough_total 2" in out
    assert "hdnode_validators_loaded 1.25" in out
    assert "hdnode_signing_transaction_ms_count 1" in out
    assert "hdnode_signing_transaction_ms_sum_ms 10" in out
    assert "# TYPE hdnode_signing_transaction_ms_max_ms gauge" in out


def test_signing_outcome_counters():
    m = Metrics()
    m.record_signing_outcome("transaction", "rejected", "nonce_conflict")
    m.record_signing_outcome("message", "signed")
    counters = m.snapshot()["counters"]
    assert counters["signing_transaction_rejected_total"] == 1
    assert counters["signing_error_nonce_conflict_total"] == 1
    assert counters["signing_message_signed_total"] == 1


def test_timer_observes_even_on_error():
    m = Metrics()
    try:
        with m.timer("boom_ms"):
            raise RuntimeError("x")
    except RuntimeError:
        pass
    assert m.snapshot()["timers"]["boom_ms"]["count"] == 1
