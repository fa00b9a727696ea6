import pytest
import requests

from common.errors import AppError, UpstreamForwardingFailure
from common.retry import Backoff, with_retry
from rpc.upstream import UpstreamRpcError


def test_with_retry_retries_transient_and_then_succeeds(monkeypatch):
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        if calls["n"] < 2:
            raise ConnectionError("temporary network issue")
        return "ok"

    # avoid real sleep in test
    monkeypatch.setattr("common.retry.time.sleep", lambda _: None)
    monkeypatch.setenv("UPSTREAM_RETRY_MAX_ATTEMPTS", "3")
    assert with_retry("eth_chainId", fn) == "ok"
    assert calls["n"] == 2


def test_with_retry_does_not_retry_non_transient(monkeypatch):
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        raise ValueError("unsupported operation")

    monkeypatch.setattr("common.retry.time.sleep", lambda _: None)
    monkeypatch.setenv("UPSTREAM_RETRY_MAX_ATTEMPTS", "3")
    with pytest.raises(AppError) as e:
        with_retry("eth_chainId", fn)
    assert "eth_chainId failed after 1 attempt(s)" in str(e.value)
    assert calls["n"] == 1


def test_with_retry_gives_up_after_max_attempts(monkeypatch):
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        raise ConnectionError("connection refused")

    monkeypatch.setattr("common.retry.time.sleep", lambda _: None)
    monkeypatch.setenv("UPSTREAM_RETRY_MAX_ATTEMPTS", "2")
    with pytest.raises(AppError) as e:
        with_retry("eth_getTransactionCount", fn)
    assert e.value.code == "network_error"
    assert e.value.data["attempts"] == 2
    assert calls["n"] == 2


def _upstream_failure(cause):
    try:
        raise cause
    except Exception as e:
        raise UpstreamForwardingFailure(f"upstream node unavailable: {e}") from e


def test_unreachable_node_is_retried(monkeypatch):
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        if calls["n"] < 3:
            _upstream_failure(requests.ConnectionError("Max retries exceeded with url: /"))
        return 7

    monkeypatch.setattr("common.retry.time.sleep", lambda _: None)
    assert with_retry("eth_getTransactionCount", fn, Backoff(max_attempts=3)) == 7
    assert calls["n"] == 3


def test_node_rpc_error_is_not_retried(monkeypatch):
    calls = {"n": 0}

    def fn():
        calls["n"] += 1
        _upstream_failure(UpstreamRpcError("eth_getTransactionCount", {"code": -32602, "message": "invalid argument"}))

    monkeypatch.setattr("common.retry.time.sleep", lambda _: None)
    with pytest.raises(AppError) as e:
        with_retry("eth_getTransactionCount", fn, Backoff(max_attempts=3))
    assert e.value.code == "upstream_unavailable"
    assert calls["n"] == 1


def test_backoff_from_env(monkeypatch):
    monkeypatch.setenv("UPSTREAM_RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("UPSTREAM_RETRY_BASE_DELAY_SEC", "not a number")
    monkeypatch.setenv("UPSTREAM_RETRY_MAX_DELAY_SEC", "2")
    backoff = Backoff.from_env()
    assert backoff == Backoff(max_attempts=5, base_delay_sec=0.5, max_delay_sec=2.0)
    assert 0.25 <= backoff.delay(1) <= 0.5
    assert 1.0 <= backoff.delay(10) <= 2.0
