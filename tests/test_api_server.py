import json
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.api_server import app
from app.core.container import global_container
from conftest import ADDRESS_1, ADDRESS_2
from rpc.upstream import RpcReply


@pytest.fixture
def client():
    return TestClient(app)


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    body = res.json()
    assert body["status"] == "ok"
    assert body["chain_id"] == 1
    assert body["accounts"] == 2


def test_accounts(client):
    assert client.get("/accounts").json() == [ADDRESS_1, ADDRESS_2]


def test_json_rpc_passthrough(client):
    reply = RpcReply(200, b'{"jsonrpc":"2.0","result":"0x10","id":1}', "application/json")
    with patch.object(global_container.upstream, "forward", return_value=reply) as forward:
        body = b'{"jsonrpc":"2.0","method":"eth_blockNumber","params":[],"id":1}'
        res = client.post("/", content=body, headers={"Content-Type": "application/json"})
    forward.assert_called_once_with(body)
    assert res.status_code == 200
    assert res.content == reply.content


def test_json_rpc_sign(client):
    payload = {"jsonrpc": "2.0", "method": "personal_sign", "params": ["0x6869", ADDRESS_2], "id": 4}
    res = client.post("/", content=json.dumps(payload))
    body = res.json()
    assert body["id"] == 4
    assert body["result"].startswith("0x")


def test_metrics_endpoint(client):
    client.post("/", content=json.dumps({"jsonrpc": "2.0", "method": "eth_sign", "params": [ADDRESS_1, "0x00"], "id": 1}))
    res = client.get("/metrics")
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/plain")
    assert "hdnode_rpc_message_total" in res.text
    assert "hdnode_uptime_seconds" in res.text


def test_resume_clears_a_halted_account(client):
    account = global_container.accounts.get(ADDRESS_2)
    account.halted = True
    try:
        assert client.get("/health").json()["halted_accounts"] == [ADDRESS_2]

        res = client.post(f"/accounts/{ADDRESS_2.lower()}/resume", json={"last_issued": 41})
        assert res.status_code == 200
        assert res.json() == {"address": ADDRESS_2, "halted": False, "last_issued": 41, "next_nonce": 42}
        assert client.get("/health").json()["status"] == "ok"
    finally:
        global_container.nonce_sequencer.resume(account)
        account.nonce.last_issued = None


def test_resume_unknown_account(client):
    res = client.post("/accounts/0x0000000000000000000000000000000000000001/resume")
    assert res.status_code == 404
