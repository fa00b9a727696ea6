import asyncio
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel

from app.core.config import settings
from app.core.container import global_container
from observability import render_prometheus

app = FastAPI(title="hdnode signing gateway", version=settings.VERSION)


class ResumeRequest(BaseModel):
    last_issued: Optional[int] = None


@app.post("/")
async def json_rpc(request: Request):
    """
    JSON-RPC 2.0 endpoint. Node queries are relayed to the upstream node; signing
    methods are served locally.
    """
    body = await request.body()
    # A client disconnect must not interrupt a signing attempt half way through: the
    # worker runs to completion and only the response is dropped.
    reply = await asyncio.shield(asyncio.to_thread(global_container.router.dispatch, body))
    return Response(content=reply.content, status_code=reply.status_code, media_type=reply.media_type)


@app.get("/health")
async def health_check():
    halted = [a.address for a in global_container.accounts if a.halted]
    return {
        "status": "degraded" if halted else "ok",
        "chain_id": global_container.chain_guard.chain_id,
        "accounts": len(global_container.accounts),
        "halted_accounts": halted,
        "validators": [m.name for m in global_container.policy_engine.modules],
    }


@app.get("/accounts")
async def list_accounts():
    return global_container.accounts.addresses()


@app.post("/accounts/{address}/resume")
async def resume_account(address: str, req: Optional[ResumeRequest] = None):
    """
    Operator intervention for a halted account: clears its in-flight reservation and,
    when `last_issued` is given, resets the last nonce it signed with.
    """
    account = global_container.accounts.get(address)
    if account is None:
        raise HTTPException(status_code=404, detail=f"unknown account {address}")
    if req is not None and req.last_issued is not None and req.last_issued < 0:
        raise HTTPException(status_code=400, detail="last_issued must be non-negative")
    global_container.nonce_sequencer.resume(account, req.last_issued if req else None)
    return {
        "address": account.address,
        "halted": account.halted,
        "last_issued": account.nonce.last_issued,
        "next_nonce": global_container.nonce_sequencer.next_nonce(account),
    }


@app.get("/metrics")
async def metrics():
    snapshot = global_container.metrics.snapshot()
    return PlainTextResponse(render_prometheus(snapshot), media_type="text/plain; version=0.0.4")
