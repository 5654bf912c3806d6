"""
abuse_gate/routers/api.py — Admission API
Endpoints: /api/check/{worker}, /api/commit/{worker}, /api/health
The check endpoint is what a proxy or protected worker calls before doing
any work; commit is called after the work succeeded.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse
from loguru import logger

from abuse_gate.core.auth import verify_api_key
from abuse_gate.core.gate import client_identity, get_engine, verdict_response
from abuse_gate.core.rate_limiter import RATE_LIMITS, limiter
from abuse_gate.models import CommitRequest, HealthResponse
from abuse_gate.services.identity import request_context

router = APIRouter()

VERSION = "1.0.0"


# ──────────────────────────────────────────────────────────────────────────────
# POST /api/check/{worker} — admission decision, never counts
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/check/{worker}")
async def check(worker: str, request: Request, engine=Depends(get_engine)) -> JSONResponse:
    """
    Evaluate the calling client against `worker`'s limits.
    200 admitted, 403 deny-listed, 429 blocked or over limit (with Retry-After).
    Storage failures admit (fail open) and are reported in the `error` field.
    """
    meta = request_context(request.headers, request.url.path, request.method)
    verdict = await engine.evaluate(client_identity(request), worker, meta)
    return verdict_response(verdict)


# ──────────────────────────────────────────────────────────────────────────────
# POST /api/commit/{worker} — count one successful request
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/commit/{worker}", status_code=202)
async def commit(
    worker: str,
    request: Request,
    body: Optional[CommitRequest] = Body(default=None),
    engine=Depends(get_engine),
    _auth: bool = Depends(verify_api_key),
) -> dict:
    """
    Record one successful request. The count is buffered and flushed in
    batches; failures are logged server-side and never reported back.
    Callers relaying for a client pass that client's `identity`.
    """
    identity = body.identity if body and body.identity else client_identity(request)
    await engine.commit(identity, worker)
    return {"status": "accepted", "identity": identity, "worker": worker}


# ──────────────────────────────────────────────────────────────────────────────
# GET /api/health — public, no auth
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/health", response_model=HealthResponse)
@limiter.limit(RATE_LIMITS["health"])
async def health_check(request: Request, engine=Depends(get_engine)) -> JSONResponse:
    """Store reachability and write buffer depth. 200 when healthy, 503 when degraded."""
    try:
        store_ok = await request.app.state.kv.ping()
    except Exception as exc:
        logger.warning(f"Health check store ping failed: {exc}")
        store_ok = False

    health = HealthResponse(
        status="healthy" if store_ok else "degraded",
        version=VERSION,
        store_ok=store_ok,
        pending_writes=engine.cache.pending_writes,
        cached_identities=len(engine.cache),
    )
    return JSONResponse(
        status_code=200 if store_ok else 503,
        content=health.model_dump(mode="json"),
    )
