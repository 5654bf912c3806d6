"""
abuse_gate/core/gate.py — Verdict → HTTP translation
    allowed                         200
    BLACKLISTED                     403
    TEMPORARILY_BLOCKED             429 + Retry-After
    RATE_LIMIT_EXCEEDED             429 + Retry-After
Routes in the same process can be protected with
`Depends(rate_limited("worker-name"))`.
"""
from __future__ import annotations

from typing import Callable

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from abuse_gate.config import get_settings
from abuse_gate.models import Verdict
from abuse_gate.services.identity import request_context, resolve_identity

settings = get_settings()

_DENIAL_MESSAGES = {
    "BLACKLISTED": "Access denied.",
    "TEMPORARILY_BLOCKED": "Temporarily blocked due to repeated limit violations.",
    "RATE_LIMIT_EXCEEDED": "Rate limit exceeded.",
}


def get_engine(request: Request):
    """The engine built at startup. Overridden in tests."""
    return request.app.state.engine


def client_identity(request: Request) -> str:
    return resolve_identity(
        request.headers,
        client_host=request.client.host if request.client else None,
        trusted_headers=settings.trusted_proxy_headers,
        fallback=settings.fallback_identity,
    )


def verdict_body(verdict: Verdict) -> dict:
    body = verdict.model_dump(mode="json", exclude_none=True)
    if not verdict.allowed:
        body["message"] = _DENIAL_MESSAGES.get(verdict.reason.value, "Request denied.")
    return body


def verdict_response(verdict: Verdict) -> JSONResponse:
    return JSONResponse(
        status_code=verdict.http_status(),
        content=verdict_body(verdict),
        headers=verdict.headers(),
    )


def rate_limited(worker: str) -> Callable:
    """
    Dependency factory. Denied requests raise HTTPException with the mapped
    status; admitted ones leave the verdict on request.state.verdict.
    Callers still commit after their work succeeds.
    """

    async def _dependency(request: Request) -> Verdict:
        engine = get_engine(request)
        meta = request_context(request.headers, request.url.path, request.method)
        verdict = await engine.evaluate(client_identity(request), worker, meta)
        request.state.verdict = verdict
        if not verdict.allowed:
            raise HTTPException(
                status_code=verdict.http_status(),
                detail=verdict_body(verdict),
                headers=verdict.headers() or None,
            )
        return verdict

    return _dependency
