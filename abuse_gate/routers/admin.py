"""
abuse_gate/routers/admin.py — Administrative API
Allow/deny list management, block clearing, per-worker and global config,
identity inspection. All endpoints require X-API-Key.
List and block changes go through the engine and return AdminResult;
a failed store write is reported as 503 with success=false.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import ValidationError

from abuse_gate.core.auth import verify_api_key
from abuse_gate.core.errors import ConfigValidationError, StoreError
from abuse_gate.core.gate import get_engine
from abuse_gate.core.rate_limiter import RATE_LIMITS, limiter
from abuse_gate.models import AdminResult, ConfigUpdateRequest, ListEntryRequest, ListKind
from abuse_gate.services.identity import sanitize_identity, sanitize_worker

router = APIRouter(dependencies=[Depends(verify_api_key)])


def _result(result: AdminResult) -> JSONResponse:
    return JSONResponse(
        status_code=200 if result.success else 503,
        content=result.model_dump(mode="json"),
    )


def _store_unavailable(exc: StoreError) -> HTTPException:
    logger.error(f"Admin store operation failed: {exc}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Backing store unavailable",
    )


def _checked_identity(identity: str) -> str:
    cleaned = sanitize_identity(identity, "")
    if not cleaned:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid identity {identity!r}",
        )
    return cleaned


# ──────────────────────────────────────────────────────────────────────────────
# Allow / deny lists
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/allow")
@limiter.limit(RATE_LIMITS["admin_write"])
async def add_allow(request: Request, body: ListEntryRequest, engine=Depends(get_engine)) -> JSONResponse:
    identity = _checked_identity(body.identity)
    return _result(await engine.add_to_allow_list(identity, body.reason, body.added_by))


@router.delete("/allow/{identity}")
@limiter.limit(RATE_LIMITS["admin_write"])
async def remove_allow(request: Request, identity: str, engine=Depends(get_engine)) -> JSONResponse:
    return _result(await engine.remove_from_allow_list(_checked_identity(identity)))


@router.post("/deny")
@limiter.limit(RATE_LIMITS["admin_write"])
async def add_deny(request: Request, body: ListEntryRequest, engine=Depends(get_engine)) -> JSONResponse:
    identity = _checked_identity(body.identity)
    return _result(await engine.add_to_deny_list(identity, body.reason, body.added_by))


@router.delete("/deny/{identity}")
@limiter.limit(RATE_LIMITS["admin_write"])
async def remove_deny(request: Request, identity: str, engine=Depends(get_engine)) -> JSONResponse:
    return _result(await engine.remove_from_deny_list(_checked_identity(identity)))


@router.get("/lists/{kind}")
@limiter.limit(RATE_LIMITS["admin_read"])
async def list_entries(request: Request, kind: ListKind, engine=Depends(get_engine)) -> dict[str, Any]:
    access_list = engine.allow_list if kind == ListKind.ALLOW else engine.deny_list
    try:
        entries = await access_list.list_entries()
    except StoreError as exc:
        raise _store_unavailable(exc)
    return {
        "kind": kind.value,
        "count": len(entries),
        "entries": [e.model_dump(mode="json") for e in entries],
    }


# ──────────────────────────────────────────────────────────────────────────────
# Blocks and identity inspection
# ──────────────────────────────────────────────────────────────────────────────

@router.delete("/block/{identity}")
@limiter.limit(RATE_LIMITS["admin_write"])
async def clear_block(request: Request, identity: str, engine=Depends(get_engine)) -> JSONResponse:
    return _result(await engine.clear_block(_checked_identity(identity)))


@router.get("/status/{identity}")
@limiter.limit(RATE_LIMITS["admin_read"])
async def identity_status(
    request: Request,
    identity: str,
    worker: str,
    engine=Depends(get_engine),
) -> dict[str, Any]:
    """Lists, active block, current usage and violation summary for one identity."""
    try:
        snapshot = await engine.identity_status(_checked_identity(identity), sanitize_worker(worker))
    except StoreError as exc:
        raise _store_unavailable(exc)
    return snapshot.model_dump(mode="json")


@router.get("/violations/{identity}")
@limiter.limit(RATE_LIMITS["admin_read"])
async def violation_history(request: Request, identity: str, engine=Depends(get_engine)) -> dict[str, Any]:
    identity = _checked_identity(identity)
    try:
        records = await engine.ledger.history(identity)
    except StoreError as exc:
        raise _store_unavailable(exc)
    return {
        "identity": identity,
        "count": len(records),
        "violations": [r.model_dump(mode="json") for r in records],
    }


@router.post("/flush")
@limiter.limit(RATE_LIMITS["admin_write"])
async def flush_buffer(request: Request, engine=Depends(get_engine)) -> dict[str, Any]:
    """Write buffered usage counts to the store now instead of at the next tick."""
    written = await engine.cache.flush("admin")
    return {"written": written, "pending_writes": engine.cache.pending_writes}


# ──────────────────────────────────────────────────────────────────────────────
# Worker configuration
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/config")
@limiter.limit(RATE_LIMITS["admin_read"])
async def all_worker_configs(request: Request, engine=Depends(get_engine)) -> dict[str, Any]:
    configs = await engine.resolver.get_all_worker_configs()
    return {worker: c.model_dump(mode="json") for worker, c in configs.items()}


@router.get("/config/{worker}")
@limiter.limit(RATE_LIMITS["admin_read"])
async def worker_config(request: Request, worker: str, engine=Depends(get_engine)) -> dict[str, Any]:
    try:
        config = await engine.resolver.load_worker_config(sanitize_worker(worker))
    except Exception as exc:
        logger.error(f"Config load failed for {worker}: {exc}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Configuration unavailable",
        )
    return config.model_dump(mode="json")


@router.put("/config/{worker}")
@limiter.limit(RATE_LIMITS["admin_write"])
async def update_worker_config(
    request: Request,
    worker: str,
    body: ConfigUpdateRequest,
    engine=Depends(get_engine),
) -> dict[str, Any]:
    """Validate and store an override. 422 with the rule violations when invalid."""
    try:
        config = await engine.resolver.save_worker_config(sanitize_worker(worker), body.config, body.updated_by)
    except ConfigValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"errors": exc.errors},
        )
    except StoreError as exc:
        raise _store_unavailable(exc)
    return config.model_dump(mode="json")


@router.delete("/config/{worker}")
@limiter.limit(RATE_LIMITS["admin_write"])
async def reset_worker_config(
    request: Request,
    worker: str,
    updated_by: str = "admin",
    engine=Depends(get_engine),
) -> dict[str, Any]:
    try:
        config = await engine.resolver.reset_worker_config(sanitize_worker(worker), updated_by)
    except StoreError as exc:
        raise _store_unavailable(exc)
    return config.model_dump(mode="json")


# ──────────────────────────────────────────────────────────────────────────────
# Global settings
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/global")
@limiter.limit(RATE_LIMITS["admin_read"])
async def global_settings(request: Request, engine=Depends(get_engine)) -> dict[str, Any]:
    settings_obj = await engine.resolver.load_global_settings()
    return settings_obj.model_dump(mode="json")


@router.put("/global")
@limiter.limit(RATE_LIMITS["admin_write"])
async def update_global_settings(
    request: Request,
    body: ConfigUpdateRequest,
    engine=Depends(get_engine),
) -> dict[str, Any]:
    try:
        settings_obj = await engine.resolver.save_global_settings(body.config, body.updated_by)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"errors": [e["msg"] for e in exc.errors()]},
        )
    except StoreError as exc:
        raise _store_unavailable(exc)
    return settings_obj.model_dump(mode="json")
