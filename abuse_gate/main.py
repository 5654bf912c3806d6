"""
abuse_gate/main.py — FastAPI application entry point
Includes: lifespan management (store, engine, flush loop), CORS, slowapi
limits for the admin surface, security headers, startup validation.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from abuse_gate.clients.kv_store import create_kv_store
from abuse_gate.config import get_settings
from abuse_gate.core.logging import setup_logging
from abuse_gate.core.rate_limiter import limiter
from abuse_gate.routers import admin, api
from abuse_gate.routers.api import VERSION
from abuse_gate.services.engine import build_engine

settings = get_settings()


# ──────────────────────────────────────────────────────────────────────────────
# Application Lifespan
# ──────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Startup: logging, env validation, store + engine, periodic flush loop.
    Shutdown: stop the loop, flush buffered counts, close the store.
    """
    setup_logging(settings.log_level)
    logger.info("Abuse gate starting up...")

    _validate_env()

    kv = create_kv_store(settings.store_url)
    engine = build_engine(settings, kv)
    app.state.kv = kv
    app.state.engine = engine
    if settings.write_coalescing:
        engine.start()

    logger.info("Startup complete.")
    yield
    logger.info("Shutting down abuse gate.")

    try:
        await engine.close()
    except Exception as exc:
        logger.error(f"Final flush failed; buffered counts lost: {exc}")
    await kv.close()


def _validate_env() -> None:
    """Warn loudly about placeholder secrets; the gate still starts."""
    if settings.admin_api_key in ("", "change-me-immediately", "your-api-key-here"):
        logger.critical("Missing or placeholder env var: ADMIN_API_KEY")
        logger.warning("Admin and commit endpoints are protected by a placeholder key until it is set.")
    if settings.store_url.startswith("memory://") and settings.is_production:
        logger.warning("In-memory store in production: limits are per process and lost on restart.")


# ──────────────────────────────────────────────────────────────────────────────
# FastAPI App
# ──────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Abuse Gate",
    description=(
        "Tiered rate limiting and abuse escalation for per-worker APIs: "
        "hourly/daily/weekly/monthly quotas, progressive blocks, automatic bans."
    ),
    version=VERSION,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url=None,
    lifespan=lifespan,
)

# ── Rate limiting of the gate's own endpoints — slowapi ───────────────────────
app.state.limiter = limiter
app.add_exception_handler(
    RateLimitExceeded,
    lambda req, exc: JSONResponse(
        status_code=429,
        content={"error": "Rate limit exceeded. Slow down."},
    ),
)
app.add_middleware(SlowAPIMiddleware)

# ── CORS ──────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.environment == "development" else [],
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)

# ── Security headers middleware ───────────────────────────────────────────────
@app.middleware("http")
async def add_security_headers(request: Request, call_next) -> Response:
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if settings.is_production:
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )
    return response


# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(api.router, prefix="/api", tags=["api"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])


# ── Ping keep-alive endpoint ──────────────────────────────────────────────────
@app.get("/api/ping", tags=["health"])
async def ping():
    """Liveness only. Does NOT touch the store."""
    return {"status": "ok", "version": VERSION}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("abuse_gate.main:app", host="0.0.0.0", port=settings.port)
