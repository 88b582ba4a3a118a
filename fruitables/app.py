from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from fruitables.api.error_handling import register_exception_handlers
from fruitables.api.routes import router
from fruitables.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the credential store and run the expiry sweeper for the app lifetime."""
    from fruitables.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        await runtime.open()
    except Exception as exc:
        logger.error("startup_store_open_failed", error=str(exc))
        raise
    if runtime.settings.sweeper_enabled:
        await runtime.sweeper.start()

    yield

    try:
        await runtime.sweeper.stop()
    except Exception as exc:
        # The loop already logged the sweep failure that ended it
        logger.error("shutdown_sweeper_failed", error=str(exc))
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Fruitables Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Echo or generate X-Request-ID and bind it to the logging context."""
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Token-bearing responses must never be cached
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report store reachability and expiry sweeper state."""
    from fruitables.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True

    try:
        await asyncio.wait_for(runtime.store.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
        checks["store"] = {"status": "ok", "backend": type(runtime.store).__name__}
    except Exception as exc:
        healthy = False
        logger.warning("health_store_failed", error=str(exc))
        checks["store"] = {"status": "error", "error": type(exc).__name__}

    sweeper = runtime.sweeper
    if sweeper.failure is not None:
        healthy = False
        checks["sweeper"] = {"status": "failed", "error": type(sweeper.failure).__name__}
    elif sweeper.is_running:
        checks["sweeper"] = {"status": "running"}
    else:
        checks["sweeper"] = {"status": "stopped"}

    body = {
        "status": "healthy" if healthy else "degraded",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)