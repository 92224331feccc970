from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI

from authkernel.api.error_handling import register_exception_handlers
from authkernel.api.routes import router
from authkernel.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the pool and start the retention sweeper; undo both on shutdown."""
    from authkernel.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.store.open()
    if runtime.settings.retention_sweep_enabled:
        await runtime.sweeper.start()

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__)


app = FastAPI(title="authkernel", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id for structured logging and echo it as X-Request-ID."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/.well-known/jwks.json")
async def jwks() -> Dict[str, Any]:
    """Public verification keys, current signing key first."""
    from authkernel.service.runtime import get_runtime

    return get_runtime().tokens.jwks()


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    from authkernel.service.runtime import get_runtime

    runtime = get_runtime()
    return {
        "status": "healthy",
        "version": __version__,
        "store": type(runtime.store).__name__,
        "cache": type(runtime.cache).__name__ if runtime.cache is not None else None,
    }
