from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from sessionguard.api.error_handling import error_response, register_exception_handlers
from sessionguard.api.routes import router
from sessionguard.config import Settings
from sessionguard.logging import get_logger, set_correlation_id
from sessionguard.service.csrf import CSRF_HEADER_NAME
from sessionguard.service.errors import ErrorKind
from sessionguard.service.runtime import get_runtime
from sessionguard.storage.errors import StorageError
from sessionguard.storage.redis_kv import RedisKVStore

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Fails fast on a missing or weak JWT secret.
    runtime = get_runtime()
    logger.info("app_started", environment=runtime.settings.environment.value)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="SessionGuard", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    return _settings.cors_allow_origins or ["http://localhost:3000"]


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    """Double-submit check for every state-changing request.

    Renders the 403 envelope itself; exceptions raised in HTTP middleware
    never reach the registered exception handlers.
    """
    guard = get_runtime().csrf
    result = guard.check_request(request)
    if result.ok:
        return await call_next(request)
    logger.warning(
        "csrf_validation_failed",
        reason=result.kind.value,
        method=request.method,
        path=request.url.path,
    )
    if result.kind == ErrorKind.CSRF_MISSING:
        return error_response(403, "CSRF token is required", code="CSRF_TOKEN_MISSING")
    return error_response(403, "Invalid CSRF token", code="CSRF_TOKEN_INVALID")


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Take X-Request-ID from the client (or mint one) and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
    )
    return response


# Registered last so CORS headers also reach the CSRF rejections.
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        CSRF_HEADER_NAME,
        "X-Request-ID",
    ],
    expose_headers=[
        "X-Request-ID",
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
    max_age=3600,
)


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    store_ok = True
    store_type = "memory"
    if isinstance(runtime.store, RedisKVStore):
        store_type = "redis"
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.store.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="redis")
            store_ok = False
        except StorageError as exc:
            logger.error("health_check_redis_failed", error=str(exc))
            store_ok = False
    return {
        "status": "healthy" if store_ok else "unhealthy",
        "checks": {"store": {"status": "healthy" if store_ok else "unhealthy", "type": store_type}},
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
