from __future__ import annotations

import asyncio
import contextlib
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from authcentral.api.error_handling import register_exception_handlers
from authcentral.api.routes import router
from authcentral.config import get_settings
from authcentral.logging import get_logger, set_request_id
from authcentral.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = get_settings()

__version__ = _settings.app_version

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0
# Floor for the refresh-token sweep so a misconfigured interval cannot spin
_MIN_PURGE_INTERVAL_SECONDS = 60

_purge_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _purge_task
    runtime = get_runtime()
    if runtime.settings.token_purge_interval_seconds > 0:
        _purge_task = asyncio.create_task(
            _run_token_purge(runtime.settings.token_purge_interval_seconds)
        )

    yield

    try:
        if _purge_task:
            _purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _purge_task
            _purge_task = None
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="AuthCentral", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    # Credentialed CORS is not allowed together with a wildcard origin
    allow_credentials="*" not in _settings.cors_allow_origins,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_request_id(request, call_next):
    """Bind a request id for structured logging and echo it back.

    A client-supplied ``X-Request-ID`` is reused; otherwise a new id is made.
    """
    request_id = set_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Responses carry tokens and identity data
    response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
    )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health")
async def health() -> JSONResponse:
    """Probe the relational store and the token cache within a fixed deadline."""
    runtime = get_runtime()

    async def _run_bounded(label: str, probe: Callable[[], Awaitable[Any]]) -> bool:
        try:
            await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    db_ok = await _run_bounded("database", runtime.bounded_store.ping)
    cache_ok = await _run_bounded("redis", runtime.revocation.ping)
    services: Dict[str, str] = {
        "database": "connected" if db_ok else "disconnected",
        "redis": "connected" if cache_ok else "disconnected",
    }
    healthy = db_ok and cache_ok
    body: Dict[str, Any] = {
        "status": "ok" if healthy else "error",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": services,
    }
    if not healthy:
        body["message"] = "Service unavailable"
    return JSONResponse(status_code=200 if healthy else 503, content=body)


async def _run_token_purge(interval_seconds: int) -> None:
    """Background loop deleting expired refresh tokens."""

    interval = max(interval_seconds, _MIN_PURGE_INTERVAL_SECONDS)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await get_runtime().revocation.purge_expired()
                if removed:
                    logger.info("expired_refresh_tokens_purged", count=removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("token_purge_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("token_purge_task_cancelled")


def main() -> None:
    import uvicorn

    uvicorn.run(
        "authcentral.app:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
    )


if __name__ == "__main__":
    main()
