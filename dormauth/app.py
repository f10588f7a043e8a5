from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dormauth.api.error_handling import register_exception_handlers
from dormauth.api.routes import router
from dormauth.config import Settings
from dormauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0

_cleanup_task: asyncio.Task | None = None


async def _run_cleanup(interval_seconds: int) -> None:
    """Periodically reclaim expired sessions, reset records and guard state.

    Expiry is enforced when tokens are presented; this loop only frees space.
    """
    from dormauth.service.runtime import get_runtime, prune_local_rate_limits

    try:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                runtime = get_runtime()
                await runtime.auth.cleanup_expired()
                prune_local_rate_limits(runtime)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("cleanup_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the cleanup loop on startup; drain notifications on shutdown."""
    global _cleanup_task
    from dormauth.service.runtime import get_runtime

    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_cleanup(runtime.settings.cleanup_interval_seconds)
    )
    logger.info("app_started", version=__version__)

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="DormAuth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; a wildcard is not allowed with credentials
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind ``X-Request-ID`` (or a fresh UUID) to the logging context and echo it."""
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
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
    )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Dependency checks for Redis (when configured) and the state directory."""
    from dormauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    healthy = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        healthy = healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    fs_path = Path(runtime.store.fs_root)

    def _fs_check() -> None:
        health_file = fs_path / ".health_check"
        health_file.write_text(datetime.now(timezone.utc).isoformat())
        health_file.unlink(missing_ok=True)

    fs_ok = await _run_bounded("filesystem", _fs_check)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}
    healthy = healthy and fs_ok

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app() -> FastAPI:
    return app
