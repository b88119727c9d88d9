from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from warden.api.error_handling import register_exception_handlers
from warden.api.routes import router
from warden.config import get_settings
from warden.logging import get_logger, set_correlation_id
from warden.service.deadline import deadline_scope

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"


_cleanup_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the anomaly workers and the session sweeper; stop both on shutdown."""
    global _cleanup_task
    from warden.service.runtime import get_runtime

    runtime = get_runtime()
    runtime.detector.start()
    _cleanup_task = asyncio.create_task(
        _run_session_cleanup(runtime.settings.session_cleanup_interval_seconds)
    )

    yield

    try:
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Warden Identity Service", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_origins:
        return _settings.cors_origins
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Request-ID",
        "X-Device-Fingerprint",
    ],
    expose_headers=[
        "X-Request-ID",
        "Retry-After",
        "X-Email-Verification-Warning",
        "X-Email-Verification-Days-Remaining",
    ],
    max_age=3600,
)


@app.middleware("http")
async def enforce_request_deadline(request: Request, call_next):
    """Bound each request so store and provider calls cannot run on forever."""
    with deadline_scope(_settings.request_timeout_seconds):
        return await call_next(request)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag logs and the response with ``X-Request-ID``, reusing the client's value if sent."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Token-bearing responses must never be cached
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Dependency checks for the store and, when configured, Redis."""
    from warden.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    checks["anomaly_detector"] = {
        "status": "healthy",
        "processed": runtime.detector.processed,
        "dropped": runtime.detector.dropped,
        "failures": runtime.detector.failures,
    }

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _run_session_cleanup(interval_seconds: int) -> None:
    """Background loop that deactivates expired and idle sessions."""
    from warden.service.runtime import get_runtime

    interval = max(interval_seconds, 60)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await asyncio.to_thread(get_runtime().sessions.cleanup)
                if removed:
                    logger.info("session_cleanup_completed", removed=removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_cleanup_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_cleanup_task_cancelled")


def create_app() -> FastAPI:
    return app
