from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from tutorauth.api.error_handling import register_exception_handlers
from tutorauth.api.routes import router
from tutorauth.logging import get_logger, set_correlation_id
from tutorauth.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0
# Lower bound for the purge loop so a misconfigured interval cannot spin
MIN_CLEANUP_INTERVAL_SECONDS = 300

_cleanup_task: asyncio.Task | None = None


async def _run_session_cleanup(runtime: Runtime, interval_seconds: int) -> None:
    """Background loop that periodically purges sessions and stale codes."""

    interval = max(interval_seconds, MIN_CLEANUP_INTERVAL_SECONDS)
    try:
        while True:
            if runtime.store is not None:
                try:
                    counts = await asyncio.to_thread(runtime.tokens.purge_sessions)
                    logger.info("session_cleanup_scheduled", **counts)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.warning("session_cleanup_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("session_cleanup_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the periodic session purge and close backends on shutdown."""
    global _cleanup_task
    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_session_cleanup(runtime, runtime.settings.session_cleanup_interval_seconds)
    )

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="TutorCat Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID for logs and error envelopes.

    Taken from ``X-Request-ID`` when the client sends one, otherwise
    generated, and echoed back in the same header.
    """
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
    # Auth responses carry tokens and must never be cached
    response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report credential store and counter store reachability."""

    runtime = get_runtime()
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

    db_ok = False
    store = runtime.store
    if store is None:
        checks["database"] = {"status": "not_configured"}
    elif hasattr(store, "verify_connection"):
        db_ok = await _run_bounded("database", store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    # Rate limiting degrades to fail-open, so the counter store never fails health
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {
            "status": "healthy" if redis_ok else "unhealthy",
            "type": type(runtime.cache).__name__,
            "degraded": not redis_ok,
        }
    else:
        checks["redis"] = {"status": "not_configured", "degraded": True}

    return {
        "status": "healthy" if db_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


register_exception_handlers(app)
app.include_router(router)


def create_app() -> FastAPI:
    return app
