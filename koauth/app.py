from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from koauth.api.error_handling import register_exception_handlers
from koauth.api.routes import router
from koauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
_HEALTH_CHECK_USER_ID = "00000000-0000-0000-0000-000000000000"

_sweep_task: asyncio.Task | None = None


async def _run_expiry_sweep(runtime, interval_seconds: int) -> None:
    """Background loop deleting expired sessions, keys, codes and tokens.

    Sweeps interleave freely with validation: a record removed mid-request
    looks the same as one that was already invalid.
    """
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            counts = await asyncio.to_thread(runtime.sweep_expired)
            logger.info("expiry_sweep_complete", **counts)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Next tick retries; the loop must outlive a store outage
            logger.error("expiry_sweep_failed", error_type=type(exc).__name__, error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    from koauth.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.sweep_interval_seconds
    if interval > 0:
        _sweep_task = asyncio.create_task(_run_expiry_sweep(runtime, interval))
        logger.info("expiry_sweep_scheduled", interval_seconds=interval)

    yield

    if _sweep_task:
        _sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _sweep_task
        _sweep_task = None
    runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="KOauth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its X-Request-ID (generated when absent)."""
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
    # Credential responses must never be cached by proxies
    response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Any:
    """Report whether the credential store answers within a short timeout."""
    from koauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.get_user, _HEALTH_CHECK_USER_ID),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
        checks["store"] = {"status": "ok"}
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        checks["store"] = {"status": "timeout"}
    except Exception as exc:
        logger.error("health_check_store_failed", error_type=type(exc).__name__)
        checks["store"] = {"status": "error"}

    healthy = all(check["status"] == "ok" for check in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        },
    )
