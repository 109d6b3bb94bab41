from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bookwave.api.error_handling import register_exception_handlers
from bookwave.api.middleware import SessionMiddleware
from bookwave.api.routes import router
from bookwave.config import get_settings
from bookwave.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start background sweepers on startup and release resources on shutdown."""
    from bookwave.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.start()

    yield

    try:
        await get_runtime().stop()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Bookwave Sessions", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    return get_settings().cors_allow_origins or ["http://localhost:3000"]


app.add_middleware(SessionMiddleware)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of the request with X-Request-ID and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials="*" not in _allowed_origins(),
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store reachability and duplicate-guard state."""
    from bookwave.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True
    try:
        await asyncio.wait_for(
            runtime.store.find("profiles", {"id": "__healthz__"}), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        checks["store"] = {"status": "ok"}
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        checks["store"] = {"status": "timeout"}
        healthy = False
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        checks["store"] = {"status": "error"}
        healthy = False
    checks["duplicates"] = {"status": "ok", **runtime.duplicates.stats()}
    return {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
