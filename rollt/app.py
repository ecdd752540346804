from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from rollt.api.error_handling import register_exception_handlers
from rollt.api.routes import get_app_runtime, router
from rollt.api.schemas import HealthResponse
from rollt.config import get_settings
from rollt.logging import get_logger, set_correlation_id
from rollt.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup unless one was injected, close it on shutdown."""
    if app.state.runtime is None:
        from rollt.service.runtime import get_runtime

        app.state.runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await app.state.runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def _add_correlation_id(request: Request, call_next):
    """Tag each request with an id for log correlation.

    The client's ``X-Request-ID`` is reused when present, otherwise a new id
    is generated. Either way it is echoed back in the response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def _add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Token-bearing and account responses must not be cached by proxies
    if request.url.path.startswith("/auth/") or request.url.path == "/healthz":
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


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


async def health(runtime: Runtime = Depends(get_app_runtime)) -> HealthResponse:
    """Report store and rate-limit cache health.

    The memory store is always healthy. A missing Redis is reported as
    ``not_configured`` and does not make the service unhealthy, since the
    runtime only starts without it under an explicit fallback flag.
    """
    checks: Dict[str, str] = {}
    healthy = True

    verify_store = getattr(runtime.store, "verify_connection", None)
    if callable(verify_store):
        db_ok = await _run_bounded("database", verify_store)
        checks["database"] = "healthy" if db_ok else "unhealthy"
        healthy = healthy and db_ok
    else:
        checks["database"] = "healthy"

    if runtime.cache is not None:
        try:
            redis_ok = await asyncio.wait_for(
                runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component="redis", error=str(exc))
            redis_ok = False
        checks["redis"] = "healthy" if redis_ok else "unhealthy"
        healthy = healthy and redis_ok
    else:
        checks["redis"] = "not_configured"

    return HealthResponse(status="healthy" if healthy else "unhealthy", checks=checks)


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Assemble the FastAPI application.

    Args:
        runtime: services to serve requests with; when omitted the process-wide
            runtime is created lazily on first use.
    """
    settings = runtime.settings if runtime is not None else get_settings()
    app = FastAPI(title="Rollt Account Security", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version"],
        max_age=3600,
    )
    app.middleware("http")(_add_correlation_id)
    app.middleware("http")(_add_security_headers)

    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"], response_model=HealthResponse)
    return app


app = create_app()
