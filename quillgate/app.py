from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from quillgate import __version__
from quillgate.api.error_handling import register_exception_handlers
from quillgate.api.routes import router
from quillgate.config import Settings
from quillgate.logging import bind_correlation_id, get_logger

logger = get_logger(__name__)

_settings = Settings.from_env()

__build__ = _settings.build_sha

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its clients on shutdown."""
    from quillgate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("startup_complete", version=__version__, build=__build__)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except (RedisError, OSError, RuntimeError) as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Default to common local dev hosts
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app() -> FastAPI:
    app = FastAPI(title="quillgate", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=False,
        allow_methods=["POST", "GET", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "API-Version",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag each request with a correlation ID for log tracing.

        The ID comes from the client's X-Request-ID header when present and
        is otherwise generated. It is bound for structured logging and echoed
        back in the X-Request-ID response header.
        """
        correlation_id = bind_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        # Generated text is per-caller and must not be cached by proxies
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault("API-Version", __version__)
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health():
        """Report counter-store connectivity and build info."""
        from quillgate.service.runtime import get_runtime

        runtime = get_runtime()
        checks: Dict[str, Dict[str, Any]] = {}

        try:
            store_ok = await asyncio.wait_for(
                runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout",
                component="counter_store",
                timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            store_ok = False
        except (RedisError, OSError) as exc:
            logger.error("health_check_counter_store_failed", error=str(exc))
            store_ok = False

        checks["counter_store"] = {
            "status": "healthy" if store_ok else "unhealthy",
            "type": type(runtime.cache).__name__,
        }
        checks["auth"] = {
            "status": "configured" if runtime.auth.is_configured else "not_configured"
        }
        checks["llm"] = {
            "status": "configured"
            if getattr(runtime.llm, "is_configured", True)
            else "not_configured"
        }

        body = {
            "status": "healthy" if store_ok else "unhealthy",
            "checks": checks,
            "version": __version__,
            "build": __build__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        return JSONResponse(status_code=200 if store_ok else 503, content=body)

    return app


app = create_app()
