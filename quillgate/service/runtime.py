from __future__ import annotations

import asyncio
import threading
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

import httpx
from redis.exceptions import RedisError

from quillgate.config import Settings, get_settings, reset_settings_cache
from quillgate.logging import get_logger
from quillgate.service.auth import AuthVerifier, KeySetCache
from quillgate.service.llm import LLMService
from quillgate.service.pipeline import PipelineOrchestrator
from quillgate.service.quota import QuotaLedger
from quillgate.service.search import SearchService
from quillgate.storage.memory import MemoryCounterStore
from quillgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide clients and components for the FastAPI app.

    Any component can be replaced by passing it as a keyword override
    (``cache``, ``http_client``, ``key_sets``, ``auth``, ``llm``, ``search``,
    ``quota`` or ``pipeline``); tests use this to inject fakes.
    """

    def __init__(self, settings: Optional[Settings] = None, **overrides: Any):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            model=self.settings.model_path,
        )

        self.cache = overrides.get("cache") or self._build_cache()
        self.http_client: httpx.AsyncClient = overrides.get("http_client") or httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, connect=10.0),
            follow_redirects=False,
        )

        jwks_url = self.settings.jwks_url
        self.key_sets: Optional[KeySetCache] = overrides.get("key_sets") or (
            KeySetCache(
                jwks_url,
                self.http_client,
                max_age_seconds=self.settings.jwks_cache_seconds,
                timeout_seconds=self.settings.key_set_timeout_seconds,
            )
            if jwks_url
            else None
        )
        self.auth: AuthVerifier = overrides.get("auth") or AuthVerifier(
            self.key_sets,
            issuer=self.settings.issuer,
            audience=self.settings.auth_audience,
            algorithms=self.settings.jwt_algorithms,
            admin_subject=self.settings.admin_subject,
            leeway_seconds=self.settings.jwt_leeway_seconds,
        )
        if not self.auth.is_configured:
            logger.warning(
                "auth_not_configured",
                message="AUTH_DOMAIN/AUTH_AUDIENCE unset; bearer credentials will be rejected",
            )

        self.llm = overrides.get("llm") or LLMService(
            self.settings.model_path,
            api_key=self.settings.llm_api_key,
            base_url=self.settings.llm_base_url,
            timeout_seconds=self.settings.llm_timeout_seconds,
            temperature=self.settings.llm_temperature,
        )
        if not getattr(self.llm, "is_configured", True):
            logger.warning("llm_api_key_missing", message="LLM_API_KEY/GEMINI_API_KEY unset")

        self.search = overrides.get("search") or SearchService(
            self.http_client,
            url=self.settings.search_url,
            api_key=self.settings.search_api_key,
            engine_id=self.settings.search_engine_id,
            max_results=self.settings.search_max_results,
            timeout_seconds=self.settings.search_timeout_seconds,
        )
        self.quota: QuotaLedger = overrides.get("quota") or QuotaLedger(
            self.cache,
            limit=self.settings.quota_limit,
            window_seconds=self.settings.quota_window_seconds,
        )
        self.pipeline: PipelineOrchestrator = overrides.get("pipeline") or PipelineOrchestrator(
            self.llm,
            self.search,
            max_iterations=self.settings.tool_loop_max_iterations,
        )
        logger.info(
            "runtime_init_completed",
            cache_type=type(self.cache).__name__,
            auth_configured=self.auth.is_configured,
        )

    def _build_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except (RedisError, OSError, ValueError) as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for usage quotas; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; quota counters are "
                "in-memory and per-process only."
            ),
            mode=fallback_mode,
        )
        return MemoryCounterStore()

    async def close(self) -> None:
        await self.http_client.aclose()
        await self.cache.close()
        close_llm = getattr(self.llm, "close", None)
        if close_llm is not None:
            await close_llm()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked check is the fast path once the
    runtime exists; the locked check prevents two threads creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**overrides: Any) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        previous = runtime
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if previous is not None:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(previous.close())
            else:
                logger.debug("runtime_reset_close_skipped", reason="event_loop_running")
        runtime = Runtime(settings, **overrides)
        return runtime
