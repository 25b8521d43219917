from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from quillgate.logging import get_logger

logger = get_logger(__name__)

# Gemini exposes an OpenAI-compatible chat completions surface
DEFAULT_LLM_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
DEFAULT_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"

MAX_TOOL_LOOP_ITERATIONS = 10


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the gateway."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use the in-memory counter store and skip external connectivity checks.",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    build_sha: str = env_field("dev", "BUILD_SHA")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Identity provider
    auth_domain: str | None = env_field(None, "AUTH_DOMAIN")
    auth_issuer: str | None = env_field(None, "AUTH_ISSUER")
    auth_audience: str | None = env_field(None, "AUTH_AUDIENCE")
    jwks_url_override: str | None = env_field(None, "JWKS_URL")
    jwks_cache_seconds: int = env_field(600, "JWKS_CACHE_SECONDS")
    jwt_algorithms: list[str] = env_field(["RS256"], "JWT_ALGORITHMS")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS")
    key_set_timeout_seconds: float = env_field(5.0, "KEY_SET_TIMEOUT_SECONDS")
    admin_subject: str | None = env_field(
        None,
        "ADMIN_SUBJECT",
        description="Verified subject claim that bypasses the quota.",
    )
    allow_anonymous: bool = env_field(
        False,
        "ALLOW_ANONYMOUS",
        description="Admit callers without a bearer token, keyed by network address.",
    )

    # Quota
    quota_limit: int = env_field(5, "QUOTA_LIMIT")
    quota_window_seconds: int = env_field(24 * 60 * 60, "QUOTA_WINDOW_SECONDS")

    # Generative-text service
    llm_api_key: str | None = env_field(None, "LLM_API_KEY")
    llm_base_url: str = env_field(DEFAULT_LLM_BASE_URL, "LLM_BASE_URL")
    model_path: str = env_field("gemini-1.5-flash-latest", "MODEL_PATH")
    llm_timeout_seconds: float = env_field(60.0, "LLM_TIMEOUT_SECONDS")
    llm_temperature: float = env_field(0.4, "LLM_TEMPERATURE")

    # Search capability
    search_url: str = env_field(DEFAULT_SEARCH_URL, "SEARCH_URL")
    search_api_key: str | None = env_field(None, "SEARCH_API_KEY")
    search_engine_id: str | None = env_field(None, "SEARCH_ENGINE_ID")
    search_max_results: int = env_field(5, "SEARCH_MAX_RESULTS")
    search_timeout_seconds: float = env_field(15.0, "SEARCH_TIMEOUT_SECONDS")

    tool_loop_max_iterations: int = env_field(3, "TOOL_LOOP_MAX_ITERATIONS")

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        # Legacy deployments configure only GEMINI_API_KEY
        if "llm_api_key" not in merged:
            legacy_key = os.environ.get("GEMINI_API_KEY") or env_file_values.get(
                "GEMINI_API_KEY"
            )
            if legacy_key:
                merged["llm_api_key"] = legacy_key
        return cls(**merged)

    @field_validator("cors_allow_origins", "jwt_algorithms", mode="before")
    @classmethod
    def _parse_list(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("jwt_algorithms")
    @classmethod
    def _reject_none_algorithm(cls, value: list[str]) -> list[str]:
        algorithms = [alg for alg in value if alg.lower() != "none"]
        if not algorithms:
            raise ValueError("at least one signing algorithm is required")
        return algorithms

    @field_validator("quota_window_seconds", "jwks_cache_seconds")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive number of seconds")
        return value

    @field_validator("quota_limit", "jwt_leeway_seconds")
    @classmethod
    def _validate_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("tool_loop_max_iterations")
    @classmethod
    def _clamp_tool_loop(cls, value: int) -> int:
        if value < 1 or value > MAX_TOOL_LOOP_ITERATIONS:
            logger.warning(
                "tool_loop_max_iterations_clamped",
                requested=value,
                maximum=MAX_TOOL_LOOP_ITERATIONS,
            )
        return max(1, min(value, MAX_TOOL_LOOP_ITERATIONS))

    @field_validator("admin_subject", "auth_domain", "auth_audience", "auth_issuer")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @property
    def issuer(self) -> str | None:
        if self.auth_issuer:
            return self.auth_issuer
        if self.auth_domain:
            return f"https://{self._bare_domain()}/"
        return None

    @property
    def jwks_url(self) -> str | None:
        if self.jwks_url_override:
            return self.jwks_url_override
        if self.auth_domain:
            return f"https://{self._bare_domain()}/.well-known/jwks.json"
        return None

    def _bare_domain(self) -> str:
        domain = self.auth_domain or ""
        for prefix in ("https://", "http://"):
            if domain.startswith(prefix):
                domain = domain[len(prefix):]
        return domain.rstrip("/")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
