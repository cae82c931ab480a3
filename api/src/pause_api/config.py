from __future__ import annotations

import os
from dataclasses import dataclass


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class StoreConfig:
    database_url: str
    timeout_seconds: float


def get_store_config() -> StoreConfig:
    return StoreConfig(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./pause.db"),
        timeout_seconds=_env_float("DB_TIMEOUT_SECONDS", 10.0),
    )


@dataclass(frozen=True)
class AuthConfig:
    secret_key: str
    algorithm: str
    access_token_expire_hours: int


def get_auth_config() -> AuthConfig:
    return AuthConfig(
        secret_key=os.getenv("JWT_SECRET_KEY", "pause-secret-key-change-in-production"),
        algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        access_token_expire_hours=_env_int("ACCESS_TOKEN_EXPIRE_HOURS", 24),
    )


@dataclass(frozen=True)
class LearningConfig:
    reflection_timeout_seconds: float
    curation_timeout_seconds: float
    skillbook_max_context_chars: int
    skillbook_max_retries: int


def get_learning_config() -> LearningConfig:
    return LearningConfig(
        reflection_timeout_seconds=_env_float("REFLECTION_TIMEOUT_SECONDS", 10.0),
        curation_timeout_seconds=_env_float("CURATION_TIMEOUT_SECONDS", 10.0),
        skillbook_max_context_chars=_env_int("SKILLBOOK_MAX_CONTEXT_CHARS", 8000),
        skillbook_max_retries=max(1, _env_int("SKILLBOOK_MAX_RETRIES", 3)),
    )


@dataclass(frozen=True)
class GeminiLearningConfig:
    enabled: bool
    model: str
    api_key: str | None


def get_gemini_learning_config() -> GeminiLearningConfig:
    return GeminiLearningConfig(
        enabled=_env_flag("USE_GEMINI_LEARNING"),
        model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        api_key=os.getenv("GEMINI_API_KEY"),
    )


@dataclass(frozen=True)
class TelemetryConfig:
    base_url: str
    api_key: str | None
    workspace: str | None
    project_name: str
    timeout_seconds: float


def get_telemetry_config() -> TelemetryConfig:
    return TelemetryConfig(
        base_url=os.getenv("OPIK_URL_OVERRIDE", "https://www.comet.com/opik/api").rstrip("/"),
        api_key=os.getenv("OPIK_API_KEY"),
        workspace=os.getenv("OPIK_WORKSPACE"),
        project_name=os.getenv("OPIK_PROJECT_NAME", "pause"),
        timeout_seconds=_env_float("OPIK_TIMEOUT_SECONDS", 10.0),
    )


def get_log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
