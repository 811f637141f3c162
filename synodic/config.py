from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from synodic.logging import get_logger

logger = get_logger(__name__)


class ProviderName(str, Enum):
    """Upstream chat vendors the server can proxy to."""

    OPENAI = "openai"
    CLAUDE = "claude"
    GEMINI = "gemini"
    HUGGINGFACE = "huggingface"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, read once at startup."""

    # Provider selection and credentials
    ai_provider: ProviderName = env_field(ProviderName.OPENAI, "AI_PROVIDER")
    ai_api_key: Optional[str] = env_field(None, "AI_API_KEY")
    openai_model: str = env_field("gpt-3.5-turbo", "OPENAI_MODEL")
    claude_model: str = env_field("claude-3-haiku-20240307", "CLAUDE_MODEL")
    gemini_model: str = env_field("gemini-pro", "GEMINI_MODEL")
    hf_model: str = env_field("mistralai/Mixtral-8x7B-Instruct-v0.1", "HF_MODEL")
    provider_timeout_seconds: float = env_field(
        30.0, "PROVIDER_TIMEOUT_SECONDS", description="Timeout for one upstream call"
    )
    provider_timeout_retries: int = env_field(
        0,
        "PROVIDER_TIMEOUT_RETRIES",
        description="Extra attempts after an upstream timeout (0 = single attempt)",
    )
    provider_retry_backoff_ms: int = env_field(1000, "PROVIDER_RETRY_BACKOFF_MS")

    # Session tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("synodic", "JWT_ISSUER")
    jwt_audience: str = env_field("synodic-clients", "JWT_AUDIENCE")
    token_ttl_minutes: int = env_field(24 * 60, "TOKEN_TTL_MINUTES")
    remember_me_ttl_minutes: int = env_field(30 * 24 * 60, "REMEMBER_ME_TTL_MINUTES")

    # Accounts
    data_dir: str = env_field("./data", "DATA_DIR")
    password_min_length: int = env_field(6, "PASSWORD_MIN_LENGTH")
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST")
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST")
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM")
    reset_code_ttl_minutes: int = env_field(15, "RESET_CODE_TTL_MINUTES")
    reset_code_max_attempts: int = env_field(5, "RESET_CODE_MAX_ATTEMPTS")
    environment: str = env_field(
        "development",
        "APP_ENV",
        description="'production' hides password reset codes from API responses",
    )

    # Rate limiting
    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_requests: int = env_field(50, "RATE_LIMIT_MAX_REQUESTS")
    rate_limit_redis_url: Optional[str] = env_field(
        None,
        "RATE_LIMIT_REDIS_URL",
        description="Share rate limit counters across instances through Redis",
    )
    trust_proxy_headers: bool = env_field(False, "TRUST_PROXY_HEADERS")

    # Email delivery of reset codes
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Synodic AI", "EMAIL_FROM_NAME")

    # HTTP
    cors_allow_origins: List[str] = env_field(["*"], "CORS_ALLOW_ORIGINS")
    static_dir: Optional[str] = env_field(None, "STATIC_DIR")
    host: str = env_field("0.0.0.0", "HOST")
    port: int = env_field(3000, "PORT")

    model_config = ConfigDict(extra="ignore")

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
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in {"production", "prod"}

    @property
    def provider_model(self) -> str:
        """Model identifier for the selected provider."""
        return {
            ProviderName.OPENAI: self.openai_model,
            ProviderName.CLAUDE: self.claude_model,
            ProviderName.GEMINI: self.gemini_model,
            ProviderName.HUGGINGFACE: self.hf_model,
        }[self.ai_provider]

    @property
    def users_path(self) -> Path:
        return Path(self.data_dir) / "users.json"

    @field_validator("ai_provider", mode="before")
    @classmethod
    def _validate_provider(cls, value: Any) -> ProviderName:
        if isinstance(value, str):
            value = value.strip().lower()
        return ProviderName(value)

    @field_validator("ai_api_key", "rate_limit_redis_url", "static_dir", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("rate_limit_window_seconds", "rate_limit_max_requests")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("rate limit settings must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens survive restarts
        data_dir = Path(os.getenv("DATA_DIR", "./data"))
        secret_path = data_dir / ".jwt_secret"

        try:
            data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(data_dir))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(data_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make DATA_DIR writable"
            ) from exc
        logger.info("jwt_secret_generated", path=str(secret_path))
        return generated


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
