from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from synodic.config import Settings, get_settings, reset_settings_cache
from synodic.logging import get_logger
from synodic.service.auth import AuthService
from synodic.service.chat import ChatRouter
from synodic.service.email import EmailService
from synodic.service.passwords import PasswordService
from synodic.service.providers import ProviderAdapter, build_provider
from synodic.service.rate_limit import RateLimiter, RedisRateLimiter, SlidingWindowRateLimiter
from synodic.service.tokens import TokenIssuer
from synodic.storage.credentials import CredentialStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the service instances shared by every request."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        provider: Optional[ProviderAdapter] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            provider=self.settings.ai_provider.value,
            data_dir=self.settings.data_dir,
        )

        try:
            self.store = CredentialStore(
                self.settings.users_path,
                max_reset_attempts=self.settings.reset_code_max_attempts,
            )
        except (OSError, ValueError, KeyError) as exc:
            logger.error(
                "runtime_store_init_failed",
                path=str(self.settings.users_path),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.tokens = TokenIssuer(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
        )
        self.passwords = PasswordService(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
            parallelism=self.settings.password_hash_parallelism,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.passwords,
            self.settings,
            email_service=self.email,
        )

        self.provider = provider or build_provider(self.settings)
        self.chat = ChatRouter(
            self.provider,
            api_key_configured=bool(self.settings.ai_api_key),
            timeout_retries=self.settings.provider_timeout_retries,
            retry_backoff_ms=self.settings.provider_retry_backoff_ms,
        )

        if rate_limiter is not None:
            self.rate_limiter = rate_limiter
        elif self.settings.rate_limit_redis_url:
            self.rate_limiter = RedisRateLimiter(
                self.settings.rate_limit_redis_url,
                limit=self.settings.rate_limit_max_requests,
                window_seconds=self.settings.rate_limit_window_seconds,
            )
            logger.info(
                "rate_limiter_redis",
                redis_url=_mask_url_password(self.settings.rate_limit_redis_url),
            )
        else:
            self.rate_limiter = SlidingWindowRateLimiter(
                limit=self.settings.rate_limit_max_requests,
                window_seconds=self.settings.rate_limit_window_seconds,
            )

        logger.info(
            "runtime_init_completed",
            users=self.store.count(),
            api_key_configured=bool(self.settings.ai_api_key),
            email_configured=self.email.is_configured,
        )

    async def close(self) -> None:
        """Flush queued reset emails, then release the HTTP client and Redis."""
        await self.auth.wait_for_pending_emails()
        await self.provider.close()
        await self.rate_limiter.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(new_runtime: Optional[Runtime]) -> None:
    global runtime
    with _runtime_lock:
        runtime = new_runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment."""
    global runtime

    with _runtime_lock:
        previous = runtime
        if previous is not None:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(previous.close())
            else:
                raise RuntimeError("reset_runtime_for_tests must not run inside an event loop")
        reset_settings_cache()
        runtime = Runtime()
        return runtime
