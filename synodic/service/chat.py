from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Sequence

from synodic.logging import get_logger, sanitize_error_message
from synodic.service.errors import (
    InvalidInputError,
    ServerMisconfiguredError,
    ServiceError,
    UpstreamBusyError,
    UpstreamError,
    UpstreamTimeoutError,
)
from synodic.service.providers import ChatTurn, ProviderAdapter, ProviderError, ProviderErrorKind

logger = get_logger(__name__)

MAX_MESSAGE_CHARS = 5000
HISTORY_LIMIT = 10
MAX_TIMEOUT_RETRIES = 3

INVALID_MESSAGE = "Invalid message"
MISCONFIGURED_MESSAGE = "Server configuration error. Please contact administrator."
BUSY_MESSAGE = "Service is currently busy. Please try again in a moment."
TIMEOUT_MESSAGE = "Request timed out. Please try again."
GENERIC_MESSAGE = "Sorry, I encountered an error. Please try again."


def truncate_history(history: Sequence[ChatTurn], limit: int = HISTORY_LIMIT) -> list[ChatTurn]:
    """Keep the most recent ``limit`` turns, oldest dropped first."""
    if limit <= 0:
        return []
    return list(history)[-limit:]


class ChatRouter:
    """Validates a chat turn, forwards it to the configured vendor and maps failures.

    Each request moves through received, validated, dispatching and
    responded; nothing is kept between requests. Timeouts may be retried a
    bounded number of times when ``timeout_retries`` is set, with the wait
    quadrupling after every attempt (1s, 4s, 16s for the default backoff).
    Every other failure is answered after a single attempt.
    """

    def __init__(
        self,
        provider: ProviderAdapter,
        *,
        api_key_configured: bool,
        history_limit: int = HISTORY_LIMIT,
        max_message_chars: int = MAX_MESSAGE_CHARS,
        timeout_retries: int = 0,
        retry_backoff_ms: int = 1000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.api_key_configured = api_key_configured
        self.history_limit = history_limit
        self.max_message_chars = max_message_chars
        self.timeout_retries = max(0, min(timeout_retries, MAX_TIMEOUT_RETRIES))
        self.retry_backoff_ms = max(0, retry_backoff_ms)
        self._sleep = sleep

    @property
    def provider_name(self) -> str:
        return self.provider.name.value

    def validate(self, message: Any) -> str:
        if not isinstance(message, str) or not message:
            raise InvalidInputError(INVALID_MESSAGE)
        if len(message) > self.max_message_chars:
            raise InvalidInputError(
                f"Message too long (max {self.max_message_chars} characters)"
            )
        return message

    async def handle(
        self,
        message: Any,
        history: Optional[Sequence[ChatTurn]],
        user_id: Optional[str],
    ) -> str:
        message = self.validate(message)
        if not self.api_key_configured:
            logger.error("chat_provider_key_missing", provider=self.provider_name)
            raise ServerMisconfiguredError(MISCONFIGURED_MESSAGE)

        turns = truncate_history(history or [], self.history_limit)
        attempt = 0
        while True:
            try:
                reply = await self.provider.send(message, turns)
            except ProviderError as exc:
                logger.warning(
                    "chat_provider_error",
                    provider=self.provider_name,
                    user_id=user_id,
                    kind=exc.kind.value,
                    status_code=exc.status_code,
                    error=sanitize_error_message(exc.message),
                    attempt=attempt + 1,
                )
                if exc.kind is ProviderErrorKind.TIMEOUT and attempt < self.timeout_retries:
                    delay_ms = self.retry_backoff_ms * (4 ** attempt)
                    attempt += 1
                    await self._sleep(delay_ms / 1000)
                    continue
                raise self._map_error(exc) from exc
            except ServiceError:
                raise
            except Exception as exc:
                logger.error(
                    "chat_provider_crashed",
                    provider=self.provider_name,
                    user_id=user_id,
                    error_type=type(exc).__name__,
                    error=sanitize_error_message(str(exc)),
                    exc_info=True,
                )
                raise UpstreamError(GENERIC_MESSAGE) from exc

            logger.info(
                "chat_completed",
                provider=self.provider_name,
                user_id=user_id,
                history_turns=len(turns),
                reply_chars=len(reply),
                attempts=attempt + 1,
            )
            return reply

    @staticmethod
    def _map_error(exc: ProviderError) -> ServiceError:
        if exc.kind is ProviderErrorKind.RATE_LIMITED:
            return UpstreamBusyError(BUSY_MESSAGE)
        if exc.kind is ProviderErrorKind.TIMEOUT:
            return UpstreamTimeoutError(TIMEOUT_MESSAGE)
        return UpstreamError(GENERIC_MESSAGE)
