from __future__ import annotations

import asyncio
import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Set, Tuple

from synodic.config import Settings
from synodic.logging import get_logger
from synodic.service.email import EmailService
from synodic.service.errors import (
    DuplicateEmailError,
    ExpiredResetCodeError,
    InvalidCredentialsError,
    InvalidInputError,
    InvalidResetCodeError,
    InvalidTokenError,
    NotFoundError,
)
from synodic.service.passwords import PasswordService
from synodic.service.tokens import TokenClaims, TokenError, TokenIssuer
from synodic.storage.credentials import CredentialStore
from synodic.storage.errors import DuplicateEmail, ExpiredResetCode, InvalidResetCode
from synodic.storage.models import User, normalize_email, utcnow

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"
INVALID_TOKEN_MESSAGE = "Invalid or expired token"
INVALID_RESET_CODE_MESSAGE = "Invalid or expired reset code"
RESET_CODE_DIGITS = 6


def _email_hash(email: str) -> str:
    return hashlib.sha256(normalize_email(email).encode()).hexdigest()


def hash_reset_code(code: str) -> str:
    return hashlib.sha256(code.strip().encode()).hexdigest()


def generate_reset_code() -> str:
    return f"{secrets.randbelow(10 ** RESET_CODE_DIGITS):0{RESET_CODE_DIGITS}d}"


class AuthService:
    """Account lifecycle: signup, signin, token checks and password reset."""

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenIssuer,
        passwords: PasswordService,
        settings: Settings,
        *,
        email_service: Optional[EmailService] = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.passwords = passwords
        self.settings = settings
        self.email_service = email_service
        self._now = now
        self.logger = logger
        self._email_tasks: Set[asyncio.Task] = set()

    def _issue(self, user: User, *, remember_me: bool = False) -> str:
        minutes = (
            self.settings.remember_me_ttl_minutes
            if remember_me
            else self.settings.token_ttl_minutes
        )
        return self.tokens.issue(user.id, user.email, minutes * 60)

    def _check_password_length(self, password: str) -> None:
        if len(password) < self.settings.password_min_length:
            raise InvalidInputError(
                f"Password must be at least {self.settings.password_min_length} characters",
                detail={"field": "password"},
            )

    async def signup(self, name: str, email: str, password: str) -> Tuple[User, str]:
        if not (name or "").strip() or not (email or "").strip() or not password:
            raise InvalidInputError("Name, email and password are required")
        self._check_password_length(password)
        password_hash = await self.passwords.hash(password)
        user = User.new(name, email, password_hash)
        try:
            await self.store.insert(user)
        except DuplicateEmail as exc:
            self.logger.info("signup_duplicate_email", email_hash=_email_hash(email))
            raise DuplicateEmailError("Email already registered") from exc
        self.logger.info("user_signed_up", user_id=user.id)
        return user, self._issue(user)

    async def signin(
        self, email: str, password: str, *, remember_me: bool = False
    ) -> Tuple[User, str]:
        if not (email or "").strip() or not password:
            raise InvalidInputError("Email and password are required")
        user = self.store.find_by_email(email)
        if not user or not await self.passwords.verify(user.password_hash, password):
            self.logger.info("signin_failed", email_hash=_email_hash(email))
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        if self.passwords.needs_rehash(user.password_hash):
            await self.store.replace_password_hash(user.id, await self.passwords.hash(password))
            self.logger.info("password_rehashed", user_id=user.id)
        self.logger.info("user_signed_in", user_id=user.id, remember_me=remember_me)
        return user, self._issue(user, remember_me=remember_me)

    def authenticate(self, token: str) -> TokenClaims:
        try:
            return self.tokens.verify(token)
        except TokenError as exc:
            # The reason stays in the logs; clients get one message for all of them
            self.logger.info("token_rejected", reason=exc.reason)
            raise InvalidTokenError(INVALID_TOKEN_MESSAGE) from exc

    def current_user(self, claims: TokenClaims) -> User:
        user = self.store.get(claims.user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    async def request_password_reset(self, email: str) -> str:
        """Start a reset for ``email`` and return the code.

        A code is returned whether or not the account exists. For unknown
        emails it is a decoy that is never stored, so callers cannot tell the
        two cases apart.
        """
        if not (email or "").strip():
            raise InvalidInputError("Email is required")
        code = generate_reset_code()
        user = self.store.find_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email", email_hash=_email_hash(email))
            return code
        expires_at = self._now() + timedelta(minutes=self.settings.reset_code_ttl_minutes)
        await self.store.set_reset_challenge(user.id, hash_reset_code(code), expires_at)
        self.logger.info("password_reset_requested", user_id=user.id)
        if self.email_service:
            # Sent after the response so its latency does not reveal the account
            task = asyncio.create_task(
                asyncio.to_thread(
                    self.email_service.send_password_reset,
                    user.email,
                    code,
                    self.settings.reset_code_ttl_minutes,
                )
            )
            self._email_tasks.add(task)
            task.add_done_callback(self._reset_email_done)
        return code

    def _reset_email_done(self, task: asyncio.Task) -> None:
        self._email_tasks.discard(task)
        if task.cancelled():
            self.logger.warning("password_reset_email_cancelled")
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(
                "password_reset_email_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def wait_for_pending_emails(self) -> None:
        """Block until every queued reset email has been handed off."""
        pending = [task for task in self._email_tasks if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def reset_password(self, email: str, code: str, new_password: str) -> None:
        if not (email or "").strip() or not (code or "").strip() or not new_password:
            raise InvalidInputError("Email, code and new password are required")
        self._check_password_length(new_password)
        user = self.store.find_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email", email_hash=_email_hash(email))
            raise InvalidResetCodeError(INVALID_RESET_CODE_MESSAGE)
        try:
            await self.store.consume_reset_challenge(
                user.id, hash_reset_code(code), now=self._now()
            )
        except ExpiredResetCode as exc:
            self.logger.info("password_reset_expired", user_id=user.id)
            raise ExpiredResetCodeError("Reset code has expired") from exc
        except InvalidResetCode as exc:
            self.logger.info("password_reset_invalid_code", user_id=user.id)
            raise InvalidResetCodeError(INVALID_RESET_CODE_MESSAGE) from exc
        await self.store.update_password(user.id, await self.passwords.hash(new_password))
        self.logger.info("password_reset_completed", user_id=user.id)
