"""Unit tests for the auth service.

Tests for:
- Signup and signin (including the remember-me token lifetime)
- Token authentication
- Password reset request and completion
"""

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from synodic.config import Settings
from synodic.service.auth import AuthService, hash_reset_code
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
from synodic.service.tokens import TokenIssuer
from synodic.storage.credentials import CredentialStore


class MutableNow:
    def __init__(self):
        self.value = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.value


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        data_dir=str(tmp_path),
        token_ttl_minutes=60,
        remember_me_ttl_minutes=60 * 24 * 30,
    )


@pytest.fixture
def store(settings):
    return CredentialStore(settings.users_path, max_reset_attempts=settings.reset_code_max_attempts)


@pytest.fixture
def passwords():
    return PasswordService(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def now():
    return MutableNow()


@pytest.fixture
def email_service():
    service = MagicMock()
    service.send_password_reset.return_value = True
    return service


@pytest.fixture
def auth_service(store, passwords, settings, now, email_service):
    tokens = TokenIssuer(settings.jwt_secret, issuer=settings.jwt_issuer, audience=settings.jwt_audience)
    return AuthService(store, tokens, passwords, settings, email_service=email_service, now=now)


class TestSignupSignin:
    async def test_signup_then_signin_yields_distinct_tokens_for_same_user(self, auth_service):
        user_a, token_a = await auth_service.signup("Ava", "ava@x.com", "secret1")
        user_b, token_b = await auth_service.signin("ava@x.com", "secret1")
        assert token_a != token_b
        assert user_a.id == user_b.id
        assert auth_service.authenticate(token_a).user_id == user_a.id
        assert auth_service.authenticate(token_b).user_id == user_a.id

    async def test_signup_stores_hash_not_plaintext(self, auth_service, store, settings):
        user, _ = await auth_service.signup("Ava", "ava@x.com", "secret1")
        assert store.get(user.id).password_hash.startswith("$argon2id$")
        assert "secret1" not in settings.users_path.read_text()

    async def test_duplicate_email(self, auth_service):
        await auth_service.signup("Ava", "ava@x.com", "secret1")
        with pytest.raises(DuplicateEmailError) as exc_info:
            await auth_service.signup("Ava 2", "AVA@x.com", "secret2")
        assert exc_info.value.status_code == 400

    @pytest.mark.parametrize(
        "name,email,password",
        [("", "a@x.com", "secret1"), ("Ava", "", "secret1"), ("Ava", "a@x.com", ""), (None, None, None)],
    )
    async def test_missing_fields(self, auth_service, name, email, password):
        with pytest.raises(InvalidInputError):
            await auth_service.signup(name, email, password)

    async def test_short_password(self, auth_service):
        with pytest.raises(InvalidInputError):
            await auth_service.signup("Ava", "ava@x.com", "12345")

    async def test_wrong_password_and_unknown_email_look_the_same(self, auth_service):
        await auth_service.signup("Ava", "ava@x.com", "secret1")
        with pytest.raises(InvalidCredentialsError) as wrong_pw:
            await auth_service.signin("ava@x.com", "nope-nope")
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth_service.signin("ghost@x.com", "secret1")
        assert wrong_pw.value.message == unknown.value.message
        assert wrong_pw.value.status_code == 401

    async def test_signin_missing_fields(self, auth_service):
        with pytest.raises(InvalidInputError):
            await auth_service.signin("", "secret1")

    async def test_remember_me_issues_longer_token(self, auth_service, settings):
        await auth_service.signup("Ava", "ava@x.com", "secret1")
        _, short_token = await auth_service.signin("ava@x.com", "secret1")
        _, long_token = await auth_service.signin("ava@x.com", "secret1", remember_me=True)
        short_claims = auth_service.authenticate(short_token)
        long_claims = auth_service.authenticate(long_token)
        assert short_claims.expires_at - short_claims.issued_at == settings.token_ttl_minutes * 60
        assert long_claims.expires_at - long_claims.issued_at == settings.remember_me_ttl_minutes * 60

    async def test_outdated_hash_is_upgraded_on_signin(self, auth_service, store):
        weak = PasswordService(time_cost=1, memory_cost=512, parallelism=1)
        user, _ = await auth_service.signup("Ava", "ava@x.com", "secret1")
        await store.update_password(user.id, weak.hash_sync("secret1"))
        await auth_service.signin("ava@x.com", "secret1")
        assert not auth_service.passwords.needs_rehash(store.get(user.id).password_hash)

    async def test_rehash_on_signin_keeps_pending_reset_code(self, auth_service, store):
        weak = PasswordService(time_cost=1, memory_cost=512, parallelism=1)
        user, _ = await auth_service.signup("Ava", "ava@x.com", "secret1")
        await store.update_password(user.id, weak.hash_sync("secret1"))
        code = await auth_service.request_password_reset("ava@x.com")
        await auth_service.signin("ava@x.com", "secret1")
        assert not auth_service.passwords.needs_rehash(store.get(user.id).password_hash)
        await auth_service.reset_password("ava@x.com", code, "newsecret")
        await auth_service.signin("ava@x.com", "newsecret")


class TestAuthenticate:
    def test_garbage_token(self, auth_service):
        with pytest.raises(InvalidTokenError) as exc_info:
            auth_service.authenticate("garbage")
        assert exc_info.value.status_code == 401

    async def test_expired_and_forged_tokens_share_one_message(self, auth_service, settings):
        user, _ = await auth_service.signup("Ava", "ava@x.com", "secret1")
        expired = auth_service.tokens.issue(user.id, user.email, -1)
        with pytest.raises(InvalidTokenError) as expired_exc:
            auth_service.authenticate(expired)
        with pytest.raises(InvalidTokenError) as forged_exc:
            auth_service.authenticate(expired[:-4] + "abcd")
        assert expired_exc.value.message == forged_exc.value.message

    async def test_current_user_gone(self, auth_service):
        claims = auth_service.authenticate(auth_service.tokens.issue("ghost", "g@x.com", 60))
        with pytest.raises(NotFoundError):
            auth_service.current_user(claims)


class TestPasswordReset:
    async def test_unknown_email_gets_uniform_response_without_challenge(self, auth_service, store, email_service):
        await auth_service.signup("Ava", "ava@x.com", "secret1")
        known = await auth_service.request_password_reset("ava@x.com")
        unknown = await auth_service.request_password_reset("ghost@x.com")
        assert len(known) == len(unknown) == 6
        assert known.isdigit() and unknown.isdigit()
        assert store.find_by_email("ava@x.com").reset_challenge is not None
        assert store.find_by_email("ghost@x.com") is None
        await auth_service.wait_for_pending_emails()
        email_service.send_password_reset.assert_called_once()
        assert email_service.send_password_reset.call_args.args[0] == "ava@x.com"

    async def test_challenge_stores_digest_only(self, auth_service, store):
        await auth_service.signup("Ava", "ava@x.com", "secret1")
        code = await auth_service.request_password_reset("ava@x.com")
        challenge = store.find_by_email("ava@x.com").reset_challenge
        assert challenge.code_hash == hash_reset_code(code)
        assert challenge.code_hash != code

    async def test_reset_then_signin_with_new_password(self, auth_service):
        await auth_service.signup("Ava", "ava@x.com", "secret1")
        code = await auth_service.request_password_reset("ava@x.com")
        await auth_service.reset_password("ava@x.com", code, "newsecret")
        await auth_service.signin("ava@x.com", "newsecret")
        with pytest.raises(InvalidCredentialsError):
            await auth_service.signin("ava@x.com", "secret1")

    async def test_code_cannot_be_reused(self, auth_service):
        await auth_service.signup("Ava", "ava@x.com", "secret1")
        code = await auth_service.request_password_reset("ava@x.com")
        await auth_service.reset_password("ava@x.com", code, "newsecret")
        with pytest.raises(InvalidResetCodeError):
            await auth_service.reset_password("ava@x.com", code, "another1")

    async def test_expired_code(self, auth_service, settings, now):
        await auth_service.signup("Ava", "ava@x.com", "secret1")
        code = await auth_service.request_password_reset("ava@x.com")
        now.value += timedelta(minutes=settings.reset_code_ttl_minutes, seconds=1)
        with pytest.raises(ExpiredResetCodeError):
            await auth_service.reset_password("ava@x.com", code, "newsecret")

    async def test_decoy_code_for_unknown_email_never_works(self, auth_service):
        code = await auth_service.request_password_reset("ghost@x.com")
        with pytest.raises(InvalidResetCodeError):
            await auth_service.reset_password("ghost@x.com", code, "newsecret")

    async def test_short_new_password(self, auth_service):
        await auth_service.signup("Ava", "ava@x.com", "secret1")
        code = await auth_service.request_password_reset("ava@x.com")
        with pytest.raises(InvalidInputError):
            await auth_service.reset_password("ava@x.com", code, "123")

    async def test_missing_email_for_reset_request(self, auth_service):
        with pytest.raises(InvalidInputError):
            await auth_service.request_password_reset("")


class TestResetEmailDelivery:
    """Reset emails are sent in the background, after the request returns."""

    async def test_request_returns_before_email_is_sent(self, auth_service, email_service):
        release = threading.Event()

        def slow_send(*args):
            release.wait(timeout=5)
            return True

        email_service.send_password_reset.side_effect = slow_send
        await auth_service.signup("Ava", "ava@x.com", "secret1")
        code = await asyncio.wait_for(auth_service.request_password_reset("ava@x.com"), timeout=1)
        assert len(code) == 6
        release.set()
        await auth_service.wait_for_pending_emails()
        email_service.send_password_reset.assert_called_once()
        assert email_service.send_password_reset.call_args.args[:2] == ("ava@x.com", code)

    async def test_send_failure_does_not_reach_caller(self, auth_service, email_service, store):
        email_service.send_password_reset.side_effect = RuntimeError("smtp exploded")
        await auth_service.signup("Ava", "ava@x.com", "secret1")
        code = await auth_service.request_password_reset("ava@x.com")
        await auth_service.wait_for_pending_emails()
        assert store.find_by_email("ava@x.com").reset_challenge.code_hash == hash_reset_code(code)

    async def test_unknown_email_queues_nothing(self, auth_service, email_service):
        await auth_service.request_password_reset("ghost@x.com")
        await auth_service.wait_for_pending_emails()
        email_service.send_password_reset.assert_not_called()
