"""Tests for the file-backed credential store."""

import asyncio
import hashlib
import json
import os
import stat
from datetime import timedelta
from unittest.mock import patch

import pytest

from synodic.storage.credentials import CredentialStore
from synodic.storage.errors import (
    DuplicateEmail,
    ExpiredResetCode,
    InvalidResetCode,
    UserNotFound,
)
from synodic.storage.models import User, utcnow


def _digest(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


@pytest.fixture
def users_path(tmp_path):
    return tmp_path / "store" / "users.json"


@pytest.fixture
def store(users_path):
    return CredentialStore(users_path, max_reset_attempts=3)


class TestInsertAndLookup:
    async def test_insert_then_find_by_email_is_case_insensitive(self, store):
        user = User.new("Ava", "  Ava@X.com ", "hash")
        await store.insert(user)
        found = store.find_by_email("ava@x.COM")
        assert found is not None
        assert found.id == user.id
        assert found.email == "ava@x.com"
        assert store.get(user.id) is found
        assert store.count() == 1

    async def test_duplicate_email_rejected(self, store):
        await store.insert(User.new("Ava", "ava@x.com", "h1"))
        with pytest.raises(DuplicateEmail):
            await store.insert(User.new("Other", "AVA@x.com", "h2"))
        assert store.count() == 1

    async def test_concurrent_signups_on_one_email_admit_exactly_one(self, store):
        users = [User.new(f"U{i}", "race@x.com", f"h{i}") for i in range(5)]
        results = await asyncio.gather(
            *(store.insert(u) for u in users), return_exceptions=True
        )
        assert sum(1 for r in results if r is None) == 1
        assert sum(1 for r in results if isinstance(r, DuplicateEmail)) == 4
        assert store.count() == 1

    def test_unknown_lookups_return_none(self, store):
        assert store.find_by_email("nobody@x.com") is None
        assert store.get("missing") is None


class TestPersistence:
    async def test_state_survives_reload(self, store, users_path):
        user = User.new("Ava", "ava@x.com", "hash")
        await store.insert(user)
        await store.set_reset_challenge(user.id, _digest("123456"), utcnow() + timedelta(minutes=5))

        reloaded = CredentialStore(users_path)
        again = reloaded.find_by_email("ava@x.com")
        assert again is not None
        assert again.id == user.id
        assert again.name == "Ava"
        assert again.created_at == user.created_at
        assert again.reset_challenge is not None
        assert again.reset_challenge.code_hash == _digest("123456")

    async def test_file_never_contains_plaintext_code(self, store, users_path):
        user = User.new("Ava", "ava@x.com", "hash")
        await store.insert(user)
        await store.set_reset_challenge(user.id, _digest("654321"), utcnow() + timedelta(minutes=5))
        assert "654321" not in users_path.read_text()

    async def test_file_is_private(self, store, users_path):
        await store.insert(User.new("Ava", "ava@x.com", "hash"))
        mode = stat.S_IMODE(os.stat(users_path).st_mode)
        assert mode == 0o600

    async def test_failed_write_rolls_back_insert(self, store, users_path):
        with patch("synodic.storage.credentials.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(RuntimeError):
                await store.insert(User.new("Ava", "ava@x.com", "hash"))
        assert store.find_by_email("ava@x.com") is None
        assert not users_path.exists()
        assert [p for p in users_path.parent.iterdir() if p.suffix == ".tmp"] == []

    async def test_writes_full_document(self, store, users_path):
        await store.insert(User.new("A", "a@x.com", "h"))
        await store.insert(User.new("B", "b@x.com", "h"))
        data = json.loads(users_path.read_text())
        assert sorted(u["email"] for u in data["users"]) == ["a@x.com", "b@x.com"]


class TestUpdatePassword:
    async def test_update_replaces_hash_and_clears_challenge(self, store):
        user = User.new("Ava", "ava@x.com", "old")
        await store.insert(user)
        await store.set_reset_challenge(user.id, _digest("111111"), utcnow() + timedelta(minutes=5))
        await store.update_password(user.id, "new")
        assert store.get(user.id).password_hash == "new"
        assert store.get(user.id).reset_challenge is None

    async def test_update_unknown_user(self, store):
        with pytest.raises(UserNotFound):
            await store.update_password("missing", "new")

    async def test_replace_hash_keeps_pending_challenge(self, store):
        user = User.new("Ava", "ava@x.com", "old")
        await store.insert(user)
        await store.set_reset_challenge(user.id, _digest("111111"), utcnow() + timedelta(minutes=5))
        await store.replace_password_hash(user.id, "rehashed")
        assert store.get(user.id).password_hash == "rehashed"
        assert store.get(user.id).reset_challenge is not None
        await store.consume_reset_challenge(user.id, _digest("111111"))


class TestFailedWritesRollBack:
    """A write that fails leaves memory matching what is on disk."""

    @staticmethod
    def _failing_writes():
        return patch("synodic.storage.credentials.os.replace", side_effect=OSError("disk full"))

    async def test_update_password(self, store, users_path):
        user = User.new("Ava", "ava@x.com", "old-hash")
        await store.insert(user)
        with self._failing_writes(), pytest.raises(RuntimeError):
            await store.update_password(user.id, "new-hash")
        assert store.get(user.id).password_hash == "old-hash"
        assert CredentialStore(users_path).get(user.id).password_hash == "old-hash"

    async def test_replace_password_hash(self, store):
        user = User.new("Ava", "ava@x.com", "old-hash")
        await store.insert(user)
        with self._failing_writes(), pytest.raises(RuntimeError):
            await store.replace_password_hash(user.id, "new-hash")
        assert store.get(user.id).password_hash == "old-hash"

    async def test_set_reset_challenge(self, store):
        user = User.new("Ava", "ava@x.com", "old-hash")
        await store.insert(user)
        with self._failing_writes(), pytest.raises(RuntimeError):
            await store.set_reset_challenge(user.id, _digest("123456"), utcnow() + timedelta(minutes=15))
        assert store.get(user.id).reset_challenge is None

    async def test_consume_keeps_memory_and_disk_in_step(self, store, users_path):
        user = User.new("Ava", "ava@x.com", "old-hash")
        await store.insert(user)
        await store.set_reset_challenge(user.id, _digest("123456"), utcnow() + timedelta(minutes=15))
        with self._failing_writes(), pytest.raises(RuntimeError):
            await store.consume_reset_challenge(user.id, _digest("123456"))
        assert store.get(user.id).reset_challenge is not None

        # Once the write succeeds the code is spent, in memory and after a reload
        await store.consume_reset_challenge(user.id, _digest("123456"))
        reloaded = CredentialStore(users_path)
        assert reloaded.get(user.id).reset_challenge is None
        with pytest.raises(InvalidResetCode):
            await reloaded.consume_reset_challenge(user.id, _digest("123456"))

    async def test_wrong_guess_count_restored(self, store):
        user = User.new("Ava", "ava@x.com", "old-hash")
        await store.insert(user)
        await store.set_reset_challenge(user.id, _digest("123456"), utcnow() + timedelta(minutes=15))
        with self._failing_writes(), pytest.raises(RuntimeError):
            await store.consume_reset_challenge(user.id, _digest("000000"))
        assert store.get(user.id).reset_challenge.attempts == 0


class TestResetChallenge:
    @pytest.fixture
    def user(self):
        return User.new("Ava", "ava@x.com", "hash")

    async def test_consume_is_single_use(self, store, user):
        await store.insert(user)
        await store.set_reset_challenge(user.id, _digest("123456"), utcnow() + timedelta(minutes=15))
        await store.consume_reset_challenge(user.id, _digest("123456"))
        with pytest.raises(InvalidResetCode):
            await store.consume_reset_challenge(user.id, _digest("123456"))

    async def test_new_challenge_replaces_previous(self, store, user):
        await store.insert(user)
        await store.set_reset_challenge(user.id, _digest("111111"), utcnow() + timedelta(minutes=15))
        await store.set_reset_challenge(user.id, _digest("222222"), utcnow() + timedelta(minutes=15))
        with pytest.raises(InvalidResetCode):
            await store.consume_reset_challenge(user.id, _digest("111111"))
        await store.consume_reset_challenge(user.id, _digest("222222"))

    async def test_expired_challenge_is_discarded(self, store, user):
        await store.insert(user)
        expires = utcnow() + timedelta(minutes=15)
        await store.set_reset_challenge(user.id, _digest("123456"), expires)
        with pytest.raises(ExpiredResetCode):
            await store.consume_reset_challenge(
                user.id, _digest("123456"), now=expires + timedelta(seconds=1)
            )
        assert store.get(user.id).reset_challenge is None

    async def test_wrong_guesses_exhaust_challenge(self, store, user):
        await store.insert(user)
        await store.set_reset_challenge(user.id, _digest("123456"), utcnow() + timedelta(minutes=15))
        for _ in range(3):
            with pytest.raises(InvalidResetCode):
                await store.consume_reset_challenge(user.id, _digest("000000"))
        assert store.get(user.id).reset_challenge is None
        with pytest.raises(InvalidResetCode):
            await store.consume_reset_challenge(user.id, _digest("123456"))

    async def test_no_challenge(self, store, user):
        await store.insert(user)
        with pytest.raises(InvalidResetCode):
            await store.consume_reset_challenge(user.id, _digest("123456"))

    async def test_set_challenge_for_unknown_user(self, store):
        with pytest.raises(UserNotFound):
            await store.set_reset_challenge("missing", _digest("1"), utcnow())
