from __future__ import annotations

import asyncio
import hmac
import json
import os
import tempfile
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

from synodic.logging import get_logger
from synodic.storage.errors import (
    DuplicateEmail,
    ExpiredResetCode,
    InvalidResetCode,
    UserNotFound,
)
from synodic.storage.models import ResetChallenge, User, normalize_email, utcnow


class CredentialStore:
    """File-backed user records.

    The whole file is read into memory once, in the constructor, and rewritten
    in full after every mutation. Mutations hold ``_write_lock`` across the
    check, the in-memory change and the file write, so two concurrent requests
    can never interleave a read-check-write sequence (e.g. two signups racing
    on one email). The write itself runs in a worker thread to keep the event
    loop free while the file is flushed.
    """

    def __init__(self, path: str | Path, *, max_reset_attempts: int = 5) -> None:
        self.logger = get_logger(__name__)
        self.path = Path(path)
        self.max_reset_attempts = max_reset_attempts
        self.users: Dict[str, User] = {}
        self._by_email: Dict[str, str] = {}
        self._write_lock = asyncio.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self._load_state():
            self.logger.info("credential_store_loaded", users=len(self.users), path=str(self.path))

    # -- reads -----------------------------------------------------------

    def find_by_email(self, email: str) -> Optional[User]:
        user_id = self._by_email.get(normalize_email(email))
        return self.users.get(user_id) if user_id else None

    def get(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    def count(self) -> int:
        return len(self.users)

    # -- mutations -------------------------------------------------------

    async def insert(self, user: User) -> None:
        async with self._write_lock:
            email = normalize_email(user.email)
            if email in self._by_email:
                raise DuplicateEmail("email already exists", {"field": "email"})
            user.email = email
            self.users[user.id] = user
            self._by_email[email] = user.id
            try:
                await self._persist_state()
            except Exception:
                # Keep memory and disk in agreement when the write fails
                self.users.pop(user.id, None)
                self._by_email.pop(email, None)
                raise

    async def update_password(self, user_id: str, new_hash: str) -> None:
        """Set a new password and drop any pending reset challenge."""
        async with self._write_lock:
            user = self._require(user_id)
            saved = self._snapshot(user)
            user.password_hash = new_hash
            user.reset_challenge = None
            await self._persist_or_restore(user, saved)

    async def replace_password_hash(self, user_id: str, new_hash: str) -> None:
        """Swap the stored hash for an equivalent one (rehash on signin).

        Unlike ``update_password`` a pending reset challenge is kept.
        """
        async with self._write_lock:
            user = self._require(user_id)
            saved = self._snapshot(user)
            user.password_hash = new_hash
            await self._persist_or_restore(user, saved)

    async def set_reset_challenge(
        self, user_id: str, code_hash: str, expires_at: datetime
    ) -> None:
        async with self._write_lock:
            user = self._require(user_id)
            saved = self._snapshot(user)
            # A new request always replaces the previous challenge
            user.reset_challenge = ResetChallenge(code_hash=code_hash, expires_at=expires_at)
            await self._persist_or_restore(user, saved)

    async def consume_reset_challenge(
        self, user_id: str, code_hash: str, *, now: Optional[datetime] = None
    ) -> None:
        """Validate and burn the user's pending reset challenge.

        Raises:
            InvalidResetCode: no pending challenge, wrong code, or too many
                wrong guesses (the challenge is discarded at that point).
            ExpiredResetCode: the challenge exists but its deadline passed;
                it is discarded.
        """
        now = now or utcnow()
        async with self._write_lock:
            user = self.users.get(user_id)
            challenge = user.reset_challenge if user else None
            if not user or not challenge:
                raise InvalidResetCode("no pending reset challenge")
            saved = self._snapshot(user)
            if challenge.is_expired(now):
                user.reset_challenge = None
                await self._persist_or_restore(user, saved)
                raise ExpiredResetCode("reset code expired")
            if not hmac.compare_digest(challenge.code_hash, code_hash):
                challenge.attempts += 1
                discarded = challenge.attempts >= self.max_reset_attempts
                if discarded:
                    user.reset_challenge = None
                await self._persist_or_restore(user, saved)
                if discarded:
                    self.logger.warning("reset_challenge_discarded", user_id=user_id)
                raise InvalidResetCode("reset code mismatch")
            user.reset_challenge = None
            await self._persist_or_restore(user, saved)

    def _require(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise UserNotFound("user not found", {"user_id": user_id})
        return user

    @staticmethod
    def _snapshot(user: User) -> Tuple[str, Optional[ResetChallenge]]:
        challenge = user.reset_challenge
        return user.password_hash, replace(challenge) if challenge else None

    async def _persist_or_restore(
        self, user: User, saved: Tuple[str, Optional[ResetChallenge]]
    ) -> None:
        try:
            await self._persist_state()
        except Exception:
            # Memory goes back to what the file still holds
            user.password_hash, user.reset_challenge = saved
            raise

    # -- persistence -----------------------------------------------------

    async def _persist_state(self) -> None:
        payload = json.dumps(
            {"users": [self._serialize_user(u) for u in self.users.values()]},
            indent=2,
        )
        await asyncio.to_thread(self._write_file, payload)

    def _write_file(self, payload: str) -> None:
        # Temp file + rename so a crash never leaves a half-written store
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=".users_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            self.logger.error("credential_store_persist_failed", error=str(exc), path=str(self.path))
            raise RuntimeError(f"failed to persist credential store: {exc}") from exc

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return False
        self.users = {}
        self._by_email = {}
        for raw in data.get("users", []):
            user = self._deserialize_user(raw)
            self.users[user.id] = user
            self._by_email[user.email] = user.id
        return True

    @staticmethod
    def _serialize_user(user: User) -> dict:
        challenge = user.reset_challenge
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "password_hash": user.password_hash,
            "created_at": user.created_at.isoformat(),
            "reset_challenge": (
                {
                    "code_hash": challenge.code_hash,
                    "expires_at": challenge.expires_at.isoformat(),
                    "attempts": challenge.attempts,
                }
                if challenge
                else None
            ),
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        raw_challenge = data.get("reset_challenge")
        challenge = None
        if raw_challenge:
            challenge = ResetChallenge(
                code_hash=raw_challenge["code_hash"],
                expires_at=datetime.fromisoformat(raw_challenge["expires_at"]),
                attempts=int(raw_challenge.get("attempts", 0)),
            )
        return User(
            id=str(data["id"]),
            name=data.get("name", ""),
            email=normalize_email(data["email"]),
            password_hash=data["password_hash"],
            created_at=datetime.fromisoformat(data["created_at"]),
            reset_challenge=challenge,
        )
