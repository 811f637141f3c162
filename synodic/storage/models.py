from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class ResetChallenge:
    """Pending password reset; only a digest of the code is kept."""

    code_hash: str
    expires_at: datetime
    attempts: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class User:
    id: str
    name: str
    email: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)
    reset_challenge: Optional[ResetChallenge] = None

    @classmethod
    def new(cls, name: str, email: str, password_hash: str) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            name=name.strip(),
            email=normalize_email(email),
            password_hash=password_hash,
        )

    def public(self) -> dict:
        """Client-facing view; never includes credentials."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "createdAt": self.created_at.isoformat(),
        }
