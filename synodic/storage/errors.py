from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for credential store failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DuplicateEmail(StorageError):
    """Raised when inserting a user whose email is already registered."""


class UserNotFound(StorageError):
    pass


class InvalidResetCode(StorageError):
    """No active challenge, wrong code, or a code that was already used."""


class ExpiredResetCode(StorageError):
    pass


__all__ = [
    "StorageError",
    "DuplicateEmail",
    "UserNotFound",
    "InvalidResetCode",
    "ExpiredResetCode",
]
