from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from synodic.logging import get_logger

logger = get_logger(__name__)


class TokenError(Exception):
    """Token rejected; ``reason`` is one of malformed, invalid, expired.

    The reason is for logs and tests only. Clients always get the same
    message whatever the reason.
    """

    MALFORMED = "malformed"
    INVALID = "invalid"
    EXPIRED = "expired"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    issued_at: int
    expires_at: int
    token_id: str


class TokenIssuer:
    """Stateless HS256 session tokens.

    Nothing is stored server side, so a token stays valid until its ``exp``
    passes; there is no way to revoke one early.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "synodic",
        audience: str = "synodic-clients",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    def issue(self, user_id: str, email: str, ttl_seconds: int) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "email": email,
            "iat": now,
            "exp": now + int(ttl_seconds),
            "jti": str(uuid.uuid4()),
        }
        return self._encode(payload)

    def verify(self, token: str, *, now: Optional[float] = None) -> TokenClaims:
        payload = self._decode(token)
        exp = payload.get("exp")
        try:
            exp_ts = int(exp)
        except (TypeError, ValueError):
            raise TokenError(TokenError.MALFORMED)
        current = self._clock() if now is None else now
        if current >= exp_ts:
            raise TokenError(TokenError.EXPIRED)
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise TokenError(TokenError.MALFORMED)
        return TokenClaims(
            user_id=sub,
            email=str(payload.get("email", "")),
            issued_at=int(payload.get("iat", 0) or 0),
            expires_at=exp_ts,
            token_id=str(payload.get("jti", "")),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise TokenError(TokenError.MALFORMED)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenError(TokenError.MALFORMED)

        # Only HS256 is accepted, which rules out "none" and algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise TokenError(TokenError.MALFORMED)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("token_invalid_algorithm")
            raise TokenError(TokenError.INVALID)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "replace")):
            raise TokenError(TokenError.INVALID)
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise TokenError(TokenError.MALFORMED)
        if not isinstance(payload, dict):
            raise TokenError(TokenError.MALFORMED)
        if payload.get("iss") != self.issuer:
            raise TokenError(TokenError.INVALID)
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenError(TokenError.INVALID)
        return payload
