"""Stateless HS256 access tokens.

Tokens are compact JWTs signed with HMAC-SHA256. Verification never touches
storage; anything that needs the user record happens in the auth service.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from churchregistry.config import MIN_JWT_SECRET_BYTES
from churchregistry.logging import get_logger

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


@dataclass(frozen=True)
class Principal:
    """An authenticated user, passed explicitly into operations that need one."""

    username: str
    role: str
    user_id: Optional[str] = None
    display_name: Optional[str] = None


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    role: str
    issued_at: datetime
    expires_at: datetime
    token_id: Optional[str] = None


class TokenIssuer:
    """Signs and verifies access tokens for a single symmetric key."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl_minutes: int,
        leeway_seconds: int = 0,
    ) -> None:
        key = secret.encode("utf-8") if secret else b""
        if len(key) < MIN_JWT_SECRET_BYTES:
            raise ValueError(
                f"signing key must be at least {MIN_JWT_SECRET_BYTES} bytes (256 bits)"
            )
        if ttl_minutes <= 0:
            raise ValueError("access token ttl must be positive")
        self._key = key
        self.issuer = issuer
        self.audience = audience
        self.ttl = timedelta(minutes=ttl_minutes)
        self.leeway_seconds = max(0, leeway_seconds)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self._key, signing_input.encode("utf-8", "surrogateescape"), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def issue_access_token(
        self, principal: Principal, *, now: Optional[datetime] = None
    ) -> str:
        issued = now or datetime.now(timezone.utc)
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": principal.username,
            "role": principal.role,
            "token_type": ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": int(issued.timestamp()),
            "exp": int((issued + self.ttl).timestamp()),
        }
        return self._encode(payload)

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

    def verify(self, token: str, *, now: Optional[float] = None) -> Optional[TokenClaims]:
        """Return the claims of a valid access token, or None."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to rule out algorithm confusion ("none", RS256 with our key)
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # Compare bytes; str comparison raises on non-ASCII input
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogateescape")
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            return None
        subject = payload.get("sub")
        role = payload.get("role")
        if not isinstance(subject, str) or not subject or not isinstance(role, str):
            return None
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", exp_ts))
        except (KeyError, TypeError, ValueError):
            return None
        current = time.time() if now is None else now
        if exp_ts <= current - self.leeway_seconds:
            return None
        return TokenClaims(
            subject=subject,
            role=role,
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            token_id=payload.get("jti"),
        )
