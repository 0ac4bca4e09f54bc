from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from churchregistry.config import Settings
from churchregistry.logging import get_logger
from churchregistry.service.errors import AuthenticationError, ConflictError, ValidationError
from churchregistry.service.tokens import Principal, TokenIssuer
from churchregistry.storage.errors import ConstraintViolation
from churchregistry.storage.models import RefreshRotation, RefreshToken, User

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
_INVALID_CREDENTIALS = "invalid credentials"
_INVALID_REFRESH = "invalid refresh token"
_INVALID_ACCESS = "invalid or expired access token"


class AuthStore(Protocol):
    def create_user(
        self,
        username: str,
        display_name: Optional[str] = None,
        *,
        role: str = "user",
        parish_id: Optional[int] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_refresh_token(
        self, user_id: str, ttl_minutes: int, *, now: Optional[datetime] = None
    ) -> RefreshToken: ...

    def get_refresh_token(self, value: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self, value: str, ttl_minutes: int, *, now: Optional[datetime] = None
    ) -> Optional[RefreshRotation]: ...

    def delete_refresh_token(self, value: str) -> bool: ...


@dataclass
class AuthContext:
    """Verified bearer of an access token for the current request."""

    user_id: str
    username: str
    role: str
    display_name: Optional[str] = None
    token_expires_at: Optional[datetime] = None

    def as_principal(self) -> Principal:
        return Principal(
            username=self.username,
            role=self.role,
            user_id=self.user_id,
            display_name=self.display_name,
        )


@dataclass
class AuthResult:
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime
    principal: Principal


class AuthService:
    """Password login plus access/refresh token lifecycle."""

    def __init__(
        self,
        store: AuthStore,
        issuer: TokenIssuer,
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.issuer = issuer
        self.settings = settings
        self.refresh_ttl_minutes = settings.refresh_token_ttl_minutes
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self._dummy_lock = threading.Lock()
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    def _hash_password(self, password: str) -> tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, PASSWORD_ALGO

    def _burn_verification(self, password: str) -> None:
        """Spend one hash verification so unknown usernames cost the same as bad passwords."""
        with self._dummy_lock:
            if self._dummy_hash is None:
                self._dummy_hash = self._pwd_hasher.hash("not-a-real-password")
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._burn_verification(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            self._burn_verification(password)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    @staticmethod
    def _principal_for(user: User) -> Principal:
        return Principal(
            username=user.username,
            role=user.role,
            user_id=user.id,
            display_name=user.display_name,
        )

    async def authenticate(self, username: str, password: str) -> Principal:
        """Check a username/password pair.

        Unknown users and wrong passwords fail with the same error and do the
        same amount of hashing work, so callers cannot enumerate usernames.
        """
        user = self.store.get_user_by_username(username) if username else None
        if user is None:
            self._burn_verification(password or "")
            self.logger.info("authentication_failed", reason="unknown_user")
            raise AuthenticationError(_INVALID_CREDENTIALS)
        if not self.verify_password(user.id, password or ""):
            self.logger.info(
                "authentication_failed", reason="password_mismatch", user_id=user.id
            )
            raise AuthenticationError(_INVALID_CREDENTIALS)
        return self._principal_for(user)

    async def login(self, username: str, password: str) -> AuthResult:
        principal = await self.authenticate(username, password)
        now = self._now()
        refresh = self.store.create_refresh_token(
            principal.user_id, self.refresh_ttl_minutes, now=now
        )
        access = self.issuer.issue_access_token(principal, now=now)
        self.logger.info("login_succeeded", user_id=principal.user_id, role=principal.role)
        return AuthResult(
            access_token=access,
            refresh_token=refresh.value,
            refresh_expires_at=refresh.expires_at,
            principal=principal,
        )

    async def refresh(self, refresh_token: str) -> AuthResult:
        """Exchange a refresh token for a new access/refresh pair.

        The presented value is consumed: an expired value is deleted and
        rejected, a live one is deleted and replaced in one store transaction.
        """
        # Issued values never contain NUL and Postgres text cannot hold one
        if not refresh_token or "\x00" in refresh_token:
            raise AuthenticationError(_INVALID_REFRESH)
        now = self._now()
        current = self.store.get_refresh_token(refresh_token)
        if current is None:
            self.logger.info("refresh_token_unknown")
            raise AuthenticationError(_INVALID_REFRESH)
        if current.is_expired(now):
            self.store.delete_refresh_token(refresh_token)
            self.logger.info("refresh_token_expired", user_id=current.user_id)
            raise AuthenticationError("refresh token expired")

        rotation = self.store.rotate_refresh_token(
            refresh_token, self.refresh_ttl_minutes, now=now
        )
        if rotation is None:
            # Another caller consumed the same value between lookup and rotation
            self.logger.warning("refresh_token_reuse_rejected", user_id=current.user_id)
            raise AuthenticationError(_INVALID_REFRESH)

        user = self.store.get_user(rotation.issued.user_id)
        if user is None:
            self.store.delete_refresh_token(rotation.issued.value)
            self.logger.warning("refresh_token_orphaned", user_id=rotation.issued.user_id)
            raise AuthenticationError(_INVALID_REFRESH)

        principal = self._principal_for(user)
        access = self.issuer.issue_access_token(principal, now=now)
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return AuthResult(
            access_token=access,
            refresh_token=rotation.issued.value,
            refresh_expires_at=rotation.issued.expires_at,
            principal=principal,
        )

    async def logout(self, refresh_token: object) -> None:
        """Revoke a refresh token. Unknown, empty or non-string values are not an error."""
        if not isinstance(refresh_token, str) or not refresh_token or "\x00" in refresh_token:
            return
        removed = self.store.delete_refresh_token(refresh_token)
        self.logger.info("logout", revoked=removed)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def resolve_bearer(self, authorization: Optional[str]) -> AuthContext:
        """Turn an ``Authorization`` header into the request's AuthContext."""
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        claims = self.issuer.verify(token)
        if claims is None:
            raise AuthenticationError(_INVALID_ACCESS)
        user = self.store.get_user_by_username(claims.subject)
        if user is None or user.role != claims.role:
            raise AuthenticationError(_INVALID_ACCESS)
        return AuthContext(
            user_id=user.id,
            username=user.username,
            role=user.role,
            display_name=user.display_name,
            token_expires_at=claims.expires_at,
        )

    def create_user(
        self,
        username: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        role: str = "user",
        parish_id: Optional[int] = None,
    ) -> User:
        username = (username or "").strip()
        if not username or len(username) > 100:
            raise ValidationError("username must be 1-100 characters", detail={"field": "username"})
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})
        if not role or len(role) > 50:
            raise ValidationError("role must be 1-50 characters", detail={"field": "role"})
        try:
            user = self.store.create_user(
                username, display_name, role=role, parish_id=parish_id
            )
        except ConstraintViolation as exc:
            raise ConflictError("username already exists", detail=exc.detail)
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user.id, pwd_hash, algo)
        self.logger.info("user_created", user_id=user.id, role=role)
        return user

    def ensure_user(
        self,
        username: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        role: str = "user",
    ) -> User:
        """Create the account unless the username is already taken."""
        existing = self.store.get_user_by_username(username)
        if existing:
            return existing
        try:
            return self.create_user(
                username, password, display_name=display_name, role=role
            )
        except ConflictError:
            # Lost a creation race with another worker
            existing = self.store.get_user_by_username(username)
            if existing is None:
                raise
            return existing
