from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from config import Settings, get_settings
from errors import InvalidTokenError
from logs import get_logger

logger = get_logger(__name__)

# claim carrying one entry per effective permission name
PERMISSION_CLAIM = "permission"
# role name reported for a user with no role assigned
FALLBACK_ROLE_NAME = "User"


# Password Hashing
class CredentialStore:
    """Hashes and verifies account secrets."""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.pwd_context = CryptContext(
            schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.bcrypt_rounds
        )

    def hash(self, password: str) -> str:
        return self.pwd_context.hash(password)

    def verify(self, password: str, password_hash: str) -> bool:
        if not password or not password_hash:
            return False
        try:
            return self.pwd_context.verify(password, password_hash)
        except ValueError:
            # unknown or corrupt hash format in the row
            logger.warning("password_hash_unrecognized")
            return False


@dataclass(frozen=True)
class IssuedToken:
    token: str
    jti: str
    issued_at: datetime
    expires_at: datetime


def normalize_permission_names(permissions: Iterable[str]) -> list[str]:
    """Trim, drop blanks and dedupe case-insensitively, keeping first spelling."""
    seen: set[str] = set()
    result: list[str] = []
    for perm in permissions or ():
        if perm is None:
            continue
        name = perm.strip()
        if not name or name.casefold() in seen:
            continue
        seen.add(name.casefold())
        result.append(name)
    return result


class TokenIssuer:
    """Mints and verifies HS256 access tokens.

    The effective permission set is copied into the token when it is issued and
    is not re-resolved per request: a grant or denial made mid-session only
    shows up after the user logs in again, at most one token lifetime later.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def issue(self, user, permissions: Iterable[str], now: Optional[datetime] = None) -> IssuedToken:
        if user is None:
            raise ValueError("user is required")
        issued_at = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        if issued_at.tzinfo is None:
            issued_at = issued_at.replace(tzinfo=timezone.utc)
        expires_at = issued_at + timedelta(minutes=self.settings.access_token_ttl_minutes)
        jti = uuid.uuid4().hex
        role_name = role_name_of(user)

        to_encode = {
            "sub": str(user.id),
            "email": user.email or "",
            "role_id": user.role_id,
            "role_name": role_name,
            "role": role_name,
            PERMISSION_CLAIM: normalize_permission_names(permissions),
            "jti": jti,
            "iat": int(issued_at.timestamp()),
            "nbf": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
        }
        encoded_jwt = jwt.encode(to_encode, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm)
        return IssuedToken(token=encoded_jwt, jti=jti, issued_at=issued_at, expires_at=expires_at)

    def decode(self, token: str) -> dict[str, Any]:
        """Full validation: signature, issuer, audience, not-before and expiry."""
        return jwt.decode(
            token,
            self.settings.jwt_secret,
            algorithms=[self.settings.jwt_algorithm],
            audience=self.settings.jwt_audience,
            issuer=self.settings.jwt_issuer,
            options={"leeway": 0},
        )

    def decode_signature_only(self, token: str) -> dict[str, Any]:
        """Verify the signature alone, so tokens near or past expiry can still be revoked."""
        try:
            return jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[self.settings.jwt_algorithm],
                options={
                    "verify_aud": False,
                    "verify_iss": False,
                    "verify_exp": False,
                    "verify_nbf": False,
                    "verify_iat": False,
                },
            )
        except JWTError as exc:
            raise InvalidTokenError("Invalid token or signature.") from exc


def role_name_of(user) -> str:
    return user.role.name if user.role is not None else FALLBACK_ROLE_NAME


def expiry_of(claims: dict[str, Any]) -> datetime:
    """Naive-UTC expiry of a decoded token."""
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        raise InvalidTokenError("Token has no expiry.")
    return datetime.fromtimestamp(exp, tz=timezone.utc).replace(tzinfo=None)
