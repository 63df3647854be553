from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.orm import Session

from database import ensure_not_cancelled, session_scope
from errors import AuthenticationError, ForbiddenError, InvalidTokenError, ValidationError
from logs import get_logger
from permissions import load_user_by_email, resolve_permissions
from revocation import TokenRevocationStore, revocation_store
from security import PERMISSION_CLAIM, CredentialStore, TokenIssuer, expiry_of, role_name_of

logger = get_logger(__name__)


@dataclass(frozen=True)
class Principal:
    """Identity recovered from a validated, unrevoked access token."""

    user_id: int
    email: str
    role_id: Optional[int]
    role_name: str
    permissions: frozenset[str]
    jti: str
    expires_at: datetime

    def has_permission(self, name: str) -> bool:
        wanted = name.casefold()
        return any(p.casefold() == wanted for p in self.permissions)

    def has_role(self, *roles: str) -> bool:
        wanted = {r.casefold() for r in roles}
        return self.role_name.casefold() in wanted


@dataclass
class LoginResult:
    token: str
    role_id: Optional[int]
    role_name: str
    permissions: list[str]
    expires_at: datetime


class AuthenticationGate:
    """Turns a bearer token into a ``Principal`` or rejects the request.

    Checks run in order and the first failure wins: credentials present,
    token valid (signature, issuer, audience, not-before, expiry), token not
    revoked.
    """

    def __init__(self, issuer: Optional[TokenIssuer] = None, store: Optional[TokenRevocationStore] = None):
        self._issuer = issuer
        self.store = store or revocation_store

    @property
    def issuer(self) -> TokenIssuer:
        if self._issuer is None:
            self._issuer = TokenIssuer()
        return self._issuer

    def authenticate(self, db: Session, token: Optional[str]) -> Principal:
        if not token:
            raise AuthenticationError(reason="no_credentials")
        try:
            claims = self.issuer.decode(token)
        except JWTError as exc:
            logger.info("token_rejected", reason="invalid_token", error=str(exc))
            raise AuthenticationError(reason="invalid_token") from exc

        jti = claims.get("jti")
        try:
            principal = Principal(
                user_id=int(claims["sub"]),
                email=claims.get("email") or "",
                role_id=claims.get("role_id"),
                role_name=claims.get("role_name") or claims.get("role") or "",
                permissions=frozenset(_as_list(claims.get(PERMISSION_CLAIM))),
                jti=jti,
                expires_at=expiry_of(claims),
            )
        except (KeyError, TypeError, ValueError, InvalidTokenError) as exc:
            logger.info("token_rejected", reason="invalid_token", error="malformed claims")
            raise AuthenticationError(reason="invalid_token") from exc
        if not jti:
            logger.info("token_rejected", reason="invalid_token", error="missing jti")
            raise AuthenticationError(reason="invalid_token")

        if self.store.is_revoked(db, jti):
            logger.info("token_rejected", reason="revoked", jti=jti, user_id=principal.user_id)
            raise AuthenticationError(reason="revoked")
        return principal


def _as_list(value) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


@dataclass(frozen=True)
class Policy:
    name: str
    permission: Optional[str] = None
    roles: frozenset[str] = field(default_factory=frozenset)

    def allows(self, principal: Principal) -> bool:
        if self.roles and principal.has_role(*self.roles):
            return True
        if self.permission and principal.has_permission(self.permission):
            return True
        return False


class PolicyRegistry:
    """String-keyed authorization policies.

    A name with no registration is treated as a permission policy requiring
    the permission of the same name, so permissions added as data need no code.
    """

    def __init__(self):
        self._policies: dict[str, Policy] = {}

    def register(self, name: str, *, permission: Optional[str] = None, roles: Iterable[str] = ()) -> Policy:
        if not permission and not roles:
            raise ValueError("a policy needs a permission or at least one role")
        policy = Policy(name=name, permission=permission, roles=frozenset(roles))
        self._policies[name] = policy
        return policy

    def get(self, name: str) -> Policy:
        policy = self._policies.get(name)
        if policy is None:
            policy = Policy(name=name, permission=name)
        return policy

    def authorize(self, principal: Principal, name: str) -> None:
        if not self.get(name).allows(principal):
            logger.info("authorization_denied", policy=name, user_id=principal.user_id, role=principal.role_name)
            raise ForbiddenError("Forbidden: You don't have permission.", detail={"policy": name})


policies = PolicyRegistry()
policies.register("admin", roles=["Admin"])
policies.register("staff", roles=["Admin", "Employee"])

gate = AuthenticationGate()
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Principal:
    token = credentials.credentials if credentials else None
    # own short unit of work so the route's session starts clean
    with session_scope() as db:
        return gate.authenticate(db, token)


def require(policy_name: str):
    """Dependency factory: authenticate, then evaluate the named policy."""

    def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        policies.authorize(principal, policy_name)
        return principal

    dependency.__name__ = f"require_{policy_name.replace('.', '_')}"
    return dependency


class AuthService:
    def __init__(
        self,
        credentials: Optional[CredentialStore] = None,
        issuer: Optional[TokenIssuer] = None,
        store: Optional[TokenRevocationStore] = None,
    ):
        self._credentials = credentials
        self._issuer = issuer
        self.store = store or revocation_store

    @property
    def credentials(self) -> CredentialStore:
        if self._credentials is None:
            self._credentials = CredentialStore()
        return self._credentials

    @property
    def issuer(self) -> TokenIssuer:
        if self._issuer is None:
            self._issuer = TokenIssuer()
        return self._issuer

    def login(self, db: Session, email: str, password: str) -> Optional[LoginResult]:
        """Returns None when the credentials do not match."""
        if not email or not email.strip() or not password:
            return None
        user = load_user_by_email(db, email)
        if user is None or not self.credentials.verify(password, user.password_hash):
            logger.info("login_failed", email=email.strip().lower())
            return None

        permissions = sorted(resolve_permissions(user))
        issued = self.issuer.issue(user, permissions)
        role_name = role_name_of(user)
        logger.info("login_succeeded", user_id=user.id, role=role_name, permission_count=len(permissions))
        return LoginResult(
            token=issued.token,
            role_id=user.role_id,
            role_name=role_name,
            permissions=permissions,
            expires_at=issued.expires_at.replace(tzinfo=None),
        )

    def logout(
        self,
        db: Session,
        authorization: Optional[str],
        cancel: Optional[threading.Event] = None,
    ) -> datetime:
        """Revoke the bearer token in ``authorization``; returns the revocation cutoff."""
        if not authorization or not authorization.startswith("Bearer "):
            raise ValidationError("Authorization header with Bearer token is required.")
        token = authorization[len("Bearer "):].strip()
        if not token:
            raise ValidationError("Token not found.")

        claims = self.issuer.decode_signature_only(token)
        jti = claims.get("jti")
        if not jti:
            raise InvalidTokenError("Invalid token or signature.")
        keep_until = expiry_of(claims)
        user_id = claims.get("sub")

        try:
            self.store.revoke(db, jti, keep_until, user_id=int(user_id) if str(user_id or "").isdigit() else None)
            ensure_not_cancelled(cancel)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("logout_succeeded", user_id=user_id, jti=jti)
        return keep_until


auth_service = AuthService()
