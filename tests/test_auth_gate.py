"""Authentication gate, policy registry and the login/logout service."""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from auth import AuthenticationGate, AuthService, PolicyRegistry, Principal, get_current_principal
from config import get_settings
from database import session_scope
from errors import (
    AlreadyRevoked,
    AuthenticationError,
    ForbiddenError,
    InvalidTokenError,
    OperationCancelled,
    ValidationError,
)
from helpers import ADMIN_EMAIL, ADMIN_PASSWORD, make_member
from models import RevokedToken, User, utcnow
from permissions import load_user_by_email
from revocation import revocation_store
from security import TokenIssuer


def principal(role_name="Member", permissions=("book.read",)):
    return Principal(
        user_id=1,
        email="ann@example.com",
        role_id=3,
        role_name=role_name,
        permissions=frozenset(permissions),
        jti="abc",
        expires_at=utcnow() + timedelta(hours=1),
    )


@pytest.fixture
def service():
    return AuthService()


@pytest.fixture
def gate():
    return AuthenticationGate()


@pytest.fixture
def admin_login(service):
    with session_scope() as db:
        return service.login(db, ADMIN_EMAIL, ADMIN_PASSWORD)


class TestLogin:
    def test_valid_credentials(self, service, admin_login):
        assert admin_login is not None
        assert admin_login.role_name == "Admin"
        assert "borrow.create" in admin_login.permissions
        assert admin_login.permissions == sorted(admin_login.permissions)

    def test_roleless_user_reports_fallback_role(self, service):
        user_id, _ = make_member("Ann Reader")
        with session_scope() as db:
            db.get(User, user_id).role_id = None
        with session_scope() as db:
            result = service.login(db, "ann.reader@example.com", "secret123")
        assert result.role_id is None
        assert result.role_name == "User"
        assert TokenIssuer().decode(result.token)["role_name"] == result.role_name

    def test_email_is_trimmed_and_case_folded(self, service):
        with session_scope() as db:
            assert service.login(db, "  Admin@Example.COM ", ADMIN_PASSWORD) is not None

    @pytest.mark.parametrize(
        "email,password",
        [
            (ADMIN_EMAIL, "wrong-password"),
            ("nobody@example.com", ADMIN_PASSWORD),
            ("", ADMIN_PASSWORD),
            (ADMIN_EMAIL, ""),
        ],
    )
    def test_bad_credentials_return_none(self, service, email, password):
        with session_scope() as db:
            assert service.login(db, email, password) is None


class TestGate:
    """Checks run in order; the first failure names the reason."""

    def test_dependency_needs_only_the_bearer_credentials(self, admin_login):
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=admin_login.token)
        principal = get_current_principal(credentials)
        assert principal.role_name == "Admin"
        with pytest.raises(AuthenticationError):
            get_current_principal(None)

    def test_no_credentials(self, gate, db):
        with pytest.raises(AuthenticationError) as excinfo:
            gate.authenticate(db, None)
        assert excinfo.value.reason == "no_credentials"

    def test_garbage_token(self, gate, db):
        with pytest.raises(AuthenticationError) as excinfo:
            gate.authenticate(db, "not-a-token")
        assert excinfo.value.reason == "invalid_token"

    def test_expired_token(self, gate, db):
        make_member("Ann Reader", email="ann@example.com")
        with session_scope() as s:
            user = load_user_by_email(s, "ann@example.com")
            stale = datetime.now(timezone.utc) - timedelta(hours=3)
            token = TokenIssuer().issue(user, ["book.read"], now=stale).token
        with pytest.raises(AuthenticationError) as excinfo:
            gate.authenticate(db, token)
        assert excinfo.value.reason == "invalid_token"

    def test_token_without_jti(self, gate, db):
        settings = get_settings()
        now = int(datetime.now(timezone.utc).timestamp())
        token = jwt.encode(
            {
                "sub": "1",
                "iat": now,
                "nbf": now,
                "exp": now + 600,
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
            },
            settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
        )
        with pytest.raises(AuthenticationError) as excinfo:
            gate.authenticate(db, token)
        assert excinfo.value.reason == "invalid_token"

    def test_valid_token_yields_principal(self, gate, db, admin_login):
        found = gate.authenticate(db, admin_login.token)
        assert found.role_name == "Admin"
        assert found.has_permission("BOOK.DELETE")
        assert found.has_role("admin")
        assert found.jti

    def test_revoked_token(self, gate, service, db, admin_login):
        with session_scope() as s:
            service.logout(s, f"Bearer {admin_login.token}")
        with pytest.raises(AuthenticationError) as excinfo:
            gate.authenticate(db, admin_login.token)
        assert excinfo.value.reason == "revoked"

    def test_uniform_message(self, gate, db):
        messages = set()
        for token in (None, "junk"):
            with pytest.raises(AuthenticationError) as excinfo:
                gate.authenticate(db, token)
            messages.add(excinfo.value.message)
        assert messages == {"Unauthorized: Please login first."}


class TestPolicyRegistry:
    def test_unregistered_name_is_a_permission_policy(self):
        registry = PolicyRegistry()
        registry.authorize(principal(permissions=["book.read"]), "book.read")
        with pytest.raises(ForbiddenError):
            registry.authorize(principal(permissions=["book.read"]), "book.create")

    def test_permission_names_are_data(self):
        registry = PolicyRegistry()
        registry.authorize(principal(permissions=["report.export"]), "report.export")

    def test_role_policy(self):
        registry = PolicyRegistry()
        registry.register("staff", roles=["Admin", "Employee"])
        registry.authorize(principal(role_name="employee", permissions=()), "staff")
        with pytest.raises(ForbiddenError) as excinfo:
            registry.authorize(principal(role_name="Member"), "staff")
        assert excinfo.value.status_code == 403

    def test_registered_permission_alias(self):
        registry = PolicyRegistry()
        registry.register("lend", permission="borrow.create")
        registry.authorize(principal(permissions=["borrow.create"]), "lend")
        with pytest.raises(ForbiddenError):
            registry.authorize(principal(permissions=["lend"]), "lend")

    def test_policy_needs_a_requirement(self):
        with pytest.raises(ValueError):
            PolicyRegistry().register("empty")


class TestLogout:
    """Logout revokes by jti and reports the token's own expiry."""

    def test_logout_revokes_until_expiry(self, service, admin_login):
        with session_scope() as db:
            keep_until = service.logout(db, f"Bearer {admin_login.token}")
        assert keep_until == admin_login.expires_at
        with session_scope() as db:
            claims = service.issuer.decode(admin_login.token)
            assert revocation_store.is_revoked(db, claims["jti"])

    def test_second_logout_is_already_revoked(self, service, admin_login):
        with session_scope() as db:
            service.logout(db, f"Bearer {admin_login.token}")
        with pytest.raises(AlreadyRevoked):
            with session_scope() as db:
                service.logout(db, f"Bearer {admin_login.token}")

    def test_expired_token_can_still_be_revoked(self, service):
        with session_scope() as db:
            user = load_user_by_email(db, ADMIN_EMAIL)
            stale = datetime.now(timezone.utc) - timedelta(hours=3)
            token = service.issuer.issue(user, [], now=stale).token
        with session_scope() as db:
            keep_until = service.logout(db, f"Bearer {token}")
        assert keep_until < utcnow()

    @pytest.mark.parametrize("header", [None, "", "Token abc", "Bearer ", "bearer abc"])
    def test_malformed_header(self, service, header):
        with pytest.raises(ValidationError):
            with session_scope() as db:
                service.logout(db, header)

    def test_bad_signature(self, service):
        token = jwt.encode({"sub": "1", "jti": "x", "exp": 9999999999}, "another-key", algorithm="HS256")
        with pytest.raises(InvalidTokenError):
            with session_scope() as db:
                service.logout(db, f"Bearer {token}")

    def test_cancelled_logout_leaves_no_entry(self, service, admin_login):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelled):
            with session_scope() as db:
                service.logout(db, f"Bearer {admin_login.token}", cancel=cancel)
        with session_scope() as db:
            assert db.query(RevokedToken).count() == 0
