"""Effective permission resolution: (role grants | direct grants) - denials."""

from database import session_scope
from helpers import ADMIN_EMAIL, make_member, make_user
from models import Permission, User
from permissions import (
    EMPLOYEE_ROLE_ID,
    PERMISSION_NAMES,
    load_user,
    load_user_by_email,
    permissions_by_name,
    resolve_permissions,
)
from users import UserService


def effective(user_id):
    with session_scope() as db:
        return resolve_permissions(load_user(db, user_id))


class TestRoleGrants:
    """Permissions that come from the user's role alone."""

    def test_admin_holds_every_permission(self):
        with session_scope() as db:
            admin = load_user_by_email(db, ADMIN_EMAIL)
            assert resolve_permissions(admin) == set(PERMISSION_NAMES.values())

    def test_member_role_reads_books_only(self):
        user_id, _ = make_member("Ann Reader")
        assert effective(user_id) == {"book.read"}

    def test_employee_role(self):
        user_id = make_user("clerk", EMPLOYEE_ROLE_ID)
        assert effective(user_id) == {
            "book.read",
            "member.add",
            "member.update",
            "book.create",
            "book.update",
            "member.read",
        }

    def test_email_lookup_is_case_insensitive(self):
        with session_scope() as db:
            assert load_user_by_email(db, "  ADMIN@Example.com ") is not None


class TestOverrides:
    """Direct grants add to the role; denials always win."""

    def test_direct_grant_is_added(self):
        user_id, _ = make_member("Ann Reader")
        with session_scope() as db:
            UserService().grant(db, user_id, "borrow.read")
        assert effective(user_id) == {"book.read", "borrow.read"}

    def test_grant_and_deny_match_names_case_insensitively(self):
        user_id, _ = make_member("Ann Reader")
        service = UserService()
        with session_scope() as db:
            service.grant(db, user_id, " Borrow.Read ")
            service.deny(db, user_id, "BOOK.READ")
        assert effective(user_id) == {"borrow.read"}

    def test_denial_removes_role_permission(self):
        user_id = make_user("clerk", EMPLOYEE_ROLE_ID)
        with session_scope() as db:
            UserService().deny(db, user_id, "book.update")
        perms = effective(user_id)
        assert "book.update" not in perms
        assert "book.create" in perms

    def test_denial_wins_over_direct_grant(self):
        user_id, _ = make_member("Ann Reader")
        service = UserService()
        with session_scope() as db:
            service.grant(db, user_id, "borrow.read")
        with session_scope() as db:
            service.deny(db, user_id, "borrow.read")
        assert effective(user_id) == {"book.read"}

    def test_grant_clears_previous_denial(self):
        user_id, _ = make_member("Ann Reader")
        service = UserService()
        with session_scope() as db:
            service.deny(db, user_id, "book.read")
        assert effective(user_id) == set()
        with session_scope() as db:
            service.grant(db, user_id, "book.read")
        assert effective(user_id) == {"book.read"}

    def test_clear_overrides_restores_role_set(self):
        user_id, _ = make_member("Ann Reader")
        service = UserService()
        with session_scope() as db:
            service.deny(db, user_id, "book.read")
        with session_scope() as db:
            service.clear_overrides(db, user_id, "book.read")
        assert effective(user_id) == {"book.read"}


class TestEdgeCases:
    def test_none_user_resolves_to_empty_set(self):
        assert resolve_permissions(None) == set()

    def test_user_without_role_gets_only_direct_grants(self):
        user_id, _ = make_member("Ann Reader")
        service = UserService()
        with session_scope() as db:
            service.grant(db, user_id, "borrow.read")
            service.grant(db, user_id, "borrow.create")
        with session_scope() as db:
            db.get(User, user_id).role_id = None
        with session_scope() as db:
            service.deny(db, user_id, "borrow.create")
        assert effective(user_id) == {"borrow.read"}

    def test_names_differing_only_in_case_collapse(self):
        user_id, _ = make_member("Ann Reader")
        with session_scope() as db:
            db.add(Permission(id=99, name="BOOK.READ"))
        with session_scope() as db:
            db.get(User, user_id).granted_permissions.append(db.get(Permission, 99))
        perms = effective(user_id)
        assert len(perms) == 1
        assert {p.lower() for p in perms} == {"book.read"}

    def test_permissions_by_name_ignores_blanks(self):
        with session_scope() as db:
            found = permissions_by_name(db, ["Book.Read", " ", "borrow.create", "nope"])
            assert set(found) == {"book.read", "borrow.create"}
