"""Member profiles and user administration."""

import pytest

from borrowing import BorrowLedger
from database import session_scope
from errors import ConflictError, EmailTaken, HasBorrowHistory, NotFoundError, ValidationError
from helpers import ADMIN_EMAIL, make_book, make_member, make_user
from members import MemberService, email_in_use
from models import Member, User
from permissions import ADMIN_ROLE_ID, EMPLOYEE_ROLE_ID, MEMBER_ROLE_ID
from security import CredentialStore
from users import UserService


@pytest.fixture
def members():
    return MemberService()


@pytest.fixture
def users():
    return UserService()


def lend(member_id):
    book_id = make_book(copies=1)
    with session_scope() as db:
        return BorrowLedger().create(db, member_id, book_id, 7)


class TestCreateUser:
    def test_registration_creates_user_and_member(self, users):
        with session_scope() as db:
            user = users.create_user(
                db,
                username="ann",
                email="  Ann@Example.com ",
                password="secret123",
                member_name="Ann Reader",
                phone=" 555-0101 ",
            )
            assert user.email == "ann@example.com"
            assert user.role_id == MEMBER_ROLE_ID
            assert user.member.name == "Ann Reader"
            assert user.member.email == "ann@example.com"
            assert user.member.phone == "555-0101"
            assert CredentialStore().verify("secret123", user.password_hash)

    def test_staff_user_without_profile(self, users):
        user_id = make_user("clerk", EMPLOYEE_ROLE_ID)
        with session_scope() as db:
            assert db.get(User, user_id).member is None

    def test_email_taken_case_insensitively(self, users):
        with pytest.raises(EmailTaken) as excinfo:
            with session_scope() as db:
                users.create_user(db, "someone", ADMIN_EMAIL.upper(), "secret123")
        assert excinfo.value.detail == {"field": "email"}

    def test_username_taken(self, users):
        make_member("Ann Reader")
        with pytest.raises(ConflictError):
            with session_scope() as db:
                users.create_user(db, "ann_reader", "other@example.com", "secret123")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"username": " "},
            {"email": ""},
            {"password": "12345"},
            {"role_id": 42},
            {"member_name": "  "},
        ],
    )
    def test_rejects_bad_input(self, users, kwargs):
        values = dict(username="ann", email="ann@example.com", password="secret123")
        values.update(kwargs)
        with pytest.raises(ValidationError):
            with session_scope() as db:
                users.create_user(db, **values)
        with session_scope() as db:
            assert db.query(User).filter_by(username="ann").count() == 0


class TestMemberProfile:
    def test_update_self_syncs_login_email(self, members):
        user_id, member_id = make_member("Ann Reader")
        with session_scope() as db:
            members.update_self(db, user_id, "Ann R.", "ANN.NEW@example.com", "555")
        with session_scope() as db:
            member = db.get(Member, member_id)
            assert member.name == "Ann R."
            assert member.email == "ann.new@example.com"
            assert member.phone == "555"
            assert db.get(User, user_id).email == "ann.new@example.com"

    def test_update_to_email_in_use(self, members):
        make_member("Bob Reader")
        _, member_id = make_member("Ann Reader")
        with pytest.raises(EmailTaken):
            with session_scope() as db:
                members.admin_update(db, member_id, "Ann", "Bob.Reader@example.com")

    def test_keeping_own_email_is_allowed(self, members):
        _, member_id = make_member("Ann Reader")
        with session_scope() as db:
            member = members.admin_update(db, member_id, "Ann", "ann.reader@example.com", None)
            assert member.phone is None

    def test_name_and_email_required(self, members):
        _, member_id = make_member("Ann Reader")
        with pytest.raises(ValidationError):
            with session_scope() as db:
                members.admin_update(db, member_id, " ", "ann.reader@example.com")

    def test_staff_without_profile_has_no_me(self, members):
        user_id = make_user("clerk", EMPLOYEE_ROLE_ID)
        with pytest.raises(NotFoundError):
            with session_scope() as db:
                members.get_by_user(db, user_id)

    def test_email_in_use_excludes_owner(self):
        user_id, _ = make_member("Ann Reader")
        with session_scope() as db:
            assert email_in_use(db, "ANN.READER@example.com")
            assert not email_in_use(db, "ann.reader@example.com", exclude_user_id=user_id)

    def test_list_search(self, members):
        make_member("Ann Reader")
        make_member("Bob Reader")
        with session_scope() as db:
            assert [m.name for m in members.list(db, q="bob")] == ["Bob Reader"]
            assert len(members.list(db)) == 2


class TestDeletion:
    """History is never orphaned."""

    def test_delete_member_without_history(self, members):
        _, member_id = make_member("Ann Reader")
        with session_scope() as db:
            members.delete(db, member_id)
        with session_scope() as db:
            assert db.get(Member, member_id) is None

    def test_delete_member_with_history_refused(self, members):
        _, member_id = make_member("Ann Reader")
        record = lend(member_id)
        with session_scope() as db:
            BorrowLedger().return_book(db, record.id)

        with pytest.raises(HasBorrowHistory):
            with session_scope() as db:
                members.delete(db, member_id)

    def test_delete_user_cascades_profile(self, users):
        user_id, member_id = make_member("Ann Reader")
        with session_scope() as db:
            users.delete(db, user_id)
        with session_scope() as db:
            assert db.get(User, user_id) is None
            assert db.get(Member, member_id) is None

    def test_delete_user_with_history_refused(self, users):
        user_id, member_id = make_member("Ann Reader")
        lend(member_id)
        with pytest.raises(HasBorrowHistory):
            with session_scope() as db:
                users.delete(db, user_id)


class TestAdministration:
    def test_set_role(self, users):
        user_id, _ = make_member("Ann Reader")
        with session_scope() as db:
            assert users.set_role(db, user_id, ADMIN_ROLE_ID).role_id == ADMIN_ROLE_ID
        with pytest.raises(ValidationError):
            with session_scope() as db:
                users.set_role(db, user_id, 99)

    def test_change_password(self, users):
        user_id, _ = make_member("Ann Reader")
        with session_scope() as db:
            users.change_password(db, user_id, "new-secret")
        with session_scope() as db:
            assert CredentialStore().verify("new-secret", db.get(User, user_id).password_hash)
        with pytest.raises(ValidationError):
            with session_scope() as db:
                users.change_password(db, user_id, "short")

    def test_update_user_syncs_member_email(self, users):
        user_id, member_id = make_member("Ann Reader")
        with session_scope() as db:
            users.update(db, user_id, "ann2", "ann2@example.com")
        with session_scope() as db:
            assert db.get(Member, member_id).email == "ann2@example.com"

    def test_unknown_permission(self, users):
        user_id, _ = make_member("Ann Reader")
        with pytest.raises(ValidationError):
            with session_scope() as db:
                users.grant(db, user_id, "book.burn")

    def test_unknown_user(self, users):
        with pytest.raises(NotFoundError):
            with session_scope() as db:
                users.get(db, 999)
