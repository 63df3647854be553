"""Shared builders for tests; all of them commit through their own session."""

from database import session_scope
from models import Book
from permissions import MEMBER_ROLE_ID
from users import UserService

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "123456"


def make_book(title="Dune", copies=1, isbn=None, author="Frank Herbert", year=1965, category="Fiction"):
    with session_scope() as db:
        book = Book(
            title=title,
            author=author,
            category=category,
            year=year,
            copies_count=copies,
            isbn=isbn,
        )
        db.add(book)
        db.flush()
        return book.id


def make_member(name="Reader", email=None, password="secret123"):
    """Register a Member-role user with a profile; returns (user_id, member_id)."""
    email = email or f"{name.lower().replace(' ', '.')}@example.com"
    with session_scope() as db:
        user = UserService().create_user(
            db,
            username=name.lower().replace(" ", "_"),
            email=email,
            password=password,
            role_id=MEMBER_ROLE_ID,
            member_name=name,
        )
        return user.id, user.member.id


def make_user(username, role_id, password="secret123", email=None):
    with session_scope() as db:
        user = UserService().create_user(
            db,
            username=username,
            email=email or f"{username}@example.com",
            password=password,
            role_id=role_id,
        )
        return user.id


def login(client, email, password):
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]["token"]


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


