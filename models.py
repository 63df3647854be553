from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Table
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    """Naive UTC timestamp, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Direct per-user grants
user_permissions = Table(
    "user_permissions",
    Base.metadata,
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
)


# Role model
class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True)
    name = Column(String(50), unique=True, nullable=False)

    role_permissions = relationship("RolePermission", back_populates="role", cascade="all, delete-orphan")
    users = relationship("User", back_populates="role")


# Permission model
class Permission(Base):
    __tablename__ = "permissions"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), unique=True, nullable=False)


class RolePermission(Base):
    __tablename__ = "role_permissions"

    role_id = Column(Integer, ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True)
    permission_id = Column(Integer, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True)

    role = relationship("Role", back_populates="role_permissions")
    permission = relationship("Permission")


class UserDeniedPermission(Base):
    __tablename__ = "user_denied_permissions"

    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    permission_id = Column(Integer, ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True)

    user = relationship("User", back_populates="denied_permissions")
    permission = relationship("Permission")


# User model
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), unique=True, index=True, nullable=False)
    # stored trimmed and lower-cased, so the unique index is case-insensitive
    email = Column(String(200), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    role_id = Column(Integer, ForeignKey("roles.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    role = relationship("Role", back_populates="users")
    member = relationship("Member", back_populates="user", uselist=False, cascade="all, delete-orphan")
    granted_permissions = relationship("Permission", secondary=user_permissions)
    denied_permissions = relationship("UserDeniedPermission", back_populates="user", cascade="all, delete-orphan")


# Member model
class Member(Base):
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    name = Column(String(150), nullable=False)
    email = Column(String(200), unique=True, index=True, nullable=False)
    phone = Column(String(30), nullable=True)
    registered_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="member")
    borrow_records = relationship("BorrowRecord", back_populates="member")


# Book Model
class Book(Base):
    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    author = Column(String(150), nullable=False)
    category = Column(String(100), nullable=False)
    year = Column(Integer, nullable=False)
    isbn = Column(String(20), nullable=True)
    # spaces/hyphens stripped and case-folded; NULL when the book has no ISBN
    isbn_normalized = Column(String(20), unique=True, nullable=True)
    copies_count = Column(Integer, nullable=False, default=0)

    borrow_records = relationship("BorrowRecord", back_populates="book")

    __table_args__ = (Index("ix_books_title_author", "title", "author"),)


# BorrowRecord model
class BorrowRecord(Base):
    __tablename__ = "borrow_records"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    borrowed_date = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False)
    returned_date = Column(DateTime, nullable=True)

    book = relationship("Book", back_populates="borrow_records")
    member = relationship("Member", back_populates="borrow_records")

    @property
    def is_active(self):
        return self.returned_date is None


# At most one outstanding record per (member, book)
Index(
    "uq_borrow_records_active_member_book",
    BorrowRecord.member_id,
    BorrowRecord.book_id,
    unique=True,
    sqlite_where=BorrowRecord.returned_date.is_(None),
    postgresql_where=BorrowRecord.returned_date.is_(None),
)


class RevokedToken(Base):
    __tablename__ = "revoked_tokens"

    id = Column(Integer, primary_key=True)
    jti = Column(String(64), unique=True, nullable=False)
    user_id = Column(Integer, nullable=True)
    revoked_at = Column(DateTime, default=utcnow, nullable=False)
    # the token's own expiry; the row is dead weight after this
    keep_until = Column(DateTime, nullable=False, index=True)
