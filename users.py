from __future__ import annotations

import threading
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import ensure_not_cancelled
from errors import ConflictError, EmailTaken, HasBorrowHistory, NotFoundError, ValidationError
from logs import get_logger
from members import email_in_use, has_borrow_history, normalize_email
from models import Member, Permission, Role, User, UserDeniedPermission, utcnow
from permissions import MEMBER_ROLE_ID, load_user, permissions_by_name
from security import CredentialStore

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 6


class UserService:
    """Account administration: creation, roles, passwords and per-user overrides."""

    def __init__(self, credentials: Optional[CredentialStore] = None):
        self._credentials = credentials

    @property
    def credentials(self) -> CredentialStore:
        if self._credentials is None:
            self._credentials = CredentialStore()
        return self._credentials

    def create_user(
        self,
        db: Session,
        username: str,
        email: str,
        password: str,
        role_id: int = MEMBER_ROLE_ID,
        member_name: Optional[str] = None,
        phone: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> User:
        """Create a user; with ``member_name`` its Member profile is created in the same transaction."""
        username = (username or "").strip()
        email = normalize_email(email)
        if not username:
            raise ValidationError("Username is required.")
        if not email:
            raise ValidationError("Email is required.")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        if member_name is not None and not member_name.strip():
            raise ValidationError("Name is required.")

        try:
            if db.get(Role, role_id) is None:
                raise ValidationError(f"Role {role_id} does not exist.")
            if email_in_use(db, email):
                raise EmailTaken(f"Email '{email}' is already in use.", detail={"field": "email"})
            if db.query(User.id).filter(User.username == username).first() is not None:
                raise ConflictError(f"Username '{username}' is already in use.", detail={"field": "username"})

            user = User(
                username=username,
                email=email,
                password_hash=self.credentials.hash(password),
                role_id=role_id,
                created_at=utcnow(),
            )
            db.add(user)
            db.flush()
            if member_name is not None:
                db.add(
                    Member(
                        user_id=user.id,
                        name=member_name.strip(),
                        email=email,
                        phone=phone.strip() if phone and phone.strip() else None,
                        registered_at=utcnow(),
                    )
                )
                db.flush()
            ensure_not_cancelled(cancel)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError("Email or Username already exists.") from exc
        except Exception:
            db.rollback()
            raise
        logger.info("user_created", user_id=user.id, role_id=role_id, with_member=member_name is not None)
        return user

    def get(self, db: Session, user_id: int) -> User:
        user = load_user(db, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found.")
        return user

    def list(self, db: Session, limit: int = 50, offset: int = 0) -> List[User]:
        return db.query(User).order_by(User.id.desc()).offset(offset).limit(limit).all()

    def change_password(self, db: Session, user_id: int, new_password: str) -> None:
        if not new_password or len(new_password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        try:
            user = self.get(db, user_id)
            user.password_hash = self.credentials.hash(new_password)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("user_password_changed", user_id=user_id)

    def update(self, db: Session, user_id: int, username: str, email: str) -> User:
        username = (username or "").strip()
        email = normalize_email(email)
        if not username or not email:
            raise ValidationError("Username and email are required.")
        try:
            user = self.get(db, user_id)
            if email != user.email and email_in_use(db, email, exclude_user_id=user_id):
                raise EmailTaken(f"Email '{email}' is already in use.", detail={"field": "email"})
            taken = db.query(User.id).filter(User.username == username, User.id != user_id).first()
            if taken is not None:
                raise ConflictError(f"Username '{username}' is already in use.", detail={"field": "username"})
            user.username = username
            user.email = email
            if user.member is not None:
                user.member.email = email
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError("Email or Username already exists.") from exc
        except Exception:
            db.rollback()
            raise
        logger.info("user_updated", user_id=user_id)
        return user

    def set_role(self, db: Session, user_id: int, role_id: int) -> User:
        try:
            user = self.get(db, user_id)
            if db.get(Role, role_id) is None:
                raise ValidationError(f"Role {role_id} does not exist.")
            user.role_id = role_id
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("user_role_changed", user_id=user_id, role_id=role_id)
        return user

    def delete(self, db: Session, user_id: int) -> None:
        try:
            user = self.get(db, user_id)
            if user.member is not None and has_borrow_history(db, user.member.id):
                raise HasBorrowHistory("Cannot delete a user whose member profile has borrow records.")
            db.delete(user)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("user_deleted", user_id=user_id)

    def _permission(self, db: Session, name: str) -> Permission:
        name = (name or "").strip()
        perm = permissions_by_name(db, [name]).get(name.lower())
        if perm is None:
            raise ValidationError(f"Permission '{name}' does not exist.")
        return perm

    def grant(self, db: Session, user_id: int, permission_name: str) -> User:
        """Give the user a permission beyond its role; clears a matching denial."""
        try:
            user = self.get(db, user_id)
            perm = self._permission(db, permission_name)
            if all(p.id != perm.id for p in user.granted_permissions):
                user.granted_permissions.append(perm)
            user.denied_permissions = [d for d in user.denied_permissions if d.permission_id != perm.id]
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("user_permission_granted", user_id=user_id, permission=permission_name)
        return user

    def deny(self, db: Session, user_id: int, permission_name: str) -> User:
        try:
            user = self.get(db, user_id)
            perm = self._permission(db, permission_name)
            if all(d.permission_id != perm.id for d in user.denied_permissions):
                user.denied_permissions.append(UserDeniedPermission(permission_id=perm.id))
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("user_permission_denied", user_id=user_id, permission=permission_name)
        return user

    def clear_overrides(self, db: Session, user_id: int, permission_name: str) -> User:
        """Drop any direct grant or denial of ``permission_name`` for the user."""
        try:
            user = self.get(db, user_id)
            perm = self._permission(db, permission_name)
            user.granted_permissions = [p for p in user.granted_permissions if p.id != perm.id]
            user.denied_permissions = [d for d in user.denied_permissions if d.permission_id != perm.id]
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("user_permission_overrides_cleared", user_id=user_id, permission=permission_name)
        return user


user_service = UserService()
