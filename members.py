from __future__ import annotations

import threading
from typing import List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import ensure_not_cancelled
from errors import EmailTaken, HasBorrowHistory, NotFoundError, ValidationError
from logs import get_logger
from models import BorrowRecord, Member, User

logger = get_logger(__name__)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def email_in_use(db: Session, email: str, *, exclude_user_id: Optional[int] = None) -> bool:
    """True when any User or Member other than ``exclude_user_id``'s owns ``email``."""
    email = normalize_email(email)
    users = db.query(User.id).filter(func.lower(User.email) == email)
    members = db.query(Member.id).filter(func.lower(Member.email) == email)
    if exclude_user_id is not None:
        users = users.filter(User.id != exclude_user_id)
        members = members.filter(Member.user_id != exclude_user_id)
    return users.first() is not None or members.first() is not None


def has_borrow_history(db: Session, member_id: int) -> bool:
    return db.query(BorrowRecord.id).filter(BorrowRecord.member_id == member_id).first() is not None


class MemberService:
    def get(self, db: Session, member_id: int) -> Member:
        member = db.get(Member, member_id)
        if member is None:
            raise NotFoundError(f"Member {member_id} not found.")
        return member

    def get_by_user(self, db: Session, user_id: int) -> Member:
        member = db.query(Member).filter(Member.user_id == user_id).first()
        if member is None:
            raise NotFoundError(f"Member for user {user_id} not found.")
        return member

    def list(self, db: Session, q: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[Member]:
        query = db.query(Member)
        if q and q.strip():
            like = f"%{q.strip().lower()}%"
            query = query.filter(
                or_(func.lower(Member.name).like(like), func.lower(Member.email).like(like), Member.phone.like(like))
            )
        return query.order_by(Member.id).offset(offset).limit(limit).all()

    def _apply(self, db: Session, member: Member, name: str, email: str, phone: Optional[str], cancel) -> Member:
        new_name = (name or "").strip()
        new_email = normalize_email(email)
        if not new_name or not new_email:
            raise ValidationError("Name and email are required.")
        new_phone = phone.strip() if phone and phone.strip() else None

        try:
            if new_email != normalize_email(member.email):
                if email_in_use(db, new_email, exclude_user_id=member.user_id):
                    raise EmailTaken(f"Email '{email}' is already in use.", detail={"field": "email"})
                member.email = new_email
                # keep the login address in step with the profile
                if member.user is not None:
                    member.user.email = new_email
            member.name = new_name
            member.phone = new_phone
            db.flush()
            ensure_not_cancelled(cancel)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise EmailTaken(f"Email '{email}' is already in use.", detail={"field": "email"}) from exc
        except Exception:
            db.rollback()
            raise
        logger.info("member_updated", member_id=member.id)
        return member

    def update_self(
        self,
        db: Session,
        user_id: int,
        name: str,
        email: str,
        phone: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Member:
        return self._apply(db, self.get_by_user(db, user_id), name, email, phone, cancel)

    def admin_update(
        self,
        db: Session,
        member_id: int,
        name: str,
        email: str,
        phone: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Member:
        return self._apply(db, self.get(db, member_id), name, email, phone, cancel)

    def delete(self, db: Session, member_id: int, cancel: Optional[threading.Event] = None) -> None:
        try:
            member = self.get(db, member_id)
            if has_borrow_history(db, member_id):
                raise HasBorrowHistory("Cannot delete a member that has borrow records.")
            db.delete(member)
            db.flush()
            ensure_not_cancelled(cancel)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("member_deleted", member_id=member_id)


member_service = MemberService()
