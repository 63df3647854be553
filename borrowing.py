from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from config import get_settings
from database import begin_serializable, ensure_not_cancelled, is_serialization_failure
from errors import (
    AlreadyReturned,
    ConflictError,
    DuplicateActiveBorrow,
    NoCopiesAvailable,
    NotFoundError,
    ValidationError,
)
from logs import get_logger
from models import Book, BorrowRecord, Member, utcnow

logger = get_logger(__name__)

MIN_DURATION_DAYS = 1
MAX_DURATION_DAYS = 365

STATUS_ACTIVE = "Active"
STATUS_OVERDUE = "Overdue"
STATUS_RETURNED = "Returned"
STATUS_RETURNED_LATE = "Returned (Late)"


def validate_duration(duration_days) -> int:
    if isinstance(duration_days, bool) or not isinstance(duration_days, int):
        raise ValidationError("DurationDays must be between 1 and 365.")
    if not MIN_DURATION_DAYS <= duration_days <= MAX_DURATION_DAYS:
        raise ValidationError("DurationDays must be between 1 and 365.")
    return duration_days


def active_borrow_count(db: Session, book_id: int) -> int:
    return (
        db.query(func.count(BorrowRecord.id))
        .filter(BorrowRecord.book_id == book_id, BorrowRecord.returned_date.is_(None))
        .scalar()
    )


@dataclass
class BorrowStatusRow:
    id: int
    member_id: int
    member_name: Optional[str]
    book_id: int
    book_title: Optional[str]
    borrowed_date: datetime
    due_date: datetime
    returned_date: Optional[datetime]
    status: str
    overdue_days: int


def classify(due_date: datetime, returned_date: Optional[datetime], now: datetime) -> tuple[str, int]:
    """Status label and whole overdue days for one record as of ``now``."""
    effective_end = returned_date or now
    if returned_date is None:
        status = STATUS_ACTIVE if now <= due_date else STATUS_OVERDUE
    else:
        status = STATUS_RETURNED_LATE if effective_end > due_date else STATUS_RETURNED
    if effective_end > due_date:
        overdue_days = math.floor((effective_end - due_date).total_seconds() / 86400)
    else:
        overdue_days = 0
    return status, overdue_days


class BorrowLedger:
    """Lends copies of books to members.

    Every operation runs on the caller's session and owns its transaction:
    it commits on success and rolls back on any failure, including
    cancellation, so no partial state survives.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow, max_attempts: Optional[int] = None):
        self.clock = clock
        self._max_attempts = max_attempts

    @property
    def max_attempts(self) -> int:
        return self._max_attempts or get_settings().borrow_max_attempts

    def create(
        self,
        db: Session,
        member_id: int,
        book_id: int,
        duration_days: int,
        cancel: Optional[threading.Event] = None,
    ) -> BorrowRecord:
        validate_duration(duration_days)
        attempt = 0
        while True:
            attempt += 1
            try:
                record = self._create_once(db, member_id, book_id, duration_days, cancel)
            except IntegrityError as exc:
                db.rollback()
                # the partial unique index caught a concurrent duplicate
                logger.warning("borrow_create_constraint_conflict", member_id=member_id, book_id=book_id)
                raise DuplicateActiveBorrow("Member already has an active borrow for this book.") from exc
            except DBAPIError as exc:
                db.rollback()
                if not is_serialization_failure(exc):
                    raise
                if attempt >= self.max_attempts:
                    logger.warning("borrow_create_retries_exhausted", book_id=book_id, attempts=attempt)
                    raise ConflictError("The book is being borrowed concurrently; try again.") from exc
                logger.info("borrow_create_retry", book_id=book_id, attempt=attempt)
                continue
            except Exception:
                db.rollback()
                raise
            logger.info(
                "borrow_record_created",
                borrow_id=record.id,
                member_id=member_id,
                book_id=book_id,
                due_date=record.due_date.isoformat(),
            )
            return record

    def _create_once(self, db, member_id, book_id, duration_days, cancel) -> BorrowRecord:
        ensure_not_cancelled(cancel)
        begin_serializable(db)

        book = db.query(Book).filter(Book.id == book_id).first()
        if book is None:
            raise ValidationError(f"Book with ID {book_id} not found.")

        if db.query(Member.id).filter(Member.id == member_id).first() is None:
            raise ValidationError(f"Member with ID {member_id} not found.")

        duplicate_active = (
            db.query(BorrowRecord.id)
            .filter(
                BorrowRecord.member_id == member_id,
                BorrowRecord.book_id == book_id,
                BorrowRecord.returned_date.is_(None),
            )
            .first()
        )
        if duplicate_active is not None:
            raise DuplicateActiveBorrow("Member already has an active borrow for this book.")

        # count and insert share this transaction
        available = book.copies_count - active_borrow_count(db, book_id)
        if available <= 0:
            raise NoCopiesAvailable("No copies available for this book currently.")

        now = self.clock()
        record = BorrowRecord(
            member_id=member_id,
            book_id=book_id,
            borrowed_date=now,
            due_date=now + timedelta(days=duration_days),
        )
        db.add(record)
        db.flush()
        ensure_not_cancelled(cancel)
        db.commit()
        return record

    def update(
        self,
        db: Session,
        record_id: int,
        member_id: int,
        book_id: int,
        duration_days: int,
        cancel: Optional[threading.Event] = None,
    ) -> BorrowRecord:
        """Re-point a record and restart its loan period from now.

        Only existence of the referenced book and member is checked; the
        record keeps the slot it already holds.
        """
        validate_duration(duration_days)
        try:
            record = db.get(BorrowRecord, record_id)
            if record is None:
                raise NotFoundError(f"Borrow record {record_id} not found.")
            if db.query(Book.id).filter(Book.id == book_id).first() is None:
                raise ValidationError(f"Book with ID {book_id} not found.")
            if db.query(Member.id).filter(Member.id == member_id).first() is None:
                raise ValidationError(f"Member with ID {member_id} not found.")

            now = self.clock()
            record.member_id = member_id
            record.book_id = book_id
            record.borrowed_date = now
            record.due_date = now + timedelta(days=duration_days)
            db.flush()
            ensure_not_cancelled(cancel)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise DuplicateActiveBorrow("Member already has an active borrow for this book.") from exc
        except Exception:
            db.rollback()
            raise
        logger.info("borrow_record_updated", borrow_id=record_id, member_id=member_id, book_id=book_id)
        return record

    def delete(self, db: Session, record_id: int, cancel: Optional[threading.Event] = None) -> None:
        try:
            record = db.get(BorrowRecord, record_id)
            if record is None:
                raise NotFoundError(f"Borrow record {record_id} not found.")
            db.delete(record)
            db.flush()
            ensure_not_cancelled(cancel)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("borrow_record_deleted", borrow_id=record_id)

    def return_book(self, db: Session, record_id: int, cancel: Optional[threading.Event] = None) -> BorrowRecord:
        """Close an active record.

        The guarded UPDATE is the first statement of the transaction, so of
        two concurrent returns exactly one matches the row.
        """
        try:
            ensure_not_cancelled(cancel)
            returned_at = self.clock()
            updated = (
                db.query(BorrowRecord)
                .filter(BorrowRecord.id == record_id, BorrowRecord.returned_date.is_(None))
                .update({BorrowRecord.returned_date: returned_at}, synchronize_session=False)
            )
            if not updated:
                if db.query(BorrowRecord.id).filter(BorrowRecord.id == record_id).first() is None:
                    raise NotFoundError(f"Borrow record {record_id} not found.")
                raise AlreadyReturned("Borrow record is already returned.")
            record = db.get(BorrowRecord, record_id, populate_existing=True)
            ensure_not_cancelled(cancel)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("borrow_record_returned", borrow_id=record_id, returned_date=record.returned_date.isoformat())
        return record

    def get(self, db: Session, record_id: int) -> BorrowRecord:
        record = db.get(BorrowRecord, record_id)
        if record is None:
            raise NotFoundError(f"Borrow record {record_id} not found.")
        return record

    def list(
        self,
        db: Session,
        member_id: Optional[int] = None,
        book_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[BorrowRecord]:
        query = db.query(BorrowRecord)
        if member_id is not None:
            query = query.filter(BorrowRecord.member_id == member_id)
        if book_id is not None:
            query = query.filter(BorrowRecord.book_id == book_id)
        return query.order_by(BorrowRecord.id.desc()).offset(offset).limit(limit).all()

    def status_rows(
        self,
        db: Session,
        member_id: Optional[int] = None,
        book_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[BorrowStatusRow]:
        now = now or self.clock()
        query = (
            db.query(BorrowRecord, Member.name, Book.title)
            .join(Member, BorrowRecord.member_id == Member.id)
            .join(Book, BorrowRecord.book_id == Book.id)
        )
        if member_id is not None:
            query = query.filter(BorrowRecord.member_id == member_id)
        if book_id is not None:
            query = query.filter(BorrowRecord.book_id == book_id)

        rows = []
        for record, member_name, book_title in query.order_by(BorrowRecord.id.desc()).all():
            status, overdue_days = classify(record.due_date, record.returned_date, now)
            rows.append(
                BorrowStatusRow(
                    id=record.id,
                    member_id=record.member_id,
                    member_name=member_name,
                    book_id=record.book_id,
                    book_title=book_title,
                    borrowed_date=record.borrowed_date,
                    due_date=record.due_date,
                    returned_date=record.returned_date,
                    status=status,
                    overdue_days=overdue_days,
                )
            )
        return rows


ledger = BorrowLedger()
