from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from borrowing import active_borrow_count
from config import get_settings
from database import begin_serializable, ensure_not_cancelled, is_serialization_failure
from errors import ConflictError, DuplicateIsbn, HasBorrowHistory, NotFoundError, ValidationError
from logs import get_logger
from models import Book, BorrowRecord, utcnow

logger = get_logger(__name__)

MIN_YEAR = 1500


def normalize_isbn(isbn: Optional[str]) -> str:
    """Strip spaces and hyphens and case-fold; blank input gives ''."""
    if not isbn or not isbn.strip():
        return ""
    return "".join(ch for ch in isbn if ch not in " -").lower()


def validate_isbn(isbn: str) -> str:
    norm = normalize_isbn(isbn)
    if len(norm) not in (10, 13):
        raise ValidationError(
            "ISBN length must be 10 or 13 digits (X allowed only as last char in ISBN-10) "
            "after removing spaces/hyphens."
        )
    body, last = norm[:-1], norm[-1]
    if not body.isdigit() or not (last.isdigit() or (len(norm) == 10 and last == "x")):
        raise ValidationError(
            "ISBN length must be 10 or 13 digits (X allowed only as last char in ISBN-10) "
            "after removing spaces/hyphens."
        )
    return norm


@dataclass
class BookData:
    title: str
    author: str
    category: str
    year: int
    copies_count: int
    isbn: Optional[str] = None


@dataclass
class BookView:
    id: int
    title: str
    author: str
    category: str
    year: int
    isbn: Optional[str]
    copies_count: int
    active_borrow_count: int
    available_copies: int


class BookService:
    def __init__(self, clock=utcnow):
        self.clock = clock

    def _clean(self, data: BookData) -> tuple[BookData, Optional[str]]:
        title = (data.title or "").strip()
        author = (data.author or "").strip()
        category = (data.category or "").strip()
        if not title or not author or not category:
            raise ValidationError("Title, author and category are required.")
        max_year = self.clock().year
        if not MIN_YEAR <= data.year <= max_year:
            raise ValidationError(f"Year must be between {MIN_YEAR} and {max_year}.")
        if data.copies_count < 0:
            raise ValidationError("CopiesCount cannot be negative.")
        isbn_raw = data.isbn.strip() if data.isbn and data.isbn.strip() else None
        isbn_norm = validate_isbn(isbn_raw) if isbn_raw else None
        cleaned = BookData(
            title=title,
            author=author,
            category=category,
            year=data.year,
            copies_count=data.copies_count,
            isbn=isbn_raw,
        )
        return cleaned, isbn_norm

    def _check_duplicates(self, db: Session, data: BookData, isbn_norm: Optional[str], exclude_id: Optional[int] = None):
        others = db.query(Book.id)
        if exclude_id is not None:
            others = others.filter(Book.id != exclude_id)
        if isbn_norm:
            if others.filter(Book.isbn_normalized == isbn_norm).first() is not None:
                raise DuplicateIsbn(f"ISBN '{data.isbn}' already exists.")
        same_edition = others.filter(Book.title == data.title, Book.author == data.author, Book.year == data.year)
        if same_edition.first() is not None:
            raise ConflictError(
                f"A book titled '{data.title}' by '{data.author}' ({data.year}) already exists."
            )

    def create(self, db: Session, data: BookData, cancel: Optional[threading.Event] = None) -> Book:
        data, isbn_norm = self._clean(data)
        try:
            self._check_duplicates(db, data, isbn_norm)
            book = Book(
                title=data.title,
                author=data.author,
                category=data.category,
                year=data.year,
                copies_count=data.copies_count,
                isbn=data.isbn,
                isbn_normalized=isbn_norm,
            )
            db.add(book)
            db.flush()
            ensure_not_cancelled(cancel)
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise DuplicateIsbn(f"ISBN '{data.isbn}' already exists.") from exc
        except Exception:
            db.rollback()
            raise
        logger.info("book_created", book_id=book.id, isbn=book.isbn)
        return book

    def update(self, db: Session, book_id: int, data: BookData, cancel: Optional[threading.Event] = None) -> Book:
        """Replace a book's fields.

        Copies may not drop below the active loans; the count and the write
        share one serializable transaction.
        """
        data, isbn_norm = self._clean(data)
        attempt = 0
        while True:
            attempt += 1
            try:
                book = self._update_once(db, book_id, data, isbn_norm, cancel)
            except IntegrityError as exc:
                db.rollback()
                raise DuplicateIsbn(f"ISBN '{data.isbn}' is used by another book.") from exc
            except DBAPIError as exc:
                db.rollback()
                if not is_serialization_failure(exc):
                    raise
                if attempt >= get_settings().borrow_max_attempts:
                    logger.warning("book_update_retries_exhausted", book_id=book_id, attempts=attempt)
                    raise ConflictError("The book is being borrowed concurrently; try again.") from exc
                logger.info("book_update_retry", book_id=book_id, attempt=attempt)
                continue
            except Exception:
                db.rollback()
                raise
            logger.info("book_updated", book_id=book_id)
            return book

    def _update_once(self, db, book_id, data, isbn_norm, cancel) -> Book:
        ensure_not_cancelled(cancel)
        begin_serializable(db)
        book = db.get(Book, book_id)
        if book is None:
            raise NotFoundError(f"Book {book_id} not found.")
        self._check_duplicates(db, data, isbn_norm, exclude_id=book_id)
        active = active_borrow_count(db, book_id)
        if data.copies_count < active:
            raise ConflictError(f"CopiesCount cannot drop below the {active} copies currently on loan.")
        book.title = data.title
        book.author = data.author
        book.category = data.category
        book.year = data.year
        book.copies_count = data.copies_count
        book.isbn = data.isbn
        book.isbn_normalized = isbn_norm
        db.flush()
        ensure_not_cancelled(cancel)
        db.commit()
        return book

    def delete(self, db: Session, book_id: int, cancel: Optional[threading.Event] = None) -> None:
        try:
            book = db.get(Book, book_id)
            if book is None:
                raise NotFoundError(f"Book {book_id} not found.")
            if db.query(BorrowRecord.id).filter(BorrowRecord.book_id == book_id).first() is not None:
                raise HasBorrowHistory("Cannot delete a book that has borrow records.")
            db.delete(book)
            db.flush()
            ensure_not_cancelled(cancel)
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info("book_deleted", book_id=book_id)

    def _views(self, query, limit: Optional[int] = None, offset: int = 0) -> List[BookView]:
        active = (
            select(func.count(BorrowRecord.id))
            .where(BorrowRecord.book_id == Book.id, BorrowRecord.returned_date.is_(None))
            .scalar_subquery()
        )
        rows = query.add_columns(active.label("active")).order_by(Book.id).offset(offset).limit(limit).all()
        return [
            BookView(
                id=book.id,
                title=book.title,
                author=book.author,
                category=book.category,
                year=book.year,
                isbn=book.isbn,
                copies_count=book.copies_count,
                active_borrow_count=active_count,
                available_copies=max(0, book.copies_count - active_count),
            )
            for book, active_count in rows
        ]

    def get(self, db: Session, book_id: int) -> BookView:
        views = self._views(db.query(Book).filter(Book.id == book_id))
        if not views:
            raise NotFoundError(f"Book {book_id} not found.")
        return views[0]

    def list(self, db: Session, q: Optional[str] = None, isbn: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[BookView]:
        query = db.query(Book)
        if q and q.strip():
            like = f"%{q.strip()}%"
            query = query.filter(
                or_(Book.title.ilike(like), Book.author.ilike(like), Book.category.ilike(like), Book.isbn.ilike(like))
            )
        if isbn and isbn.strip():
            query = query.filter(Book.isbn_normalized == normalize_isbn(isbn))
        return self._views(query, limit=limit, offset=offset)


book_service = BookService()
