from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer failures mapped to HTTP responses.

    Each subclass carries the HTTP status and the stable error code that the
    boundary layer reports to clients.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input was malformed or referenced something that does not exist (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidTokenError(ValidationError):
    """A presented token could not be parsed or its signature did not verify."""
    error_code = "invalid_token"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    ``reason`` names the failing check for logs; clients only see ``message``.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Unauthorized: Please login first.", *, reason: str = "invalid_token", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class ForbiddenError(ServiceError):
    """Valid credentials without the required permission or role (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Business rule violated by otherwise well-formed input (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateActiveBorrow(ConflictError):
    error_code = "duplicate_active_borrow"


class NoCopiesAvailable(ConflictError):
    error_code = "no_copies_available"


class AlreadyReturned(ConflictError):
    error_code = "already_returned"


class HasBorrowHistory(ConflictError):
    error_code = "has_borrow_history"


class DuplicateIsbn(ConflictError):
    error_code = "duplicate_isbn"


class EmailTaken(ConflictError):
    error_code = "email_taken"


class AlreadyRevoked(ConflictError):
    error_code = "already_revoked"


class OperationCancelled(ServiceError):
    """The caller went away before the operation committed (499)."""
    status_code = 499
    error_code = "client_disconnected"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidTokenError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "DuplicateActiveBorrow",
    "NoCopiesAvailable",
    "AlreadyReturned",
    "HasBorrowHistory",
    "DuplicateIsbn",
    "EmailTaken",
    "AlreadyRevoked",
    "OperationCancelled",
]
