from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from logs import current_request_id


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: current_request_id() or uuid4().hex)


def ok(data: Any = None) -> dict:
    return Envelope(status="ok", data=data).model_dump(mode="json")


# Auth request models
class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=150)
    email: str = Field(..., min_length=3, max_length=200)
    password: str = Field(..., min_length=6)
    phone: Optional[str] = Field(None, max_length=30)


class LoginResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    role: Optional[str]
    permissions: List[str]
    expires_at: datetime


class LogoutResponse(BaseModel):
    revoked_until: datetime


# Book request models
class BookCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    author: str = Field(..., min_length=1, max_length=150)
    category: str = Field(..., min_length=1, max_length=100)
    year: int
    copies_count: int = Field(..., ge=0)
    isbn: Optional[str] = Field(None, max_length=20)


class BookUpdate(BookCreate):
    pass


class BookOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    author: str
    category: str
    year: int
    isbn: Optional[str]
    copies_count: int
    active_borrow_count: int
    available_copies: int


# Member request models
class MemberUpdate(BaseModel):
    name: str = Field(..., min_length=1, max_length=150)
    email: str = Field(..., min_length=3, max_length=200)
    phone: Optional[str] = Field(None, max_length=30)


class MemberOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    name: str
    email: str
    phone: Optional[str]
    registered_at: datetime


# Borrow request models
class BorrowCreate(BaseModel):
    member_id: int
    book_id: int
    duration_days: int


class BorrowUpdate(BorrowCreate):
    pass


class BorrowOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    member_id: int
    book_id: int
    borrowed_date: datetime
    due_date: datetime
    returned_date: Optional[datetime]


class BorrowStatusOut(BorrowOut):
    member_name: Optional[str]
    book_title: Optional[str]
    status: str
    overdue_days: int


# User administration models
class AdminUserCreate(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=200)
    password: str = Field(..., min_length=6)
    role_id: int
    member_name: Optional[str] = Field(None, max_length=150)


class UserUpdate(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=200)


class PasswordChange(BaseModel):
    new_password: str = Field(..., min_length=6)


class RoleChange(BaseModel):
    role_id: int


class PermissionChange(BaseModel):
    permission: str = Field(..., min_length=1)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    role_id: Optional[int]
    created_at: datetime
