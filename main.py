import asyncio
import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, status
from sqlalchemy.orm import Session

import database
from auth import Principal, auth_service, get_current_principal, require
from borrowing import ledger
from catalog import BookData, book_service
from database import get_db, session_scope
from error_handling import register_exception_handlers
from errors import AuthenticationError
from logs import bind_request_id, get_logger
from members import member_service
from schemas import (
    AdminUserCreate,
    BookCreate,
    BookOut,
    BookUpdate,
    BorrowCreate,
    BorrowOut,
    BorrowStatusOut,
    BorrowUpdate,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    MemberOut,
    MemberUpdate,
    PasswordChange,
    PermissionChange,
    RegisterRequest,
    RoleChange,
    UserOut,
    UserUpdate,
    ok,
)
from seed import seed_all
from users import user_service

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.engine is None:
        database.init_engine(create_schema=True)
    with session_scope() as db:
        seed_all(db)
    yield
    if database.engine is not None:
        database.engine.dispose()


# Create FastAPI app
app = FastAPI(title="Library API", lifespan=lifespan)
register_exception_handlers(app)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = bind_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


async def request_cancellation(request: Request):
    """Event that is set once the client disconnects mid-request."""
    cancel = threading.Event()

    async def watch():
        while not cancel.is_set():
            if await request.is_disconnected():
                logger.info("client_disconnected", path=request.url.path)
                cancel.set()
                break
            await asyncio.sleep(0.05)

    watcher = asyncio.create_task(watch())
    try:
        yield cancel
    finally:
        watcher.cancel()


auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
book_router = APIRouter(prefix="/api/books", tags=["books"])
member_router = APIRouter(prefix="/api/members", tags=["members"])
borrow_router = APIRouter(prefix="/api/borrow-records", tags=["borrow-records"])
user_router = APIRouter(prefix="/api/users", tags=["users"])


def _dump(model, obj) -> dict:
    return model.model_validate(obj).model_dump(mode="json")


# Login API
@auth_router.post("/login")
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    result = auth_service.login(db, payload.email, payload.password)
    if result is None:
        raise AuthenticationError("Invalid email or password.", reason="bad_credentials")

    if result.role_id is None:
        message = "Login successful but user has no role assigned."
    elif not result.permissions:
        message = f"Login successful. You are logged in as '{result.role_name}', but you have no permissions assigned yet."
    else:
        message = f"Login successful. You are logged in as '{result.role_name}'."
    body = LoginResponse(
        token=result.token,
        role=result.role_name,
        permissions=result.permissions,
        expires_at=result.expires_at,
    ).model_dump(mode="json")
    return ok({"message": message, **body})


# Logout API: revokes the presented token until it expires
@auth_router.post("/logout")
def logout(
    request: Request,
    db: Session = Depends(get_db),
    cancel: threading.Event = Depends(request_cancellation),
):
    revoked_until = auth_service.logout(db, request.headers.get("Authorization"), cancel=cancel)
    body = LogoutResponse(revoked_until=revoked_until).model_dump(mode="json")
    return ok({"message": "Logout successful. Token is now invalidated.", **body})


# Member self-registration
@auth_router.post("/register", status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    db: Session = Depends(get_db),
    cancel: threading.Event = Depends(request_cancellation),
):
    user = user_service.create_user(
        db,
        username=payload.username,
        email=payload.email,
        password=payload.password,
        member_name=payload.name,
        phone=payload.phone,
        cancel=cancel,
    )
    return ok({"message": "User registered successfully", "user_id": user.id, "member_id": user.member.id})


# Get All Books API
@book_router.get("")
def list_books(
    q: Optional[str] = None,
    isbn: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("book.read")),
):
    books = book_service.list(db, q=q, isbn=isbn, limit=min(max(limit, 1), 200), offset=max(offset, 0))
    return ok([_dump(BookOut, b) for b in books])


# Get Book API
@book_router.get("/{book_id}")
def get_book(book_id: int, db: Session = Depends(get_db), principal: Principal = Depends(require("book.read"))):
    return ok(_dump(BookOut, book_service.get(db, book_id)))


# Create Book API
@book_router.post("", status_code=status.HTTP_201_CREATED)
def create_book(
    payload: BookCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("book.create")),
    cancel: threading.Event = Depends(request_cancellation),
):
    book = book_service.create(db, BookData(**payload.model_dump()), cancel=cancel)
    return ok(_dump(BookOut, book_service.get(db, book.id)))


# Update Book API
@book_router.put("/{book_id}")
def update_book(
    book_id: int,
    payload: BookUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("book.update")),
    cancel: threading.Event = Depends(request_cancellation),
):
    book_service.update(db, book_id, BookData(**payload.model_dump()), cancel=cancel)
    return ok(_dump(BookOut, book_service.get(db, book_id)))


# Delete Book API
@book_router.delete("/{book_id}")
def delete_book(
    book_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("book.delete")),
    cancel: threading.Event = Depends(request_cancellation),
):
    book_service.delete(db, book_id, cancel=cancel)
    return ok({"message": "Book deleted successfully"})


@member_router.get("")
def list_members(
    q: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("member.read")),
):
    members = member_service.list(db, q=q, limit=min(max(limit, 1), 200), offset=max(offset, 0))
    return ok([_dump(MemberOut, m) for m in members])


@member_router.get("/me")
def get_my_profile(db: Session = Depends(get_db), principal: Principal = Depends(get_current_principal)):
    return ok(_dump(MemberOut, member_service.get_by_user(db, principal.user_id)))


@member_router.put("/me")
def update_my_profile(
    payload: MemberUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("member.update")),
    cancel: threading.Event = Depends(request_cancellation),
):
    member = member_service.update_self(
        db, principal.user_id, payload.name, payload.email, payload.phone, cancel=cancel
    )
    return ok(_dump(MemberOut, member))


@member_router.get("/{member_id}")
def get_member(member_id: int, db: Session = Depends(get_db), principal: Principal = Depends(require("member.read"))):
    return ok(_dump(MemberOut, member_service.get(db, member_id)))


# Staff-only profile edit
@member_router.put("/{member_id}")
def update_member(
    member_id: int,
    payload: MemberUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("staff")),
    cancel: threading.Event = Depends(request_cancellation),
):
    member = member_service.admin_update(db, member_id, payload.name, payload.email, payload.phone, cancel=cancel)
    return ok(_dump(MemberOut, member))


@member_router.delete("/{member_id}")
def delete_member(
    member_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("admin")),
    cancel: threading.Event = Depends(request_cancellation),
):
    member_service.delete(db, member_id, cancel=cancel)
    return ok({"message": f"Member {member_id} deleted successfully"})


@borrow_router.get("")
def list_borrow_records(
    member_id: Optional[int] = None,
    book_id: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("borrow.read")),
):
    records = ledger.list(db, member_id=member_id, book_id=book_id, limit=min(max(limit, 1), 200), offset=max(offset, 0))
    return ok([_dump(BorrowOut, r) for r in records])


# Status and overdue days for each record
@borrow_router.get("/status")
def borrow_status(
    member_id: Optional[int] = None,
    book_id: Optional[int] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("borrow.read")),
):
    rows = ledger.status_rows(db, member_id=member_id, book_id=book_id)
    return ok([_dump(BorrowStatusOut, row) for row in rows])


@borrow_router.get("/{record_id}")
def get_borrow_record(record_id: int, db: Session = Depends(get_db), principal: Principal = Depends(require("borrow.read"))):
    return ok(_dump(BorrowOut, ledger.get(db, record_id)))


# Borrow Book API
@borrow_router.post("", status_code=status.HTTP_201_CREATED)
def create_borrow_record(
    payload: BorrowCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("borrow.create")),
    cancel: threading.Event = Depends(request_cancellation),
):
    record = ledger.create(db, payload.member_id, payload.book_id, payload.duration_days, cancel=cancel)
    return ok(_dump(BorrowOut, record))


@borrow_router.put("/{record_id}")
def update_borrow_record(
    record_id: int,
    payload: BorrowUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("borrow.update")),
    cancel: threading.Event = Depends(request_cancellation),
):
    record = ledger.update(db, record_id, payload.member_id, payload.book_id, payload.duration_days, cancel=cancel)
    return ok(_dump(BorrowOut, record))


@borrow_router.delete("/{record_id}")
def delete_borrow_record(
    record_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("borrow.delete")),
    cancel: threading.Event = Depends(request_cancellation),
):
    ledger.delete(db, record_id, cancel=cancel)
    return ok({"deleted": True})


# Return Book API
@borrow_router.post("/{record_id}/return")
def return_borrow_record(
    record_id: int,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("borrow.update")),
    cancel: threading.Event = Depends(request_cancellation),
):
    record = ledger.return_book(db, record_id, cancel=cancel)
    return ok(_dump(BorrowOut, record))


# User administration (Admin only)
@user_router.get("")
def list_users(
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("admin")),
):
    users = user_service.list(db, limit=min(max(limit, 1), 200), offset=max(offset, 0))
    return ok([_dump(UserOut, u) for u in users])


@user_router.get("/{user_id}")
def get_user(user_id: int, db: Session = Depends(get_db), principal: Principal = Depends(require("admin"))):
    user = user_service.get(db, user_id)
    data = _dump(UserOut, user)
    data["granted_permissions"] = sorted(p.name for p in user.granted_permissions)
    data["denied_permissions"] = sorted(d.permission.name for d in user.denied_permissions)
    return ok(data)


@user_router.post("", status_code=status.HTTP_201_CREATED)
def admin_register(
    payload: AdminUserCreate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("admin")),
    cancel: threading.Event = Depends(request_cancellation),
):
    user = user_service.create_user(
        db,
        username=payload.username,
        email=payload.email,
        password=payload.password,
        role_id=payload.role_id,
        member_name=payload.member_name,
        cancel=cancel,
    )
    return ok(_dump(UserOut, user))


@user_router.put("/{user_id}")
def update_user(
    user_id: int,
    payload: UserUpdate,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("admin")),
):
    return ok(_dump(UserOut, user_service.update(db, user_id, payload.username, payload.email)))


@user_router.put("/{user_id}/password")
def change_password(
    user_id: int,
    payload: PasswordChange,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("admin")),
):
    user_service.change_password(db, user_id, payload.new_password)
    return ok({"message": "Password updated"})


@user_router.put("/{user_id}/role")
def change_role(
    user_id: int,
    payload: RoleChange,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("admin")),
):
    return ok(_dump(UserOut, user_service.set_role(db, user_id, payload.role_id)))


@user_router.post("/{user_id}/permissions/grant")
def grant_permission(
    user_id: int,
    payload: PermissionChange,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("admin")),
):
    user_service.grant(db, user_id, payload.permission)
    return ok({"message": f"Granted '{payload.permission}'; takes effect at the user's next login"})


@user_router.post("/{user_id}/permissions/deny")
def deny_permission(
    user_id: int,
    payload: PermissionChange,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("admin")),
):
    user_service.deny(db, user_id, payload.permission)
    return ok({"message": f"Denied '{payload.permission}'; takes effect at the user's next login"})


@user_router.delete("/{user_id}/permissions/{permission}")
def clear_permission_overrides(
    user_id: int,
    permission: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(require("admin")),
):
    user_service.clear_overrides(db, user_id, permission)
    return ok({"message": f"Cleared overrides for '{permission}'"})


@user_router.delete("/{user_id}")
def delete_user(user_id: int, db: Session = Depends(get_db), principal: Principal = Depends(require("admin"))):
    user_service.delete(db, user_id)
    return ok({"message": f"User {user_id} deleted successfully"})


app.include_router(auth_router)
app.include_router(book_router)
app.include_router(member_router)
app.include_router(borrow_router)
app.include_router(user_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
