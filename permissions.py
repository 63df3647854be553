from __future__ import annotations

from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from models import Permission, Role, RolePermission, User, UserDeniedPermission

ADMIN_ROLE_ID = 1
EMPLOYEE_ROLE_ID = 2
MEMBER_ROLE_ID = 3

ROLE_NAMES = {
    ADMIN_ROLE_ID: "Admin",
    EMPLOYEE_ROLE_ID: "Employee",
    MEMBER_ROLE_ID: "Member",
}

PERMISSION_NAMES = {
    1: "book.read",
    2: "member.add",
    3: "member.update",
    4: "member.delete",
    5: "book.create",
    6: "book.update",
    7: "book.delete",
    8: "member.read",
    9: "borrow.read",
    10: "borrow.update",
    11: "borrow.delete",
    12: "borrow.create",
}

ROLE_PERMISSION_IDS = {
    ADMIN_ROLE_ID: list(PERMISSION_NAMES),
    EMPLOYEE_ROLE_ID: [1, 2, 3, 5, 6, 8],
    MEMBER_ROLE_ID: [1],
}


def resolve_permissions(user: Optional[User]) -> set[str]:
    """Effective permission names: (role grants | direct grants) - denials.

    Permissions are matched by id so a renamed permission still lines up with
    its denial. The role, direct grants and denials must already be loaded.
    """
    if user is None:
        return set()

    granted: dict[int, Permission] = {}
    if user.role is not None:
        for link in user.role.role_permissions:
            if link.permission is not None:
                granted.setdefault(link.permission.id, link.permission)
    for perm in user.granted_permissions:
        granted.setdefault(perm.id, perm)

    denied_ids = {denial.permission_id for denial in user.denied_permissions}

    names: dict[str, str] = {}
    for perm_id, perm in granted.items():
        if perm_id in denied_ids or not perm.name:
            continue
        names.setdefault(perm.name.casefold(), perm.name)
    return set(names.values())


def user_with_grants_query(db: Session):
    """Query users with everything ``resolve_permissions`` reads."""
    return db.query(User).options(
        selectinload(User.role).selectinload(Role.role_permissions).selectinload(RolePermission.permission),
        selectinload(User.granted_permissions),
        selectinload(User.denied_permissions).selectinload(UserDeniedPermission.permission),
    )


def load_user_by_email(db: Session, email: str) -> Optional[User]:
    normalized = (email or "").strip().lower()
    return user_with_grants_query(db).filter(func.lower(User.email) == normalized).first()


def load_user(db: Session, user_id: int) -> Optional[User]:
    return user_with_grants_query(db).filter(User.id == user_id).first()


def permissions_by_name(db: Session, names: Iterable[str]) -> dict[str, Permission]:
    """Permissions keyed by lower-cased name; on a case-only clash the lowest id wins."""
    wanted = {n.strip().lower() for n in names if n and n.strip()}
    if not wanted:
        return {}
    rows = (
        db.query(Permission)
        .filter(func.lower(Permission.name).in_(wanted))
        .order_by(Permission.id.desc())
        .all()
    )
    return {p.name.lower(): p for p in rows}
