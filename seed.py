from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from config import Settings, get_settings
from logs import get_logger
from models import Permission, Role, RolePermission, User, utcnow
from permissions import ADMIN_ROLE_ID, PERMISSION_NAMES, ROLE_NAMES, ROLE_PERMISSION_IDS
from security import CredentialStore

logger = get_logger(__name__)


def seed_reference_data(db: Session) -> None:
    """Insert the built-in roles, permissions and role grants that are missing."""
    for role_id, name in ROLE_NAMES.items():
        if db.get(Role, role_id) is None:
            db.add(Role(id=role_id, name=name))
    for perm_id, name in PERMISSION_NAMES.items():
        if db.get(Permission, perm_id) is None:
            db.add(Permission(id=perm_id, name=name))
    db.flush()

    existing = {(rp.role_id, rp.permission_id) for rp in db.query(RolePermission).all()}
    for role_id, perm_ids in ROLE_PERMISSION_IDS.items():
        for perm_id in perm_ids:
            if (role_id, perm_id) not in existing:
                db.add(RolePermission(role_id=role_id, permission_id=perm_id))
    db.flush()


def seed_admin(db: Session, settings: Optional[Settings] = None) -> Optional[User]:
    """Create the initial Admin account when no admin exists yet."""
    settings = settings or get_settings()
    if db.query(User).filter(User.role_id == ADMIN_ROLE_ID).first() is not None:
        return None
    admin = User(
        username=settings.seed_admin_username,
        email=settings.seed_admin_email.strip().lower(),
        password_hash=CredentialStore(settings).hash(settings.seed_admin_password),
        role_id=ADMIN_ROLE_ID,
        created_at=utcnow(),
    )
    db.add(admin)
    db.flush()
    logger.info("admin_account_created", email=admin.email)
    return admin


def seed_all(db: Session, settings: Optional[Settings] = None) -> None:
    seed_reference_data(db)
    seed_admin(db, settings)
    db.commit()
