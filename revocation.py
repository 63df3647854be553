from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import AlreadyRevoked
from logs import get_logger
from models import RevokedToken, utcnow

logger = get_logger(__name__)


class TokenRevocationStore:
    """Server-side record of tokens invalidated before their natural expiry.

    Tokens are keyed by their ``jti``. Rows are always read from the
    database; nothing is cached between requests.
    """

    def revoke(
        self,
        db: Session,
        jti: str,
        keep_until: datetime,
        *,
        user_id: Optional[int] = None,
    ) -> RevokedToken:
        if self.is_revoked(db, jti):
            raise AlreadyRevoked("Token has already been revoked.")
        entry = RevokedToken(jti=jti, user_id=user_id, keep_until=keep_until, revoked_at=utcnow())
        db.add(entry)
        try:
            db.flush()
        except IntegrityError as exc:
            # a concurrent logout of the same token won the insert
            db.rollback()
            raise AlreadyRevoked("Token has already been revoked.") from exc
        logger.info("token_revoked", jti=jti, user_id=user_id, keep_until=keep_until.isoformat())
        return entry

    def is_revoked(self, db: Session, jti: Optional[str]) -> bool:
        if not jti:
            return False
        return db.query(RevokedToken.id).filter(RevokedToken.jti == jti).first() is not None

    def prune_expired(self, db: Session, now: Optional[datetime] = None) -> int:
        """Drop entries whose token has expired anyway; returns rows removed."""
        cutoff = now or utcnow()
        removed = (
            db.query(RevokedToken)
            .filter(RevokedToken.keep_until < cutoff)
            .delete(synchronize_session=False)
        )
        if removed:
            logger.info("revoked_tokens_pruned", removed=removed)
        return removed


revocation_store = TokenRevocationStore()
