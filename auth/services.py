# src/auth/services.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth.models import User
from config import settings
from ledger.store import LedgerStore

logger = logging.getLogger(__name__)


class AuthService:
    @staticmethod
    def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
        """Create a JWT access token."""
        to_encode = data.copy()
        if expires_delta:
            expire = datetime.now(timezone.utc) + expires_delta
        else:
            expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

    @staticmethod
    def decode_subject(token: str) -> Optional[int]:
        """Return the user id carried in `sub`, or None for an invalid/expired token."""
        try:
            payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        except JWTError:
            return None
        subject = payload.get("sub")
        if subject is None:
            return None
        try:
            return int(subject)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def get_user(user_id: int, db: Session) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def promote_role(subject_id: int, role: str, db: Session, now: datetime) -> bool:
        """
        Set the user's role inside a SAVEPOINT of the caller's transaction.

        A failure rolls back only the savepoint and is logged, so the caller's
        ledger writes still commit. Admins are never demoted.
        """
        try:
            with db.begin_nested():
                changed = LedgerStore(db).promote_role(subject_id, role, now)
        except SQLAlchemyError as e:
            logger.error(f"Role promotion to {role} failed for user {subject_id}: {str(e)}", exc_info=True)
            return False
        if changed:
            logger.info(f"User {subject_id} promoted to {role}")
        return True
