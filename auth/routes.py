# src/auth/routes.py
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from auth.models import User
from auth.schemas import UserResponse
from auth.services import AuthService
from database import get_db
from subscription.models import Subscription

router = APIRouter(prefix="/auth", tags=["auth"])
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme), db: Session = Depends(get_db)) -> User:
    """Retrieve the current authenticated user."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user_id = AuthService.decode_subject(credentials.credentials)
    user = AuthService.get_user(user_id, db) if user_id is not None else None
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def check_admin_role(current_user: User = Depends(get_current_user)) -> User:
    """Ensure the user has admin role."""
    if current_user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return current_user


def ensure_subject_access(subject_id: int, current_user: User) -> None:
    """Users act on their own records only; admins may act for anyone."""
    if current_user.role != "admin" and current_user.id != subject_id:
        raise HTTPException(status_code=403, detail="Not allowed to act for this user")


@router.get("/me", response_model=UserResponse)
def read_users_me(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Get current user details with the subscription summary."""
    sub = db.query(Subscription).filter(Subscription.subject_id == current_user.id).first()

    return {
        "id": current_user.id,
        "email": current_user.email,
        "full_name": current_user.full_name,
        "role": current_user.role,
        "trial_end": current_user.trial_end,
        "trial_used": current_user.trial_used,
        "subscription_plan": sub.plan_name if sub else None,
        "subscription_status": sub.status if sub else None,
        "subscription_expires_at": sub.end_date if sub else None,
        "created_at": current_user.created_at,
    }
