# src/subscription/routes.py
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from auth.models import User
from auth.routes import ensure_subject_access, get_current_user
from clock import Clock, get_clock
from database import get_db
from notifications.services import NotificationDispatcher
from payment.routes import get_dispatcher
from subscription.schemas import ListingSlotResponse, SubscriptionResponse, TrialActivateRequest, TrialActivateResponse
from subscription.services import SubscriptionService

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.post("/trial", response_model=TrialActivateResponse)
def activate_trial(
    data: TrialActivateRequest,
    db: Session = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    clock: Clock = Depends(get_clock),
    current_user: User = Depends(get_current_user),
):
    """Activate the one-time free trial."""
    ensure_subject_access(data.subject_id, current_user)
    return SubscriptionService.activate_trial(data.subject_id, db, dispatcher, clock.now())


@router.get("/{subject_id}", response_model=SubscriptionResponse)
def get_subscription(subject_id: int, db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    """Retrieve the subject's subscription."""
    ensure_subject_access(subject_id, current_user)
    sub = SubscriptionService.get_subscription(subject_id, db)
    if not sub:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return sub


@router.post("/{subject_id}/listing-slot", response_model=ListingSlotResponse)
def consume_listing_slot(
    subject_id: int,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    current_user: User = Depends(get_current_user),
):
    """Reserve one listing slot against the subject's quota."""
    ensure_subject_access(subject_id, current_user)
    allowed = SubscriptionService.try_consume_listing_slot(subject_id, db, clock.now())
    return ListingSlotResponse(subject_id=subject_id, allowed=allowed)
