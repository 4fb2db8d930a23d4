# src/admin/routes.py
import logging
from dataclasses import asdict
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from auth.models import User
from auth.routes import check_admin_role
from clock import Clock, get_clock
from config import settings
from database import get_db
from payment.gateway import ProviderGateway
from payment.models import PaymentAttempt
from payment.routes import get_gateway
from payment.schemas import PaymentResponse
from subscription.models import Subscription
from subscription.schemas import AdminOverrideRequest, SubscriptionResponse
from subscription.services import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/payments", response_model=List[PaymentResponse])
def get_payments(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(check_admin_role)
):
    """Retrieve payments with optional status filter."""
    query = db.query(PaymentAttempt)
    if status:
        query = query.filter(PaymentAttempt.status == status)
    return [PaymentResponse.model_validate(p) for p in query.order_by(PaymentAttempt.created_at.desc()).all()]


@router.get("/subscriptions", response_model=List[SubscriptionResponse])
def get_subscriptions(
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: User = Depends(check_admin_role)
):
    """Retrieve subscriptions with optional status filter."""
    query = db.query(Subscription)
    if status:
        query = query.filter(Subscription.status == status)
    return [SubscriptionResponse.model_validate(sub) for sub in query.all()]


@router.patch("/subscriptions/{subject_id}/override", response_model=SubscriptionResponse)
def set_admin_override(
    subject_id: int,
    data: AdminOverrideRequest,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    current_user: User = Depends(check_admin_role)
):
    """Toggle the quota/expiry bypass on a dealer's subscription."""
    sub = SubscriptionService.set_admin_override(subject_id, data.enabled, db, clock.now())
    logger.info(f"Admin {current_user.id} set override={data.enabled} for subject {subject_id}")
    return sub


@router.post("/sweeps/run")
def run_sweep(request: Request, current_user: User = Depends(check_admin_role)):
    """Run the expiry sweep now instead of waiting for the next tick."""
    report = request.app.state.expiry_scheduler.run_once()
    return asdict(report)


@router.post("/pesapal/register-ipn")
def register_ipn(
    gateway: ProviderGateway = Depends(get_gateway),
    current_user: User = Depends(check_admin_role)
):
    """Register the IPN callback URL with Pesapal; the returned id goes into PESAPAL_NOTIFICATION_ID."""
    ipn_id = gateway.register_ipn(settings.PESAPAL_IPN_URL)
    return {"ipn_id": ipn_id, "url": settings.PESAPAL_IPN_URL}
