# src/payment/routes.py
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from auth.models import User
from auth.routes import ensure_subject_access, get_current_user
from clock import Clock, get_clock
from database import get_db
from errors import AuthError, NotFoundError, ProviderError
from notifications.services import NotificationDispatcher
from payment.gateway import ProviderGateway
from payment.schemas import (
    PaymentCreateRequest,
    PaymentCreateResponse,
    PaymentResponse,
    PaymentStatusResponse,
    WebhookAck,
    WebhookPayload,
)
from payment.services import ReconciliationEngine
from payment.status import client_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def get_gateway(request: Request) -> ProviderGateway:
    return request.app.state.gateway


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_engine(
    db: Session = Depends(get_db),
    gateway: ProviderGateway = Depends(get_gateway),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    clock: Clock = Depends(get_clock),
) -> ReconciliationEngine:
    return ReconciliationEngine(db, gateway, dispatcher, clock)


def _acknowledge(engine: ReconciliationEngine, payload: WebhookPayload) -> WebhookAck:
    reference = payload.merchant_reference()
    if not reference:
        raise HTTPException(status_code=400, detail="Missing merchant reference")

    tracking_id = payload.tracking_id()
    ack = WebhookAck(orderTrackingId=tracking_id, orderMerchantReference=reference)
    logger.info(f"Payment notification received: ref={reference}, tracking={tracking_id}, status={payload.status()}")
    try:
        result = engine.handle_notification(reference, tracking_id, payload.status())
    except NotFoundError:
        logger.warning(f"Notification for unknown reference {reference} acknowledged")
        return ack.model_copy(update={"known": False})
    except (AuthError, ProviderError) as e:
        # the pending-payment poll picks this attempt up later
        logger.warning(f"Could not resolve status for {reference}: {e.message}")
        return ack.model_copy(update={"outcome": "deferred"})
    return ack.model_copy(update={"outcome": result.outcome.value})


@router.post("/create", response_model=PaymentCreateResponse)
def create_payment(
    data: PaymentCreateRequest,
    engine: ReconciliationEngine = Depends(get_engine),
    current_user: User = Depends(get_current_user),
):
    """Start a hosted checkout for a subscription plan."""
    ensure_subject_access(data.subject_id, current_user)
    result = engine.create_checkout(data.subject_id, data.plan, data.amount, data.phone)
    return PaymentCreateResponse(checkout_url=result.checkout_url, merchant_reference=result.merchant_reference)


@router.post("/webhook", response_model=WebhookAck)
def payment_webhook(payload: WebhookPayload, engine: ReconciliationEngine = Depends(get_engine)):
    """Provider callback. Acknowledged for known, unknown and duplicate references alike."""
    return _acknowledge(engine, payload)


@router.get("/webhook", response_model=WebhookAck)
def payment_ipn(
    OrderTrackingId: Optional[str] = None,
    OrderMerchantReference: Optional[str] = None,
    OrderNotificationType: Optional[str] = None,
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Pesapal IPN registered with GET notifications."""
    payload = WebhookPayload(
        OrderTrackingId=OrderTrackingId,
        OrderMerchantReference=OrderMerchantReference,
        OrderNotificationType=OrderNotificationType,
    )
    return _acknowledge(engine, payload)


@router.get("/status/{merchant_reference}", response_model=PaymentStatusResponse)
def payment_status(merchant_reference: str, engine: ReconciliationEngine = Depends(get_engine)):
    """Check payment status, asking the provider while the attempt is pending."""
    result = engine.poll(merchant_reference)
    return PaymentStatusResponse(
        merchant_reference=merchant_reference,
        status=client_status(result.status, result.provider_status),
    )


@router.get("/subject/{subject_id}", response_model=List[PaymentResponse])
def get_subject_payments(
    subject_id: int,
    engine: ReconciliationEngine = Depends(get_engine),
    current_user: User = Depends(get_current_user),
):
    ensure_subject_access(subject_id, current_user)
    return engine.payment_history(subject_id)
