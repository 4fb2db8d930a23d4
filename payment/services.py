# src/payment/services.py
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, List
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth.models import User
from auth.services import AuthService
from clock import Clock, SystemClock
from config import settings
from errors import AuthError, ConflictError, InvalidRequestError, LedgerError, NotFoundError, ProviderError
from ledger.store import LedgerStore
from notifications.services import NotificationDispatcher, notify, PAYMENT_FAILED, PAYMENT_SUCCESS
from payment.gateway import ProviderGateway, ProviderStatus
from payment.models import PaymentAttempt, PENDING, SUCCESS
from payment.schemas import PaymentResponse
from payment.status import normalize_status, INDETERMINATE
from subscription.services import SubscriptionService

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"                    # this call moved the attempt out of pending
    ALREADY_TERMINAL = "already_terminal"  # duplicate or late delivery, nothing done
    CONFLICT = "conflict"                  # a concurrent writer won the compare-and-set
    INDETERMINATE = "indeterminate"        # provider status does not settle the attempt


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    merchant_reference: str
    status: str
    provider_status: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome == ReconcileOutcome.APPLIED


@dataclass(frozen=True)
class CheckoutResult:
    checkout_url: str
    merchant_reference: str


def generate_reference() -> str:
    return f"ORDER-{uuid4().hex[:16].upper()}"


class ReconciliationEngine:
    """
    Turns provider callbacks and status polls into ledger state.

    Any trigger may arrive any number of times and in any order. A terminal
    attempt short-circuits without side effects, and only the caller whose
    compare-and-set moves the attempt out of ``pending`` upserts the
    subscription, promotes the role and sends the notification.
    """

    def __init__(self, db: Session, gateway: ProviderGateway, dispatcher: NotificationDispatcher, clock: Optional[Clock] = None):
        self.db = db
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.ledger = LedgerStore(db)

    def create_checkout(self, subject_id: int, plan_name: str, amount: int, phone: Optional[str]) -> CheckoutResult:
        plan = SubscriptionService.get_plan(plan_name)
        if amount != plan["price"]:
            raise InvalidRequestError(f"Amount {amount} does not match the {plan_name} plan price")
        user = self.db.query(User).filter(User.id == subject_id).first()
        if user is None:
            raise NotFoundError(f"User {subject_id} not found")

        reference = generate_reference()
        now = self.clock.now()
        # The row must exist before the provider hears about the reference.
        try:
            self.ledger.create_attempt(reference, subject_id, plan_name.lower(), amount, settings.CURRENCY, phone, now)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Could not record payment attempt for user {subject_id}: {str(e)}", exc_info=True)
            raise LedgerError("Could not record payment attempt") from e

        metadata = {"plan": plan_name, "phone": phone or user.phone or "", "email": user.email, "first_name": user.full_name or "User"}
        try:
            session = self.gateway.create_order(reference, amount, settings.CURRENCY, metadata)
        except (AuthError, ProviderError) as e:
            # The order may still exist upstream; the attempt stays pending and reconciles later.
            e.reference = reference
            logger.error(f"Checkout creation failed for {reference}: {e.message}")
            raise

        if session.tracking_id:
            self._commit(lambda: self.ledger.record_tracking_id(reference, session.tracking_id), reference)
        logger.info(f"Checkout {reference} created for user {subject_id}, plan {plan_name}, amount {amount}")
        return CheckoutResult(checkout_url=session.checkout_url, merchant_reference=reference)

    def apply_provider_status(self, merchant_reference: str, provider_status: Optional[str], tracking_id: Optional[str] = None) -> ReconcileResult:
        normalized = normalize_status(provider_status)
        attempt = self._get_attempt(merchant_reference)

        if attempt.is_terminal:
            logger.info(f"Payment {merchant_reference} already {attempt.status}, ignoring {provider_status!r}")
            return self._result(ReconcileOutcome.ALREADY_TERMINAL, attempt)

        now = self.clock.now()
        if normalized == INDETERMINATE:
            def _record():
                if tracking_id:
                    self.ledger.record_tracking_id(merchant_reference, tracking_id)
                if provider_status:
                    self.ledger.record_provider_status(merchant_reference, provider_status, now)
            self._commit(_record, merchant_reference)
            return ReconcileResult(ReconcileOutcome.INDETERMINATE, merchant_reference, PENDING, provider_status)

        try:
            end_date = self._transition(attempt, normalized, provider_status, tracking_id, now)
        except ConflictError:
            current = self._get_attempt(merchant_reference)
            logger.info(f"Payment {merchant_reference} settled concurrently as {current.status}")
            return self._result(ReconcileOutcome.CONFLICT, current)

        logger.info(f"Payment {merchant_reference} moved to {normalized} ({provider_status})")
        self._notify(attempt, normalized, end_date)
        return ReconcileResult(ReconcileOutcome.APPLIED, merchant_reference, normalized, provider_status)

    def handle_notification(self, merchant_reference: str, tracking_id: Optional[str] = None, provider_status: Optional[str] = None) -> ReconcileResult:
        """
        Webhook entry. The callback is unauthenticated, so its status is only a
        hint: the outcome always comes from a status query for this attempt.
        """
        attempt = self._get_attempt(merchant_reference)
        if attempt.is_terminal:
            return self._result(ReconcileOutcome.ALREADY_TERMINAL, attempt)
        if provider_status:
            logger.info(f"Notification for {merchant_reference} claims {provider_status!r}, confirming with provider")
        remote = self._query_provider(attempt, tracking_id)
        if remote is None:
            return self._result(ReconcileOutcome.INDETERMINATE, attempt)
        return self.apply_provider_status(merchant_reference, remote.description, remote.tracking_id)

    def poll(self, merchant_reference: str) -> ReconcileResult:
        """Client-initiated status check; provider failures leave the attempt pending."""
        attempt = self._get_attempt(merchant_reference)
        if attempt.is_terminal:
            return self._result(ReconcileOutcome.ALREADY_TERMINAL, attempt)
        try:
            remote = self._query_provider(attempt)
        except (AuthError, ProviderError) as e:
            logger.warning(f"Status query for {merchant_reference} failed, keeping pending: {e.message}")
            return self._result(ReconcileOutcome.INDETERMINATE, attempt)
        if remote is None:
            return self._result(ReconcileOutcome.INDETERMINATE, attempt)
        return self.apply_provider_status(merchant_reference, remote.description, remote.tracking_id)

    def _query_provider(self, attempt: PaymentAttempt, tracking_id: Optional[str] = None) -> Optional[ProviderStatus]:
        """
        Ask the provider about this attempt, preferring the tracking id stored at
        checkout over one supplied by a caller. Returns None when the reply
        belongs to another order.
        """
        stored = attempt.provider_tracking_id
        if stored and tracking_id and tracking_id != stored:
            logger.warning(
                f"Tracking id {tracking_id} does not match {stored} stored for {attempt.merchant_reference}, using stored id"
            )
        lookup = stored or tracking_id or attempt.merchant_reference
        remote = self.gateway.get_status(lookup)
        # a stored id was issued for this order; anything else must name it
        verified_by_id = stored is not None and remote.merchant_reference is None
        if remote.merchant_reference != attempt.merchant_reference and not verified_by_id:
            logger.warning(
                f"Provider status for {lookup} belongs to {remote.merchant_reference!r}, "
                f"not {attempt.merchant_reference}; ignoring"
            )
            return None
        return remote

    def payment_history(self, subject_id: int) -> List[PaymentResponse]:
        payments = self.db.query(PaymentAttempt).filter(
            PaymentAttempt.subject_id == subject_id
        ).order_by(PaymentAttempt.created_at.desc()).all()
        return [PaymentResponse.model_validate(p) for p in payments]

    def _transition(self, attempt: PaymentAttempt, normalized: str, provider_status: Optional[str], tracking_id: Optional[str], now):
        """Compare-and-set plus the ledger-side effects, committed together."""
        end_date = None
        try:
            if not self.ledger.transition_attempt(attempt.merchant_reference, normalized, provider_status, now):
                self.db.rollback()
                raise ConflictError("Attempt already settled", reference=attempt.merchant_reference)
            if tracking_id:
                self.ledger.record_tracking_id(attempt.merchant_reference, tracking_id)
            if normalized == SUCCESS:
                end_date = SubscriptionService.activate_from_payment(attempt, self.db, now)
                AuthService.promote_role(attempt.subject_id, "dealer", self.db, now)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Ledger update failed for {attempt.merchant_reference}: {str(e)}", exc_info=True)
            raise LedgerError("Could not settle payment", reference=attempt.merchant_reference) from e
        return end_date

    def _notify(self, attempt: PaymentAttempt, normalized: str, end_date) -> None:
        user = self.db.query(User).filter(User.id == attempt.subject_id).first()
        if user is None:
            return
        data = {
            "name": user.full_name,
            "plan": attempt.plan_name,
            "amount": attempt.amount,
            "currency": attempt.currency,
            "end_date": end_date.date().isoformat() if end_date else None,
        }
        kind = PAYMENT_SUCCESS if normalized == SUCCESS else PAYMENT_FAILED
        notify(self.dispatcher, user.email, kind, data)

    def _get_attempt(self, merchant_reference: str) -> PaymentAttempt:
        try:
            attempt = self.ledger.get_attempt(merchant_reference)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise LedgerError("Could not read payment attempt", reference=merchant_reference) from e
        if attempt is None:
            raise NotFoundError(f"Payment {merchant_reference} not found", reference=merchant_reference)
        return attempt

    def _commit(self, write, merchant_reference: str) -> None:
        try:
            write()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise LedgerError("Could not update payment attempt", reference=merchant_reference) from e

    @staticmethod
    def _result(outcome: ReconcileOutcome, attempt: PaymentAttempt) -> ReconcileResult:
        return ReconcileResult(outcome, attempt.merchant_reference, attempt.status, attempt.provider_status)
