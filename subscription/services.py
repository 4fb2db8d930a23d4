# src/subscription/services.py
import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth.models import User
from config import settings
from errors import InvalidRequestError, LedgerError, NotFoundError, TrialUnavailableError
from ledger.store import LedgerStore
from notifications.services import NotificationDispatcher, notify, TRIAL_ACTIVATED
from payment.models import PaymentAttempt
from subscription.models import Subscription, ACTIVE, TRIAL, EXPIRED, LIVE_STATUSES

logger = logging.getLogger(__name__)


class SubscriptionService:
    @staticmethod
    def get_plan(plan_name: str) -> Dict[str, Any]:
        plan = settings.SUBSCRIPTION_PLANS.get((plan_name or "").lower())
        if plan is None:
            raise InvalidRequestError(f"Unknown plan {plan_name!r}")
        return plan

    @staticmethod
    def activate_from_payment(attempt: PaymentAttempt, db: Session, now: datetime) -> datetime:
        """Upsert the subject's subscription for a successful payment. Caller commits."""
        plan = SubscriptionService.get_plan(attempt.plan_name)
        end_date = now + timedelta(days=plan["duration_days"])
        LedgerStore(db).upsert_subscription(
            subject_id=attempt.subject_id,
            plan_name=attempt.plan_name.lower(),
            price=attempt.amount,
            listings_allowed=plan["listings_allowed"],
            start_date=now,
            end_date=end_date,
            status=ACTIVE,
            payment_id=attempt.id,
        )
        return end_date

    @staticmethod
    def get_subscription(subject_id: int, db: Session) -> Optional[Subscription]:
        return LedgerStore(db).get_subscription(subject_id)

    @staticmethod
    def _consume(subject_id: int, db: Session, now: datetime) -> bool:
        ledger = LedgerStore(db)
        sub = ledger.get_subscription(subject_id)
        if sub is None:
            return False
        if sub.admin_override:
            return True
        if sub.status not in LIVE_STATUSES or not (sub.start_date <= now <= sub.end_date):
            return False
        if sub.listings_allowed is None:
            return True
        return ledger.consume_listing_slot(subject_id, now)

    @staticmethod
    def try_consume_listing_slot(subject_id: int, db: Session, now: datetime, commit: bool = True) -> bool:
        """
        Reserve one listing slot for the subject.

        Admin override and unlimited plans are allowed without touching the
        counter. A missing, non-live or out-of-window subscription fails
        closed. Bounded plans go through a single conditional increment, so
        two concurrent callers racing for the last slot cannot both win.
        """
        try:
            allowed = SubscriptionService._consume(subject_id, db, now)
            if commit:
                db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Listing slot check failed for subject {subject_id}: {str(e)}", exc_info=True)
            raise LedgerError("Could not check listing quota") from e
        if not allowed:
            logger.info(f"Listing slot denied for subject {subject_id}")
        return allowed

    @staticmethod
    def has_dealer_access(subject_id: int, db: Session, now: datetime) -> bool:
        """Live plan within its window, admin override, or an expired plan still inside its grace period."""
        sub = LedgerStore(db).get_subscription(subject_id)
        if sub is None:
            return False
        if sub.admin_override:
            return True
        if sub.status in LIVE_STATUSES and sub.start_date <= now <= sub.end_date:
            return True
        return sub.status == EXPIRED and sub.grace_until is not None and now <= sub.grace_until

    @staticmethod
    def set_admin_override(subject_id: int, enabled: bool, db: Session, now: datetime) -> Subscription:
        ledger = LedgerStore(db)
        if not ledger.set_admin_override(subject_id, enabled, now):
            raise NotFoundError(f"No subscription for subject {subject_id}")
        db.commit()
        logger.info(f"Admin override for subject {subject_id} set to {enabled}")
        return ledger.get_subscription(subject_id)

    @staticmethod
    def activate_trial(subject_id: int, db: Session, dispatcher: NotificationDispatcher, now: datetime) -> Dict[str, Any]:
        """One free trial per subject, checked on trial_used and never on role alone."""
        user = db.query(User).filter(User.id == subject_id).first()
        if user is None:
            raise NotFoundError(f"User {subject_id} not found")
        if user.role == "admin":
            return {"activated": False, "role": user.role, "message": "Admins do not require a free trial."}
        if user.trial_used:
            raise TrialUnavailableError("Free trial has already been used.")

        ledger = LedgerStore(db)
        sub = ledger.get_subscription(subject_id)
        if sub is not None and sub.status == ACTIVE and sub.end_date >= now:
            raise TrialUnavailableError("An active subscription already exists.")

        trial_end = now + timedelta(days=settings.TRIAL_DURATION_DAYS)
        try:
            if not ledger.claim_trial(subject_id, now, trial_end):
                db.rollback()
                raise TrialUnavailableError("Free trial has already been used.")
            ledger.upsert_subscription(
                subject_id=subject_id,
                plan_name=settings.TRIAL_PLAN_NAME,
                price=0,
                listings_allowed=settings.TRIAL_LISTINGS_ALLOWED,
                start_date=now,
                end_date=trial_end,
                status=TRIAL,
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Trial activation failed for user {subject_id}: {str(e)}", exc_info=True)
            raise LedgerError("Could not activate trial") from e

        logger.info(f"Trial activated for user {subject_id} until {trial_end.isoformat()}")
        notify(dispatcher, user.email, TRIAL_ACTIVATED, {"name": user.full_name, "end_date": trial_end.date().isoformat()})
        return {
            "activated": True,
            "role": "dealer",
            "trial_start": now,
            "trial_end": trial_end,
            "message": "Free trial activated.",
        }
