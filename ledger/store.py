# src/ledger/store.py
from datetime import datetime
from typing import Optional, List

from sqlalchemy import and_, exists, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from auth.models import User
from payment.models import PaymentAttempt, PENDING
from subscription.models import Subscription, ACTIVE, TRIAL, GRACE, EXPIRED, LIVE_STATUSES


class LedgerStore:
    """
    Conditional reads and writes over payments, subscriptions and trial fields.

    Every mutation of a shared row is one WHERE-guarded UPDATE (or an
    INSERT ... ON CONFLICT) whose affected-row count tells the caller whether
    it won. Nothing here commits; the calling service owns the transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    # -- payment attempts -------------------------------------------------

    def create_attempt(
            self,
            merchant_reference: str,
            subject_id: int,
            plan_name: str,
            amount: int,
            currency: str,
            phone: Optional[str],
            now: datetime,
            method: str = "pesapal",
    ) -> PaymentAttempt:
        attempt = PaymentAttempt(
            merchant_reference=merchant_reference,
            subject_id=subject_id,
            plan_name=plan_name,
            amount=amount,
            currency=currency,
            method=method,
            phone=phone,
            status=PENDING,
            created_at=now,
            updated_at=now,
        )
        self.db.add(attempt)
        self.db.flush()
        return attempt

    def get_attempt(self, merchant_reference: str) -> Optional[PaymentAttempt]:
        return self.db.query(PaymentAttempt).populate_existing().filter(
            PaymentAttempt.merchant_reference == merchant_reference
        ).first()

    def transition_attempt(self, merchant_reference: str, to_status: str, provider_status: Optional[str], now: datetime) -> bool:
        """pending -> to_status, only if the row is still pending."""
        rows = self.db.query(PaymentAttempt).filter(
            PaymentAttempt.merchant_reference == merchant_reference,
            PaymentAttempt.status == PENDING,
        ).update(
            {"status": to_status, "provider_status": provider_status, "updated_at": now},
            synchronize_session=False,
        )
        return rows == 1

    def record_provider_status(self, merchant_reference: str, provider_status: str, now: datetime) -> None:
        self.db.query(PaymentAttempt).filter(
            PaymentAttempt.merchant_reference == merchant_reference,
            PaymentAttempt.status == PENDING,
        ).update({"provider_status": provider_status, "updated_at": now}, synchronize_session=False)

    def record_tracking_id(self, merchant_reference: str, tracking_id: str) -> bool:
        rows = self.db.query(PaymentAttempt).filter(
            PaymentAttempt.merchant_reference == merchant_reference,
            PaymentAttempt.provider_tracking_id.is_(None),
        ).update({"provider_tracking_id": tracking_id}, synchronize_session=False)
        return rows == 1

    def pending_attempts(self, created_after: datetime) -> List[PaymentAttempt]:
        return self.db.query(PaymentAttempt).filter(
            PaymentAttempt.status == PENDING,
            PaymentAttempt.created_at >= created_after,
        ).order_by(PaymentAttempt.created_at).all()

    # -- subscriptions ----------------------------------------------------

    def _insert(self):
        if self.db.get_bind().dialect.name == "postgresql":
            return postgresql.insert
        return sqlite.insert

    def upsert_subscription(
            self,
            subject_id: int,
            plan_name: str,
            price: int,
            listings_allowed: Optional[int],
            start_date: datetime,
            end_date: datetime,
            status: str,
            payment_id: Optional[int] = None,
    ) -> None:
        """Insert or overwrite the subject's subscription row, resetting usage and reminder state."""
        values = {
            "plan_name": plan_name,
            "price": price,
            "listings_allowed": listings_allowed,
            "listings_used": 0,
            "start_date": start_date,
            "end_date": end_date,
            "status": status,
            "grace_until": None,
            "reminder_sent": False,
            "payment_id": payment_id,
            "updated_at": start_date,
        }
        stmt = self._insert()(Subscription).values(
            subject_id=subject_id, admin_override=False, created_at=start_date, **values
        )
        stmt = stmt.on_conflict_do_update(index_elements=[Subscription.subject_id], set_=values)
        self.db.execute(stmt)

    def get_subscription(self, subject_id: int) -> Optional[Subscription]:
        return self.db.query(Subscription).populate_existing().filter(Subscription.subject_id == subject_id).first()

    def consume_listing_slot(self, subject_id: int, now: datetime) -> bool:
        """Atomic check-and-increment of listings_used for a bounded, live, in-window plan."""
        rows = self.db.query(Subscription).filter(
            Subscription.subject_id == subject_id,
            Subscription.status.in_(LIVE_STATUSES),
            Subscription.start_date <= now,
            Subscription.end_date >= now,
            Subscription.listings_allowed.isnot(None),
            Subscription.listings_used < Subscription.listings_allowed,
        ).update(
            {"listings_used": Subscription.listings_used + 1, "updated_at": now},
            synchronize_session=False,
        )
        return rows == 1

    def set_admin_override(self, subject_id: int, enabled: bool, now: datetime) -> bool:
        rows = self.db.query(Subscription).filter(
            Subscription.subject_id == subject_id
        ).update({"admin_override": enabled, "updated_at": now}, synchronize_session=False)
        return rows == 1

    # -- roles and trials -------------------------------------------------

    def promote_role(self, subject_id: int, role: str, now: datetime) -> bool:
        rows = self.db.query(User).filter(
            User.id == subject_id,
            User.role != "admin",
            User.role != role,
        ).update({"role": role, "updated_at": now}, synchronize_session=False)
        return rows == 1

    def claim_trial(self, subject_id: int, trial_start: datetime, trial_end: datetime) -> bool:
        """One-shot: succeeds only for a non-admin whose trial_used flag is still false."""
        rows = self.db.query(User).filter(
            User.id == subject_id,
            User.trial_used.is_(False),
            User.role != "admin",
        ).update(
            {
                "role": "dealer",
                "trial_start": trial_start,
                "trial_end": trial_end,
                "trial_used": True,
                "updated_at": trial_start,
            },
            synchronize_session=False,
        )
        return rows == 1

    # -- sweeps -----------------------------------------------------------

    def expire_subscriptions(self, now: datetime, grace_until: datetime) -> int:
        return self.db.query(Subscription).filter(
            Subscription.status == ACTIVE,
            Subscription.end_date < now,
        ).update(
            {"status": EXPIRED, "grace_until": grace_until, "updated_at": now},
            synchronize_session=False,
        )

    def lapse_grace_periods(self, now: datetime) -> int:
        return self.db.query(Subscription).filter(
            Subscription.status.in_((GRACE, EXPIRED)),
            Subscription.grace_until.isnot(None),
            Subscription.grace_until < now,
        ).update(
            {"status": EXPIRED, "grace_until": None, "updated_at": now},
            synchronize_session=False,
        )

    def expire_trial_subscriptions(self, now: datetime) -> int:
        return self.db.query(Subscription).filter(
            Subscription.status == TRIAL,
            Subscription.end_date < now,
        ).update({"status": EXPIRED, "updated_at": now}, synchronize_session=False)

    def revert_expired_trials(self, now: datetime) -> int:
        """Dealers whose trial ended and who hold no live paid plan go back to role 'user'."""
        paid_plan = exists().where(
            Subscription.subject_id == User.id,
            or_(
                Subscription.status.in_((ACTIVE, GRACE)),
                and_(Subscription.status == EXPIRED, Subscription.grace_until >= now),
            ),
        )
        return self.db.query(User).filter(
            User.role == "dealer",
            User.trial_end.isnot(None),
            User.trial_end < now,
            ~paid_plan,
        ).update(
            {"role": "user", "trial_start": None, "trial_end": None, "trial_used": True, "updated_at": now},
            synchronize_session=False,
        )

    def subscriptions_due_for_reminder(self, now: datetime, horizon: datetime) -> List[Subscription]:
        return self.db.query(Subscription).filter(
            Subscription.status.in_((ACTIVE, TRIAL)),
            Subscription.reminder_sent.is_(False),
            and_(Subscription.end_date >= now, Subscription.end_date <= horizon),
            Subscription.admin_override.is_(False),
        ).order_by(Subscription.end_date).all()

    def claim_reminder(self, subscription_id: int, now: datetime) -> bool:
        rows = self.db.query(Subscription).filter(
            Subscription.id == subscription_id,
            Subscription.reminder_sent.is_(False),
        ).update({"reminder_sent": True, "updated_at": now}, synchronize_session=False)
        return rows == 1
