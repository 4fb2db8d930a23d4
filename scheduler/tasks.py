# src/scheduler/tasks.py
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth.models import User
from clock import Clock, SystemClock
from config import settings
from database import SessionLocal
from errors import ReconciliationError
from ledger.store import LedgerStore
from notifications.services import NotificationDispatcher, notify, SUBSCRIPTION_REMINDER, TRIAL_REMINDER
from payment.gateway import ProviderGateway
from payment.services import ReconciliationEngine
from subscription.models import TRIAL

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    grace_lapsed: int = 0
    trial_subscriptions_expired: int = 0
    trials_reverted: int = 0
    reminders_sent: int = 0
    errors: Dict[str, str] = field(default_factory=dict)


class ExpiryScheduler:
    """
    Ages subscriptions and trials out and sends expiry reminders.

    Each sweep is a bulk conditional update in its own transaction, so a
    failing sweep does not stop the others. Aging always runs before
    reminders.
    """

    def __init__(
            self,
            dispatcher: NotificationDispatcher,
            session_factory: Callable[[], Session] = SessionLocal,
            clock: Optional[Clock] = None,
            interval_hours: int = settings.EXPIRY_SWEEP_INTERVAL_HOURS,
            gateway: Optional[ProviderGateway] = None,
    ):
        self.dispatcher = dispatcher
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.interval_hours = interval_hours
        self.gateway = gateway
        self._scheduler: Optional[BackgroundScheduler] = None

    def run_once(self) -> SweepReport:
        logger.info("Starting expiry sweep")
        report = SweepReport()
        self._sweep("expire_subscriptions", report, self._expire_subscriptions)
        self._sweep("lapse_grace_periods", report, self._lapse_grace_periods)
        self._sweep("expire_trials", report, self._expire_trials)
        self._sweep("send_reminders", report, self._send_reminders)
        logger.info(
            f"Finished expiry sweep: expired={report.expired}, grace_lapsed={report.grace_lapsed}, "
            f"trial_subs_expired={report.trial_subscriptions_expired}, trials_reverted={report.trials_reverted}, "
            f"reminders={report.reminders_sent}, errors={list(report.errors)}"
        )
        return report

    def _sweep(self, name: str, report: SweepReport, func: Callable[[Session, SweepReport], None]) -> None:
        db: Session = self.session_factory()
        try:
            func(db, report)
        except Exception as e:
            db.rollback()
            report.errors[name] = str(e)
            logger.error(f"Error in {name}: {str(e)}", exc_info=True)
        finally:
            db.close()

    def _expire_subscriptions(self, db: Session, report: SweepReport) -> None:
        now = self.clock.now()
        report.expired = LedgerStore(db).expire_subscriptions(now, now + timedelta(days=settings.GRACE_PERIOD_DAYS))
        db.commit()

    def _lapse_grace_periods(self, db: Session, report: SweepReport) -> None:
        report.grace_lapsed = LedgerStore(db).lapse_grace_periods(self.clock.now())
        db.commit()

    def _expire_trials(self, db: Session, report: SweepReport) -> None:
        now = self.clock.now()
        ledger = LedgerStore(db)
        report.trial_subscriptions_expired = ledger.expire_trial_subscriptions(now)
        report.trials_reverted = ledger.revert_expired_trials(now)
        db.commit()

    def _send_reminders(self, db: Session, report: SweepReport) -> None:
        now = self.clock.now()
        ledger = LedgerStore(db)
        horizon = now + timedelta(days=settings.REMINDER_LOOKAHEAD_DAYS)
        for sub in ledger.subscriptions_due_for_reminder(now, horizon):
            # claim first: at most one reminder per subscription period
            if not ledger.claim_reminder(sub.id, now):
                db.rollback()
                continue
            db.commit()
            user = db.query(User).filter(User.id == sub.subject_id).first()
            kind = TRIAL_REMINDER if sub.status == TRIAL else SUBSCRIPTION_REMINDER
            data = {"name": user.full_name if user else None, "plan": sub.plan_name, "end_date": sub.end_date.date().isoformat()}
            if notify(self.dispatcher, user.email if user else None, kind, data):
                report.reminders_sent += 1

    def check_pending_payments(self) -> List[str]:
        """Poll the provider for recent pending attempts; returns references that settled."""
        logger.info("Starting check_pending_payments task")
        settled: List[str] = []
        if self.gateway is None:
            logger.info("No payment gateway configured, skipping")
            return settled
        db: Session = self.session_factory()
        try:
            cutoff = self.clock.now() - timedelta(hours=settings.PENDING_POLL_WINDOW_HOURS)
            references = [p.merchant_reference for p in LedgerStore(db).pending_attempts(cutoff)]
            engine = ReconciliationEngine(db, self.gateway, self.dispatcher, self.clock)
            for reference in references:
                try:
                    result = engine.poll(reference)
                except ReconciliationError as e:
                    logger.error(f"Polling payment {reference} failed: {e.message}")
                    continue
                if result.applied:
                    settled.append(reference)
                    logger.info(f"Payment {reference} settled as {result.status} by poll")
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error in check_pending_payments: {str(e)}")
        finally:
            db.close()
        logger.info("Finished check_pending_payments task")
        return settled

    def start(self) -> BackgroundScheduler:
        """Start the background scheduler."""
        scheduler = BackgroundScheduler()
        scheduler.add_job(self.run_once, 'interval', hours=self.interval_hours, id="expiry_sweep", max_instances=1)
        if self.gateway is not None:
            scheduler.add_job(
                self.check_pending_payments, 'interval', minutes=settings.PENDING_POLL_MINUTES,
                id="pending_payments", max_instances=1,
            )
        scheduler.start()
        self._scheduler = scheduler
        return scheduler

    def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
