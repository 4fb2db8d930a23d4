# src/subscription/models.py
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Boolean
from sqlalchemy.orm import relationship
from database import Base
from auth.models import User
from payment.models import PaymentAttempt
from clock import utcnow

TRIAL = "trial"
ACTIVE = "active"
GRACE = "grace"
EXPIRED = "expired"
LIVE_STATUSES = (ACTIVE, TRIAL, GRACE)


class Subscription(Base):
    """The single subscription row of a subject; activations overwrite it in place."""
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    subject_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True, index=True)
    plan_name = Column(String, nullable=False)
    price = Column(Integer, nullable=False, default=0)
    listings_allowed = Column(Integer, nullable=True)  # NULL = unlimited
    listings_used = Column(Integer, nullable=False, default=0)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default=ACTIVE)  # trial, active, grace, expired
    grace_until = Column(DateTime, nullable=True)
    admin_override = Column(Boolean, nullable=False, default=False)
    reminder_sent = Column(Boolean, nullable=False, default=False)
    payment_id = Column(Integer, ForeignKey(PaymentAttempt.id), nullable=True)  # last successful payment
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship(User)
