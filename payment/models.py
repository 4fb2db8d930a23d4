# src/payment/models.py
from sqlalchemy import Column, Integer, String, ForeignKey, DateTime
from sqlalchemy.orm import relationship
from database import Base
from auth.models import User
from clock import utcnow

PENDING = "pending"
SUCCESS = "success"
FAILED = "failed"
TERMINAL_STATUSES = (SUCCESS, FAILED)


class PaymentAttempt(Base):
    """A single checkout attempt. Never deleted; moves out of pending at most once."""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    merchant_reference = Column(String, unique=True, index=True, nullable=False)
    provider_tracking_id = Column(String, nullable=True, index=True)
    subject_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    plan_name = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String, nullable=False, default="KES")
    method = Column(String, nullable=False, default="pesapal")
    phone = Column(String, nullable=True)
    status = Column(String, nullable=False, default=PENDING)  # pending, success, failed
    provider_status = Column(String, nullable=True)  # last raw status description from the provider
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship(User)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
