# src/auth/models.py
from sqlalchemy import Column, Integer, String, DateTime, Boolean
from database import Base
from clock import utcnow


class User(Base):
    """Represents a marketplace user; dealers are users with an active plan or trial."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    role = Column(String, nullable=False, default="user")  # user, dealer, admin
    trial_start = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    trial_used = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
