# src/subscription/schemas.py
from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class TrialActivateRequest(BaseModel):
    """Schema for activating the one-time free trial."""
    subject_id: int


class TrialActivateResponse(BaseModel):
    activated: bool
    role: str
    message: str
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None


class ListingSlotResponse(BaseModel):
    subject_id: int
    allowed: bool


class AdminOverrideRequest(BaseModel):
    enabled: bool


class SubscriptionResponse(BaseModel):
    """Schema for subscription response."""
    id: int
    subject_id: int
    plan_name: str
    listings_allowed: Optional[int]
    listings_used: int
    start_date: datetime
    end_date: datetime
    status: str
    grace_until: Optional[datetime]
    admin_override: bool

    class Config:
        from_attributes = True
