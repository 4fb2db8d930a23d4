# src/payment/status.py
from typing import Optional

from payment.models import PENDING, SUCCESS, FAILED

INDETERMINATE = "indeterminate"

SUCCESS_STATES = {"COMPLETED", "SUCCESS", "PAID", "PAYMENT COMPLETED"}
FAILED_STATES = {"FAILED", "CANCELLED", "REVERSED", "INVALID"}
CANCELLED_STATES = {"CANCELLED", "REVERSED"}


def normalize_status(provider_status: Optional[str]) -> str:
    """Map a provider status description to success, failed or indeterminate."""
    value = (provider_status or "").strip().upper()
    if value in SUCCESS_STATES:
        return SUCCESS
    if value in FAILED_STATES:
        return FAILED
    return INDETERMINATE


def client_status(status: str, provider_status: Optional[str]) -> str:
    """Status shown to the paying user: pending, success, failed or cancelled."""
    if status == FAILED and (provider_status or "").strip().upper() in CANCELLED_STATES:
        return "cancelled"
    if status in (SUCCESS, FAILED):
        return status
    return PENDING
