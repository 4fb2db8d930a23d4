# src/errors.py
from typing import Optional


class ReconciliationError(Exception):
    """Base class for payment, subscription and quota failures."""

    def __init__(self, message: str = "", *, reference: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.reference = reference


class AuthError(ReconciliationError):
    """Provider rejected our credentials or returned no access token."""


class ProviderError(ReconciliationError):
    """Transient provider failure: network error, timeout, 4xx/5xx or malformed reply."""

    def __init__(self, message: str = "", *, reference: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, reference=reference)
        self.status_code = status_code


class NotFoundError(ReconciliationError):
    """Unknown merchant reference or subject."""


class ConflictError(ReconciliationError):
    """A concurrent writer already applied the transition."""


class QuotaExceededError(ReconciliationError):
    """Listing creation blocked by a missing, expired or exhausted subscription."""

    def __init__(self, message: str = "Active subscription required", *, subject_id: Optional[int] = None):
        super().__init__(message)
        self.subject_id = subject_id


class TrialUnavailableError(ReconciliationError):
    """Free trial already consumed or not applicable."""


class InvalidRequestError(ReconciliationError):
    """Malformed input: unknown plan, amount mismatch, missing reference."""


class LedgerError(ReconciliationError):
    """Storage failure while reading or writing ledger rows."""


class NotificationError(Exception):
    """A notification could not be delivered."""
