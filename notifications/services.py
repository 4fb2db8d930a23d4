# src/notifications/services.py
import logging
import smtplib
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Tuple

from config import settings
from errors import NotificationError

logger = logging.getLogger(__name__)

PAYMENT_SUCCESS = "payment_success"
PAYMENT_FAILED = "payment_failed"
TRIAL_ACTIVATED = "trial_activated"
TRIAL_REMINDER = "trial_reminder"
SUBSCRIPTION_REMINDER = "subscription_reminder"

TEMPLATES: Dict[str, Tuple[str, str]] = {
    PAYMENT_SUCCESS: (
        "Payment Successful",
        "Hi {name},\n\nYour payment of {currency} {amount} for the {plan} plan was successful.\n"
        "Your dealer account is active until {end_date}.\n\n{frontend_url}/dashboard",
    ),
    PAYMENT_FAILED: (
        "Payment Failed",
        "Hi {name},\n\nYour payment for the {plan} plan failed.\n\nRetry: {frontend_url}/pricing",
    ),
    TRIAL_ACTIVATED: (
        "Your Trial Is Active",
        "Hi {name},\n\nYour free trial is now active and ends on {end_date}.",
    ),
    TRIAL_REMINDER: (
        "Your Trial Ends Soon",
        "Hi {name},\n\nYour trial ends on {end_date}. Upgrade to keep your listings live: {frontend_url}/pricing",
    ),
    SUBSCRIPTION_REMINDER: (
        "Your Subscription Expires Soon",
        "Hi {name},\n\nYour {plan} plan expires on {end_date}. Renew: {frontend_url}/pricing",
    ),
}


def render(kind: str, data: Dict[str, Any]) -> Tuple[str, str]:
    """Return (subject, body) for a template kind."""
    if kind not in TEMPLATES:
        raise NotificationError(f"Unknown notification template {kind!r}")
    subject, body = TEMPLATES[kind]
    context = {"name": "there", "frontend_url": settings.FRONTEND_URL, "currency": settings.CURRENCY}
    context.update({key: value for key, value in data.items() if value is not None})
    try:
        return subject, body.format(**context)
    except KeyError as e:
        raise NotificationError(f"Missing field {e} for template {kind!r}") from e


class NotificationDispatcher:
    """Best-effort delivery of user-facing messages. send() raises NotificationError on failure."""

    def send(self, contact: str, kind: str, data: Dict[str, Any]) -> None:
        raise NotImplementedError


class EmailDispatcher(NotificationDispatcher):
    def send(self, contact: str, kind: str, data: Dict[str, Any]) -> None:
        subject, body = render(kind, data)
        try:
            msg = MIMEText(body)
            msg['Subject'] = subject
            msg['From'] = settings.FROM_EMAIL
            msg['To'] = contact

            with smtplib.SMTP(settings.SMTP_SERVER, settings.SMTP_PORT, timeout=settings.PROVIDER_TIMEOUT_SECONDS) as server:
                server.starttls()
                server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
                server.sendmail(settings.FROM_EMAIL, contact, msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"SMTP error sending {kind} to {contact}: {e}") from e


class LoggingDispatcher(NotificationDispatcher):
    """Used when no SMTP server is configured."""

    def send(self, contact: str, kind: str, data: Dict[str, Any]) -> None:
        subject, _ = render(kind, data)
        logger.info(f"Notification {kind} to {contact}: {subject}")


def notify(dispatcher: NotificationDispatcher, contact: Optional[str], kind: str, data: Dict[str, Any]) -> bool:
    """Send and swallow delivery failures; returns whether the message went out."""
    if not contact:
        logger.warning(f"No contact for {kind} notification, skipping")
        return False
    try:
        dispatcher.send(contact, kind, data)
        return True
    except NotificationError as e:
        logger.error(f"Notification {kind} to {contact} failed: {e}")
    except Exception as e:
        logger.error(f"Unexpected error sending {kind} to {contact}: {str(e)}", exc_info=True)
    return False


def build_dispatcher() -> NotificationDispatcher:
    if settings.SMTP_SERVER:
        return EmailDispatcher()
    return LoggingDispatcher()
