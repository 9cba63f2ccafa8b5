"""Billing notifications sent by email through Resend."""

import asyncio
from enum import Enum
from typing import Any, Optional

import resend

from billflow.core.config import settings
from billflow.core.exceptions import ExternalServiceError
from billflow.core.logging import logger


class NotificationKind(str, Enum):
    """Billing notifications a tenant can receive."""

    TRIAL_REMINDER = "trial_reminder"
    WELCOME = "welcome"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


def _trial_reminder(payload: dict[str, Any]) -> tuple[str, str]:
    days_left = payload.get("days_left", 0)
    plan = payload.get("plan_id") or "your plan"
    if days_left <= 0:
        subject = "Your trial ends today"
        lead = f"Your {plan} trial ends today."
    else:
        unit = "day" if days_left == 1 else "days"
        subject = f"Your trial ends in {days_left} {unit}"
        lead = f"Your {plan} trial ends in {days_left} {unit}."
    return subject, (
        f"<p>{lead}</p>"
        "<p>Your subscription continues automatically with the payment method on file. "
        "You can cancel at any time from your billing settings.</p>"
    )


def _welcome(payload: dict[str, Any]) -> tuple[str, str]:
    plan = payload.get("plan_id") or "your plan"
    trial_end = payload.get("trial_end")
    body = f"<p>Your {plan} subscription is set up.</p>"
    if trial_end:
        body += f"<p>Your free trial runs until {trial_end}.</p>"
    return "Welcome aboard", body


def _payment_succeeded(payload: dict[str, Any]) -> tuple[str, str]:
    amount = payload.get("amount", 0) / 100
    currency = str(payload.get("currency", "usd")).upper()
    return "Payment received", f"<p>We received your payment of {amount:.2f} {currency}.</p>"


def _payment_failed(payload: dict[str, Any]) -> tuple[str, str]:
    amount = payload.get("amount", 0) / 100
    currency = str(payload.get("currency", "usd")).upper()
    return "Payment failed", (
        f"<p>Your payment of {amount:.2f} {currency} could not be processed.</p>"
        "<p>Please update your payment method to keep your subscription active.</p>"
    )


def _subscription_canceled(payload: dict[str, Any]) -> tuple[str, str]:
    access_until = payload.get("access_until")
    body = "<p>Your subscription has been canceled.</p>"
    if access_until:
        body += f"<p>You keep access until {access_until}.</p>"
    return "Subscription canceled", body


_TEMPLATES = {
    NotificationKind.TRIAL_REMINDER: _trial_reminder,
    NotificationKind.WELCOME: _welcome,
    NotificationKind.PAYMENT_SUCCEEDED: _payment_succeeded,
    NotificationKind.PAYMENT_FAILED: _payment_failed,
    NotificationKind.SUBSCRIPTION_CANCELED: _subscription_canceled,
}


def render(kind: NotificationKind, payload: dict[str, Any]) -> tuple[str, str]:
    """Render the subject and HTML body of a notification."""
    return _TEMPLATES[kind](payload)


def _send_email_sync(to_email: str, subject: str, html: str) -> None:
    """Synchronous email sending function to be run in a thread pool."""
    resend.api_key = settings.RESEND_API_KEY
    resend.Emails.send(
        {
            "from": settings.RESEND_FROM_EMAIL,
            "to": [to_email],
            "subject": subject,
            "html": html,
        }
    )


class Notifier:
    """Sends billing notifications.

    ``send`` returns False when the notification was skipped (email not configured,
    no recipient) and raises ``ExternalServiceError`` when sending failed or timed
    out, so callers decide between retrying and logging.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        """Initialize the notifier.

        Args:
            timeout: Seconds allowed per send; defaults to NOTIFIER_TIMEOUT_SECONDS.
        """
        self.timeout = timeout or settings.NOTIFIER_TIMEOUT_SECONDS

    async def send(self, kind: NotificationKind, payload: dict[str, Any]) -> bool:
        """Send one notification.

        Args:
            kind: Which notification to send.
            payload: Template values; ``email`` is the recipient.

        Returns:
            bool: True if the email was handed to Resend, False if skipped.

        Raises:
            ExternalServiceError: If Resend fails or the send times out.
        """
        to_email = payload.get("email")
        if not settings.notifications_configured:
            logger.debug(
                f"RESEND_API_KEY or RESEND_FROM_EMAIL not configured - skipping {kind.value}"
            )
            return False
        if not to_email:
            logger.debug(f"No recipient for {kind.value} notification - skipping")
            return False

        subject, html = render(kind, payload)
        try:
            # Offload the synchronous email sending to a thread pool to avoid blocking the loop
            await asyncio.wait_for(
                asyncio.to_thread(_send_email_sync, to_email, subject, html),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(
                service_name="Resend", message=f"Timed out sending {kind.value}"
            ) from e
        except Exception as e:
            raise ExternalServiceError(
                service_name="Resend", message=f"Failed to send {kind.value}: {e}"
            ) from e

        logger.info(f"Sent {kind.value} notification to {to_email}")
        return True


notifier = Notifier()
