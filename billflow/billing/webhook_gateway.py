"""Signed webhook intake.

Verifies the provider signature over the raw body, hands the event to the
dispatcher and chooses the HTTP status the provider sees. A 2xx tells the provider
to stop redelivering, so it is only returned once the event is applied or can
never be applied.
"""

from dataclasses import dataclass
from typing import Optional

import stripe
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from billflow import schemas
from billflow.billing.dispatcher import EventDispatcher, event_dispatcher
from billflow.core.config import settings
from billflow.core.exceptions import (
    ConcurrentUpdateError,
    ExternalServiceError,
    WebhookNotConfiguredError,
    WebhookSignatureError,
)
from billflow.core.logging import logger
from billflow.integrations.stripe_client import StripeClient, stripe_client


@dataclass
class WebhookResponse:
    """Status code for the provider, and what became of the event."""

    status_code: int
    outcome: Optional[schemas.DispatchOutcome] = None


class WebhookGateway:
    """Turn a signed provider request into a dispatch outcome."""

    def __init__(
        self,
        dispatcher: Optional[EventDispatcher] = None,
        provider: Optional[StripeClient] = None,
        secret: Optional[str] = None,
        tolerance: Optional[int] = None,
    ):
        """Initialize the gateway.

        Args:
            dispatcher: Event dispatcher events are handed to.
            provider: Client used for signature verification.
            secret: Signing secret; defaults to STRIPE_WEBHOOK_SECRET.
            tolerance: Allowed signature age in seconds; defaults to WEBHOOK_TOLERANCE_SECONDS.
        """
        self.dispatcher = dispatcher or event_dispatcher
        self.provider = provider or stripe_client
        self._secret = secret
        self._tolerance = tolerance

    @property
    def secret(self) -> Optional[str]:
        """Signing secret in use."""
        return self._secret or settings.STRIPE_WEBHOOK_SECRET

    @property
    def tolerance(self) -> int:
        """Allowed signature age in seconds."""
        if self._tolerance is not None:
            return self._tolerance
        return settings.WEBHOOK_TOLERANCE_SECONDS

    def verify(self, payload: bytes, signature: Optional[str]) -> None:
        """Check the signature header against the raw body.

        Raises:
            WebhookNotConfiguredError: If no signing secret is configured.
            WebhookSignatureError: If the header is missing, invalid or too old.
        """
        if not self.secret:
            raise WebhookNotConfiguredError()
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            self.provider.verify_webhook_signature(payload, signature, self.secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid webhook signature: {e}") from e
        except UnicodeDecodeError as e:
            raise WebhookSignatureError("Webhook body is not valid UTF-8") from e

    async def handle(
        self, db: AsyncSession, payload: bytes, signature: Optional[str]
    ) -> WebhookResponse:
        """Verify and dispatch one webhook delivery.

        Returns:
            WebhookResponse: 200 once the event is settled, 400 for a bad signature,
            500 when the provider should retry.
        """
        try:
            self.verify(payload, signature)
        except WebhookNotConfiguredError as e:
            logger.error(f"Rejecting webhook: {e.message}")
            return WebhookResponse(status_code=500)
        except WebhookSignatureError as e:
            logger.warning(f"Rejecting webhook: {e.message}")
            return WebhookResponse(status_code=400)

        try:
            outcome = await self.dispatcher.dispatch_raw(db, payload)
        except (ConcurrentUpdateError, ExternalServiceError) as e:
            logger.warning(f"Webhook processing failed transiently, provider will retry: {e}")
            return WebhookResponse(status_code=500)
        except (DBAPIError, TimeoutError) as e:
            logger.error(f"Webhook processing failed, provider will retry: {e}")
            return WebhookResponse(status_code=500)
        except Exception as e:
            logger.error(f"Unexpected error processing webhook: {e}", exc_info=True)
            return WebhookResponse(status_code=500)

        return WebhookResponse(status_code=200, outcome=outcome)


webhook_gateway = WebhookGateway()
