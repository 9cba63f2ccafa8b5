"""Stripe API client for billing operations.

This module provides a thin interface to the Stripe API, handling all direct Stripe
interactions without business logic. Every call carries a timeout; failures and
timeouts surface as ``ExternalServiceError``.
"""

import asyncio
from typing import Any, Awaitable, Dict, Optional, TypeVar

import stripe
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from billflow import schemas
from billflow.core.config import settings
from billflow.core.exceptions import ExternalServiceError

T = TypeVar("T")

_TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)


class StripeClient:
    """Client for Stripe API operations."""

    def __init__(self, timeout: Optional[float] = None):
        """Initialize the Stripe client.

        Args:
            timeout: Seconds allowed per API call; defaults to STRIPE_TIMEOUT_SECONDS.
        """
        if settings.STRIPE_SECRET_KEY:
            stripe.api_key = settings.STRIPE_SECRET_KEY
        stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
        self.timeout = timeout or settings.STRIPE_TIMEOUT_SECONDS

    def _ensure_enabled(self) -> None:
        if not settings.stripe_configured:
            raise ExternalServiceError(service_name="Stripe", message="Stripe is not configured")

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Await a Stripe call under the client timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Timed out after {self.timeout}s: {operation}",
            ) from e

    @staticmethod
    def _clean_metadata(metadata: Optional[Dict[str, str]]) -> Dict[str, str]:
        """Stringify metadata values for Stripe."""
        return {str(key): str(value) for key, value in (metadata or {}).items()}

    # Customer operations

    async def create_customer(
        self,
        email: Optional[str],
        name: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> stripe.Customer:
        """Create a Stripe customer."""
        self._ensure_enabled()
        try:
            params: Dict[str, Any] = {"name": name, "metadata": self._clean_metadata(metadata)}
            if email:
                params["email"] = email
            return await self._call("create customer", stripe.Customer.create_async(**params))
        except stripe.StripeError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Failed to create customer: {str(e)}",
            ) from e

    # Checkout operations

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        trial_period_days: int = 0,
        client_reference_id: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> stripe.checkout.Session:
        """Create a hosted checkout session for a subscription.

        The metadata is stamped on both the session and the subscription it creates,
        so later subscription events can be tied back to the tenant.
        """
        self._ensure_enabled()
        clean_metadata = self._clean_metadata(metadata)
        subscription_data: Dict[str, Any] = {"metadata": clean_metadata}
        if trial_period_days > 0:
            subscription_data["trial_period_days"] = trial_period_days

        try:
            params: Dict[str, Any] = {
                "customer": customer_id,
                "mode": "subscription",
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": clean_metadata,
                "subscription_data": subscription_data,
                "billing_address_collection": "auto",
                "allow_promotion_codes": True,
            }
            if client_reference_id:
                params["client_reference_id"] = client_reference_id
            return await self._call(
                "create checkout session", stripe.checkout.Session.create_async(**params)
            )
        except stripe.StripeError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Failed to create checkout session: {str(e)}",
            ) from e

    async def retrieve_checkout_session(self, session_id: str) -> schemas.CheckoutSessionData:
        """Retrieve a checkout session as a typed payload.

        Raises:
            ExternalServiceError: If Stripe fails, times out or returns an unusable object.
        """
        self._ensure_enabled()
        try:
            session = await self._call(
                "retrieve checkout session", stripe.checkout.Session.retrieve_async(session_id)
            )
        except stripe.StripeError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Failed to retrieve checkout session: {str(e)}",
            ) from e
        try:
            return schemas.CheckoutSessionData.model_validate(session.to_dict())
        except ValueError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Unexpected checkout session payload: {str(e)}",
            ) from e

    # Subscription operations

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_STRIPE_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _retrieve_subscription(self, subscription_id: str) -> stripe.Subscription:
        return await self._call(
            "retrieve subscription", stripe.Subscription.retrieve_async(subscription_id)
        )

    async def retrieve_subscription(self, subscription_id: str) -> schemas.SubscriptionData:
        """Retrieve a subscription as a typed payload.

        Raises:
            ExternalServiceError: If Stripe fails, times out or returns an unusable object.
        """
        self._ensure_enabled()
        try:
            subscription = await self._retrieve_subscription(subscription_id)
        except stripe.StripeError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Failed to retrieve subscription: {str(e)}",
            ) from e
        try:
            return schemas.SubscriptionData.model_validate(subscription.to_dict())
        except ValueError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Unexpected subscription payload: {str(e)}",
            ) from e

    async def cancel_subscription(
        self, subscription_id: str, at_period_end: bool = True
    ) -> stripe.Subscription:
        """Cancel a subscription now with a prorated credit, or flag it to end with the period."""
        self._ensure_enabled()
        try:
            if at_period_end:
                return await self._call(
                    "schedule cancellation",
                    stripe.Subscription.modify_async(subscription_id, cancel_at_period_end=True),
                )
            # Credit the unused part of the period and invoice it right away
            return await self._call(
                "cancel subscription",
                stripe.Subscription.cancel_async(subscription_id, prorate=True, invoice_now=True),
            )
        except stripe.StripeError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Failed to cancel subscription: {str(e)}",
            ) from e

    async def extend_trial(self, subscription_id: str, trial_end: int) -> stripe.Subscription:
        """Move a trialing subscription's trial end to ``trial_end`` (unix seconds)."""
        self._ensure_enabled()
        try:
            return await self._call(
                "extend trial",
                stripe.Subscription.modify_async(
                    subscription_id, trial_end=trial_end, proration_behavior="none"
                ),
            )
        except stripe.StripeError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Failed to extend trial: {str(e)}",
            ) from e

    # Catalog operations

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_STRIPE_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _list_prices_page(self, starting_after: Optional[str]) -> Any:
        params: Dict[str, Any] = {"active": True, "limit": 100, "expand": ["data.product"]}
        if starting_after:
            params["starting_after"] = starting_after
        return await self._call("list prices", stripe.Price.list_async(**params))

    async def list_active_prices(self) -> list[Dict[str, Any]]:
        """List all active recurring prices with their product expanded."""
        self._ensure_enabled()
        prices: list[Dict[str, Any]] = []
        starting_after: Optional[str] = None
        try:
            while True:
                page = await self._list_prices_page(starting_after)
                batch = [price.to_dict() for price in page.data]
                prices.extend(batch)
                if not page.has_more or not batch:
                    break
                starting_after = batch[-1]["id"]
        except stripe.StripeError as e:
            raise ExternalServiceError(
                service_name="Stripe",
                message=f"Failed to list prices: {str(e)}",
            ) from e
        return prices

    # Webhook operations

    def verify_webhook_signature(
        self, payload: bytes, signature: str, secret: str, tolerance: int
    ) -> None:
        """Verify a webhook signature header against the raw body.

        Raises:
            stripe.SignatureVerificationError: If the signature is invalid or too old.
        """
        stripe.WebhookSignature.verify_header(payload.decode("utf-8"), signature, secret, tolerance)


stripe_client = StripeClient()
