"""CRUD operations for subscriptions."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billflow import schemas
from billflow.crud._base import CRUDBase
from billflow.models import Subscription

_NON_TERMINAL = (
    schemas.SubscriptionStatus.INCOMPLETE.value,
    schemas.SubscriptionStatus.TRIAL.value,
    schemas.SubscriptionStatus.ACTIVE.value,
    schemas.SubscriptionStatus.PAST_DUE.value,
)


class CRUDSubscription(
    CRUDBase[Subscription, schemas.SubscriptionCreate, schemas.SubscriptionUpdate]
):
    """CRUD operations for subscriptions."""

    async def get_by_external_id(
        self, db: AsyncSession, *, external_subscription_id: str, for_update: bool = False
    ) -> Optional[Subscription]:
        """Get a subscription by its provider subscription ID.

        Args:
            db: Database session
            external_subscription_id: Provider subscription ID
            for_update: Lock the row until the transaction ends

        Returns:
            Subscription or None
        """
        query = select(Subscription).where(
            Subscription.external_subscription_id == external_subscription_id
        )
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_current_for_tenant(
        self, db: AsyncSession, *, tenant_id: UUID, for_update: bool = False
    ) -> Optional[Subscription]:
        """Get the tenant's most recent non-canceled subscription.

        Args:
            db: Database session
            tenant_id: Tenant ID
            for_update: Lock the row until the transaction ends

        Returns:
            Subscription or None
        """
        query = (
            select(Subscription)
            .where(Subscription.tenant_id == tenant_id, Subscription.status.in_(_NON_TERMINAL))
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_by_checkout_session(
        self, db: AsyncSession, *, checkout_session_id: str
    ) -> Optional[Subscription]:
        """Get the subscription a checkout session was started for."""
        query = select(Subscription).where(
            Subscription.checkout_session_id == checkout_session_id
        )
        result = await db.execute(query)
        return result.scalars().first()

    async def get_latest_for_tenant(
        self, db: AsyncSession, *, tenant_id: UUID
    ) -> Optional[Subscription]:
        """Get the tenant's most recent subscription, canceled or not."""
        query = (
            select(Subscription)
            .where(Subscription.tenant_id == tenant_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_due_for_period_end_cancel(
        self, db: AsyncSession, *, now: datetime
    ) -> list[Subscription]:
        """Get subscriptions flagged to cancel at period end whose period is over."""
        query = select(Subscription).where(
            Subscription.cancel_at_period_end.is_(True),
            Subscription.status.in_(_NON_TERMINAL),
            Subscription.current_period_end.is_not(None),
            Subscription.current_period_end <= now,
        )
        result = await db.execute(query)
        return list(result.scalars().all())


subscription = CRUDSubscription(Subscription)
