"""CRUD operations for prices."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billflow import schemas
from billflow.crud._base import CRUDBase
from billflow.models import Price


class CRUDPrice(CRUDBase[Price, schemas.PriceCreate, schemas.PriceUpdate]):
    """CRUD operations for prices."""

    async def get_by_external_id(
        self, db: AsyncSession, *, external_price_id: str
    ) -> Optional[Price]:
        """Get a price by its provider price ID."""
        query = select(Price).where(Price.external_price_id == external_price_id)
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_active_match(
        self,
        db: AsyncSession,
        *,
        external_price_id: str,
        plan_id: str,
        billing_period: schemas.BillingPeriod,
    ) -> Optional[Price]:
        """Get the active price matching a provider price ID, plan and billing period."""
        query = select(Price).where(
            Price.external_price_id == external_price_id,
            Price.plan_id == plan_id,
            Price.billing_period == billing_period.value,
            Price.is_active.is_(True),
        )
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_catalog(
        self, db: AsyncSession, *, billing_period: schemas.BillingPeriod
    ) -> list[Price]:
        """Get the active prices of a billing period, cheapest first."""
        query = (
            select(Price)
            .where(Price.billing_period == billing_period.value, Price.is_active.is_(True))
            .order_by(Price.amount, Price.plan_id)
        )
        result = await db.execute(query)
        return list(result.scalars().all())

    async def get_all_active(self, db: AsyncSession) -> list[Price]:
        """Get every active price."""
        result = await db.execute(select(Price).where(Price.is_active.is_(True)))
        return list(result.scalars().all())


price = CRUDPrice(Price)
