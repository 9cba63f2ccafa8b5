"""CRUD operations for tenants (the tenant directory)."""

from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billflow import schemas
from billflow.crud._base import CRUDBase
from billflow.db.unit_of_work import UnitOfWork
from billflow.models import Tenant


class CRUDTenant(CRUDBase[Tenant, schemas.TenantCreate, schemas.TenantBillingUpdate]):
    """CRUD operations for tenants."""

    async def get_by_stripe_customer(
        self, db: AsyncSession, *, stripe_customer_id: str
    ) -> Optional[Tenant]:
        """Get a tenant by Stripe customer ID.

        Args:
            db: Database session
            stripe_customer_id: Stripe customer ID

        Returns:
            Tenant or None
        """
        query = select(Tenant).where(Tenant.stripe_customer_id == stripe_customer_id)
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_for_update(self, db: AsyncSession, *, tenant_id: UUID) -> Optional[Tenant]:
        """Get a tenant and lock its row until the transaction ends."""
        query = (
            select(Tenant)
            .where(Tenant.id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_in_trial(self, db: AsyncSession) -> list[Tenant]:
        """Get all tenants whose billing status is trial."""
        query = select(Tenant).where(
            Tenant.subscription_status == schemas.SubscriptionStatus.TRIAL.value
        )
        result = await db.execute(query)
        return list(result.scalars().all())

    async def update_billing_status(
        self,
        db: AsyncSession,
        *,
        db_obj: Tenant,
        obj_in: schemas.TenantBillingUpdate,
        uow: Optional[UnitOfWork] = None,
    ) -> Tenant:
        """Apply a validated partial billing update; unset fields are left untouched."""
        return await self.update(db, db_obj=db_obj, obj_in=obj_in, uow=uow)


tenant = CRUDTenant(Tenant)
