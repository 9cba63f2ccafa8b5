"""CRUD operations for payments."""

from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billflow import schemas
from billflow.crud._base import CRUDBase
from billflow.models import Payment


class CRUDPayment(CRUDBase[Payment, schemas.PaymentCreate, schemas.PaymentCreate]):
    """CRUD operations for payments. Payments are never updated."""

    async def get_by_invoice(
        self, db: AsyncSession, *, external_invoice_id: str, status: schemas.PaymentStatus
    ) -> Optional[Payment]:
        """Get the payment recorded for a provider invoice outcome."""
        query = select(Payment).where(
            Payment.external_invoice_id == external_invoice_id,
            Payment.status == status.value,
        )
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_latest_succeeded(
        self, db: AsyncSession, *, subscription_id: UUID
    ) -> Optional[Payment]:
        """Get the most recent successful payment of a subscription."""
        query = (
            select(Payment)
            .where(
                Payment.subscription_id == subscription_id,
                Payment.status == schemas.PaymentStatus.SUCCEEDED.value,
            )
            .order_by(Payment.paid_at.desc())
            .limit(1)
        )
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def get_for_subscription(
        self, db: AsyncSession, *, subscription_id: UUID
    ) -> list[Payment]:
        """Get all payments of a subscription, oldest first."""
        query = (
            select(Payment)
            .where(Payment.subscription_id == subscription_id)
            .order_by(Payment.paid_at.asc())
        )
        result = await db.execute(query)
        return list(result.scalars().all())


payment = CRUDPayment(Payment, immutable=True)
