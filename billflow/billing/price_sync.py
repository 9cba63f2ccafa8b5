"""Mirror the Stripe price catalog into the local price table."""

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from billflow import crud, schemas
from billflow.core.logging import logger
from billflow.db.unit_of_work import UnitOfWork
from billflow.integrations.stripe_client import StripeClient, stripe_client


def _plan_id(product: Any) -> Optional[str]:
    """Plan a product sells: its ``plan_id`` metadata, else its lowercased name."""
    if not isinstance(product, dict):
        return None
    plan_id = (product.get("metadata") or {}).get("plan_id")
    if plan_id:
        return plan_id
    name = product.get("name")
    return name.strip().lower() if name else None


def price_from_provider(raw: dict[str, Any]) -> Optional[schemas.PriceCreate]:
    """Map a provider price (product expanded) to a local price, None if unusable."""
    recurring = raw.get("recurring") or {}
    plan_id = _plan_id(raw.get("product"))
    if not recurring or not plan_id or raw.get("unit_amount") is None:
        return None
    billing_period = (
        schemas.BillingPeriod.ANNUAL
        if recurring.get("interval") == "year"
        else schemas.BillingPeriod.MONTHLY
    )
    return schemas.PriceCreate(
        external_price_id=raw["id"],
        plan_id=plan_id,
        billing_period=billing_period,
        amount=raw["unit_amount"],
        currency=raw.get("currency") or "usd",
        is_active=True,
    )


class PriceCatalogSync:
    """Upsert active provider prices and deactivate the ones that disappeared."""

    def __init__(self, provider: Optional[StripeClient] = None):
        """Initialize the sync."""
        self.stripe = provider or stripe_client

    async def sync(self, db: AsyncSession) -> schemas.PriceSyncResult:
        """Run one catalog sync.

        Raises:
            ExternalServiceError: If listing prices from Stripe fails.
        """
        provider_prices = await self.stripe.list_active_prices()
        result = schemas.PriceSyncResult()
        seen: set[str] = set()

        async with UnitOfWork(db) as uow:
            for raw in provider_prices:
                price_in = price_from_provider(raw)
                if price_in is None:
                    logger.debug(f"Skipping price {raw.get('id')}: not a recurring plan price")
                    continue
                seen.add(price_in.external_price_id)

                existing = await crud.price.get_by_external_id(
                    db, external_price_id=price_in.external_price_id
                )
                if existing is None:
                    await crud.price.create(db, obj_in=price_in, uow=uow)
                    result.created += 1
                    continue

                update = schemas.PriceUpdate(
                    plan_id=price_in.plan_id,
                    billing_period=price_in.billing_period,
                    amount=price_in.amount,
                    currency=price_in.currency,
                    is_active=True,
                )
                await crud.price.update(db, db_obj=existing, obj_in=update, uow=uow)
                result.updated += 1

            for price in await crud.price.get_all_active(db):
                if price.external_price_id not in seen:
                    await crud.price.update(
                        db, db_obj=price, obj_in=schemas.PriceUpdate(is_active=False), uow=uow
                    )
                    result.deactivated += 1

        logger.info(
            f"Price catalog synced: {result.created} created, {result.updated} updated, "
            f"{result.deactivated} deactivated"
        )
        return result


price_catalog_sync = PriceCatalogSync()
