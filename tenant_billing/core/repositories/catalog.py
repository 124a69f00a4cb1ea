from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from tenant_billing.core.context import SecurityContext
from tenant_billing.core.repositories.base import Repository
from tenant_billing.models.price import Price
from tenant_billing.models.product import Product
from tenant_billing.models.subscription_tier import SubscriptionTier


class CatalogRepository(Repository[Price]):
    """Products, prices and tiers. Catalog rows are global, not tenant-owned."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session=session, model=Price)

    async def get_price(
        self,
        context: SecurityContext,
        price_id: UUID,
        provider: str,
        *,
        active_only: bool = False,
    ) -> Price | None:
        await self._bind(context)
        stmt = (
            select(Price)
            .options(selectinload(Price.product))
            .where(Price.id == price_id, Price.provider == provider)
        )
        if active_only:
            stmt = stmt.where(Price.is_active.is_(True))
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_price_by_provider_price_id(
        self,
        context: SecurityContext,
        provider: str,
        provider_price_id: str,
    ) -> Price | None:
        await self._bind(context)
        result = await self.session.execute(
            select(Price)
            .options(selectinload(Price.product))
            .where(
                Price.provider == provider,
                Price.provider_price_id == provider_price_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_tier_by_slug(self, context: SecurityContext, slug: str) -> SubscriptionTier | None:
        await self._bind(context)
        result = await self.session.execute(
            select(SubscriptionTier).where(SubscriptionTier.slug == slug)
        )
        return result.scalar_one_or_none()

    async def list_active_tiers(self, context: SecurityContext) -> list[SubscriptionTier]:
        await self._bind(context)
        result = await self.session.execute(
            select(SubscriptionTier)
            .where(SubscriptionTier.is_active.is_(True))
            .order_by(SubscriptionTier.level.asc())
        )
        return list(result.scalars().all())

    async def list_products_with_prices(self, context: SecurityContext, provider: str) -> list[Product]:
        await self._bind(context)
        result = await self.session.execute(
            select(Product)
            .options(selectinload(Product.prices))
            .where(Product.provider == provider)
        )
        return list(result.scalars().all())
