from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.core.context import SecurityContext
from tenant_billing.core.repositories.base import TenantScopedRepository
from tenant_billing.models.base import utcnow
from tenant_billing.models.subscription import Subscription, SubscriptionStatus


class SubscriptionRepository(TenantScopedRepository[Subscription]):
    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session=session, model=Subscription)

    async def find_by_provider_subscription_id(
        self,
        context: SecurityContext,
        provider_name: str,
        provider_subscription_id: str,
        *,
        for_update: bool = False,
    ) -> Subscription | None:
        await self._bind(context)
        stmt = self._scoped_select(context).where(
            Subscription.provider_name == provider_name,
            Subscription.provider_subscription_id == provider_subscription_id,
        )
        if for_update:
            # Reload rows already in the session so the locked values win.
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active_for_tenant(
        self,
        context: SecurityContext,
        tenant_id: UUID,
        *,
        for_update: bool = False,
    ) -> list[Subscription]:
        await self._bind(context)
        stmt = (
            self._scoped_select(context)
            .where(
                Subscription.tenant_id == tenant_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
            )
            .order_by(Subscription.created_at.desc())
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_active_for_tenant(self, context: SecurityContext, tenant_id: UUID) -> Subscription | None:
        active = await self.list_active_for_tenant(context, tenant_id)
        return active[0] if active else None

    async def create_active(
        self,
        context: SecurityContext,
        *,
        tenant_id: UUID,
        tier_id: UUID,
        expires_at: datetime | None = None,
        provider_name: str | None = None,
        provider_subscription_id: str | None = None,
    ) -> Subscription:
        return await self.create(
            context,
            tenant_id=tenant_id,
            tier_id=tier_id,
            status=SubscriptionStatus.ACTIVE,
            starts_at=utcnow(),
            expires_at=expires_at,
            provider_name=provider_name,
            provider_subscription_id=provider_subscription_id,
        )

    async def cancel_active_for_tenant(
        self,
        context: SecurityContext,
        tenant_id: UUID,
        *,
        keep: UUID | None = None,
    ) -> list[Subscription]:
        """Cancel the tenant's active rows (except ``keep``) one by one under row locks."""
        context.require_tenant(tenant_id)
        cancelled: list[Subscription] = []
        for subscription in await self.list_active_for_tenant(context, tenant_id, for_update=True):
            if subscription.id == keep:
                continue
            await self.update(context, subscription, status=SubscriptionStatus.CANCELLED)
            cancelled.append(subscription)
        return cancelled

    async def list_expired(
        self,
        context: SecurityContext,
        *,
        now: datetime,
        exclude_tier_id: UUID,
    ) -> list[Subscription]:
        await self._bind(context)
        result = await self.session.execute(
            self._scoped_select(context)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.tier_id != exclude_tier_id,
                Subscription.expires_at.is_not(None),
                Subscription.expires_at <= now,
            )
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())
