from __future__ import annotations

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.core.context import SecurityContext
from tenant_billing.core.repositories.base import TenantScopedRepository
from tenant_billing.models.payment_customer import PaymentCustomer


class PaymentCustomerRepository(TenantScopedRepository[PaymentCustomer]):
    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session=session, model=PaymentCustomer)

    async def find_by_tenant(
        self,
        context: SecurityContext,
        tenant_id: UUID,
        provider: str,
    ) -> PaymentCustomer | None:
        await self._bind(context)
        result = await self.session.execute(
            self._scoped_select(context).where(
                PaymentCustomer.tenant_id == tenant_id,
                PaymentCustomer.provider == provider,
            )
        )
        return result.scalar_one_or_none()

    async def upsert(
        self,
        context: SecurityContext,
        tenant_id: UUID,
        provider: str,
        provider_customer_id: str,
    ) -> PaymentCustomer:
        existing = await self.find_by_tenant(context, tenant_id, provider)
        if existing is not None:
            return await self.update(context, existing, provider_customer_id=provider_customer_id)
        return await self.create(
            context,
            tenant_id=tenant_id,
            provider=provider,
            provider_customer_id=provider_customer_id,
        )
