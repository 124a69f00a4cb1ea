from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.core.context import SecurityContext
from tenant_billing.core.repositories.base import Repository
from tenant_billing.models.tenant import Tenant


class TenantRepository(Repository[Tenant]):
    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session=session, model=Tenant)

    async def get(
        self,
        context: SecurityContext,
        entity_id: UUID,
        *,
        for_update: bool = False,
        skip_locked: bool = False,
    ) -> Tenant | None:
        """Load a tenant, optionally holding its row lock until the transaction ends.

        Every change to a tenant's set of active subscriptions takes this lock
        first, so two such changes for one tenant run one after the other.
        With ``skip_locked`` a tenant locked elsewhere comes back as ``None``.
        """
        await self._bind(context)
        stmt = select(Tenant).where(Tenant.id == entity_id)
        if for_update:
            stmt = stmt.with_for_update(skip_locked=skip_locked)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
