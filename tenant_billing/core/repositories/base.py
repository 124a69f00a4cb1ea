from __future__ import annotations

from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Select

from tenant_billing.core.context import SecurityContext
from tenant_billing.core.db import bind_security_context
from tenant_billing.models.base import TenantScopedBase, TimestampedBase

ModelT = TypeVar("ModelT", bound=TimestampedBase)
ScopedModelT = TypeVar("ScopedModelT", bound=TenantScopedBase)

_PROTECTED_FIELDS = frozenset({"id", "tenant_id", "created_at"})


class Repository(Generic[ModelT]):
    """Read access to a table; every call rebinds the caller's security context."""

    def __init__(self, session: AsyncSession, model: type[ModelT]) -> None:
        self.session = session
        self.model = model

    async def _bind(self, context: SecurityContext) -> None:
        await bind_security_context(self.session, context)

    async def get(self, context: SecurityContext, entity_id: UUID) -> ModelT | None:
        await self._bind(context)
        result = await self.session.execute(select(self.model).where(self.model.id == entity_id))
        return result.scalar_one_or_none()


class TenantScopedRepository(Repository[ScopedModelT]):
    """Tenant-owned rows: reads narrow to the context tenant, writes demand one."""

    def _scoped_select(self, context: SecurityContext) -> Select[tuple[ScopedModelT]]:
        stmt = select(self.model)
        if not context.is_system:
            stmt = stmt.where(self.model.tenant_id == context.tenant_id)
        return stmt

    async def get(self, context: SecurityContext, entity_id: UUID) -> ScopedModelT | None:
        await self._bind(context)
        result = await self.session.execute(
            self._scoped_select(context).where(self.model.id == entity_id)
        )
        return result.scalar_one_or_none()

    async def create(self, context: SecurityContext, **values: object) -> ScopedModelT:
        payload = dict(values)
        tenant_id = payload.pop("tenant_id", None) or context.tenant_id
        context.require_tenant(tenant_id)  # type: ignore[arg-type]
        await self._bind(context)
        instance = self.model(tenant_id=tenant_id, **payload)
        self.session.add(instance)
        await self.session.flush()
        return instance

    async def update(
        self,
        context: SecurityContext,
        instance: ScopedModelT,
        **values: object,
    ) -> ScopedModelT:
        context.require_tenant(instance.tenant_id)
        await self._bind(context)
        for field, value in values.items():
            if field in _PROTECTED_FIELDS:
                continue
            setattr(instance, field, value)
        await self.session.flush()
        return instance
