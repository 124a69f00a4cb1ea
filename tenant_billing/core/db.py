from __future__ import annotations

import logging
from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tenant_billing.core.config import settings
from tenant_billing.core.context import SecurityContext

logger = logging.getLogger(__name__)

engine = create_async_engine(settings.database_url, future=True, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


async def bind_security_context(session: AsyncSession, context: SecurityContext) -> None:
    # Transaction-local settings read by the row-level security policies.
    await session.execute(
        text(
            "SELECT set_config('app.security_mode', :mode, true), "
            "set_config('app.current_tenant_id', :tenant_id, true)"
        ),
        {"mode": context.mode, "tenant_id": context.setting_value},
    )


async def switch_security_context(session: AsyncSession, context: SecurityContext) -> SecurityContext:
    await bind_security_context(session, context)
    logger.debug("Security context switched to mode=%s tenant_id=%s", context.mode, context.tenant_id)
    return context
