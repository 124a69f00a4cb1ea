from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from tenant_billing.core.audit import (
    AuditActor,
    AuditEvent,
    AuditEventType,
    NotificationEmitter,
    ResourceRef,
    notification_emitter,
)
from tenant_billing.core.config import Settings, settings
from tenant_billing.core.context import SecurityContext
from tenant_billing.core.db import AsyncSessionLocal, switch_security_context
from tenant_billing.core.errors import TenantNotFoundError, TierNotFoundError
from tenant_billing.core.lifecycle import SessionFactory, downgrade_tenant_to_free
from tenant_billing.core.repositories.bundle import BillingRepositories, RepositoryFactory
from tenant_billing.models.base import utcnow
from tenant_billing.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ExpiredSubscription:
    tenant_id: UUID
    subscription_id: UUID
    previous_tier_id: UUID
    expires_at: datetime | None


class SubscriptionService:
    """Time-driven and administrative subscription changes outside the webhook path."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory | None = None,
        repositories: RepositoryFactory = BillingRepositories.from_session,
        emitter: NotificationEmitter | None = None,
        config: Settings = settings,
    ) -> None:
        self._session_factory = session_factory or AsyncSessionLocal
        self._repositories = repositories
        self._emitter = emitter or notification_emitter
        self._config = config

    async def process_expired_subscriptions(self, now: datetime | None = None) -> list[ExpiredSubscription]:
        """Expire lapsed paid subscriptions and move their tenants to the free tier.

        Runs as one transaction: either every lapsed subscription found in this
        pass is expired and replaced, or none is.
        """
        now = now or utcnow()
        expired: list[ExpiredSubscription] = []

        async with self._session_factory() as session:
            async with session.begin():
                repositories = self._repositories(session)
                system = await switch_security_context(session, SecurityContext.system())
                free_tier = await repositories.catalog.get_tier_by_slug(system, self._config.free_tier_slug)
                if free_tier is None:
                    raise TierNotFoundError(f"Subscription tier '{self._config.free_tier_slug}' does not exist")

                lapsed = await repositories.subscriptions.list_expired(
                    system, now=now, exclude_tier_id=free_tier.id
                )
                for subscription in lapsed:
                    if not subscription.is_active:
                        # Already replaced while downgrading an earlier row of the same tenant.
                        continue
                    tenant = await repositories.tenants.get(
                        system, subscription.tenant_id, for_update=True, skip_locked=True
                    )
                    if tenant is None:
                        logger.info(
                            "Tenant %s is busy with another billing change; expiring on the next pass",
                            subscription.tenant_id,
                        )
                        continue
                    tenant_context = await switch_security_context(
                        session, SecurityContext.for_tenant(subscription.tenant_id)
                    )
                    await repositories.subscriptions.update(
                        tenant_context, subscription, status=SubscriptionStatus.EXPIRED
                    )
                    await downgrade_tenant_to_free(
                        tenant_context, repositories, subscription.tenant_id, self._config.free_tier_slug
                    )
                    expired.append(
                        ExpiredSubscription(
                            tenant_id=subscription.tenant_id,
                            subscription_id=subscription.id,
                            previous_tier_id=subscription.tier_id,
                            expires_at=subscription.expires_at,
                        )
                    )

        if expired:
            logger.info("Expired %d subscriptions", len(expired))
        self._emitter.dispatch(
            AuditEvent.build(
                AuditEventType.SUBSCRIPTION_EXPIRE,
                tenant_id=item.tenant_id,
                actor=AuditActor.system(),
                resource=ResourceRef("subscription", str(item.subscription_id)),
                meta={
                    "previous_tier_id": str(item.previous_tier_id),
                    "expires_at": item.expires_at.isoformat() if item.expires_at else None,
                },
            )
            for item in expired
        )
        return expired

    async def update_tenant_subscription(
        self,
        tenant_id: UUID,
        tier_slug: str,
        expires_at: datetime | None = None,
    ) -> Subscription:
        async with self._session_factory() as session:
            async with session.begin():
                repositories = self._repositories(session)
                system = await switch_security_context(session, SecurityContext.system())
                tier = await repositories.catalog.get_tier_by_slug(system, tier_slug)
                if tier is None:
                    raise TierNotFoundError(f"Subscription tier '{tier_slug}' does not exist")
                if await repositories.tenants.get(system, tenant_id, for_update=True) is None:
                    raise TenantNotFoundError(f"Tenant {tenant_id} not found")

                tenant_context = await switch_security_context(session, SecurityContext.for_tenant(tenant_id))
                await repositories.subscriptions.cancel_active_for_tenant(tenant_context, tenant_id)
                subscription = await repositories.subscriptions.create_active(
                    tenant_context,
                    tenant_id=tenant_id,
                    tier_id=tier.id,
                    expires_at=expires_at,
                )

        self._emitter.dispatch(
            [
                AuditEvent.build(
                    AuditEventType.SUBSCRIPTION_UPDATE,
                    tenant_id=tenant_id,
                    actor=AuditActor.system(),
                    resource=ResourceRef("subscription", str(subscription.id)),
                    meta={"tier_slug": tier_slug},
                )
            ]
        )
        return subscription
