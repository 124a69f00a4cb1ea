"""Subscription lifecycle engine.

Provider adapters translate their webhook payloads into one of the normalized
operations below. The engine applies each delivery in a single transaction:

    ledger check -> system-context lookups -> tenant-context writes -> ledger insert

and hands the resulting audit events and hook calls to the notification
emitter only after the transaction has committed.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenant_billing.core.audit import (
    AuditActor,
    AuditEvent,
    AuditEventType,
    BillingHook,
    HookCall,
    Notification,
    NotificationEmitter,
    ResourceRef,
    notification_emitter,
)
from tenant_billing.core.config import Settings, settings
from tenant_billing.core.context import SecurityContext
from tenant_billing.core.db import AsyncSessionLocal, switch_security_context
from tenant_billing.core.errors import TierNotFoundError
from tenant_billing.core.repositories.bundle import BillingRepositories, RepositoryFactory
from tenant_billing.models.subscription import Subscription, SubscriptionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CheckoutCompleted:
    tenant_id: UUID
    provider_customer_id: str
    provider_subscription_id: str
    provider_price_id: str
    expires_at: datetime | None
    amount: int | None = None
    currency: str | None = None


@dataclass(frozen=True, slots=True)
class SubscriptionUpdated:
    provider_subscription_id: str
    provider_status: str
    # None leaves the local status untouched.
    status: SubscriptionStatus | None
    provider_price_id: str | None
    expires_at: datetime | None


@dataclass(frozen=True, slots=True)
class SubscriptionCancelled:
    provider_subscription_id: str


@dataclass(frozen=True, slots=True)
class PaymentFailed:
    provider_subscription_id: str | None
    invoice_id: str | None


@dataclass(frozen=True, slots=True)
class PaymentSucceeded:
    provider_subscription_id: str | None
    invoice_id: str | None
    period_end: datetime | None
    amount: int | None = None
    currency: str | None = None


LifecycleOperation = (
    CheckoutCompleted | SubscriptionUpdated | SubscriptionCancelled | PaymentFailed | PaymentSucceeded
)


@dataclass(frozen=True, slots=True)
class NormalizedEvent:
    event_id: str
    event_type: str
    # None marks an event type that is acknowledged and ledgered without effect.
    operation: LifecycleOperation | None


@dataclass(frozen=True, slots=True)
class WebhookResult:
    processed: bool
    event_type: str
    message: str | None = None


@dataclass(slots=True)
class _Outcome:
    notifications: list[Notification] = field(default_factory=list)
    message: str | None = None


SessionFactory = Callable[[], AsyncSession] | async_sessionmaker[AsyncSession]
_Handler = Callable[[AsyncSession, BillingRepositories, object], Awaitable[_Outcome]]


async def downgrade_tenant_to_free(
    context: SecurityContext,
    repositories: BillingRepositories,
    tenant_id: UUID,
    free_tier_slug: str,
) -> Subscription:
    """Cancel every active subscription of the tenant and start a free-tier one."""
    free_tier = await repositories.catalog.get_tier_by_slug(context, free_tier_slug)
    if free_tier is None:
        raise TierNotFoundError(f"Subscription tier '{free_tier_slug}' does not exist")

    await repositories.subscriptions.cancel_active_for_tenant(context, tenant_id)
    return await repositories.subscriptions.create_active(
        context,
        tenant_id=tenant_id,
        tier_id=free_tier.id,
    )


class SubscriptionLifecycleEngine:
    def __init__(
        self,
        provider_name: str,
        *,
        session_factory: SessionFactory | None = None,
        repositories: RepositoryFactory = BillingRepositories.from_session,
        emitter: NotificationEmitter | None = None,
        config: Settings = settings,
    ) -> None:
        self.provider_name = provider_name
        self._session_factory = session_factory or AsyncSessionLocal
        self._repositories = repositories
        self._emitter = emitter or notification_emitter
        self._config = config
        self._actor = AuditActor.service(provider_name)
        self._handlers: dict[type, _Handler] = {
            CheckoutCompleted: self._checkout_completed,
            SubscriptionUpdated: self._subscription_updated,
            SubscriptionCancelled: self._subscription_cancelled,
            PaymentFailed: self._payment_failed,
            PaymentSucceeded: self._payment_succeeded,
        }

    async def has_been_processed(self, event_id: str) -> bool:
        async with self._session_factory() as session:
            return await self._repositories(session).ledger.has_been_processed(
                event_id, self.provider_name
            )

    async def process(self, event: NormalizedEvent) -> WebhookResult:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    repositories = self._repositories(session)
                    if await repositories.ledger.has_been_processed(event.event_id, self.provider_name):
                        return self._duplicate(event)

                    outcome = await self._apply(session, repositories, event.operation)
                    await repositories.ledger.mark_as_processed(
                        event.event_id,
                        self.provider_name,
                        event.event_type,
                    )
        except IntegrityError:
            # A concurrent redelivery committed the same ledger key first.
            if await self.has_been_processed(event.event_id):
                return self._duplicate(event)
            raise

        self._emitter.dispatch(outcome.notifications)
        return WebhookResult(processed=True, event_type=event.event_type, message=outcome.message)

    def _duplicate(self, event: NormalizedEvent) -> WebhookResult:
        logger.info(
            "Skipping already processed %s event id=%s type=%s",
            self.provider_name,
            event.event_id,
            event.event_type,
        )
        return WebhookResult(
            processed=False,
            event_type=event.event_type,
            message="Event already processed",
        )

    async def _apply(
        self,
        session: AsyncSession,
        repositories: BillingRepositories,
        operation: LifecycleOperation | None,
    ) -> _Outcome:
        if operation is None:
            return _Outcome()
        handler = self._handlers[type(operation)]
        return await handler(session, repositories, operation)

    async def _find_subscription(
        self,
        session: AsyncSession,
        repositories: BillingRepositories,
        provider_subscription_id: str | None,
        *,
        lock_tenant: bool = False,
    ) -> Subscription | None:
        if not provider_subscription_id:
            return None
        system = await switch_security_context(session, SecurityContext.system())
        if lock_tenant:
            found = await repositories.subscriptions.find_by_provider_subscription_id(
                system, self.provider_name, provider_subscription_id
            )
            if found is None:
                return None
            # Tenant row before subscription rows, the order checkout takes them in.
            await repositories.tenants.get(system, found.tenant_id, for_update=True)
        return await repositories.subscriptions.find_by_provider_subscription_id(
            system,
            self.provider_name,
            provider_subscription_id,
            for_update=True,
        )

    def _not_found(self, provider_subscription_id: str | None) -> _Outcome:
        logger.warning(
            "No local %s subscription for provider_subscription_id=%s; ignoring",
            self.provider_name,
            provider_subscription_id,
        )
        return _Outcome(message="Subscription not found locally")

    async def _checkout_completed(
        self,
        session: AsyncSession,
        repositories: BillingRepositories,
        op: CheckoutCompleted,
    ) -> _Outcome:
        system = await switch_security_context(session, SecurityContext.system())

        price = await repositories.catalog.find_price_by_provider_price_id(
            system, self.provider_name, op.provider_price_id
        )
        if price is None:
            logger.warning(
                "Checkout for tenant_id=%s references unknown %s price %s",
                op.tenant_id,
                self.provider_name,
                op.provider_price_id,
            )
            return _Outcome(message=f"Price not found for {self.provider_name} price {op.provider_price_id}")

        # Serializes every change to this tenant's active subscriptions.
        tenant = await repositories.tenants.get(system, op.tenant_id, for_update=True)
        if tenant is None:
            logger.warning("Checkout references unknown tenant_id=%s", op.tenant_id)
            return _Outcome(message="Tenant not found")

        existing = await repositories.subscriptions.find_by_provider_subscription_id(
            system,
            self.provider_name,
            op.provider_subscription_id,
            for_update=True,
        )
        if existing is not None and existing.tenant_id != op.tenant_id:
            logger.warning(
                "%s subscription %s already belongs to another tenant; ignoring checkout for tenant_id=%s",
                self.provider_name,
                op.provider_subscription_id,
                op.tenant_id,
            )
            return _Outcome(message="Subscription belongs to another tenant")

        tenant_context = await switch_security_context(session, SecurityContext.for_tenant(op.tenant_id))
        await repositories.customers.upsert(
            tenant_context,
            op.tenant_id,
            self.provider_name,
            op.provider_customer_id,
        )

        if existing is not None:
            await repositories.subscriptions.cancel_active_for_tenant(
                tenant_context, op.tenant_id, keep=existing.id
            )
            subscription = await repositories.subscriptions.update(
                tenant_context,
                existing,
                status=SubscriptionStatus.ACTIVE,
                tier_id=price.tier_id,
                expires_at=op.expires_at,
            )
        else:
            await repositories.subscriptions.cancel_active_for_tenant(tenant_context, op.tenant_id)
            subscription = await repositories.subscriptions.create_active(
                tenant_context,
                tenant_id=op.tenant_id,
                tier_id=price.tier_id,
                expires_at=op.expires_at,
                provider_name=self.provider_name,
                provider_subscription_id=op.provider_subscription_id,
            )

        return _Outcome(
            notifications=[
                AuditEvent.build(
                    AuditEventType.SUBSCRIPTION_CREATE,
                    tenant_id=op.tenant_id,
                    actor=self._actor,
                    resource=ResourceRef("subscription", str(subscription.id)),
                    meta={
                        "tier_id": str(price.tier_id),
                        "provider_subscription_id": op.provider_subscription_id,
                    },
                ),
                HookCall(
                    BillingHook.CUSTOMER_CREATED,
                    {"tenant_id": op.tenant_id, "customer_id": op.provider_customer_id},
                ),
                HookCall(
                    BillingHook.SUBSCRIPTION_CREATED,
                    {
                        "tenant_id": op.tenant_id,
                        "subscription_id": subscription.id,
                        "tier_id": price.tier_id,
                        "provider_subscription_id": op.provider_subscription_id,
                        "amount": op.amount,
                        "currency": op.currency,
                    },
                ),
            ]
        )

    async def _subscription_updated(
        self,
        session: AsyncSession,
        repositories: BillingRepositories,
        op: SubscriptionUpdated,
    ) -> _Outcome:
        subscription = await self._find_subscription(
            session, repositories, op.provider_subscription_id, lock_tenant=True
        )
        if subscription is None:
            return self._not_found(op.provider_subscription_id)

        tenant_context = await switch_security_context(
            session, SecurityContext.for_tenant(subscription.tenant_id)
        )
        previous_status = subscription.status
        changes: dict[str, object] = {"expires_at": op.expires_at}
        if op.status is not None:
            changes["status"] = op.status
        else:
            logger.warning(
                "Unmapped %s status %r for subscription %s; keeping status=%s",
                self.provider_name,
                op.provider_status,
                op.provider_subscription_id,
                previous_status,
            )

        if op.provider_price_id:
            price = await repositories.catalog.find_price_by_provider_price_id(
                tenant_context, self.provider_name, op.provider_price_id
            )
            if price is not None and price.tier_id != subscription.tier_id:
                changes["tier_id"] = price.tier_id

        await repositories.subscriptions.update(tenant_context, subscription, **changes)

        return _Outcome(
            notifications=[
                AuditEvent.build(
                    AuditEventType.SUBSCRIPTION_UPDATE,
                    tenant_id=subscription.tenant_id,
                    actor=self._actor,
                    resource=ResourceRef("subscription", str(subscription.id)),
                    meta={
                        "status": subscription.status,
                        "previous_status": previous_status,
                        "provider_status": op.provider_status,
                    },
                ),
                HookCall(
                    BillingHook.SUBSCRIPTION_UPDATED,
                    {
                        "tenant_id": subscription.tenant_id,
                        "subscription_id": subscription.id,
                        "status": subscription.status,
                        "previous_status": previous_status,
                        "tier_id": subscription.tier_id,
                    },
                ),
            ]
        )

    async def _subscription_cancelled(
        self,
        session: AsyncSession,
        repositories: BillingRepositories,
        op: SubscriptionCancelled,
    ) -> _Outcome:
        subscription = await self._find_subscription(
            session, repositories, op.provider_subscription_id, lock_tenant=True
        )
        if subscription is None:
            return self._not_found(op.provider_subscription_id)

        tenant_id = subscription.tenant_id
        tenant_context = await switch_security_context(session, SecurityContext.for_tenant(tenant_id))
        await repositories.subscriptions.update(
            tenant_context, subscription, status=SubscriptionStatus.CANCELLED
        )
        # Any cancellation leaves the tenant on exactly one active free-tier row.
        await downgrade_tenant_to_free(tenant_context, repositories, tenant_id, self._config.free_tier_slug)

        return _Outcome(
            notifications=[
                AuditEvent.build(
                    AuditEventType.SUBSCRIPTION_CANCEL,
                    tenant_id=tenant_id,
                    actor=self._actor,
                    resource=ResourceRef("subscription", str(subscription.id)),
                    meta={"provider_subscription_id": op.provider_subscription_id},
                ),
                HookCall(
                    BillingHook.SUBSCRIPTION_CANCELLED,
                    {
                        "tenant_id": tenant_id,
                        "subscription_id": subscription.id,
                        "tier_id": subscription.tier_id,
                    },
                ),
            ]
        )

    async def _payment_failed(
        self,
        session: AsyncSession,
        repositories: BillingRepositories,
        op: PaymentFailed,
    ) -> _Outcome:
        subscription = await self._find_subscription(session, repositories, op.provider_subscription_id)
        tenant_id = subscription.tenant_id if subscription is not None else None
        if tenant_id is None:
            logger.warning(
                "%s payment failure for unknown subscription %s (invoice %s)",
                self.provider_name,
                op.provider_subscription_id,
                op.invoice_id,
            )

        return _Outcome(
            notifications=[
                AuditEvent.build(
                    AuditEventType.BILLING_PAYMENT_FAILURE,
                    tenant_id=tenant_id,
                    actor=self._actor,
                    resource=(
                        ResourceRef("subscription_invoice", op.invoice_id)
                        if op.invoice_id and op.provider_subscription_id
                        else None
                    ),
                    meta={
                        "invoice_id": op.invoice_id,
                        "provider_subscription_id": op.provider_subscription_id,
                    },
                ),
                HookCall(
                    BillingHook.PAYMENT_FAILED,
                    {
                        "tenant_id": tenant_id,
                        "subscription_id": subscription.id if subscription is not None else None,
                        "invoice_id": op.invoice_id,
                    },
                ),
            ]
        )

    async def _payment_succeeded(
        self,
        session: AsyncSession,
        repositories: BillingRepositories,
        op: PaymentSucceeded,
    ) -> _Outcome:
        subscription = await self._find_subscription(session, repositories, op.provider_subscription_id)
        if subscription is None:
            return self._not_found(op.provider_subscription_id)

        tenant_context = await switch_security_context(
            session, SecurityContext.for_tenant(subscription.tenant_id)
        )
        if op.period_end is not None:
            await repositories.subscriptions.update(
                tenant_context, subscription, expires_at=op.period_end
            )

        return _Outcome(
            notifications=[
                AuditEvent.build(
                    AuditEventType.BILLING_PAYMENT_SUCCESS,
                    tenant_id=subscription.tenant_id,
                    actor=self._actor,
                    resource=ResourceRef("subscription", str(subscription.id)),
                    meta={"invoice_id": op.invoice_id, "amount_paid": op.amount},
                ),
                HookCall(
                    BillingHook.INVOICE_PAID,
                    {
                        "tenant_id": subscription.tenant_id,
                        "subscription_id": subscription.id,
                        "amount_paid": op.amount,
                        "currency": op.currency,
                        "invoice_id": op.invoice_id,
                    },
                ),
            ]
        )
