from __future__ import annotations

import logging
from uuid import UUID

from tenant_billing.core.context import SecurityContext
from tenant_billing.core.db import AsyncSessionLocal
from tenant_billing.core.errors import (
    NoActiveCustomerError,
    NoActiveSubscriptionError,
    PriceNotFoundError,
    SubscriptionNotManagedError,
    TenantNotFoundError,
)
from tenant_billing.core.lifecycle import SessionFactory
from tenant_billing.core.providers.factory import get_payment_provider
from tenant_billing.core.providers.types import (
    CheckoutSessionParams,
    CheckoutSessionResult,
    CustomerPortalParams,
    CustomerPortalResult,
    PaymentProvider,
    TenantInfo,
    WebhookEvent,
    WebhookResult,
)
from tenant_billing.core.repositories.bundle import BillingRepositories, RepositoryFactory
from tenant_billing.models.product import Product
from tenant_billing.models.subscription import Subscription
from tenant_billing.models.subscription_tier import SubscriptionTier

logger = logging.getLogger(__name__)


class PaymentService:
    """Tenant-facing billing operations on top of one payment provider."""

    def __init__(
        self,
        provider: PaymentProvider | None = None,
        *,
        session_factory: SessionFactory | None = None,
        repositories: RepositoryFactory = BillingRepositories.from_session,
    ) -> None:
        self.provider = provider or get_payment_provider()
        self._session_factory = session_factory or AsyncSessionLocal
        self._repositories = repositories

    @property
    def provider_name(self) -> str:
        return self.provider.name

    async def list_tiers(self) -> list[SubscriptionTier]:
        async with self._session_factory() as session:
            return await self._repositories(session).catalog.list_active_tiers(SecurityContext.system())

    async def get_billing_tiers(self) -> list[Product]:
        async with self._session_factory() as session:
            return await self._repositories(session).catalog.list_products_with_prices(
                SecurityContext.system(), self.provider_name
            )

    async def create_checkout_session(
        self,
        tenant_id: UUID,
        price_id: UUID,
        success_url: str,
        cancel_url: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> CheckoutSessionResult:
        context = SecurityContext.for_tenant(tenant_id)
        async with self._session_factory() as session:
            repositories = self._repositories(session)
            tenant = await self._tenant_info(repositories, context, tenant_id)
            price = await repositories.catalog.get_price(context, price_id, self.provider_name, active_only=True)
        if price is None:
            raise PriceNotFoundError("Price not found or inactive")

        return await self.provider.create_checkout_session(
            CheckoutSessionParams(
                tenant=tenant,
                price_id=price_id,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=dict(metadata or {}),
            )
        )

    async def create_customer_portal_session(self, tenant_id: UUID, return_url: str) -> CustomerPortalResult:
        context = SecurityContext.for_tenant(tenant_id)
        async with self._session_factory() as session:
            repositories = self._repositories(session)
            customer = await repositories.customers.find_by_tenant(context, tenant_id, self.provider_name)
            if customer is None:
                raise NoActiveCustomerError("No billing account found. Please subscribe first.")
            tenant = await self._tenant_info(repositories, context, tenant_id)

        return await self.provider.create_customer_portal_session(
            CustomerPortalParams(tenant=tenant, return_url=return_url)
        )

    async def process_webhook(self, raw_payload: bytes, signature: str) -> WebhookResult:
        return await self.provider.handle_webhook(WebhookEvent(raw_payload=raw_payload, signature=signature))

    async def cancel_subscription(self, subscription: Subscription) -> None:
        # Local state follows when the provider's cancellation webhook arrives.
        if not subscription.provider_subscription_id or subscription.provider_name != self.provider_name:
            raise SubscriptionNotManagedError("Subscription is not managed by this payment provider")
        await self.provider.cancel_subscription(subscription.provider_subscription_id)
        logger.info(
            "Requested %s cancellation of subscription %s for tenant_id=%s",
            self.provider_name,
            subscription.provider_subscription_id,
            subscription.tenant_id,
        )

    async def cancel_tenant_subscription(self, tenant_id: UUID) -> Subscription:
        subscription = await self.get_current_subscription(tenant_id)
        if subscription is None:
            raise NoActiveSubscriptionError("No active subscription to cancel")
        await self.cancel_subscription(subscription)
        return subscription

    async def get_current_subscription(self, tenant_id: UUID) -> Subscription | None:
        async with self._session_factory() as session:
            return await self._repositories(session).subscriptions.get_active_for_tenant(
                SecurityContext.for_tenant(tenant_id), tenant_id
            )

    async def can_manage_billing(self, tenant_id: UUID) -> bool:
        async with self._session_factory() as session:
            customer = await self._repositories(session).customers.find_by_tenant(
                SecurityContext.for_tenant(tenant_id), tenant_id, self.provider_name
            )
        return customer is not None

    async def _tenant_info(
        self,
        repositories: BillingRepositories,
        context: SecurityContext,
        tenant_id: UUID,
    ) -> TenantInfo:
        tenant = await repositories.tenants.get(context, tenant_id)
        if tenant is None:
            raise TenantNotFoundError(f"Tenant {tenant_id} not found")
        return TenantInfo(tenant_id=tenant.id, email=tenant.billing_email, name=tenant.name)
