from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from tenant_billing.core.context import SecurityContext
from tenant_billing.core.errors import NoActiveCustomerError, NoActiveSubscriptionError, PriceNotFoundError
from tenant_billing.core.lifecycle import SessionFactory
from tenant_billing.core.repositories.bundle import RepositoryFactory
from tenant_billing.models.payment_customer import PaymentCustomer
from tenant_billing.models.price import Price
from tenant_billing.models.subscription import Subscription


@dataclass(frozen=True, slots=True)
class CheckoutTarget:
    price: Price
    customer: PaymentCustomer | None


async def load_checkout_target(
    session_factory: SessionFactory,
    repositories: RepositoryFactory,
    provider: str,
    tenant_id: UUID,
    price_id: UUID,
) -> CheckoutTarget:
    context = SecurityContext.for_tenant(tenant_id)
    async with session_factory() as session:
        repos = repositories(session)
        price = await repos.catalog.get_price(context, price_id, provider)
        if price is None:
            raise PriceNotFoundError(f"Price {price_id} not found for provider '{provider}'")
        customer = await repos.customers.find_by_tenant(context, tenant_id, provider)
    return CheckoutTarget(price=price, customer=customer)


async def load_payment_customer(
    session_factory: SessionFactory,
    repositories: RepositoryFactory,
    provider: str,
    tenant_id: UUID,
) -> PaymentCustomer:
    context = SecurityContext.for_tenant(tenant_id)
    async with session_factory() as session:
        customer = await repositories(session).customers.find_by_tenant(context, tenant_id, provider)
    if customer is None:
        raise NoActiveCustomerError(f"No {provider} customer found for this tenant")
    return customer


async def load_provider_subscription(
    session_factory: SessionFactory,
    repositories: RepositoryFactory,
    provider: str,
    tenant_id: UUID,
) -> Subscription:
    context = SecurityContext.for_tenant(tenant_id)
    async with session_factory() as session:
        active = await repositories(session).subscriptions.list_active_for_tenant(context, tenant_id)
    for subscription in active:
        if subscription.provider_name == provider and subscription.provider_subscription_id:
            return subscription
    raise NoActiveSubscriptionError(f"No active {provider} subscription found for this tenant")
