from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.core.repositories.catalog import CatalogRepository
from tenant_billing.core.repositories.payment_customers import PaymentCustomerRepository
from tenant_billing.core.repositories.subscriptions import SubscriptionRepository
from tenant_billing.core.repositories.tenants import TenantRepository
from tenant_billing.core.repositories.webhook_events import ProcessedWebhookEventRepository


@dataclass(slots=True)
class BillingRepositories:
    """Repositories sharing one session, and therefore one transaction."""

    tenants: TenantRepository
    catalog: CatalogRepository
    customers: PaymentCustomerRepository
    subscriptions: SubscriptionRepository
    ledger: ProcessedWebhookEventRepository

    @classmethod
    def from_session(cls, session: AsyncSession) -> BillingRepositories:
        return cls(
            tenants=TenantRepository(session),
            catalog=CatalogRepository(session),
            customers=PaymentCustomerRepository(session),
            subscriptions=SubscriptionRepository(session),
            ledger=ProcessedWebhookEventRepository(session),
        )


RepositoryFactory = Callable[[AsyncSession], BillingRepositories]
