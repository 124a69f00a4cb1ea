from tenant_billing.core.repositories.base import Repository, TenantScopedRepository
from tenant_billing.core.repositories.bundle import BillingRepositories, RepositoryFactory
from tenant_billing.core.repositories.catalog import CatalogRepository
from tenant_billing.core.repositories.payment_customers import PaymentCustomerRepository
from tenant_billing.core.repositories.subscriptions import SubscriptionRepository
from tenant_billing.core.repositories.tenants import TenantRepository
from tenant_billing.core.repositories.webhook_events import ProcessedWebhookEventRepository

__all__ = [
    "Repository",
    "TenantScopedRepository",
    "BillingRepositories",
    "RepositoryFactory",
    "CatalogRepository",
    "PaymentCustomerRepository",
    "ProcessedWebhookEventRepository",
    "SubscriptionRepository",
    "TenantRepository",
]
