from tenant_billing.models.base import Base, TenantScopedBase, TimestampedBase
from tenant_billing.models.payment_customer import PaymentCustomer
from tenant_billing.models.price import Price
from tenant_billing.models.processed_webhook_event import ProcessedWebhookEvent
from tenant_billing.models.product import Product
from tenant_billing.models.subscription import Subscription, SubscriptionStatus
from tenant_billing.models.subscription_tier import SubscriptionTier
from tenant_billing.models.tenant import Tenant

__all__ = [
    "Base",
    "TimestampedBase",
    "TenantScopedBase",
    "Tenant",
    "SubscriptionTier",
    "Product",
    "Price",
    "PaymentCustomer",
    "Subscription",
    "SubscriptionStatus",
    "ProcessedWebhookEvent",
]
