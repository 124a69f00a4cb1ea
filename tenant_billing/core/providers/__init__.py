from tenant_billing.core.providers.factory import PAYMENT_PROVIDERS, get_payment_provider
from tenant_billing.core.providers.lemonsqueezy_provider import LemonSqueezyProvider
from tenant_billing.core.providers.paddle_provider import PaddleProvider
from tenant_billing.core.providers.polar_provider import PolarProvider
from tenant_billing.core.providers.stripe_provider import StripeProvider
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

__all__ = [
    "PAYMENT_PROVIDERS",
    "get_payment_provider",
    "LemonSqueezyProvider",
    "PaddleProvider",
    "PolarProvider",
    "StripeProvider",
    "CheckoutSessionParams",
    "CheckoutSessionResult",
    "CustomerPortalParams",
    "CustomerPortalResult",
    "PaymentProvider",
    "TenantInfo",
    "WebhookEvent",
    "WebhookResult",
]
