from tenant_billing.schemas.billing import (
    BillingTiersResponse,
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    CurrentSubscriptionResponse,
    ErrorResponse,
    PortalRequest,
    PortalResponse,
    PriceResponse,
    ProductResponse,
    SubscriptionResponse,
    TierResponse,
    WebhookResponse,
)

__all__ = [
    "BillingTiersResponse",
    "CancelResponse",
    "CheckoutRequest",
    "CheckoutResponse",
    "CurrentSubscriptionResponse",
    "ErrorResponse",
    "PortalRequest",
    "PortalResponse",
    "PriceResponse",
    "ProductResponse",
    "SubscriptionResponse",
    "TierResponse",
    "WebhookResponse",
]
