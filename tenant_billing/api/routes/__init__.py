from tenant_billing.api.routes.billing import router as billing_router
from tenant_billing.api.routes.webhooks import router as webhooks_router

__all__ = ["billing_router", "webhooks_router"]
