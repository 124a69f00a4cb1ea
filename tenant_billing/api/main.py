from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tenant_billing.api.middleware import tenant_header_middleware
from tenant_billing.api.routes.billing import router as billing_router
from tenant_billing.api.routes.webhooks import router as webhooks_router
from tenant_billing.core.errors import BillingError

app = FastAPI(title="Tenant Billing")
app.middleware("http")(tenant_header_middleware)
app.include_router(billing_router, prefix="/api/v1")
app.include_router(webhooks_router, prefix="/api/v1")


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": str(exc)},
    )


@app.get("/health", tags=["system"])
async def health_check() -> dict[str, str]:
    return {"status": "ok"}
