from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from tenant_billing.api.middleware import read_limited_body
from tenant_billing.core.billing import PaymentService
from tenant_billing.core.config import settings
from tenant_billing.core.errors import WebhookVerificationError
from tenant_billing.core.providers.factory import get_payment_provider
from tenant_billing.schemas.billing import ErrorResponse, WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_webhook_service(provider: str) -> PaymentService:
    return PaymentService(get_payment_provider(provider))


@router.post(
    "/{provider}",
    response_model=WebhookResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
    },
)
async def receive_webhook(
    request: Request,
    service: PaymentService = Depends(get_webhook_service),
) -> WebhookResponse:
    raw_body = await read_limited_body(request, settings.webhook_max_body_bytes)

    signature = service.provider.read_signature(request.headers)
    if not signature:
        raise WebhookVerificationError(
            service.provider_name, f"Missing {service.provider.signature_header} header"
        )

    result = await service.process_webhook(raw_body, signature)
    logger.info(
        "Webhook %s handled provider=%s processed=%s",
        result.event_type,
        service.provider_name,
        result.processed,
    )
    return WebhookResponse(
        processed=result.processed,
        event_type=result.event_type,
        message=result.message,
    )
