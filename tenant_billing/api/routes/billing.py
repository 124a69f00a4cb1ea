from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends

from tenant_billing.api.middleware import require_tenant_id, resolve_return_url
from tenant_billing.core.billing import PaymentService
from tenant_billing.models.subscription import Subscription
from tenant_billing.schemas.billing import (
    BillingTiersResponse,
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    CurrentSubscriptionResponse,
    PortalRequest,
    PortalResponse,
    PriceResponse,
    ProductResponse,
    SubscriptionResponse,
    TierResponse,
)

router = APIRouter(prefix="/billing", tags=["billing"])


def get_payment_service() -> PaymentService:
    return PaymentService()


def _subscription_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        tier_id=subscription.tier_id,
        status=str(subscription.status),
        starts_at=subscription.starts_at,
        expires_at=subscription.expires_at,
        provider_name=subscription.provider_name,
        provider_subscription_id=subscription.provider_subscription_id,
    )


@router.get("/tiers", response_model=BillingTiersResponse)
async def list_billing_tiers(
    service: PaymentService = Depends(get_payment_service),
) -> BillingTiersResponse:
    tiers = await service.list_tiers()
    products = await service.get_billing_tiers()
    return BillingTiersResponse(
        provider=service.provider_name,
        tiers=[
            TierResponse(
                id=tier.id,
                slug=tier.slug,
                name=tier.name,
                level=tier.level,
                max_team_members=tier.max_team_members,
                features=tier.features,
            )
            for tier in tiers
        ],
        products=[
            ProductResponse(
                id=product.id,
                tier_id=product.tier_id,
                provider_product_id=product.provider_product_id,
                prices=[
                    PriceResponse(
                        id=price.id,
                        provider_price_id=price.provider_price_id,
                        interval=price.interval,
                        currency=price.currency,
                        unit_amount=price.unit_amount,
                        tax_behavior=price.tax_behavior,
                    )
                    for price in product.prices
                    if price.is_active
                ],
            )
            for product in products
        ],
    )


@router.get("/subscription", response_model=CurrentSubscriptionResponse)
async def get_current_subscription(
    tenant_id: UUID = Depends(require_tenant_id),
    service: PaymentService = Depends(get_payment_service),
) -> CurrentSubscriptionResponse:
    subscription = await service.get_current_subscription(tenant_id)
    return CurrentSubscriptionResponse(
        subscription=_subscription_response(subscription) if subscription is not None else None,
        can_manage_billing=await service.can_manage_billing(tenant_id),
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    payload: CheckoutRequest,
    tenant_id: UUID = Depends(require_tenant_id),
    service: PaymentService = Depends(get_payment_service),
) -> CheckoutResponse:
    success_url = resolve_return_url(payload.success_url)
    cancel_url = resolve_return_url(payload.cancel_url) if payload.cancel_url else success_url
    result = await service.create_checkout_session(
        tenant_id,
        payload.price_id,
        success_url,
        cancel_url,
        payload.metadata,
    )
    return CheckoutResponse(session_id=result.session_id, url=result.url)


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    payload: PortalRequest,
    tenant_id: UUID = Depends(require_tenant_id),
    service: PaymentService = Depends(get_payment_service),
) -> PortalResponse:
    result = await service.create_customer_portal_session(tenant_id, resolve_return_url(payload.return_url))
    return PortalResponse(url=result.url)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    tenant_id: UUID = Depends(require_tenant_id),
    service: PaymentService = Depends(get_payment_service),
) -> CancelResponse:
    subscription = await service.cancel_tenant_subscription(tenant_id)
    return CancelResponse(
        cancelled=True,
        provider_subscription_id=subscription.provider_subscription_id or "",
    )
