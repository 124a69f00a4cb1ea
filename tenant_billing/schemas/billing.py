from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WebhookResponse(CamelModel):
    processed: bool
    event_type: str
    message: str | None = None


class ErrorResponse(BaseModel):
    error: str
    message: str


class CheckoutRequest(CamelModel):
    price_id: UUID
    success_url: str | None = None
    cancel_url: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class CheckoutResponse(CamelModel):
    session_id: str
    url: str


class PortalRequest(CamelModel):
    return_url: str | None = None


class PortalResponse(CamelModel):
    url: str


class PriceResponse(CamelModel):
    id: UUID
    provider_price_id: str
    interval: str
    currency: str
    unit_amount: int
    tax_behavior: str


class ProductResponse(CamelModel):
    id: UUID
    tier_id: UUID
    provider_product_id: str
    prices: list[PriceResponse]


class TierResponse(CamelModel):
    id: UUID
    slug: str
    name: str
    level: int
    max_team_members: int | None = None
    features: dict | None = None


class BillingTiersResponse(CamelModel):
    provider: str
    tiers: list[TierResponse]
    products: list[ProductResponse]


class SubscriptionResponse(CamelModel):
    id: UUID
    tier_id: UUID
    status: str
    starts_at: datetime
    expires_at: datetime | None = None
    provider_name: str | None = None
    provider_subscription_id: str | None = None


class CurrentSubscriptionResponse(CamelModel):
    subscription: SubscriptionResponse | None = None
    can_manage_billing: bool


class CancelResponse(CamelModel):
    cancelled: bool
    provider_subscription_id: str
