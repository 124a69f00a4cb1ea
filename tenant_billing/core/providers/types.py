from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol
from uuid import UUID

from tenant_billing.core.lifecycle import WebhookResult


@dataclass(frozen=True, slots=True)
class TenantInfo:
    tenant_id: UUID
    email: str | None
    name: str | None = None


@dataclass(frozen=True, slots=True)
class CheckoutSessionParams:
    tenant: TenantInfo
    price_id: UUID
    success_url: str
    cancel_url: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CheckoutSessionResult:
    session_id: str
    url: str


@dataclass(frozen=True, slots=True)
class CustomerPortalParams:
    tenant: TenantInfo
    return_url: str


@dataclass(frozen=True, slots=True)
class CustomerPortalResult:
    url: str


@dataclass(frozen=True, slots=True)
class WebhookEvent:
    raw_payload: bytes
    signature: str


class PaymentProvider(Protocol):
    name: str
    # Header named in the error when a delivery arrives unsigned.
    signature_header: str

    async def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutSessionResult: ...

    async def create_customer_portal_session(self, params: CustomerPortalParams) -> CustomerPortalResult: ...

    def read_signature(self, headers: Mapping[str, str]) -> str | None:
        """The signature material from the delivery headers, or ``None`` when absent."""
        ...

    def verify_webhook_signature(self, raw_payload: bytes, signature: str) -> bool: ...

    async def handle_webhook(self, event: WebhookEvent) -> WebhookResult: ...

    async def cancel_subscription(self, provider_subscription_id: str) -> None: ...


__all__ = [
    "TenantInfo",
    "CheckoutSessionParams",
    "CheckoutSessionResult",
    "CustomerPortalParams",
    "CustomerPortalResult",
    "WebhookEvent",
    "WebhookResult",
    "PaymentProvider",
]
