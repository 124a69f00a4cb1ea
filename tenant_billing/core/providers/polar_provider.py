from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import logging
import time
from collections.abc import Mapping
from typing import Any

import requests

from tenant_billing.core.config import Settings, settings
from tenant_billing.core.db import AsyncSessionLocal
from tenant_billing.core.errors import (
    PaymentProviderConfigError,
    ProviderRequestError,
    WebhookVerificationError,
)
from tenant_billing.core.lifecycle import (
    CheckoutCompleted,
    LifecycleOperation,
    NormalizedEvent,
    PaymentSucceeded,
    SessionFactory,
    SubscriptionCancelled,
    SubscriptionLifecycleEngine,
    SubscriptionUpdated,
    WebhookResult,
)
from tenant_billing.core.providers.lookups import load_checkout_target, load_payment_customer
from tenant_billing.core.providers.payloads import (
    StatusTable,
    build_event_id,
    from_iso,
    get_path,
    map_status,
    optional_int,
    optional_str,
    parse_json_object,
    parse_tenant_id,
    require_str,
)
from tenant_billing.core.providers.types import (
    CheckoutSessionParams,
    CheckoutSessionResult,
    CustomerPortalParams,
    CustomerPortalResult,
    WebhookEvent,
)
from tenant_billing.core.repositories.bundle import BillingRepositories, RepositoryFactory
from tenant_billing.models.subscription import SubscriptionStatus

logger = logging.getLogger(__name__)

# "incomplete" waits on a first payment; the local row keeps its status until Polar settles it.
POLAR_STATUS_MAP: StatusTable = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.ACTIVE,
    "unpaid": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELLED,
    "revoked": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "incomplete": None,
}

_PAID_CHECKOUT_STATUSES = frozenset({"succeeded", "confirmed"})

# Standard Webhooks delivery headers, joined into one signature string.
_ID_HEADER = "webhook-id"
_TIMESTAMP_HEADER = "webhook-timestamp"
_SIGNATURE_HEADER = "webhook-signature"
_SEPARATOR = "|"


def decode_webhook_secret(secret: str) -> bytes:
    """Signing key from a ``whsec_``-prefixed, base64 encoded secret."""
    return base64.b64decode(secret.removeprefix("whsec_"), validate=True)


class PolarClient:
    def __init__(self, access_token: str, base_url: str, timeout: int) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {access_token}",
        }

    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        response = requests.request(
            method,
            f"{self.base_url}{path}",
            headers=self._headers,
            json=payload,
            timeout=self.timeout,
        )
        response.raise_for_status()
        if not response.content:
            return {}
        return response.json()

    def create_checkout(
        self,
        product_id: str,
        *,
        success_url: str,
        customer_email: str | None,
        metadata: dict[str, str],
    ) -> dict:
        payload: dict[str, Any] = {
            "products": [product_id],
            "success_url": success_url,
            "metadata": metadata,
        }
        if customer_email:
            payload["customer_email"] = customer_email
        return self._request("POST", "/checkouts/", payload)

    def create_customer_session(self, customer_id: str) -> dict:
        return self._request("POST", "/customer-sessions/", {"customer_id": customer_id})

    def revoke_subscription(self, subscription_id: str) -> dict:
        return self._request("DELETE", f"/subscriptions/{subscription_id}")


class PolarProvider:
    name = "polar"
    signature_header = _SIGNATURE_HEADER

    def __init__(
        self,
        config: Settings = settings,
        *,
        client: PolarClient | None = None,
        engine: SubscriptionLifecycleEngine | None = None,
        session_factory: SessionFactory | None = None,
        repositories: RepositoryFactory = BillingRepositories.from_session,
    ) -> None:
        if not config.polar_access_token:
            raise PaymentProviderConfigError(self.name, "POLAR_ACCESS_TOKEN")
        if not config.polar_webhook_secret:
            raise PaymentProviderConfigError(self.name, "POLAR_WEBHOOK_SECRET")
        try:
            self._signing_key = decode_webhook_secret(config.polar_webhook_secret)
        except (binascii.Error, ValueError) as exc:
            raise PaymentProviderConfigError(self.name, "POLAR_WEBHOOK_SECRET") from exc

        self._tolerance = config.polar_webhook_tolerance_seconds
        self._client = client or PolarClient(
            config.polar_access_token,
            config.polar_api_base_url,
            config.provider_http_timeout_seconds,
        )
        self._engine = engine or SubscriptionLifecycleEngine(
            self.name,
            session_factory=session_factory,
            repositories=repositories,
            config=config,
        )
        self._session_factory = session_factory or AsyncSessionLocal
        self._repositories = repositories

    async def _call(self, func, *args: Any, **kwargs: Any) -> dict:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except requests.RequestException as exc:
            logger.warning("Polar request failed: %s", exc)
            raise ProviderRequestError(f"Polar request failed: {exc}") from exc

    async def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutSessionResult:
        tenant_id = params.tenant.tenant_id
        target = await load_checkout_target(
            self._session_factory,
            self._repositories,
            self.name,
            tenant_id,
            params.price_id,
        )

        # Polar checks out products, not prices.
        body = await self._call(
            self._client.create_checkout,
            target.price.product.provider_product_id,
            success_url=params.success_url,
            customer_email=params.tenant.email,
            metadata={
                **params.metadata,
                "tenant_id": str(tenant_id),
                "tier_id": str(target.price.tier_id),
            },
        )
        session_id = optional_str(body.get("id"))
        url = optional_str(body.get("url"))
        if session_id is None or url is None:
            raise ProviderRequestError("Polar did not return a checkout URL")
        return CheckoutSessionResult(session_id=session_id, url=url)

    async def create_customer_portal_session(self, params: CustomerPortalParams) -> CustomerPortalResult:
        customer = await load_payment_customer(
            self._session_factory,
            self._repositories,
            self.name,
            params.tenant.tenant_id,
        )
        body = await self._call(self._client.create_customer_session, customer.provider_customer_id)
        url = optional_str(body.get("customer_portal_url"))
        if url is None:
            raise ProviderRequestError("Polar did not return a customer portal URL")
        return CustomerPortalResult(url=url)

    def read_signature(self, headers: Mapping[str, str]) -> str | None:
        values = [headers.get(_ID_HEADER), headers.get(_TIMESTAMP_HEADER), headers.get(_SIGNATURE_HEADER)]
        if not all(values):
            return None
        return _SEPARATOR.join(values)  # type: ignore[arg-type]

    def verify_webhook_signature(self, raw_payload: bytes, signature: str) -> bool:
        """Check ``<webhook-id>|<webhook-timestamp>|v1,<base64> ...``.

        The HMAC covers ``<id>.<timestamp>.<body>``; any ``v1`` entry may match.
        """
        parts = signature.split(_SEPARATOR) if signature else []
        if len(parts) != 3 or not all(parts):
            return False
        webhook_id, timestamp, signatures = parts
        try:
            signed_at = int(timestamp)
        except ValueError:
            return False
        if abs(time.time() - signed_at) > self._tolerance:
            return False

        signed = f"{webhook_id}.{timestamp}.".encode("utf-8") + raw_payload
        digest = hmac.new(self._signing_key, signed, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode("ascii")
        for entry in signatures.split():
            version, _, value = entry.partition(",")
            if version == "v1" and hmac.compare_digest(value, expected):
                return True
        return False

    async def handle_webhook(self, event: WebhookEvent) -> WebhookResult:
        if not self.verify_webhook_signature(event.raw_payload, event.signature):
            raise WebhookVerificationError(self.name, "Invalid webhook signature")

        body = parse_json_object(event.raw_payload)
        event_id = build_event_id(event.raw_payload)
        event_type = require_str(body.get("type"), "type")

        if await self._engine.has_been_processed(event_id):
            logger.info("Skipping already processed polar event id=%s", event_id)
            return WebhookResult(processed=False, event_type=event_type, message="Event already processed")

        data = body.get("data")
        if not isinstance(data, dict):
            data = {}
        return await self._engine.process(
            NormalizedEvent(event_id=event_id, event_type=event_type, operation=self._normalize(event_type, data))
        )

    async def cancel_subscription(self, provider_subscription_id: str) -> None:
        await self._call(self._client.revoke_subscription, provider_subscription_id)

    def _normalize(self, event_type: str, data: dict) -> LifecycleOperation | None:
        if event_type in ("checkout.created", "checkout.updated"):
            return self._checkout(data)
        if event_type in ("subscription.updated", "subscription.active"):
            provider_status = optional_str(data.get("status")) or ""
            return SubscriptionUpdated(
                provider_subscription_id=require_str(data.get("id"), "data.id"),
                provider_status=provider_status,
                status=map_status(POLAR_STATUS_MAP, provider_status),
                provider_price_id=optional_str(get_path(data, "prices", 0, "id") or data.get("price_id")),
                expires_at=from_iso(data.get("current_period_end")),
            )
        if event_type in ("subscription.revoked", "subscription.canceled"):
            return SubscriptionCancelled(require_str(data.get("id"), "data.id"))
        if event_type == "order.created":
            subscription_id = optional_str(data.get("subscription_id"))
            if subscription_id is None:
                return None
            return PaymentSucceeded(
                provider_subscription_id=subscription_id,
                invoice_id=optional_str(data.get("id")),
                period_end=from_iso(get_path(data, "subscription", "current_period_end")),
                amount=optional_int(data.get("total_amount") or data.get("amount")),
                currency=optional_str(data.get("currency")),
            )
        return None

    def _checkout(self, data: dict) -> CheckoutCompleted | None:
        if data.get("status") not in _PAID_CHECKOUT_STATUSES:
            return None
        subscription_id = optional_str(data.get("subscription_id"))
        if subscription_id is None:
            # Nothing to reconcile until Polar attaches the subscription.
            return None

        return CheckoutCompleted(
            tenant_id=parse_tenant_id(get_path(data, "metadata", "tenant_id")),
            provider_customer_id=require_str(data.get("customer_id"), "customer_id"),
            provider_subscription_id=subscription_id,
            provider_price_id=require_str(data.get("product_price_id"), "product_price_id"),
            expires_at=from_iso(data.get("current_period_end")),
            amount=optional_int(data.get("total_amount") or data.get("amount")),
            currency=optional_str(data.get("currency")),
        )
