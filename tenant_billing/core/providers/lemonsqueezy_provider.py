from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
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
    PaymentFailed,
    PaymentSucceeded,
    SessionFactory,
    SubscriptionCancelled,
    SubscriptionLifecycleEngine,
    SubscriptionUpdated,
    WebhookResult,
)
from tenant_billing.core.providers.lookups import (
    load_checkout_target,
    load_payment_customer,
    load_provider_subscription,
)
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

LEMONSQUEEZY_STATUS_MAP: StatusTable = {
    "active": SubscriptionStatus.ACTIVE,
    "on_trial": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.ACTIVE,
    "unpaid": SubscriptionStatus.ACTIVE,
    "cancelled": SubscriptionStatus.CANCELLED,
    "paused": SubscriptionStatus.CANCELLED,
    "expired": SubscriptionStatus.EXPIRED,
}

_JSON_API = "application/vnd.api+json"


class LemonSqueezyClient:
    def __init__(self, api_key: str, base_url: str, timeout: int) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {
            "Accept": _JSON_API,
            "Content-Type": _JSON_API,
            "Authorization": f"Bearer {api_key}",
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
        store_id: str,
        variant_id: str,
        *,
        email: str | None,
        custom: dict[str, str],
        redirect_url: str,
    ) -> dict:
        checkout_data: dict[str, Any] = {"custom": custom}
        if email:
            checkout_data["email"] = email
        return self._request(
            "POST",
            "/checkouts",
            {
                "data": {
                    "type": "checkouts",
                    "attributes": {
                        "checkout_data": checkout_data,
                        "checkout_options": {"embed": False},
                        "product_options": {"redirect_url": redirect_url},
                    },
                    "relationships": {
                        "store": {"data": {"type": "stores", "id": store_id}},
                        "variant": {"data": {"type": "variants", "id": variant_id}},
                    },
                }
            },
        )

    def get_subscription(self, subscription_id: str) -> dict:
        return self._request("GET", f"/subscriptions/{subscription_id}")

    def cancel_subscription(self, subscription_id: str) -> dict:
        return self._request("DELETE", f"/subscriptions/{subscription_id}")


class LemonSqueezyProvider:
    name = "lemonsqueezy"
    signature_header = "X-Signature"

    def __init__(
        self,
        config: Settings = settings,
        *,
        client: LemonSqueezyClient | None = None,
        engine: SubscriptionLifecycleEngine | None = None,
        session_factory: SessionFactory | None = None,
        repositories: RepositoryFactory = BillingRepositories.from_session,
    ) -> None:
        if not config.lemonsqueezy_api_key:
            raise PaymentProviderConfigError(self.name, "LEMONSQUEEZY_API_KEY")
        if not config.lemonsqueezy_store_id:
            raise PaymentProviderConfigError(self.name, "LEMONSQUEEZY_STORE_ID")
        if not config.lemonsqueezy_webhook_secret:
            raise PaymentProviderConfigError(self.name, "LEMONSQUEEZY_WEBHOOK_SECRET")

        self._store_id = config.lemonsqueezy_store_id
        self._webhook_secret = config.lemonsqueezy_webhook_secret.encode("utf-8")
        self._client = client or LemonSqueezyClient(
            config.lemonsqueezy_api_key,
            config.lemonsqueezy_api_base_url,
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
            logger.warning("LemonSqueezy request failed: %s", exc)
            raise ProviderRequestError(f"LemonSqueezy request failed: {exc}") from exc

    async def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutSessionResult:
        tenant_id = params.tenant.tenant_id
        target = await load_checkout_target(
            self._session_factory,
            self._repositories,
            self.name,
            tenant_id,
            params.price_id,
        )

        # provider_price_id holds the LemonSqueezy variant id.
        body = await self._call(
            self._client.create_checkout,
            self._store_id,
            target.price.provider_price_id,
            email=params.tenant.email,
            custom={
                **params.metadata,
                "tenant_id": str(tenant_id),
                "tier_id": str(target.price.tier_id),
            },
            redirect_url=params.success_url,
        )
        session_id = optional_str(get_path(body, "data", "id"))
        url = optional_str(get_path(body, "data", "attributes", "url"))
        if session_id is None or url is None:
            raise ProviderRequestError("LemonSqueezy did not return a checkout URL")
        return CheckoutSessionResult(session_id=session_id, url=url)

    async def create_customer_portal_session(self, params: CustomerPortalParams) -> CustomerPortalResult:
        tenant_id = params.tenant.tenant_id
        await load_payment_customer(self._session_factory, self._repositories, self.name, tenant_id)
        subscription = await load_provider_subscription(
            self._session_factory, self._repositories, self.name, tenant_id
        )

        body = await self._call(self._client.get_subscription, subscription.provider_subscription_id)
        url = optional_str(get_path(body, "data", "attributes", "urls", "customer_portal"))
        if url is None:
            raise ProviderRequestError("Customer portal URL not available for this subscription")
        return CustomerPortalResult(url=url)

    def read_signature(self, headers: Mapping[str, str]) -> str | None:
        return headers.get(self.signature_header)

    def verify_webhook_signature(self, raw_payload: bytes, signature: str) -> bool:
        if not signature:
            return False
        try:
            provided = bytes.fromhex(signature)
        except ValueError:
            return False
        expected = hmac.new(self._webhook_secret, raw_payload, hashlib.sha256).digest()
        return hmac.compare_digest(provided, expected)

    async def handle_webhook(self, event: WebhookEvent) -> WebhookResult:
        if not self.verify_webhook_signature(event.raw_payload, event.signature):
            raise WebhookVerificationError(self.name, "Invalid webhook signature")

        body = parse_json_object(event.raw_payload)
        event_id = build_event_id(event.raw_payload)
        event_type = require_str(get_path(body, "meta", "event_name"), "meta.event_name")

        if await self._engine.has_been_processed(event_id):
            logger.info("Skipping already processed lemonsqueezy event id=%s", event_id)
            return WebhookResult(processed=False, event_type=event_type, message="Event already processed")

        return await self._engine.process(
            NormalizedEvent(event_id=event_id, event_type=event_type, operation=self._normalize(event_type, body))
        )

    async def cancel_subscription(self, provider_subscription_id: str) -> None:
        await self._call(self._client.cancel_subscription, provider_subscription_id)

    def _normalize(self, event_type: str, body: dict) -> LifecycleOperation | None:
        resource_id = optional_str(get_path(body, "data", "id"))
        attributes = get_path(body, "data", "attributes")
        if not isinstance(attributes, dict):
            attributes = {}

        if event_type == "order_created":
            return self._order_created(body, attributes)
        if event_type == "subscription_updated":
            provider_status = optional_str(attributes.get("status")) or ""
            return SubscriptionUpdated(
                provider_subscription_id=require_str(resource_id, "data.id"),
                provider_status=provider_status,
                status=map_status(LEMONSQUEEZY_STATUS_MAP, provider_status),
                provider_price_id=optional_str(attributes.get("variant_id")),
                expires_at=from_iso(attributes.get("ends_at")) or from_iso(attributes.get("renews_at")),
            )
        if event_type == "subscription_cancelled":
            return SubscriptionCancelled(require_str(resource_id, "data.id"))
        if event_type == "subscription_payment_failed":
            return PaymentFailed(
                provider_subscription_id=optional_str(attributes.get("subscription_id")),
                invoice_id=resource_id,
            )
        if event_type == "subscription_payment_success":
            return PaymentSucceeded(
                provider_subscription_id=optional_str(attributes.get("subscription_id")),
                invoice_id=resource_id,
                period_end=from_iso(attributes.get("renews_at")),
                amount=optional_int(attributes.get("total")),
                currency=optional_str(attributes.get("currency")),
            )
        return None

    def _order_created(self, body: dict, attributes: dict) -> CheckoutCompleted | None:
        first_order_item = attributes.get("first_order_item")
        if not isinstance(first_order_item, dict):
            first_order_item = {}
        subscription_id = optional_str(
            get_path(attributes, "first_subscription_item", "subscription_id")
            or first_order_item.get("subscription_id")
        )
        if subscription_id is None:
            # A one-off order has nothing to reconcile.
            return None

        return CheckoutCompleted(
            tenant_id=parse_tenant_id(get_path(body, "meta", "custom_data", "tenant_id")),
            provider_customer_id=require_str(attributes.get("customer_id"), "customer_id"),
            provider_subscription_id=subscription_id,
            provider_price_id=require_str(
                attributes.get("variant_id") or first_order_item.get("variant_id"),
                "variant_id",
            ),
            expires_at=from_iso(attributes.get("renews_at")),
            amount=optional_int(attributes.get("total")),
            currency=optional_str(attributes.get("currency")),
        )
