from __future__ import annotations

import asyncio
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

PADDLE_STATUS_MAP: StatusTable = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.ACTIVE,
    "paused": SubscriptionStatus.CANCELLED,
    "canceled": SubscriptionStatus.CANCELLED,
}

# Transactions a customer starts through checkout; every other origin is a
# charge against an existing subscription (renewals, plan changes).
_CHECKOUT_ORIGINS = frozenset({"web", "api"})


class PaddleClient:
    def __init__(self, api_key: str, base_url: str, timeout: int) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {
            "Content-Type": "application/json",
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

    def create_transaction(
        self,
        price_id: str,
        *,
        custom_data: dict[str, str],
        customer_id: str | None,
    ) -> dict:
        payload: dict[str, Any] = {
            "items": [{"price_id": price_id, "quantity": 1}],
            "custom_data": custom_data,
        }
        if customer_id:
            payload["customer_id"] = customer_id
        return self._request("POST", "/transactions", payload)

    def create_portal_session(self, customer_id: str, subscription_ids: list[str]) -> dict:
        return self._request(
            "POST",
            f"/customers/{customer_id}/portal-sessions",
            {"subscription_ids": subscription_ids},
        )

    def cancel_subscription(self, subscription_id: str) -> dict:
        return self._request(
            "POST",
            f"/subscriptions/{subscription_id}/cancel",
            {"effective_from": "next_billing_period"},
        )


class PaddleProvider:
    name = "paddle"
    signature_header = "Paddle-Signature"

    def __init__(
        self,
        config: Settings = settings,
        *,
        client: PaddleClient | None = None,
        engine: SubscriptionLifecycleEngine | None = None,
        session_factory: SessionFactory | None = None,
        repositories: RepositoryFactory = BillingRepositories.from_session,
    ) -> None:
        if not config.paddle_api_key:
            raise PaymentProviderConfigError(self.name, "PADDLE_API_KEY")
        if not config.paddle_webhook_secret:
            raise PaymentProviderConfigError(self.name, "PADDLE_WEBHOOK_SECRET")

        self._webhook_secret = config.paddle_webhook_secret.encode("utf-8")
        self._tolerance = config.paddle_webhook_tolerance_seconds
        self._client = client or PaddleClient(
            config.paddle_api_key,
            config.paddle_api_base_url(),
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
            logger.warning("Paddle request failed: %s", exc)
            raise ProviderRequestError(f"Paddle request failed: {exc}") from exc

    async def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutSessionResult:
        tenant_id = params.tenant.tenant_id
        target = await load_checkout_target(
            self._session_factory,
            self._repositories,
            self.name,
            tenant_id,
            params.price_id,
        )

        # Paddle checks out through a draft transaction; custom_data comes back on its webhooks.
        body = await self._call(
            self._client.create_transaction,
            target.price.provider_price_id,
            custom_data={
                **params.metadata,
                "tenant_id": str(tenant_id),
                "tier_id": str(target.price.tier_id),
            },
            customer_id=target.customer.provider_customer_id if target.customer else None,
        )
        session_id = optional_str(get_path(body, "data", "id"))
        url = optional_str(get_path(body, "data", "checkout", "url"))
        if session_id is None or url is None:
            raise ProviderRequestError("Paddle did not return a checkout URL")
        return CheckoutSessionResult(session_id=session_id, url=url)

    async def create_customer_portal_session(self, params: CustomerPortalParams) -> CustomerPortalResult:
        tenant_id = params.tenant.tenant_id
        customer = await load_payment_customer(
            self._session_factory, self._repositories, self.name, tenant_id
        )
        subscription = await load_provider_subscription(
            self._session_factory, self._repositories, self.name, tenant_id
        )

        body = await self._call(
            self._client.create_portal_session,
            customer.provider_customer_id,
            [subscription.provider_subscription_id],
        )
        url = optional_str(get_path(body, "data", "urls", "general", "overview"))
        if url is None:
            raise ProviderRequestError("Paddle did not return a customer portal URL")
        return CustomerPortalResult(url=url)

    def read_signature(self, headers: Mapping[str, str]) -> str | None:
        return headers.get(self.signature_header)

    def verify_webhook_signature(self, raw_payload: bytes, signature: str) -> bool:
        """Check a ``ts=<unix>;h1=<hex>`` header; several ``h1`` appear while a secret rotates."""
        if not signature:
            return False
        timestamp: str | None = None
        provided: list[str] = []
        for part in signature.split(";"):
            key, _, value = part.strip().partition("=")
            if key == "ts":
                timestamp = value
            elif key == "h1" and value:
                provided.append(value)
        if timestamp is None or not provided:
            return False
        try:
            signed_at = int(timestamp)
        except ValueError:
            return False
        if abs(time.time() - signed_at) > self._tolerance:
            return False

        signed = timestamp.encode("utf-8") + b":" + raw_payload
        expected = hmac.new(self._webhook_secret, signed, hashlib.sha256).hexdigest()
        return any(hmac.compare_digest(candidate, expected) for candidate in provided)

    async def handle_webhook(self, event: WebhookEvent) -> WebhookResult:
        if not self.verify_webhook_signature(event.raw_payload, event.signature):
            raise WebhookVerificationError(self.name, "Invalid webhook signature")

        body = parse_json_object(event.raw_payload)
        event_id = require_str(body.get("event_id"), "event_id")
        event_type = require_str(body.get("event_type"), "event_type")

        if await self._engine.has_been_processed(event_id):
            logger.info("Skipping already processed paddle event id=%s", event_id)
            return WebhookResult(processed=False, event_type=event_type, message="Event already processed")

        data = body.get("data")
        if not isinstance(data, dict):
            data = {}
        return await self._engine.process(
            NormalizedEvent(event_id=event_id, event_type=event_type, operation=self._normalize(event_type, data))
        )

    async def cancel_subscription(self, provider_subscription_id: str) -> None:
        await self._call(self._client.cancel_subscription, provider_subscription_id)

    def _normalize(self, event_type: str, data: dict) -> LifecycleOperation | None:
        if event_type == "transaction.completed":
            return self._transaction_completed(data)
        if event_type == "subscription.updated":
            provider_status = optional_str(data.get("status")) or ""
            return SubscriptionUpdated(
                provider_subscription_id=require_str(data.get("id"), "data.id"),
                provider_status=provider_status,
                status=map_status(PADDLE_STATUS_MAP, provider_status),
                provider_price_id=optional_str(get_path(data, "items", 0, "price", "id")),
                expires_at=from_iso(get_path(data, "current_billing_period", "ends_at")),
            )
        if event_type == "subscription.canceled":
            return SubscriptionCancelled(require_str(data.get("id"), "data.id"))
        if event_type == "transaction.payment_failed":
            return PaymentFailed(
                provider_subscription_id=optional_str(data.get("subscription_id")),
                invoice_id=optional_str(data.get("id")),
            )
        return None

    def _transaction_completed(self, data: dict) -> CheckoutCompleted | PaymentSucceeded | None:
        subscription_id = optional_str(data.get("subscription_id"))
        if subscription_id is None:
            return None

        period_end = from_iso(get_path(data, "billing_period", "ends_at"))
        currency = optional_str(data.get("currency_code"))
        if data.get("origin") not in _CHECKOUT_ORIGINS:
            return PaymentSucceeded(
                provider_subscription_id=subscription_id,
                invoice_id=optional_str(data.get("id")),
                period_end=period_end,
                amount=optional_int(get_path(data, "details", "totals", "total")),
                currency=currency,
            )

        price = get_path(data, "items", 0, "price")
        return CheckoutCompleted(
            tenant_id=parse_tenant_id(get_path(data, "custom_data", "tenant_id")),
            provider_customer_id=require_str(data.get("customer_id"), "customer_id"),
            provider_subscription_id=subscription_id,
            provider_price_id=require_str(get_path(price, "id"), "items[0].price.id"),
            expires_at=period_end,
            amount=optional_int(get_path(price, "unit_price", "amount")),
            currency=currency or optional_str(get_path(price, "unit_price", "currency_code")),
        )
