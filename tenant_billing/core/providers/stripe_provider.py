from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

import stripe

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
from tenant_billing.core.providers.lookups import load_checkout_target, load_payment_customer
from tenant_billing.core.providers.payloads import (
    StatusTable,
    from_unix,
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

T = TypeVar("T")

# "paused" leaves the local status alone: a paused collection is not a cancellation.
STRIPE_STATUS_MAP: StatusTable = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.ACTIVE,
    "unpaid": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "paused": None,
}

_CLIENT_REFERENCE_PREFIX = "tenant_"


class StripeProvider:
    name = "stripe"
    signature_header = "Stripe-Signature"

    def __init__(
        self,
        config: Settings = settings,
        *,
        client: Any | None = None,
        engine: SubscriptionLifecycleEngine | None = None,
        session_factory: SessionFactory | None = None,
        repositories: RepositoryFactory = BillingRepositories.from_session,
    ) -> None:
        if not config.stripe_secret_key:
            raise PaymentProviderConfigError(self.name, "STRIPE_SECRET_KEY")
        if not config.stripe_webhook_secret:
            raise PaymentProviderConfigError(self.name, "STRIPE_WEBHOOK_SECRET")

        self._config = config
        self._webhook_secret = config.stripe_webhook_secret
        self._client = client or stripe.StripeClient(
            config.stripe_secret_key,
            http_client=stripe.RequestsClient(timeout=config.provider_http_timeout_seconds),
        )
        self._engine = engine or SubscriptionLifecycleEngine(
            self.name,
            session_factory=session_factory,
            repositories=repositories,
            config=config,
        )
        self._session_factory = session_factory or AsyncSessionLocal
        self._repositories = repositories

    async def _call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except stripe.StripeError as exc:
            logger.warning("Stripe request failed: %s", exc)
            raise ProviderRequestError(f"Stripe request failed: {exc.user_message or exc}") from exc

    async def create_checkout_session(self, params: CheckoutSessionParams) -> CheckoutSessionResult:
        tenant_id = params.tenant.tenant_id
        target = await load_checkout_target(
            self._session_factory,
            self._repositories,
            self.name,
            tenant_id,
            params.price_id,
        )

        metadata = {
            **params.metadata,
            "tenant_id": str(tenant_id),
            "tier_id": str(target.price.tier_id),
        }
        request: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": target.price.provider_price_id, "quantity": 1}],
            "success_url": params.success_url,
            "cancel_url": params.cancel_url or params.success_url,
            "client_reference_id": f"{_CLIENT_REFERENCE_PREFIX}{tenant_id}",
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if target.customer is not None:
            request["customer"] = target.customer.provider_customer_id
        elif params.tenant.email:
            request["customer_email"] = params.tenant.email

        session = await self._call(self._client.v1.checkout.sessions.create, params=request)
        session_id = optional_str(get_path(session, "id"))
        url = optional_str(get_path(session, "url"))
        if session_id is None or url is None:
            raise ProviderRequestError("Stripe did not return a checkout session URL")
        return CheckoutSessionResult(session_id=session_id, url=url)

    async def create_customer_portal_session(self, params: CustomerPortalParams) -> CustomerPortalResult:
        customer = await load_payment_customer(
            self._session_factory,
            self._repositories,
            self.name,
            params.tenant.tenant_id,
        )
        session = await self._call(
            self._client.v1.billing_portal.sessions.create,
            params={"customer": customer.provider_customer_id, "return_url": params.return_url},
        )
        url = optional_str(get_path(session, "url"))
        if url is None:
            raise ProviderRequestError("Stripe did not return a portal session URL")
        return CustomerPortalResult(url=url)

    def read_signature(self, headers: Mapping[str, str]) -> str | None:
        return headers.get(self.signature_header)

    def verify_webhook_signature(self, raw_payload: bytes, signature: str) -> bool:
        if not signature:
            return False
        try:
            payload = raw_payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload,
                signature,
                self._webhook_secret,
                tolerance=self._config.stripe_webhook_tolerance_seconds,
            )
        except (UnicodeDecodeError, stripe.SignatureVerificationError):
            return False
        return True

    async def handle_webhook(self, event: WebhookEvent) -> WebhookResult:
        if not self.verify_webhook_signature(event.raw_payload, event.signature):
            raise WebhookVerificationError(self.name, "Invalid webhook signature")

        body = parse_json_object(event.raw_payload)
        event_id = require_str(body.get("id"), "event id")
        event_type = require_str(body.get("type"), "event type")

        if await self._engine.has_been_processed(event_id):
            logger.info("Skipping already processed stripe event id=%s", event_id)
            return WebhookResult(processed=False, event_type=event_type, message="Event already processed")

        operation = await self._normalize(event_type, get_path(body, "data", "object") or {})
        return await self._engine.process(
            NormalizedEvent(event_id=event_id, event_type=event_type, operation=operation)
        )

    async def cancel_subscription(self, provider_subscription_id: str) -> None:
        await self._call(self._client.v1.subscriptions.cancel, provider_subscription_id)

    async def _normalize(self, event_type: str, obj: Any) -> LifecycleOperation | None:
        if event_type == "checkout.session.completed":
            return await self._checkout_completed(obj)
        if event_type == "customer.subscription.updated":
            return self._subscription_updated(obj)
        if event_type == "customer.subscription.deleted":
            return SubscriptionCancelled(require_str(get_path(obj, "id"), "subscription id"))
        if event_type == "invoice.payment_failed":
            return PaymentFailed(
                provider_subscription_id=_invoice_subscription_id(obj),
                invoice_id=optional_str(get_path(obj, "id")),
            )
        if event_type == "invoice.payment_succeeded":
            return PaymentSucceeded(
                provider_subscription_id=_invoice_subscription_id(obj),
                invoice_id=optional_str(get_path(obj, "id")),
                period_end=from_unix(get_path(obj, "lines", "data", 0, "period", "end")),
                amount=optional_int(get_path(obj, "amount_paid")),
                currency=optional_str(get_path(obj, "currency")),
            )
        return None

    async def _checkout_completed(self, session: Any) -> CheckoutCompleted | None:
        subscription_id = optional_str(get_path(session, "subscription"))
        if subscription_id is None:
            # One-off payments carry no subscription to reconcile.
            return None

        tenant_id = parse_tenant_id(
            get_path(session, "metadata", "tenant_id") or _tenant_from_reference(session)
        )
        subscription = await self._call(self._client.v1.subscriptions.retrieve, subscription_id)
        first_item = get_path(subscription, "items", "data", 0)

        return CheckoutCompleted(
            tenant_id=tenant_id,
            provider_customer_id=require_str(get_path(session, "customer"), "customer"),
            provider_subscription_id=subscription_id,
            provider_price_id=require_str(get_path(first_item, "price", "id"), "price id"),
            expires_at=_period_end(subscription, first_item),
            amount=optional_int(get_path(session, "amount_total")),
            currency=optional_str(get_path(session, "currency")),
        )

    def _subscription_updated(self, subscription: Any) -> SubscriptionUpdated:
        provider_status = optional_str(get_path(subscription, "status")) or ""
        first_item = get_path(subscription, "items", "data", 0)
        return SubscriptionUpdated(
            provider_subscription_id=require_str(get_path(subscription, "id"), "subscription id"),
            provider_status=provider_status,
            status=map_status(STRIPE_STATUS_MAP, provider_status),
            provider_price_id=optional_str(get_path(first_item, "price", "id")),
            expires_at=_period_end(subscription, first_item),
        )


def _tenant_from_reference(session: Any) -> str | None:
    reference = optional_str(get_path(session, "client_reference_id"))
    if reference and reference.startswith(_CLIENT_REFERENCE_PREFIX):
        return reference.removeprefix(_CLIENT_REFERENCE_PREFIX)
    return None


def _period_end(subscription: Any, first_item: Any):
    # Newer API versions report the period on the subscription item.
    return from_unix(
        get_path(first_item, "current_period_end") or get_path(subscription, "current_period_end")
    )


def _invoice_subscription_id(invoice: Any) -> str | None:
    return optional_str(
        get_path(invoice, "subscription")
        or get_path(invoice, "parent", "subscription_details", "subscription")
    )
