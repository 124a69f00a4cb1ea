from __future__ import annotations

import base64
import copy
import hashlib
import hmac
import json
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import SimpleNamespace
from uuid import UUID, uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from tenant_billing.core.config import Settings
from tenant_billing.core.context import SecurityContext
from tenant_billing.core.lifecycle import SubscriptionLifecycleEngine
from tenant_billing.core.repositories.bundle import BillingRepositories
from tenant_billing.models.subscription import SubscriptionStatus

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
LEMONSQUEEZY_WEBHOOK_SECRET = "ls_test_secret"
PADDLE_WEBHOOK_SECRET = "pdl_ntfset_test_secret"
POLAR_SIGNING_KEY = b"polar_test_signing_key"
POLAR_WEBHOOK_SECRET = "whsec_" + base64.b64encode(POLAR_SIGNING_KEY).decode("ascii")


@dataclass
class FakeSubscription:
    tenant_id: UUID
    tier_id: UUID
    status: str = SubscriptionStatus.ACTIVE
    starts_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime | None = None
    provider_name: str | None = None
    provider_subscription_id: str | None = None
    id: UUID = field(default_factory=uuid4)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE


@dataclass
class FakeCustomer:
    tenant_id: UUID
    provider: str
    provider_customer_id: str
    id: UUID = field(default_factory=uuid4)


class FakeStore:
    def __init__(self) -> None:
        self.tenants: dict[UUID, SimpleNamespace] = {}
        self.tiers: dict[str, SimpleNamespace] = {}
        self.prices: list[SimpleNamespace] = []
        self.products: list[SimpleNamespace] = []
        self.customers: list[FakeCustomer] = []
        self.subscriptions: list[FakeSubscription] = []
        self.ledger: list[tuple[str, str, str | None]] = []
        self.commits = 0
        self.rollbacks = 0
        self.bound_contexts: list[dict] = []
        self.write_contexts: list[SecurityContext] = []
        self.tenant_locks: list[UUID] = []
        # Tenants whose row lock is held by another transaction.
        self.busy_tenants: set[UUID] = set()

    _STATE = ("customers", "subscriptions", "ledger")

    def snapshot(self) -> dict:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._STATE}

    def restore(self, snapshot: dict) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    def add_tenant(self, name: str = "Acme", email: str = "billing@acme.test") -> UUID:
        tenant_id = uuid4()
        self.tenants[tenant_id] = SimpleNamespace(id=tenant_id, name=name, billing_email=email)
        return tenant_id

    def add_tier(self, slug: str, level: int) -> SimpleNamespace:
        tier = SimpleNamespace(
            id=uuid4(),
            slug=slug,
            name=slug.title(),
            level=level,
            max_team_members=None,
            features=None,
            is_active=True,
        )
        self.tiers[slug] = tier
        return tier

    def add_price(self, provider: str, provider_price_id: str, tier: SimpleNamespace, *, is_active: bool = True):
        product = SimpleNamespace(
            id=uuid4(),
            tier_id=tier.id,
            provider=provider,
            provider_product_id=f"prod_{provider_price_id}",
            prices=[],
        )
        price = SimpleNamespace(
            id=uuid4(),
            product=product,
            tier_id=tier.id,
            provider=provider,
            provider_price_id=provider_price_id,
            interval="month",
            currency="usd",
            unit_amount=1500,
            tax_behavior="exclusive",
            is_active=is_active,
        )
        product.prices.append(price)
        self.products.append(product)
        self.prices.append(price)
        return price

    def add_subscription(self, tenant_id: UUID, tier: SimpleNamespace, **values: object) -> FakeSubscription:
        subscription = FakeSubscription(tenant_id=tenant_id, tier_id=tier.id, **values)
        self.subscriptions.append(subscription)
        return subscription

    def add_customer(self, tenant_id: UUID, provider: str, provider_customer_id: str) -> FakeCustomer:
        customer = FakeCustomer(tenant_id, provider, provider_customer_id)
        self.customers.append(customer)
        return customer

    def active_for(self, tenant_id: UUID) -> list[FakeSubscription]:
        return [s for s in self.subscriptions if s.tenant_id == tenant_id and s.is_active]

    def for_tenant(self, tenant_id: UUID) -> list[FakeSubscription]:
        return [s for s in self.subscriptions if s.tenant_id == tenant_id]


def _duplicate(message: str) -> IntegrityError:
    return IntegrityError("INSERT", {}, Exception(message))


class FakeSession:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    async def __aenter__(self) -> FakeSession:
        return self

    async def __aexit__(self, *exc_info) -> bool:  # noqa: ANN002
        return False

    @asynccontextmanager
    async def begin(self):
        snapshot = self.store.snapshot()
        try:
            yield self
        except BaseException:
            self.store.restore(snapshot)
            self.store.rollbacks += 1
            raise
        self.store.commits += 1

    async def execute(self, statement, params=None):  # noqa: ANN001
        if params is not None:
            self.store.bound_contexts.append(dict(params))
        return None


class _FakeRepository:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    def _write(self, context: SecurityContext, tenant_id: UUID) -> None:
        context.require_tenant(tenant_id)
        self.store.write_contexts.append(context)

    @staticmethod
    def _visible(context: SecurityContext, tenant_id: UUID) -> bool:
        return context.is_system or context.tenant_id == tenant_id


class FakeTenantRepository(_FakeRepository):
    async def get(self, context: SecurityContext, entity_id: UUID, *, for_update=False, skip_locked=False):  # noqa: ANN001
        if for_update:
            if skip_locked and entity_id in self.store.busy_tenants:
                return None
            self.store.tenant_locks.append(entity_id)
        return self.store.tenants.get(entity_id)


class FakeCatalogRepository(_FakeRepository):
    async def get_price(self, context, price_id, provider, *, active_only=False):  # noqa: ANN001
        for price in self.store.prices:
            if price.id == price_id and price.provider == provider and (price.is_active or not active_only):
                return price
        return None

    async def find_price_by_provider_price_id(self, context, provider, provider_price_id):  # noqa: ANN001
        for price in self.store.prices:
            if price.provider == provider and price.provider_price_id == provider_price_id:
                return price
        return None

    async def get_tier_by_slug(self, context, slug):  # noqa: ANN001
        return self.store.tiers.get(slug)

    async def list_active_tiers(self, context):  # noqa: ANN001
        return sorted((t for t in self.store.tiers.values() if t.is_active), key=lambda t: t.level)

    async def list_products_with_prices(self, context, provider):  # noqa: ANN001
        return [p for p in self.store.products if p.provider == provider]


class FakePaymentCustomerRepository(_FakeRepository):
    async def find_by_tenant(self, context, tenant_id, provider):  # noqa: ANN001
        if not self._visible(context, tenant_id):
            return None
        for customer in self.store.customers:
            if customer.tenant_id == tenant_id and customer.provider == provider:
                return customer
        return None

    async def upsert(self, context, tenant_id, provider, provider_customer_id):  # noqa: ANN001
        self._write(context, tenant_id)
        existing = await self.find_by_tenant(context, tenant_id, provider)
        if existing is not None:
            existing.provider_customer_id = provider_customer_id
            return existing
        customer = FakeCustomer(tenant_id, provider, provider_customer_id)
        self.store.customers.append(customer)
        return customer


class FakeSubscriptionRepository(_FakeRepository):
    async def find_by_provider_subscription_id(self, context, provider_name, provider_subscription_id, *, for_update=False):  # noqa: ANN001,E501
        for subscription in self.store.subscriptions:
            if (
                subscription.provider_name == provider_name
                and subscription.provider_subscription_id == provider_subscription_id
                and self._visible(context, subscription.tenant_id)
            ):
                return subscription
        return None

    async def list_active_for_tenant(self, context, tenant_id, *, for_update=False):  # noqa: ANN001
        if not self._visible(context, tenant_id):
            return []
        return sorted(self.store.active_for(tenant_id), key=lambda s: s.starts_at, reverse=True)

    async def get_active_for_tenant(self, context, tenant_id):  # noqa: ANN001
        active = await self.list_active_for_tenant(context, tenant_id)
        return active[0] if active else None

    async def create_active(
        self,
        context,  # noqa: ANN001
        *,
        tenant_id,  # noqa: ANN001
        tier_id,  # noqa: ANN001
        expires_at=None,  # noqa: ANN001
        provider_name=None,  # noqa: ANN001
        provider_subscription_id=None,  # noqa: ANN001
    ):
        self._write(context, tenant_id)
        if provider_name and provider_subscription_id:
            for existing in self.store.subscriptions:
                if (
                    existing.provider_name == provider_name
                    and existing.provider_subscription_id == provider_subscription_id
                ):
                    raise _duplicate("uq_subscriptions_provider_subscription")
        subscription = FakeSubscription(
            tenant_id=tenant_id,
            tier_id=tier_id,
            expires_at=expires_at,
            provider_name=provider_name,
            provider_subscription_id=provider_subscription_id,
        )
        self.store.subscriptions.append(subscription)
        return subscription

    async def update(self, context, instance, **values):  # noqa: ANN001
        self._write(context, instance.tenant_id)
        for name, value in values.items():
            setattr(instance, name, value)
        return instance

    async def cancel_active_for_tenant(self, context, tenant_id, *, keep=None):  # noqa: ANN001
        context.require_tenant(tenant_id)
        cancelled = []
        for subscription in await self.list_active_for_tenant(context, tenant_id, for_update=True):
            if subscription.id == keep:
                continue
            await self.update(context, subscription, status=SubscriptionStatus.CANCELLED)
            cancelled.append(subscription)
        return cancelled

    async def list_expired(self, context, *, now, exclude_tier_id):  # noqa: ANN001
        return [
            s
            for s in self.store.subscriptions
            if s.is_active and s.tier_id != exclude_tier_id and s.expires_at is not None and s.expires_at <= now
        ]


class FakeLedger(_FakeRepository):
    async def has_been_processed(self, event_id: str, provider: str) -> bool:
        return any(row[0] == event_id and row[1] == provider for row in self.store.ledger)

    async def mark_as_processed(self, event_id: str, provider: str, event_type: str | None = None):
        if await self.has_been_processed(event_id, provider):
            raise _duplicate("uq_processed_webhook_events_event_provider")
        self.store.ledger.append((event_id, provider, event_type))
        return SimpleNamespace(event_id=event_id, provider=provider, event_type=event_type)


def fake_repositories(session: FakeSession) -> BillingRepositories:
    store = session.store
    return BillingRepositories(
        tenants=FakeTenantRepository(store),
        catalog=FakeCatalogRepository(store),
        customers=FakePaymentCustomerRepository(store),
        subscriptions=FakeSubscriptionRepository(store),
        ledger=FakeLedger(store),
    )


class RecordingEmitter:
    def __init__(self) -> None:
        self.batches: list[list] = []

    def dispatch(self, notifications) -> None:  # noqa: ANN001
        batch = list(notifications)
        if batch:
            self.batches.append(batch)

    @property
    def notifications(self) -> list:
        return [item for batch in self.batches for item in batch]


@pytest.fixture
def store() -> FakeStore:
    store = FakeStore()
    free = store.add_tier("free", 0)
    starter = store.add_tier("starter", 2)
    pro = store.add_tier("pro", 3)
    store.add_price("stripe", "price_starter", starter)
    store.add_price("stripe", "price_pro", pro)
    store.add_price("lemonsqueezy", "101", starter)
    store.add_price("lemonsqueezy", "102", pro)
    store.add_price("paddle", "pri_starter", starter)
    store.add_price("paddle", "pri_pro", pro)
    store.add_price("polar", "polar_price_starter", starter)
    store.add_price("polar", "polar_price_pro", pro)
    store.free_tier = free
    store.starter_tier = starter
    store.pro_tier = pro
    store.tenant_id = store.add_tenant()
    return store


@pytest.fixture
def session_factory(store: FakeStore):
    return lambda: FakeSession(store)


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()


@pytest.fixture
def billing_settings() -> Settings:
    return Settings(
        _env_file=None,
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        lemonsqueezy_api_key="ls_api_key",
        lemonsqueezy_store_id="4242",
        lemonsqueezy_webhook_secret=LEMONSQUEEZY_WEBHOOK_SECRET,
        paddle_api_key="pdl_sdbx_apikey_test",
        paddle_webhook_secret=PADDLE_WEBHOOK_SECRET,
        polar_access_token="polar_oat_test",
        polar_webhook_secret=POLAR_WEBHOOK_SECRET,
        audit_redis_enabled=False,
    )


@pytest.fixture
def repositories_factory():
    return fake_repositories


@pytest.fixture
def make_engine(session_factory, emitter: RecordingEmitter, billing_settings: Settings):  # noqa: ANN001
    def _make(provider_name: str, repositories=fake_repositories) -> SubscriptionLifecycleEngine:  # noqa: ANN001
        return SubscriptionLifecycleEngine(
            provider_name,
            session_factory=session_factory,
            repositories=repositories,
            emitter=emitter,
            config=billing_settings,
        )

    return _make


@pytest.fixture
def stripe_signer():
    def _sign(payload: bytes, *, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{timestamp}.".encode("utf-8") + payload
        digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"

    return _sign


@pytest.fixture
def lemonsqueezy_signer():
    def _sign(payload: bytes, *, secret: str = LEMONSQUEEZY_WEBHOOK_SECRET) -> str:
        return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()

    return _sign


@pytest.fixture
def paddle_signer():
    def _sign(payload: bytes, *, secret: str = PADDLE_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{timestamp}:".encode("utf-8") + payload
        digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return f"ts={timestamp};h1={digest}"

    return _sign


@pytest.fixture
def polar_headers():
    def _headers(
        payload: bytes,
        *,
        key: bytes = POLAR_SIGNING_KEY,
        webhook_id: str = "msg_test_1",
        timestamp: int | None = None,
    ) -> dict[str, str]:
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{webhook_id}.{timestamp}.".encode("utf-8") + payload
        digest = base64.b64encode(hmac.new(key, signed, hashlib.sha256).digest()).decode("ascii")
        return {
            "webhook-id": webhook_id,
            "webhook-timestamp": str(timestamp),
            "webhook-signature": f"v1,{digest}",
        }

    return _headers


@pytest.fixture
def encode():
    def _encode(body: dict) -> bytes:
        return json.dumps(body, separators=(",", ":")).encode("utf-8")

    return _encode
