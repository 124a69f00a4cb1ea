from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from tenant_billing.core.audit import AuditEvent, AuditEventType, BillingHook
from tenant_billing.core.errors import TierNotFoundError
from tenant_billing.core.lifecycle import (
    CheckoutCompleted,
    NormalizedEvent,
    PaymentFailed,
    PaymentSucceeded,
    SubscriptionCancelled,
    SubscriptionUpdated,
)
from tenant_billing.core.repositories.bundle import BillingRepositories
from tenant_billing.models.subscription import SubscriptionStatus

PERIOD_END = datetime(2026, 11, 19, tzinfo=timezone.utc)


def _checkout(tenant_id, price_id: str = "price_starter", subscription_id: str = "sub_1") -> CheckoutCompleted:  # noqa: ANN001
    return CheckoutCompleted(
        tenant_id=tenant_id,
        provider_customer_id="cus_1",
        provider_subscription_id=subscription_id,
        provider_price_id=price_id,
        expires_at=PERIOD_END,
        amount=1500,
        currency="usd",
    )


def _event(operation, event_id: str | None = None, event_type: str = "test.event") -> NormalizedEvent:  # noqa: ANN001
    return NormalizedEvent(event_id=event_id or f"evt_{uuid4().hex}", event_type=event_type, operation=operation)


def _kinds(emitter) -> list[str]:  # noqa: ANN001
    return [n.kind if isinstance(n, AuditEvent) else n.name for n in emitter.notifications]


@pytest.mark.asyncio
async def test_checkout_creates_single_active_subscription(store, make_engine, emitter) -> None:  # noqa: ANN001
    tenant_id = store.tenant_id
    free = store.add_subscription(tenant_id, store.free_tier)
    engine = make_engine("stripe")

    result = await engine.process(_event(_checkout(tenant_id), event_id="evt_1", event_type="checkout.session.completed"))

    assert result.processed is True
    assert result.event_type == "checkout.session.completed"
    active = store.active_for(tenant_id)
    assert len(active) == 1
    assert active[0].tier_id == store.starter_tier.id
    assert active[0].provider_subscription_id == "sub_1"
    assert active[0].expires_at == PERIOD_END
    assert free.status == SubscriptionStatus.CANCELLED
    assert store.customers[0].provider_customer_id == "cus_1"
    assert store.ledger == [("evt_1", "stripe", "checkout.session.completed")]
    assert store.commits == 1


@pytest.mark.asyncio
async def test_checkout_writes_run_under_tenant_context(store, make_engine) -> None:  # noqa: ANN001
    engine = make_engine("stripe")
    await engine.process(_event(_checkout(store.tenant_id)))

    assert store.write_contexts
    assert all(ctx.mode == "tenant" and ctx.tenant_id == store.tenant_id for ctx in store.write_contexts)
    modes = [params["mode"] for params in store.bound_contexts]
    assert modes[0] == "system"
    assert "tenant" in modes


@pytest.mark.asyncio
async def test_notifications_dispatched_once_after_commit(store, make_engine, emitter) -> None:  # noqa: ANN001
    engine = make_engine("stripe")
    await engine.process(_event(_checkout(store.tenant_id)))

    assert len(emitter.batches) == 1
    assert _kinds(emitter) == [
        AuditEventType.SUBSCRIPTION_CREATE,
        BillingHook.CUSTOMER_CREATED,
        BillingHook.SUBSCRIPTION_CREATED,
    ]
    audit = emitter.notifications[0]
    assert audit.tenant_id == store.tenant_id
    assert audit.resource.type == "subscription"


@pytest.mark.asyncio
async def test_duplicate_delivery_is_not_reapplied(store, make_engine, emitter) -> None:  # noqa: ANN001
    engine = make_engine("stripe")
    event = _event(_checkout(store.tenant_id), event_id="evt_dup")

    first = await engine.process(event)
    second = await engine.process(event)

    assert first.processed is True
    assert second.processed is False
    assert second.message == "Event already processed"
    assert len(store.for_tenant(store.tenant_id)) == 1
    assert len(store.ledger) == 1
    assert len(emitter.batches) == 1


@pytest.mark.asyncio
async def test_ledger_keys_are_scoped_per_provider(store, make_engine) -> None:  # noqa: ANN001
    stripe_engine = make_engine("stripe")
    lemon_engine = make_engine("lemonsqueezy")

    first = await stripe_engine.process(_event(None, event_id="shared_id"))
    second = await lemon_engine.process(_event(None, event_id="shared_id"))

    assert first.processed is True
    assert second.processed is True
    assert {(row[0], row[1]) for row in store.ledger} == {("shared_id", "stripe"), ("shared_id", "lemonsqueezy")}


@pytest.mark.asyncio
async def test_unhandled_event_type_is_ledgered_without_mutation(store, make_engine, emitter) -> None:  # noqa: ANN001
    engine = make_engine("stripe")

    result = await engine.process(_event(None, event_id="evt_other", event_type="customer.created"))

    assert result.processed is True
    assert store.subscriptions == []
    assert store.ledger == [("evt_other", "stripe", "customer.created")]
    assert emitter.batches == []


@pytest.mark.asyncio
async def test_plan_change_updates_same_subscription_row(store, make_engine) -> None:  # noqa: ANN001
    engine = make_engine("stripe")
    await engine.process(_event(_checkout(store.tenant_id, price_id="price_starter")))
    original = store.active_for(store.tenant_id)[0]

    new_period = PERIOD_END + timedelta(days=30)
    await engine.process(
        _event(
            SubscriptionUpdated(
                provider_subscription_id="sub_1",
                provider_status="active",
                status=SubscriptionStatus.ACTIVE,
                provider_price_id="price_pro",
                expires_at=new_period,
            )
        )
    )

    rows = store.for_tenant(store.tenant_id)
    assert len(rows) == 1
    assert rows[0].id == original.id
    assert rows[0].tier_id == store.pro_tier.id
    assert rows[0].expires_at == new_period


@pytest.mark.asyncio
async def test_unmapped_status_keeps_current_status(store, make_engine) -> None:  # noqa: ANN001
    subscription = store.add_subscription(
        store.tenant_id, store.starter_tier, provider_name="stripe", provider_subscription_id="sub_9"
    )
    engine = make_engine("stripe")

    await engine.process(
        _event(
            SubscriptionUpdated(
                provider_subscription_id="sub_9",
                provider_status="paused",
                status=None,
                provider_price_id=None,
                expires_at=PERIOD_END,
            )
        )
    )

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.expires_at == PERIOD_END


@pytest.mark.asyncio
async def test_update_for_unknown_subscription_is_noop(store, make_engine) -> None:  # noqa: ANN001
    engine = make_engine("stripe")

    result = await engine.process(
        _event(
            SubscriptionUpdated(
                provider_subscription_id="sub_missing",
                provider_status="active",
                status=SubscriptionStatus.ACTIVE,
                provider_price_id=None,
                expires_at=None,
            )
        )
    )

    assert result.processed is True
    assert result.message == "Subscription not found locally"
    assert store.subscriptions == []


@pytest.mark.asyncio
async def test_cancellation_downgrades_tenant_to_free(store, make_engine, emitter) -> None:  # noqa: ANN001
    paid = store.add_subscription(
        store.tenant_id, store.pro_tier, provider_name="stripe", provider_subscription_id="sub_paid"
    )
    engine = make_engine("stripe")

    await engine.process(_event(SubscriptionCancelled("sub_paid"), event_type="customer.subscription.deleted"))

    assert paid.status == SubscriptionStatus.CANCELLED
    active = store.active_for(store.tenant_id)
    assert len(active) == 1
    assert active[0].tier_id == store.free_tier.id
    assert active[0].provider_subscription_id is None
    assert AuditEventType.SUBSCRIPTION_CANCEL in _kinds(emitter)


@pytest.mark.asyncio
async def test_cancelling_superseded_subscription_still_lands_on_free_tier(store, make_engine) -> None:  # noqa: ANN001
    engine = make_engine("stripe")
    await engine.process(_event(_checkout(store.tenant_id, "price_starter", "sub_a")))
    await engine.process(_event(_checkout(store.tenant_id, "price_pro", "sub_b")))

    await engine.process(_event(SubscriptionCancelled("sub_a"), event_type="customer.subscription.deleted"))

    active = store.active_for(store.tenant_id)
    assert len(active) == 1
    assert active[0].tier_id == store.free_tier.id
    paid = [s for s in store.for_tenant(store.tenant_id) if s.provider_subscription_id]
    assert [s.status for s in paid] == [SubscriptionStatus.CANCELLED, SubscriptionStatus.CANCELLED]


@pytest.mark.asyncio
async def test_checkout_locks_tenant_row_before_superseding(store, make_engine) -> None:  # noqa: ANN001
    engine = make_engine("stripe")

    await engine.process(_event(_checkout(store.tenant_id)))

    assert store.tenant_locks == [store.tenant_id]


@pytest.mark.asyncio
async def test_cancellation_and_update_lock_owning_tenant(store, make_engine) -> None:  # noqa: ANN001
    store.add_subscription(
        store.tenant_id, store.pro_tier, provider_name="stripe", provider_subscription_id="sub_1"
    )
    engine = make_engine("stripe")

    await engine.process(
        _event(SubscriptionUpdated("sub_1", "active", SubscriptionStatus.ACTIVE, None, PERIOD_END))
    )
    await engine.process(_event(SubscriptionCancelled("sub_1")))
    await engine.process(_event(SubscriptionCancelled("sub_unknown")))

    assert store.tenant_locks == [store.tenant_id, store.tenant_id]


@pytest.mark.asyncio
async def test_cancellation_for_unknown_subscription_is_ledgered_noop(store, make_engine, emitter) -> None:  # noqa: ANN001
    engine = make_engine("lemonsqueezy")

    result = await engine.process(
        _event(SubscriptionCancelled("999"), event_id="payload_abc", event_type="subscription_cancelled")
    )

    assert result.processed is True
    assert store.subscriptions == []
    assert store.ledger == [("payload_abc", "lemonsqueezy", "subscription_cancelled")]
    assert emitter.batches == []


@pytest.mark.asyncio
async def test_failure_rolls_back_mutation_and_ledger(store, make_engine, emitter) -> None:  # noqa: ANN001
    paid = store.add_subscription(
        store.tenant_id, store.pro_tier, provider_name="stripe", provider_subscription_id="sub_paid"
    )
    del store.tiers["free"]
    engine = make_engine("stripe")

    with pytest.raises(TierNotFoundError):
        await engine.process(_event(SubscriptionCancelled("sub_paid"), event_id="evt_fail"))

    restored = store.subscriptions[0]
    assert restored.id == paid.id
    assert restored.status == SubscriptionStatus.ACTIVE
    assert store.ledger == []
    assert store.rollbacks == 1
    assert emitter.batches == []


@pytest.mark.asyncio
async def test_checkout_with_unknown_price_is_ledgered_noop(store, make_engine) -> None:  # noqa: ANN001
    engine = make_engine("stripe")

    result = await engine.process(_event(_checkout(store.tenant_id, price_id="price_unknown"), event_id="evt_p"))

    assert result.processed is True
    assert "price_unknown" in (result.message or "")
    assert store.subscriptions == []
    assert store.customers == []
    assert len(store.ledger) == 1


@pytest.mark.asyncio
async def test_checkout_for_unknown_tenant_is_ledgered_noop(store, make_engine) -> None:  # noqa: ANN001
    engine = make_engine("stripe")

    result = await engine.process(_event(_checkout(uuid4())))

    assert result.processed is True
    assert result.message == "Tenant not found"
    assert store.subscriptions == []


@pytest.mark.asyncio
async def test_repeated_checkout_for_same_subscription_reactivates_row(store, make_engine) -> None:  # noqa: ANN001
    existing = store.add_subscription(
        store.tenant_id,
        store.starter_tier,
        status=SubscriptionStatus.CANCELLED,
        provider_name="stripe",
        provider_subscription_id="sub_1",
    )
    free = store.add_subscription(store.tenant_id, store.free_tier)
    engine = make_engine("stripe")

    await engine.process(_event(_checkout(store.tenant_id, price_id="price_pro", subscription_id="sub_1")))

    assert store.active_for(store.tenant_id) == [existing]
    assert existing.tier_id == store.pro_tier.id
    assert free.status == SubscriptionStatus.CANCELLED


@pytest.mark.asyncio
async def test_checkout_for_subscription_owned_by_other_tenant_is_ignored(store, make_engine) -> None:  # noqa: ANN001
    other_tenant = store.add_tenant("Other", "other@example.test")
    owned = store.add_subscription(
        other_tenant, store.starter_tier, provider_name="stripe", provider_subscription_id="sub_1"
    )
    engine = make_engine("stripe")

    result = await engine.process(_event(_checkout(store.tenant_id, subscription_id="sub_1")))

    assert result.message == "Subscription belongs to another tenant"
    assert store.for_tenant(store.tenant_id) == []
    assert owned.tenant_id == other_tenant


@pytest.mark.asyncio
async def test_payment_failed_emits_audit_without_mutation(store, make_engine, emitter) -> None:  # noqa: ANN001
    subscription = store.add_subscription(
        store.tenant_id, store.pro_tier, provider_name="stripe", provider_subscription_id="sub_paid"
    )
    engine = make_engine("stripe")

    await engine.process(_event(PaymentFailed(provider_subscription_id="sub_paid", invoice_id="in_1")))
    await engine.process(_event(PaymentFailed(provider_subscription_id="sub_gone", invoice_id="in_2")))

    assert subscription.status == SubscriptionStatus.ACTIVE
    failures = [n for n in emitter.notifications if isinstance(n, AuditEvent)]
    assert [f.kind for f in failures] == [AuditEventType.BILLING_PAYMENT_FAILURE] * 2
    assert failures[0].tenant_id == store.tenant_id
    assert failures[1].tenant_id is None
    assert store.write_contexts == []


@pytest.mark.asyncio
async def test_payment_succeeded_extends_period(store, make_engine, emitter) -> None:  # noqa: ANN001
    subscription = store.add_subscription(
        store.tenant_id,
        store.pro_tier,
        provider_name="stripe",
        provider_subscription_id="sub_paid",
        expires_at=PERIOD_END,
    )
    engine = make_engine("stripe")
    next_period = PERIOD_END + timedelta(days=30)

    await engine.process(
        _event(
            PaymentSucceeded(
                provider_subscription_id="sub_paid",
                invoice_id="in_3",
                period_end=next_period,
                amount=1500,
                currency="usd",
            )
        )
    )

    assert subscription.expires_at == next_period
    assert BillingHook.INVOICE_PAID in _kinds(emitter)


class _RacingLedger:
    """Misses the row on the in-transaction check, as a concurrent writer would."""

    def __init__(self, inner) -> None:  # noqa: ANN001
        self.inner = inner
        self.calls = 0

    async def has_been_processed(self, event_id: str, provider: str) -> bool:
        self.calls += 1
        if self.calls == 1:
            return False
        return await self.inner.has_been_processed(event_id, provider)

    async def mark_as_processed(self, event_id: str, provider: str, event_type: str | None = None):
        return await self.inner.mark_as_processed(event_id, provider, event_type)


class _BrokenLedger:
    async def has_been_processed(self, event_id: str, provider: str) -> bool:
        return False

    async def mark_as_processed(self, event_id: str, provider: str, event_type: str | None = None):
        raise IntegrityError("INSERT", {}, Exception("unrelated constraint"))


def _with_ledger(repositories_factory, make_ledger):  # noqa: ANN001
    ledgers: list = []

    def _factory(session) -> BillingRepositories:  # noqa: ANN001
        bundle = repositories_factory(session)
        if not ledgers:
            ledgers.append(make_ledger(bundle.ledger))
        bundle.ledger = ledgers[0]
        return bundle

    return _factory


@pytest.mark.asyncio
async def test_concurrent_redelivery_loses_harmlessly(store, make_engine, repositories_factory, emitter) -> None:  # noqa: ANN001
    store.ledger.append(("evt_race", "stripe", "checkout.session.completed"))
    engine = make_engine("stripe", repositories=_with_ledger(repositories_factory, _RacingLedger))

    result = await engine.process(_event(_checkout(store.tenant_id), event_id="evt_race"))

    assert result.processed is False
    assert store.subscriptions == []
    assert store.customers == []
    assert len(store.ledger) == 1
    assert emitter.batches == []


@pytest.mark.asyncio
async def test_unrelated_integrity_error_propagates(store, make_engine, repositories_factory) -> None:  # noqa: ANN001
    engine = make_engine("stripe", repositories=_with_ledger(repositories_factory, lambda _inner: _BrokenLedger()))

    with pytest.raises(IntegrityError):
        await engine.process(_event(_checkout(store.tenant_id), event_id="evt_broken"))

    assert store.subscriptions == []
    assert store.rollbacks == 1
