"""Post-commit audit events and billing hooks.

Notifications are dispatched only after the owning transaction has committed.
Delivery runs in a background task, is never awaited by the committing code,
and failures are logged and dropped: the committed billing state is never
rolled back or retried because an observer failed.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Literal
from uuid import UUID, uuid4

import redis.asyncio as redis

from tenant_billing.core.config import settings
from tenant_billing.models.base import utcnow

logger = logging.getLogger(__name__)

_SENSITIVE_KEYS = (
    "email",
    "password",
    "token",
    "secret",
    "apikey",
    "api_key",
    "credit_card",
    "creditcard",
    "phone",
    "address",
)


class AuditEventType(StrEnum):
    SUBSCRIPTION_CREATE = "subscription.create"
    SUBSCRIPTION_UPDATE = "subscription.update"
    SUBSCRIPTION_CANCEL = "subscription.cancel"
    SUBSCRIPTION_EXPIRE = "subscription.expire"
    BILLING_PAYMENT_SUCCESS = "billing.payment.success"
    BILLING_PAYMENT_FAILURE = "billing.payment.failure"


class BillingHook(StrEnum):
    CUSTOMER_CREATED = "billing:customer_created"
    SUBSCRIPTION_CREATED = "billing:subscription_created"
    SUBSCRIPTION_UPDATED = "billing:subscription_updated"
    SUBSCRIPTION_CANCELLED = "billing:subscription_cancelled"
    PAYMENT_FAILED = "billing:payment_failed"
    INVOICE_PAID = "billing:invoice_paid"


@dataclass(frozen=True, slots=True)
class ResourceRef:
    type: str
    id: str


@dataclass(frozen=True, slots=True)
class AuditActor:
    type: Literal["user", "service", "system"]
    id: str | None = None

    @classmethod
    def service(cls, service_id: str) -> AuditActor:
        return cls(type="service", id=service_id)

    @classmethod
    def system(cls) -> AuditActor:
        return cls(type="system")


def sanitize_meta(meta: Mapping[str, object], *, depth: int = 1) -> dict[str, object]:
    sanitized: dict[str, object] = {}
    for key, value in meta.items():
        lowered = key.lower()
        if any(marker in lowered for marker in _SENSITIVE_KEYS):
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, Mapping) and depth > 0:
            sanitized[key] = sanitize_meta(value, depth=depth - 1)
        else:
            sanitized[key] = value
    return sanitized


@dataclass(frozen=True, slots=True)
class AuditEvent:
    kind: str
    tenant_id: UUID | None
    actor: AuditActor
    resource: ResourceRef | None = None
    meta: dict[str, object] = field(default_factory=dict)
    at: datetime = field(default_factory=utcnow)

    @classmethod
    def build(
        cls,
        kind: str,
        *,
        tenant_id: UUID | None,
        actor: AuditActor,
        resource: ResourceRef | None = None,
        meta: Mapping[str, object] | None = None,
    ) -> AuditEvent:
        return cls(
            kind=str(kind),
            tenant_id=tenant_id,
            actor=actor,
            resource=resource,
            meta=sanitize_meta(meta or {}),
        )

    def payload(self) -> dict[str, object]:
        return {
            "type": self.kind,
            "tenant_id": str(self.tenant_id) if self.tenant_id else None,
            "at": self.at.isoformat(),
            "actor": {"type": self.actor.type, "id": self.actor.id},
            "resource": (
                {"type": self.resource.type, "id": self.resource.id} if self.resource else None
            ),
            "meta": self.meta,
        }


@dataclass(frozen=True, slots=True)
class HookCall:
    name: str
    payload: dict[str, object]


Notification = AuditEvent | HookCall
AuditHandler = Callable[[AuditEvent], Awaitable[None] | None]
HookCallback = Callable[[dict[str, object]], Awaitable[None] | None]
AuditSink = Callable[[AuditEvent], Awaitable[None]]


async def _invoke(callback: Callable[[object], Awaitable[None] | None], value: object) -> None:
    result = callback(value)
    if inspect.isawaitable(result):
        await result


class AuditEventBus:
    """In-process pub/sub for audit events; one failing subscriber never blocks another."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, tuple[str | None, AuditHandler]] = {}

    def subscribe(self, handler: AuditHandler, event_type: str | None = None) -> str:
        token = uuid4().hex
        self._subscriptions[token] = (event_type, handler)
        return token

    def unsubscribe(self, token: str) -> bool:
        return self._subscriptions.pop(token, None) is not None

    def clear(self) -> None:
        self._subscriptions.clear()

    async def publish(self, event: AuditEvent) -> None:
        for event_type, handler in list(self._subscriptions.values()):
            if event_type is not None and event_type != event.kind:
                continue
            try:
                await _invoke(handler, event)
            except Exception:
                logger.exception("Audit subscriber failed for event=%s", event.kind)


class HookRegistry:
    def __init__(self) -> None:
        self._actions: dict[str, list[HookCallback]] = {}

    def add_action(self, name: str, callback: HookCallback) -> None:
        self._actions.setdefault(name, []).append(callback)

    def remove_action(self, name: str, callback: HookCallback) -> None:
        callbacks = self._actions.get(name, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def clear(self) -> None:
        self._actions.clear()

    async def do_action(self, name: str, payload: dict[str, object]) -> None:
        for callback in list(self._actions.get(name, [])):
            try:
                await _invoke(callback, payload)
            except Exception:
                logger.exception("Billing hook %s failed", name)


class RedisAuditSink:
    """Appends audit events to a Redis stream for out-of-process consumers."""

    def __init__(self, redis_url: str, stream_name: str, maxlen: int) -> None:
        self.redis_url = redis_url
        self.stream_name = stream_name
        self.maxlen = maxlen

    async def __call__(self, event: AuditEvent) -> None:
        payload = event.payload()
        redis_client = redis.from_url(self.redis_url, decode_responses=True)
        try:
            await redis_client.xadd(
                self.stream_name,
                {
                    "type": event.kind,
                    "tenant_id": payload["tenant_id"] or "",
                    "payload": json.dumps(payload, default=str),
                },
                maxlen=self.maxlen,
                approximate=True,
            )
        finally:
            await redis_client.aclose()


class NotificationEmitter:
    def __init__(
        self,
        bus: AuditEventBus,
        hooks: HookRegistry,
        sinks: Iterable[AuditSink] = (),
    ) -> None:
        self.bus = bus
        self.hooks = hooks
        self.sinks = list(sinks)
        self._pending: set[asyncio.Task[None]] = set()

    def dispatch(self, notifications: Iterable[Notification]) -> None:
        """Schedule delivery and return immediately; callers never await the result."""
        batch = list(notifications)
        if not batch:
            return
        task = asyncio.get_running_loop().create_task(self._deliver(batch))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _deliver(self, batch: list[Notification]) -> None:
        for notification in batch:
            if isinstance(notification, HookCall):
                await self.hooks.do_action(notification.name, notification.payload)
                continue

            await self.bus.publish(notification)
            for sink in self.sinks:
                try:
                    await sink(notification)
                except Exception:
                    logger.exception(
                        "Audit sink dropped event=%s tenant_id=%s",
                        notification.kind,
                        notification.tenant_id,
                    )


def _default_sinks() -> list[AuditSink]:
    if not settings.audit_redis_enabled:
        return []
    return [
        RedisAuditSink(
            settings.redis_url,
            settings.audit_stream_name,
            settings.audit_stream_maxlen,
        )
    ]


audit_event_bus = AuditEventBus()
hook_registry = HookRegistry()
notification_emitter = NotificationEmitter(audit_event_bus, hook_registry, _default_sinks())
