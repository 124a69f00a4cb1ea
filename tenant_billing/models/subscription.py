from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from uuid import UUID

from sqlalchemy import DateTime, Index, String, text
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from tenant_billing.models.base import TenantScopedBase, utcnow


class SubscriptionStatus(StrEnum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Subscription(TenantScopedBase):
    __tablename__ = "subscriptions"
    __table_args__ = (
        # Join key for webhooks that do not carry the tenant id.
        Index(
            "uq_subscriptions_provider_subscription",
            "provider_name",
            "provider_subscription_id",
            unique=True,
            postgresql_where=text("provider_name IS NOT NULL AND provider_subscription_id IS NOT NULL"),
        ),
        Index("ix_subscriptions_tenant_status", "tenant_id", "status"),
    )

    tier_id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SubscriptionStatus.ACTIVE)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    provider_name: Mapped[str | None] = mapped_column(String(40), nullable=True)
    provider_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > self.expires_at

    def should_expire(self, now: datetime | None = None) -> bool:
        return self.is_active and self.is_expired(now)
