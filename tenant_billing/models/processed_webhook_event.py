from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from tenant_billing.models.base import Base, utcnow


class ProcessedWebhookEvent(Base):
    """Append-only idempotency ledger row; never updated or deleted."""

    __tablename__ = "processed_webhook_events"
    __table_args__ = (
        UniqueConstraint("event_id", "provider", name="uq_processed_webhook_events_event_provider"),
    )

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True, default=uuid4)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    event_type: Mapped[str | None] = mapped_column(String(120), nullable=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
