from __future__ import annotations

from sqlalchemy import exists, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_billing.models.base import utcnow
from tenant_billing.models.processed_webhook_event import ProcessedWebhookEvent


class ProcessedWebhookEventRepository:
    """Idempotency ledger keyed by ``(event_id, provider)``.

    Rows are only ever inserted. ``mark_as_processed`` must be the last write of
    the transaction that applies the event, so the business mutation and the
    ledger row commit or roll back together. A concurrent redelivery of the same
    event trips the unique constraint on flush.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def has_been_processed(self, event_id: str, provider: str) -> bool:
        result = await self.session.execute(
            select(
                exists().where(
                    ProcessedWebhookEvent.event_id == event_id,
                    ProcessedWebhookEvent.provider == provider,
                )
            )
        )
        return bool(result.scalar())

    async def mark_as_processed(
        self,
        event_id: str,
        provider: str,
        event_type: str | None = None,
    ) -> ProcessedWebhookEvent:
        row = ProcessedWebhookEvent(
            event_id=event_id,
            provider=provider,
            event_type=event_type,
            processed_at=utcnow(),
        )
        self.session.add(row)
        await self.session.flush()
        return row
