from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tenant_billing.models.base import TimestampedBase

if TYPE_CHECKING:
    from tenant_billing.models.price import Price


class Product(TimestampedBase):
    __tablename__ = "products"
    __table_args__ = (
        UniqueConstraint("provider", "provider_product_id", name="uq_products_provider_product"),
    )

    tier_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("subscription_tiers.id"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    provider_product_id: Mapped[str] = mapped_column(String(255), nullable=False)

    prices: Mapped[list[Price]] = relationship(back_populates="product")
