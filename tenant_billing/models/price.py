from __future__ import annotations

from uuid import UUID

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tenant_billing.models.base import TimestampedBase
from tenant_billing.models.product import Product


class Price(TimestampedBase):
    __tablename__ = "prices"
    __table_args__ = (
        UniqueConstraint("provider", "provider_price_id", name="uq_prices_provider_price"),
    )

    product_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("products.id"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    # Stripe price id or LemonSqueezy variant id.
    provider_price_id: Mapped[str] = mapped_column(String(255), nullable=False)
    interval: Mapped[str] = mapped_column(String(10), nullable=False, default="month")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    unit_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    tax_behavior: Mapped[str] = mapped_column(String(20), nullable=False, default="exclusive")
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)

    product: Mapped[Product] = relationship(back_populates="prices")

    @property
    def tier_id(self) -> UUID:
        return self.product.tier_id
