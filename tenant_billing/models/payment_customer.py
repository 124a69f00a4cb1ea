from __future__ import annotations

from sqlalchemy import String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from tenant_billing.models.base import TenantScopedBase


class PaymentCustomer(TenantScopedBase):
    __tablename__ = "payment_customers"
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_payment_customers_tenant_provider"),
    )

    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    provider_customer_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
