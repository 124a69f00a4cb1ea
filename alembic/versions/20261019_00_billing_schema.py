"""create billing schema

Revision ID: 20261019_00
Revises: 
Create Date: 2026-10-19 09:00:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261019_00"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "subscription_tiers",
        sa.Column("slug", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_team_members", sa.Integer(), nullable=True),
        sa.Column("features", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscription_tiers_slug", "subscription_tiers", ["slug"], unique=True)

    op.create_table(
        "tenants",
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("billing_email", sa.String(length=255), nullable=False),
        sa.Column("balance", sa.Numeric(14, 2), nullable=False, server_default="0"),
        sa.Column("balance_currency", sa.String(length=3), nullable=False, server_default="usd"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "products",
        sa.Column("tier_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("provider_product_id", sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tier_id"], ["subscription_tiers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "provider_product_id", name="uq_products_provider_product"),
    )
    op.create_index("ix_products_tier_id", "products", ["tier_id"], unique=False)

    op.create_table(
        "prices",
        sa.Column("product_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("provider_price_id", sa.String(length=255), nullable=False),
        sa.Column("interval", sa.String(length=10), nullable=False, server_default="month"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("unit_amount", sa.Integer(), nullable=False),
        sa.Column("tax_behavior", sa.String(length=20), nullable=False, server_default="exclusive"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "provider_price_id", name="uq_prices_provider_price"),
    )
    op.create_index("ix_prices_product_id", "prices", ["product_id"], unique=False)

    op.create_table(
        "payment_customers",
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("provider_customer_id", sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "provider", name="uq_payment_customers_tenant_provider"),
    )
    op.create_index("ix_payment_customers_tenant_id", "payment_customers", ["tenant_id"], unique=False)
    op.create_index(
        "ix_payment_customers_provider_customer_id",
        "payment_customers",
        ["provider_customer_id"],
        unique=False,
    )

    op.create_table(
        "subscriptions",
        sa.Column("tenant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tier_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("provider_name", sa.String(length=40), nullable=True),
        sa.Column("provider_subscription_id", sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('active', 'cancelled', 'expired')",
            name="ck_subscriptions_status",
        ),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["tier_id"], ["subscription_tiers.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscriptions_tenant_id", "subscriptions", ["tenant_id"], unique=False)
    op.create_index("ix_subscriptions_tier_id", "subscriptions", ["tier_id"], unique=False)
    op.create_index("ix_subscriptions_tenant_status", "subscriptions", ["tenant_id", "status"], unique=False)
    op.create_index(
        "uq_subscriptions_provider_subscription",
        "subscriptions",
        ["provider_name", "provider_subscription_id"],
        unique=True,
        postgresql_where=sa.text("provider_name IS NOT NULL AND provider_subscription_id IS NOT NULL"),
    )

    op.create_table(
        "processed_webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("event_type", sa.String(length=120), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("event_id", "provider", name="uq_processed_webhook_events_event_provider"),
    )

    op.execute(
        """
        INSERT INTO subscription_tiers (id, slug, name, level, is_active, created_at, updated_at)
        VALUES (gen_random_uuid(), 'free', 'Free', 0, true, now(), now())
        ON CONFLICT (slug) DO NOTHING
        """
    )


def downgrade() -> None:
    op.drop_table("processed_webhook_events")
    op.drop_index("uq_subscriptions_provider_subscription", table_name="subscriptions")
    op.drop_index("ix_subscriptions_tenant_status", table_name="subscriptions")
    op.drop_index("ix_subscriptions_tier_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_tenant_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_payment_customers_provider_customer_id", table_name="payment_customers")
    op.drop_index("ix_payment_customers_tenant_id", table_name="payment_customers")
    op.drop_table("payment_customers")
    op.drop_index("ix_prices_product_id", table_name="prices")
    op.drop_table("prices")
    op.drop_index("ix_products_tier_id", table_name="products")
    op.drop_table("products")
    op.drop_table("tenants")
    op.drop_index("ix_subscription_tiers_slug", table_name="subscription_tiers")
    op.drop_table("subscription_tiers")
