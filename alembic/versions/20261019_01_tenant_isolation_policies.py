"""tenant isolation policies on billing tables

Revision ID: 20261019_01
Revises: 20261019_00
Create Date: 2026-10-19 09:30:00

"""
from __future__ import annotations

from alembic import op


# revision identifiers, used by Alembic.
revision = "20261019_01"
down_revision = "20261019_00"
branch_labels = None
depends_on = None

TENANT_TABLES = ("subscriptions", "payment_customers")

# Settings bound per transaction by bind_security_context().
_MODE = "current_setting('app.security_mode', true)"
_TENANT = "NULLIF(current_setting('app.current_tenant_id', true), '')::uuid"


def upgrade() -> None:
    # System mode may read and row-lock (SELECT ... FOR UPDATE checks the UPDATE
    # USING clause) but every written row must pass the tenant WITH CHECK.
    for table in TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        op.execute(
            f"""
            CREATE POLICY {table}_select ON {table} FOR SELECT
            USING ({_MODE} = 'system' OR ({_MODE} = 'tenant' AND tenant_id = {_TENANT}))
            """
        )
        op.execute(
            f"""
            CREATE POLICY {table}_insert ON {table} FOR INSERT
            WITH CHECK ({_MODE} = 'tenant' AND tenant_id = {_TENANT})
            """
        )
        op.execute(
            f"""
            CREATE POLICY {table}_update ON {table} FOR UPDATE
            USING ({_MODE} = 'system' OR ({_MODE} = 'tenant' AND tenant_id = {_TENANT}))
            WITH CHECK ({_MODE} = 'tenant' AND tenant_id = {_TENANT})
            """
        )

    # The ledger is global: rows are inserted and read, never changed.
    op.execute("REVOKE UPDATE, DELETE ON processed_webhook_events FROM PUBLIC")


def downgrade() -> None:
    for table in TENANT_TABLES:
        op.execute(f"DROP POLICY IF EXISTS {table}_update ON {table}")
        op.execute(f"DROP POLICY IF EXISTS {table}_insert ON {table}")
        op.execute(f"DROP POLICY IF EXISTS {table}_select ON {table}")
        op.execute(f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
