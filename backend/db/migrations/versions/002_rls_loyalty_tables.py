"""Add tenant isolation RLS policies to merchant-scoped tables

Policies read app.current_merchant_id, which db.session.set_tenant_context
sets at the start of every transaction.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18
"""

from collections.abc import Sequence

from alembic import op

revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

TENANT_TABLES = [
    "integrations",
    "loyalty_offers",
    "loyalty_qualifying_variations",
    "loyalty_rewards",
    "loyalty_purchase_events",
    "loyalty_redemptions",
    "loyalty_processed_orders",
    "loyalty_customers",
    "loyalty_audit_logs",
]


def upgrade() -> None:
    for table in TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY tenant_isolation ON {table} "
            f"USING (merchant_id::text = current_setting('app.current_merchant_id', true))"
        )


def downgrade() -> None:
    for table in TENANT_TABLES:
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation ON {table}")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
