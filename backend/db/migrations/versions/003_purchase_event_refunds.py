"""Track Square refunds on purchase events

Refund rows carry a negative quantity and the Square refund id they came
from, so a redelivered refund webhook is recognized.

Revision ID: 003
Revises: 002
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "003"
down_revision: str | None = "002"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.add_column("loyalty_purchase_events", sa.Column("square_refund_id", sa.String(255)))
    op.create_index(
        "ix_purchase_events_refund",
        "loyalty_purchase_events",
        ["merchant_id", "square_refund_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_purchase_events_refund", table_name="loyalty_purchase_events")
    op.drop_column("loyalty_purchase_events", "square_refund_id")
