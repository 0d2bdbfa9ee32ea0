"""
Initial schema - tenancy and loyalty tables

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _pk(name: str) -> sa.Column:
    return sa.Column(name, UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _merchant_fk() -> sa.Column:
    return sa.Column("merchant_id", UUID(as_uuid=True), sa.ForeignKey("merchants.merchant_id"), nullable=False)


def upgrade() -> None:
    # 1. Merchants
    op.create_table(
        "merchants",
        _pk("merchant_id"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("square_merchant_id", sa.String(255), unique=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status IN ('active', 'inactive', 'trial', 'churned')", name="ck_merchant_status"),
    )

    # 2. Integrations
    op.create_table(
        "integrations",
        _pk("integration_id"),
        _merchant_fk(),
        sa.Column("provider", sa.String(50), nullable=False, server_default="square"),
        sa.Column("access_token_encrypted", sa.Text),
        sa.Column("refresh_token_encrypted", sa.Text),
        sa.Column("token_expires_at", sa.DateTime),
        sa.Column("status", sa.String(20), nullable=False, server_default="connected"),
        sa.Column("last_sync_at", sa.DateTime),
        sa.Column("config", sa.JSON),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("merchant_id", "provider", name="uq_integration_per_provider"),
        sa.CheckConstraint("provider IN ('square')", name="ck_integration_provider"),
        sa.CheckConstraint("status IN ('connected', 'disconnected', 'error', 'pending')", name="ck_integration_status"),
    )
    op.create_index("ix_integrations_merchant", "integrations", ["merchant_id"])

    # 3. Offers
    op.create_table(
        "loyalty_offers",
        _pk("offer_id"),
        _merchant_fk(),
        sa.Column("offer_name", sa.String(255), nullable=False),
        sa.Column("brand_name", sa.String(255), nullable=False),
        sa.Column("size_group", sa.String(100), nullable=False),
        sa.Column("required_quantity", sa.Integer, nullable=False),
        sa.Column("reward_quantity", sa.Integer, nullable=False, server_default="1"),
        sa.Column("window_months", sa.Integer, nullable=False, server_default="12"),
        sa.Column("reward_type", sa.String(30), nullable=False, server_default="free_item"),
        sa.Column("reward_value", sa.Integer),
        sa.Column("reward_description", sa.Text),
        sa.Column("description", sa.Text),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(255)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("required_quantity > 0", name="ck_offer_required_quantity"),
        sa.CheckConstraint("window_months > 0", name="ck_offer_window_months"),
    )
    op.create_index("ix_loyalty_offers_merchant_active", "loyalty_offers", ["merchant_id", "is_active"])
    op.create_index("ix_loyalty_offers_brand_size", "loyalty_offers", ["merchant_id", "brand_name", "size_group"])

    # 4. Qualifying variations
    op.create_table(
        "loyalty_qualifying_variations",
        _pk("qualifying_variation_id"),
        _merchant_fk(),
        sa.Column("offer_id", UUID(as_uuid=True), sa.ForeignKey("loyalty_offers.offer_id"), nullable=False),
        sa.Column("variation_id", sa.String(255), nullable=False),
        sa.Column("item_id", sa.String(255)),
        sa.Column("item_name", sa.String(255)),
        sa.Column("variation_name", sa.String(255)),
        sa.Column("sku", sa.String(100)),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("merchant_id", "offer_id", "variation_id", name="uq_qualifying_variation_per_offer"),
    )
    op.create_index(
        "ix_qualifying_variations_lookup",
        "loyalty_qualifying_variations",
        ["merchant_id", "variation_id", "is_active"],
    )

    # 5. Rewards (before purchase events, which reference them)
    op.create_table(
        "loyalty_rewards",
        _pk("reward_id"),
        _merchant_fk(),
        sa.Column("offer_id", UUID(as_uuid=True), sa.ForeignKey("loyalty_offers.offer_id"), nullable=False),
        sa.Column("square_customer_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="in_progress"),
        sa.Column("progress_quantity", sa.Integer, nullable=False, server_default="0"),
        sa.Column("required_quantity", sa.Integer, nullable=False),
        sa.Column("window_start", sa.DateTime),
        sa.Column("earned_at", sa.DateTime),
        sa.Column("redeemed_at", sa.DateTime),
        sa.Column("redeemed_order_id", sa.String(255)),
        sa.Column("expires_at", sa.DateTime),
        sa.Column("revoked_at", sa.DateTime),
        sa.Column("revocation_reason", sa.Text),
        sa.Column("trace_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('in_progress', 'earned', 'redeemed', 'expired', 'revoked')",
            name="ck_reward_status",
        ),
    )
    op.create_index("ix_rewards_customer", "loyalty_rewards", ["merchant_id", "square_customer_id", "status"])
    op.create_index("ix_rewards_expiry", "loyalty_rewards", ["merchant_id", "status", "expires_at"])
    op.create_index(
        "uq_reward_in_progress",
        "loyalty_rewards",
        ["merchant_id", "offer_id", "square_customer_id"],
        unique=True,
        postgresql_where=sa.text("status = 'in_progress'"),
    )
    op.create_index(
        "uq_reward_earned",
        "loyalty_rewards",
        ["merchant_id", "offer_id", "square_customer_id"],
        unique=True,
        postgresql_where=sa.text("status = 'earned'"),
    )

    # 6. Purchase events
    op.create_table(
        "loyalty_purchase_events",
        _pk("purchase_event_id"),
        _merchant_fk(),
        sa.Column("offer_id", UUID(as_uuid=True), sa.ForeignKey("loyalty_offers.offer_id"), nullable=False),
        sa.Column("square_customer_id", sa.String(255), nullable=False),
        sa.Column("square_order_id", sa.String(255), nullable=False),
        sa.Column("square_location_id", sa.String(255)),
        sa.Column("variation_id", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Integer, nullable=False),
        sa.Column("unit_price_cents", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_price_cents", sa.Integer, nullable=False, server_default="0"),
        sa.Column("purchased_at", sa.DateTime, nullable=False),
        sa.Column("trace_id", sa.String(64)),
        sa.Column("idempotency_key", sa.String(600), nullable=False),
        sa.Column("locked_to_reward_id", UUID(as_uuid=True), sa.ForeignKey("loyalty_rewards.reward_id")),
        sa.Column(
            "split_from_event_id",
            UUID(as_uuid=True),
            sa.ForeignKey("loyalty_purchase_events.purchase_event_id"),
        ),
        sa.Column("customer_source", sa.String(40)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("merchant_id", "idempotency_key", name="uq_purchase_event_idempotency"),
        sa.CheckConstraint("quantity <> 0", name="ck_purchase_event_quantity"),
    )
    op.create_index(
        "ix_purchase_events_progress",
        "loyalty_purchase_events",
        ["merchant_id", "offer_id", "square_customer_id", "purchased_at"],
    )
    op.create_index("ix_purchase_events_order", "loyalty_purchase_events", ["merchant_id", "square_order_id"])
    op.create_index("ix_purchase_events_reward", "loyalty_purchase_events", ["locked_to_reward_id"])

    # 7. Redemptions
    op.create_table(
        "loyalty_redemptions",
        _pk("redemption_id"),
        _merchant_fk(),
        sa.Column(
            "reward_id",
            UUID(as_uuid=True),
            sa.ForeignKey("loyalty_rewards.reward_id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("offer_id", UUID(as_uuid=True), sa.ForeignKey("loyalty_offers.offer_id"), nullable=False),
        sa.Column("square_customer_id", sa.String(255), nullable=False),
        sa.Column("square_order_id", sa.String(255)),
        sa.Column("redemption_type", sa.String(30), nullable=False, server_default="order_discount"),
        sa.Column("redeemed_variation_id", sa.String(255)),
        sa.Column("redeemed_item_name", sa.String(255)),
        sa.Column("redeemed_variation_name", sa.String(255)),
        sa.Column("redeemed_value_cents", sa.Integer),
        sa.Column("redeemed_by_user_id", sa.String(255)),
        sa.Column("admin_notes", sa.Text),
        sa.Column("trace_id", sa.String(64)),
        sa.Column("redeemed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "redemption_type IN ('order_discount', 'manual_admin', 'auto_detected')",
            name="ck_redemption_type",
        ),
    )
    op.create_index("ix_redemptions_customer", "loyalty_redemptions", ["merchant_id", "square_customer_id"])
    op.create_index("ix_redemptions_redeemed_at", "loyalty_redemptions", ["merchant_id", "redeemed_at"])

    # 8. Processed orders
    op.create_table(
        "loyalty_processed_orders",
        _pk("processed_order_id"),
        _merchant_fk(),
        sa.Column("square_order_id", sa.String(255), nullable=False),
        sa.Column("square_customer_id", sa.String(255)),
        sa.Column("result_type", sa.String(30), nullable=False),
        sa.Column("qualifying_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_line_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("trace_id", sa.String(64)),
        sa.Column("source", sa.String(30), nullable=False, server_default="WEBHOOK"),
        sa.Column("processed_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("merchant_id", "square_order_id", name="uq_processed_order_per_merchant"),
        sa.CheckConstraint(
            "result_type IN ('non_qualifying')",
            name="ck_processed_order_result_type",
        ),
    )

    # 9. Loyalty customers
    op.create_table(
        "loyalty_customers",
        _pk("loyalty_customer_id"),
        _merchant_fk(),
        sa.Column("square_customer_id", sa.String(255), nullable=False),
        sa.Column("given_name", sa.String(255)),
        sa.Column("family_name", sa.String(255)),
        sa.Column("display_name", sa.String(255)),
        sa.Column("phone_number", sa.String(50)),
        sa.Column("email_address", sa.String(255)),
        sa.Column("company_name", sa.String(255)),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("last_updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("merchant_id", "square_customer_id", name="uq_loyalty_customer_per_merchant"),
    )

    # 10. Audit log
    op.create_table(
        "loyalty_audit_logs",
        _pk("audit_id"),
        _merchant_fk(),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("offer_id", UUID(as_uuid=True)),
        sa.Column("reward_id", UUID(as_uuid=True)),
        sa.Column("purchase_event_id", UUID(as_uuid=True)),
        sa.Column("redemption_id", UUID(as_uuid=True)),
        sa.Column("square_customer_id", sa.String(255)),
        sa.Column("square_order_id", sa.String(255)),
        sa.Column("old_state", sa.String(20)),
        sa.Column("new_state", sa.String(20)),
        sa.Column("old_quantity", sa.Integer),
        sa.Column("new_quantity", sa.Integer),
        sa.Column("triggered_by", sa.String(20), nullable=False, server_default="SYSTEM"),
        sa.Column("user_id", sa.String(255)),
        sa.Column("trace_id", sa.String(64)),
        sa.Column("details", sa.JSON),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_audit_logs_merchant_created", "loyalty_audit_logs", ["merchant_id", "created_at"])
    op.create_index("ix_audit_logs_reward", "loyalty_audit_logs", ["reward_id"])


def downgrade() -> None:
    tables = [
        "loyalty_audit_logs",
        "loyalty_customers",
        "loyalty_processed_orders",
        "loyalty_redemptions",
        "loyalty_purchase_events",
        "loyalty_rewards",
        "loyalty_qualifying_variations",
        "loyalty_offers",
        "integrations",
        "merchants",
    ]
    for table in tables:
        op.drop_table(table)
