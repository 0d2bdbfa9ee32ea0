"""
LoyaltyOps Database Models

Frequent-buyer loyalty engine on top of Square POS.
Multi-tenant via merchant_id on all tables.

Tables:
  Tenancy:
  1. merchants                      - Tenant organizations (one Square seller each)
  2. integrations                   - Square OAuth credentials per merchant

  Loyalty:
  3. loyalty_offers                 - "Buy N, get one free" offers per brand + size group
  4. loyalty_qualifying_variations  - Explicit whitelist of catalog variations per offer
  5. loyalty_purchase_events        - Idempotent ledger of qualifying purchases
  6. loyalty_rewards                - Progress and earned/redeemed reward state
  7. loyalty_redemptions            - Append-only redemption audit rows
  8. loyalty_processed_orders       - Replay-suppression markers for non-qualifying orders
  9. loyalty_customers              - Cached Square customer display info
  10. loyalty_audit_logs            - Append-only state-change audit trail
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    text,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ─── 1. Merchants ──────────────────────────────────────────────────────────


class Merchant(Base):
    __tablename__ = "merchants"

    merchant_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    square_merchant_id = Column(String(255), unique=True)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'inactive', 'trial', 'churned')", name="ck_merchant_status"),
    )

    integrations = relationship("Integration", back_populates="merchant", cascade="all, delete-orphan")


# ─── 2. Integrations ───────────────────────────────────────────────────────


class Integration(Base):
    __tablename__ = "integrations"

    integration_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    provider = Column(String(50), nullable=False, default="square")
    access_token_encrypted = Column(Text)
    refresh_token_encrypted = Column(Text)
    token_expires_at = Column(DateTime)
    status = Column(String(20), nullable=False, default="connected")
    last_sync_at = Column(DateTime)
    config = Column(JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("merchant_id", "provider", name="uq_integration_per_provider"),
        Index("ix_integrations_merchant", "merchant_id"),
        CheckConstraint("provider IN ('square')", name="ck_integration_provider"),
        CheckConstraint("status IN ('connected', 'disconnected', 'error', 'pending')", name="ck_integration_status"),
    )

    merchant = relationship("Merchant", back_populates="integrations")


# ─── 3. Offers ─────────────────────────────────────────────────────────────


class LoyaltyOffer(Base):
    __tablename__ = "loyalty_offers"

    offer_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    offer_name = Column(String(255), nullable=False)
    brand_name = Column(String(255), nullable=False)
    size_group = Column(String(100), nullable=False)
    required_quantity = Column(Integer, nullable=False)  # immutable once created
    reward_quantity = Column(Integer, nullable=False, default=1)
    window_months = Column(Integer, nullable=False, default=12)
    reward_type = Column(String(30), nullable=False, default="free_item")
    reward_value = Column(Integer)  # cents, informational
    reward_description = Column(Text)
    description = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_loyalty_offers_merchant_active", "merchant_id", "is_active"),
        Index("ix_loyalty_offers_brand_size", "merchant_id", "brand_name", "size_group"),
        CheckConstraint("required_quantity > 0", name="ck_offer_required_quantity"),
        CheckConstraint("window_months > 0", name="ck_offer_window_months"),
    )

    qualifying_variations = relationship(
        "QualifyingVariation",
        back_populates="offer",
        cascade="all, delete-orphan",
    )


# ─── 4. Qualifying Variations ──────────────────────────────────────────────


class QualifyingVariation(Base):
    __tablename__ = "loyalty_qualifying_variations"

    qualifying_variation_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    offer_id = Column(GUID(), ForeignKey("loyalty_offers.offer_id"), nullable=False)
    variation_id = Column(String(255), nullable=False)  # Square catalog variation id
    item_id = Column(String(255))
    item_name = Column(String(255))
    variation_name = Column(String(255))
    sku = Column(String(100))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("merchant_id", "offer_id", "variation_id", name="uq_qualifying_variation_per_offer"),
        Index("ix_qualifying_variations_lookup", "merchant_id", "variation_id", "is_active"),
    )

    offer = relationship("LoyaltyOffer", back_populates="qualifying_variations")


# ─── 5. Purchase Events ────────────────────────────────────────────────────


class PurchaseEvent(Base):
    __tablename__ = "loyalty_purchase_events"

    purchase_event_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    offer_id = Column(GUID(), ForeignKey("loyalty_offers.offer_id"), nullable=False)
    square_customer_id = Column(String(255), nullable=False)
    square_order_id = Column(String(255), nullable=False)
    square_location_id = Column(String(255))
    variation_id = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False, default=0)
    total_price_cents = Column(Integer, nullable=False, default=0)
    purchased_at = Column(DateTime, nullable=False)
    trace_id = Column(String(64))
    # "{order}:{variation}:{offer}"; split remainders append ":split:{reward}"
    idempotency_key = Column(String(600), nullable=False)
    locked_to_reward_id = Column(GUID(), ForeignKey("loyalty_rewards.reward_id"))
    split_from_event_id = Column(GUID(), ForeignKey("loyalty_purchase_events.purchase_event_id"))
    customer_source = Column(String(40))  # resolution method that identified the buyer
    # Negative-quantity rows reverse part of a purchase; one row per refund, offer and lock target
    square_refund_id = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("merchant_id", "idempotency_key", name="uq_purchase_event_idempotency"),
        Index("ix_purchase_events_progress", "merchant_id", "offer_id", "square_customer_id", "purchased_at"),
        Index("ix_purchase_events_order", "merchant_id", "square_order_id"),
        Index("ix_purchase_events_reward", "locked_to_reward_id"),
        Index("ix_purchase_events_refund", "merchant_id", "square_refund_id"),
        CheckConstraint("quantity <> 0", name="ck_purchase_event_quantity"),
    )


# ─── 6. Rewards ────────────────────────────────────────────────────────────


class Reward(Base):
    __tablename__ = "loyalty_rewards"

    reward_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    offer_id = Column(GUID(), ForeignKey("loyalty_offers.offer_id"), nullable=False)
    square_customer_id = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="in_progress")
    progress_quantity = Column(Integer, nullable=False, default=0)
    required_quantity = Column(Integer, nullable=False)
    window_start = Column(DateTime)
    earned_at = Column(DateTime)
    redeemed_at = Column(DateTime)
    redeemed_order_id = Column(String(255))
    expires_at = Column(DateTime)
    revoked_at = Column(DateTime)
    revocation_reason = Column(Text)
    trace_id = Column(String(64))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_rewards_customer", "merchant_id", "square_customer_id", "status"),
        Index("ix_rewards_expiry", "merchant_id", "status", "expires_at"),
        # At most one open progress row and one unredeemed earned reward per customer + offer
        Index(
            "uq_reward_in_progress",
            "merchant_id",
            "offer_id",
            "square_customer_id",
            unique=True,
            postgresql_where=text("status = 'in_progress'"),
            sqlite_where=text("status = 'in_progress'"),
        ),
        Index(
            "uq_reward_earned",
            "merchant_id",
            "offer_id",
            "square_customer_id",
            unique=True,
            postgresql_where=text("status = 'earned'"),
            sqlite_where=text("status = 'earned'"),
        ),
        CheckConstraint(
            "status IN ('in_progress', 'earned', 'redeemed', 'expired', 'revoked')",
            name="ck_reward_status",
        ),
    )

    offer = relationship("LoyaltyOffer")


# ─── 7. Redemptions ────────────────────────────────────────────────────────


class Redemption(Base):
    __tablename__ = "loyalty_redemptions"

    redemption_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    reward_id = Column(GUID(), ForeignKey("loyalty_rewards.reward_id"), nullable=False, unique=True)
    offer_id = Column(GUID(), ForeignKey("loyalty_offers.offer_id"), nullable=False)
    square_customer_id = Column(String(255), nullable=False)
    square_order_id = Column(String(255))
    redemption_type = Column(String(30), nullable=False, default="order_discount")
    redeemed_variation_id = Column(String(255))
    redeemed_item_name = Column(String(255))
    redeemed_variation_name = Column(String(255))
    redeemed_value_cents = Column(Integer)
    redeemed_by_user_id = Column(String(255))
    admin_notes = Column(Text)
    trace_id = Column(String(64))
    redeemed_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_redemptions_customer", "merchant_id", "square_customer_id"),
        Index("ix_redemptions_redeemed_at", "merchant_id", "redeemed_at"),
        CheckConstraint(
            "redemption_type IN ('order_discount', 'manual_admin', 'auto_detected')",
            name="ck_redemption_type",
        ),
    )


# ─── 8. Processed Orders ───────────────────────────────────────────────────


class ProcessedOrder(Base):
    __tablename__ = "loyalty_processed_orders"

    processed_order_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    square_order_id = Column(String(255), nullable=False)
    square_customer_id = Column(String(255))
    result_type = Column(String(30), nullable=False)
    qualifying_items = Column(Integer, nullable=False, default=0)
    total_line_items = Column(Integer, nullable=False, default=0)
    trace_id = Column(String(64))
    source = Column(String(30), nullable=False, default="WEBHOOK")
    processed_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("merchant_id", "square_order_id", name="uq_processed_order_per_merchant"),
        CheckConstraint(
            "result_type IN ('non_qualifying')",
            name="ck_processed_order_result_type",
        ),
    )


# ─── 9. Loyalty Customers (display cache) ──────────────────────────────────


class LoyaltyCustomer(Base):
    __tablename__ = "loyalty_customers"

    loyalty_customer_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    square_customer_id = Column(String(255), nullable=False)
    given_name = Column(String(255))
    family_name = Column(String(255))
    display_name = Column(String(255))
    phone_number = Column(String(50))
    email_address = Column(String(255))
    company_name = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("merchant_id", "square_customer_id", name="uq_loyalty_customer_per_merchant"),
    )


# ─── 10. Audit Log ─────────────────────────────────────────────────────────


class LoyaltyAuditLog(Base):
    __tablename__ = "loyalty_audit_logs"

    audit_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    merchant_id = Column(GUID(), ForeignKey("merchants.merchant_id"), nullable=False)
    action = Column(String(50), nullable=False)
    offer_id = Column(GUID())
    reward_id = Column(GUID())
    purchase_event_id = Column(GUID())
    redemption_id = Column(GUID())
    square_customer_id = Column(String(255))
    square_order_id = Column(String(255))
    old_state = Column(String(20))
    new_state = Column(String(20))
    old_quantity = Column(Integer)
    new_quantity = Column(Integer)
    triggered_by = Column(String(20), nullable=False, default="SYSTEM")
    user_id = Column(String(255))
    trace_id = Column(String(64))
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_audit_logs_merchant_created", "merchant_id", "created_at"),
        Index("ix_audit_logs_reward", "reward_id"),
    )
