"""
Loyalty engine vocabulary: reward states, redemption types, audit actions,
order sources and suppression result types.
"""

from enum import Enum


class RewardStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    EARNED = "earned"
    REDEEMED = "redeemed"
    EXPIRED = "expired"
    REVOKED = "revoked"


class RedemptionType(str, Enum):
    ORDER_DISCOUNT = "order_discount"
    MANUAL_ADMIN = "manual_admin"
    AUTO_DETECTED = "auto_detected"


class AuditAction(str, Enum):
    OFFER_CREATED = "OFFER_CREATED"
    OFFER_UPDATED = "OFFER_UPDATED"
    OFFER_DEACTIVATED = "OFFER_DEACTIVATED"
    VARIATION_ADDED = "VARIATION_ADDED"
    VARIATION_REMOVED = "VARIATION_REMOVED"
    PURCHASE_RECORDED = "PURCHASE_RECORDED"
    REFUND_PROCESSED = "REFUND_PROCESSED"
    REWARD_PROGRESS_UPDATED = "REWARD_PROGRESS_UPDATED"
    REWARD_EARNED = "REWARD_EARNED"
    REWARD_REDEEMED = "REWARD_REDEEMED"
    REWARD_EXPIRED = "REWARD_EXPIRED"
    REWARD_REVOKED = "REWARD_REVOKED"


class OrderSource(str, Enum):
    WEBHOOK = "WEBHOOK"
    CATCHUP = "CATCHUP"
    MANUAL = "MANUAL"


class ProcessedResult(str, Enum):
    NON_QUALIFYING = "non_qualifying"


class CustomerSource(str, Enum):
    ORDER_CUSTOMER_ID = "ORDER_CUSTOMER_ID"
    TENDER_CUSTOMER_ID = "TENDER_CUSTOMER_ID"
    LOYALTY_API = "LOYALTY_API"
    FULFILLMENT_RECIPIENT = "FULFILLMENT_RECIPIENT"
    MANUAL = "MANUAL"
    NONE = "NONE"


COMPLETED_ORDER_STATE = "COMPLETED"
COMPLETED_REFUND_STATUS = "COMPLETED"

# Discount names that mark a line item as a reward being spent
REDEMPTION_DISCOUNT_KEYWORDS = ("loyalty", "reward", "free item", "frequent buyer")

# Order discounts on a reward's variations at or above this share of the
# reward's value count as that reward being spent
DISCOUNT_MATCH_PERCENT = 95
