"""
Loyalty audit trail.

Rows are appended to the caller's session and committed with the caller's
transaction, so an audit entry exists exactly when the change it describes does.
"""

import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from db.models import LoyaltyAuditLog
from loyalty.constants import AuditAction


def log_audit_event(
    db: AsyncSession,
    *,
    merchant_id: uuid.UUID,
    action: AuditAction,
    offer_id: uuid.UUID | None = None,
    reward_id: uuid.UUID | None = None,
    purchase_event_id: uuid.UUID | None = None,
    redemption_id: uuid.UUID | None = None,
    square_customer_id: str | None = None,
    square_order_id: str | None = None,
    old_state: str | None = None,
    new_state: str | None = None,
    old_quantity: int | None = None,
    new_quantity: int | None = None,
    triggered_by: str = "SYSTEM",
    user_id: str | None = None,
    trace_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> LoyaltyAuditLog:
    entry = LoyaltyAuditLog(
        merchant_id=merchant_id,
        action=action.value,
        offer_id=offer_id,
        reward_id=reward_id,
        purchase_event_id=purchase_event_id,
        redemption_id=redemption_id,
        square_customer_id=square_customer_id,
        square_order_id=square_order_id,
        old_state=old_state,
        new_state=new_state,
        old_quantity=old_quantity,
        new_quantity=new_quantity,
        triggered_by=triggered_by,
        user_id=user_id,
        trace_id=trace_id,
        details=details or {},
    )
    db.add(entry)
    return entry
