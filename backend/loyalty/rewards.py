"""
Reward Manager — reward lifecycle queries, one-shot redemption,
redemption detection on orders and expiration sweeps.

State machine:
    in_progress → earned → redeemed      (terminal)
                  earned → expired       (terminal, via sweep)
                  earned → revoked       (terminal, admin reversal or refund)

Redemption and revocation take a row lock on the reward so concurrent
callers serialize; a redeemed reward never expires or re-opens.
"""

import uuid
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import LoyaltyOffer, PurchaseEvent, QualifyingVariation, Redemption, Reward, utcnow
from loyalty.audit import log_audit_event
from loyalty.constants import DISCOUNT_MATCH_PERCENT, AuditAction, RedemptionType, RewardStatus
from loyalty.tracer import LoyaltyTracer

logger = structlog.get_logger()

DEFAULT_REDEMPTION_LIMIT = 100


def reward_to_dict(reward: Reward, offer: LoyaltyOffer | None = None) -> dict[str, Any]:
    data = {
        "reward_id": reward.reward_id,
        "offer_id": reward.offer_id,
        "square_customer_id": reward.square_customer_id,
        "status": reward.status,
        "progress_quantity": reward.progress_quantity,
        "required_quantity": reward.required_quantity,
        "earned_at": reward.earned_at,
        "redeemed_at": reward.redeemed_at,
        "redeemed_order_id": reward.redeemed_order_id,
        "expires_at": reward.expires_at,
        "trace_id": reward.trace_id,
    }
    if offer is not None:
        data.update(
            offer_name=offer.offer_name,
            brand_name=offer.brand_name,
            size_group=offer.size_group,
        )
    return data


def redemption_to_dict(redemption: Redemption) -> dict[str, Any]:
    return {
        "redemption_id": redemption.redemption_id,
        "reward_id": redemption.reward_id,
        "offer_id": redemption.offer_id,
        "square_customer_id": redemption.square_customer_id,
        "square_order_id": redemption.square_order_id,
        "redemption_type": redemption.redemption_type,
        "redeemed_variation_id": redemption.redeemed_variation_id,
        "redeemed_item_name": redemption.redeemed_item_name,
        "redeemed_variation_name": redemption.redeemed_variation_name,
        "redeemed_value_cents": redemption.redeemed_value_cents,
        "redeemed_by_user_id": redemption.redeemed_by_user_id,
        "admin_notes": redemption.admin_notes,
        "redeemed_at": redemption.redeemed_at,
    }


class RewardManager:
    """Merchant-scoped reward lifecycle."""

    def __init__(self, db: AsyncSession, merchant_id: uuid.UUID, *, tracer: LoyaltyTracer | None = None):
        if not merchant_id:
            raise ValueError("merchant_id is required for RewardManager")
        self.db = db
        self.merchant_id = merchant_id
        self.tracer = tracer

    def _span(self, name: str, **data: Any) -> None:
        if self.tracer:
            self.tracer.span(name, **data)

    def _unexpired(self, now: datetime):
        return or_(Reward.expires_at.is_(None), Reward.expires_at >= now)

    # ── Queries ────────────────────────────────────────────────────────

    async def get_customer_rewards(self, square_customer_id: str, include_redeemed: bool = False) -> list[dict[str, Any]]:
        statuses = [RewardStatus.EARNED.value]
        if include_redeemed:
            statuses.append(RewardStatus.REDEEMED.value)
        result = await self.db.execute(
            select(Reward, LoyaltyOffer)
            .join(LoyaltyOffer, LoyaltyOffer.offer_id == Reward.offer_id)
            .where(
                Reward.merchant_id == self.merchant_id,
                Reward.square_customer_id == square_customer_id,
                Reward.status.in_(statuses),
            )
            .order_by(Reward.earned_at.desc())
        )
        return [reward_to_dict(reward, offer) for reward, offer in result.all()]

    async def get_reward_by_id(self, reward_id: uuid.UUID) -> dict[str, Any] | None:
        result = await self.db.execute(
            select(Reward, LoyaltyOffer)
            .join(LoyaltyOffer, LoyaltyOffer.offer_id == Reward.offer_id)
            .where(Reward.merchant_id == self.merchant_id, Reward.reward_id == reward_id)
        )
        row = result.first()
        if row is None:
            return None
        return reward_to_dict(row[0], row[1])

    async def get_redeemable_reward(self, square_customer_id: str, offer_id: uuid.UUID) -> dict[str, Any] | None:
        result = await self.db.execute(
            select(Reward, LoyaltyOffer)
            .join(LoyaltyOffer, LoyaltyOffer.offer_id == Reward.offer_id)
            .where(
                Reward.merchant_id == self.merchant_id,
                Reward.square_customer_id == square_customer_id,
                Reward.offer_id == offer_id,
                Reward.status == RewardStatus.EARNED.value,
                self._unexpired(utcnow()),
            )
            .order_by(Reward.earned_at)
            .limit(1)
        )
        row = result.first()
        if row is None:
            return None
        reward, offer = row
        return {
            "id": reward.reward_id,
            "offer_name": offer.offer_name,
            "reward_type": offer.reward_type,
            "reward_value": offer.reward_value,
            "reward_description": offer.reward_description,
            "earned_at": reward.earned_at,
            "expires_at": reward.expires_at,
        }

    async def count_earned_rewards(self, square_customer_id: str) -> int:
        result = await self.db.execute(
            select(func.count(Reward.reward_id)).where(
                Reward.merchant_id == self.merchant_id,
                Reward.square_customer_id == square_customer_id,
                Reward.status == RewardStatus.EARNED.value,
                self._unexpired(utcnow()),
            )
        )
        return int(result.scalar_one())

    async def get_reward_stats(self, square_customer_id: str) -> dict[str, int]:
        now = utcnow()
        result = await self.db.execute(
            select(Reward.status, Reward.expires_at).where(
                Reward.merchant_id == self.merchant_id,
                Reward.square_customer_id == square_customer_id,
                Reward.status != RewardStatus.IN_PROGRESS.value,
            )
        )
        stats = {"available": 0, "redeemed": 0, "expired": 0, "total": 0}
        for status, expires_at in result.all():
            stats["total"] += 1
            if status == RewardStatus.REDEEMED.value:
                stats["redeemed"] += 1
            elif status == RewardStatus.EXPIRED.value:
                stats["expired"] += 1
            elif status == RewardStatus.EARNED.value:
                if expires_at is not None and expires_at < now:
                    stats["expired"] += 1
                else:
                    stats["available"] += 1
        return stats

    async def list_redemptions(
        self,
        square_customer_id: str | None = None,
        offer_id: uuid.UUID | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = DEFAULT_REDEMPTION_LIMIT,
    ) -> list[dict[str, Any]]:
        """Redemption history; every supplied filter narrows the result."""
        conditions = [Redemption.merchant_id == self.merchant_id]
        if square_customer_id:
            conditions.append(Redemption.square_customer_id == square_customer_id)
        if offer_id:
            conditions.append(Redemption.offer_id == offer_id)
        if start:
            conditions.append(Redemption.redeemed_at >= start)
        if end:
            conditions.append(Redemption.redeemed_at <= end)
        result = await self.db.execute(
            select(Redemption).where(and_(*conditions)).order_by(Redemption.redeemed_at.desc()).limit(limit)
        )
        return [redemption_to_dict(r) for r in result.scalars().all()]

    # ── Transitions ────────────────────────────────────────────────────

    async def _lock_reward(self, reward_id: uuid.UUID) -> Reward | None:
        result = await self.db.execute(
            select(Reward)
            .where(Reward.merchant_id == self.merchant_id, Reward.reward_id == reward_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _variation_names(self, offer_id: uuid.UUID, variation_id: str) -> tuple[str | None, str | None]:
        result = await self.db.execute(
            select(QualifyingVariation.item_name, QualifyingVariation.variation_name).where(
                QualifyingVariation.merchant_id == self.merchant_id,
                QualifyingVariation.offer_id == offer_id,
                QualifyingVariation.variation_id == variation_id,
            )
        )
        row = result.first()
        return (row.item_name, row.variation_name) if row else (None, None)

    async def redeem_reward(
        self,
        reward_id: uuid.UUID,
        *,
        square_order_id: str | None = None,
        redeemed_variation_id: str | None = None,
        redeemed_value_cents: int | None = None,
        redeemed_by_user_id: str | None = None,
        admin_notes: str | None = None,
        redemption_type: RedemptionType | str | None = None,
        square_customer_id: str | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """Redeem an earned reward exactly once. Full redemption only."""
        log = logger.bind(
            merchant_id=str(self.merchant_id),
            reward_id=str(reward_id),
            order_id=square_order_id,
            trace_id=trace_id,
        )
        redemption_type = RedemptionType(redemption_type or RedemptionType.ORDER_DISCOUNT).value

        try:
            reward = await self._lock_reward(reward_id)
            now = utcnow()

            failure: dict[str, Any] | None = None
            if reward is None:
                failure = {"success": False, "reason": "reward_not_found"}
            elif reward.status == RewardStatus.REDEEMED.value:
                failure = {
                    "success": False,
                    "reason": "already_redeemed",
                    "reward_id": reward.reward_id,
                    "redeemed_at": reward.redeemed_at,
                }
            elif square_customer_id and square_customer_id != reward.square_customer_id:
                failure = {"success": False, "reason": "customer_mismatch", "reward_id": reward.reward_id}
            elif reward.expires_at is not None and reward.expires_at < now:
                failure = {
                    "success": False,
                    "reason": "expired",
                    "reward_id": reward.reward_id,
                    "expires_at": reward.expires_at,
                }
            elif reward.status != RewardStatus.EARNED.value:
                failure = {
                    "success": False,
                    "reason": "invalid_status",
                    "reward_id": reward.reward_id,
                    "status": reward.status,
                }

            if failure is not None:
                # Releases the row lock
                await self.db.commit()
                log.info("loyalty.reward.redeem_rejected", reason=failure["reason"])
                return failure

            item_name = variation_name = None
            if redeemed_variation_id:
                item_name, variation_name = await self._variation_names(reward.offer_id, redeemed_variation_id)

            reward.status = RewardStatus.REDEEMED.value
            reward.redeemed_at = now
            reward.redeemed_order_id = square_order_id

            redemption = Redemption(
                merchant_id=self.merchant_id,
                reward_id=reward.reward_id,
                offer_id=reward.offer_id,
                square_customer_id=reward.square_customer_id,
                square_order_id=square_order_id,
                redemption_type=redemption_type,
                redeemed_variation_id=redeemed_variation_id,
                redeemed_item_name=item_name,
                redeemed_variation_name=variation_name,
                redeemed_value_cents=redeemed_value_cents,
                redeemed_by_user_id=redeemed_by_user_id,
                admin_notes=admin_notes,
                trace_id=trace_id,
                redeemed_at=now,
            )
            self.db.add(redemption)
            await self.db.flush()

            log_audit_event(
                self.db,
                merchant_id=self.merchant_id,
                action=AuditAction.REWARD_REDEEMED,
                offer_id=reward.offer_id,
                reward_id=reward.reward_id,
                redemption_id=redemption.redemption_id,
                square_customer_id=reward.square_customer_id,
                square_order_id=square_order_id,
                old_state=RewardStatus.EARNED.value,
                new_state=RewardStatus.REDEEMED.value,
                triggered_by="ADMIN" if redeemed_by_user_id else "SYSTEM",
                user_id=redeemed_by_user_id,
                trace_id=trace_id,
                details={"redemption_type": redemption_type, "redeemed_value_cents": redeemed_value_cents},
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            log.error("loyalty.reward.redeem_failed", exc_info=True)
            raise

        log.info("loyalty.reward.redeemed", redemption_id=str(redemption.redemption_id), redemption_type=redemption_type)
        self._span(
            "REWARD_REDEEMED",
            reward_id=str(reward.reward_id),
            offer_id=str(reward.offer_id),
            redemption_type=redemption_type,
        )
        return {
            "success": True,
            "reward_id": reward.reward_id,
            "offer_id": reward.offer_id,
            "redemption_id": redemption.redemption_id,
            "square_customer_id": reward.square_customer_id,
            "redeemed_at": reward.redeemed_at,
        }

    # ── Redemption detection ───────────────────────────────────────────

    async def _redeemable_candidates(self, square_customer_id: str) -> dict[uuid.UUID, tuple[Reward, set[str]]]:
        """Earned, unexpired rewards on active offers with their active qualifying variations, oldest first."""
        result = await self.db.execute(
            select(Reward, QualifyingVariation.variation_id)
            .join(LoyaltyOffer, LoyaltyOffer.offer_id == Reward.offer_id)
            .join(QualifyingVariation, QualifyingVariation.offer_id == Reward.offer_id)
            .where(
                Reward.merchant_id == self.merchant_id,
                Reward.square_customer_id == square_customer_id,
                Reward.status == RewardStatus.EARNED.value,
                self._unexpired(utcnow()),
                LoyaltyOffer.merchant_id == self.merchant_id,
                LoyaltyOffer.is_active.is_(True),
                QualifyingVariation.merchant_id == self.merchant_id,
                QualifyingVariation.is_active.is_(True),
            )
            .order_by(Reward.earned_at, Reward.reward_id)
        )
        candidates: dict[uuid.UUID, tuple[Reward, set[str]]] = {}
        for reward, variation_id in result.all():
            candidates.setdefault(reward.reward_id, (reward, set()))[1].add(variation_id)
        return candidates

    async def _expected_value_cents(self, reward: Reward) -> int:
        """Highest unit price among units locked to the reward, else across the offer."""
        for condition in (PurchaseEvent.locked_to_reward_id == reward.reward_id, PurchaseEvent.offer_id == reward.offer_id):
            result = await self.db.execute(
                select(func.max(PurchaseEvent.unit_price_cents)).where(
                    PurchaseEvent.merchant_id == self.merchant_id,
                    PurchaseEvent.unit_price_cents > 0,
                    condition,
                )
            )
            value = result.scalar_one_or_none()
            if value:
                return int(value)
        return 0

    async def detect_redemption_from_order(
        self,
        order: dict[str, Any],
        square_customer_id: str,
        *,
        free_items: list[dict[str, Any]] | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Recognize a reward spent at the register and redeem it.

        Tried in order:
          free_item        a redemption line (a $0 reward line item) for one of
                           the reward's qualifying variations
          discount_amount  discounts on the reward's qualifying lines adding up
                           to DISCOUNT_MATCH_PERCENT of the reward's value

        At most one reward is redeemed per order.
        """
        order_id = order.get("id")
        log = logger.bind(
            merchant_id=str(self.merchant_id),
            order_id=order_id,
            customer_id=square_customer_id,
            trace_id=trace_id,
        )
        existing = await self.db.execute(
            select(Redemption.redemption_id).where(
                Redemption.merchant_id == self.merchant_id,
                Redemption.square_order_id == order_id,
            )
        )
        if existing.first() is not None:
            return {"detected": False, "reason": "order_already_redeemed"}

        candidates = await self._redeemable_candidates(square_customer_id)
        if not candidates:
            return {"detected": False, "reason": "no_earned_rewards"}

        match = None
        for line in free_items or []:
            variation_id = line.get("catalog_object_id") or line.get("variation_id")
            reward = next((r for r, variations in candidates.values() if variation_id in variations), None)
            if reward is not None:
                value = (line.get("base_price_money") or {}).get("amount")
                match = (reward, "free_item", variation_id, int(value) if value is not None else None)
                break

        if match is None:
            line_items = order.get("line_items") or []
            for reward, variations in candidates.values():
                discount_cents = sum(
                    int((line.get("total_discount_money") or {}).get("amount") or 0)
                    for line in line_items
                    if (line.get("catalog_object_id") or line.get("variation_id")) in variations
                )
                if discount_cents <= 0:
                    continue
                expected = await self._expected_value_cents(reward)
                if expected > 0 and discount_cents * 100 >= expected * DISCOUNT_MATCH_PERCENT:
                    log.info(
                        "loyalty.redemption.discount_matched",
                        reward_id=str(reward.reward_id),
                        discount_cents=discount_cents,
                        expected_value_cents=expected,
                    )
                    match = (reward, "discount_amount", None, discount_cents)
                    break

        if match is None:
            log.info("loyalty.redemption.not_detected", candidates=len(candidates))
            return {"detected": False, "reason": "no_match"}

        reward, method, variation_id, value_cents = match
        redeemed = await self.redeem_reward(
            reward.reward_id,
            square_order_id=order_id,
            redeemed_variation_id=variation_id,
            redeemed_value_cents=value_cents,
            redemption_type=RedemptionType.AUTO_DETECTED,
            square_customer_id=square_customer_id,
            trace_id=trace_id,
        )
        log.info("loyalty.redemption.detected", method=method, reward_id=str(reward.reward_id), success=redeemed["success"])
        return {"detected": redeemed["success"], "method": method, **redeemed}

    def mark_revoked(
        self,
        reward: Reward,
        reason: str,
        *,
        triggered_by: str = "ADMIN",
        user_id: str | None = None,
        trace_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Move an earned reward to revoked inside the caller's transaction."""
        reward.status = RewardStatus.REVOKED.value
        reward.revoked_at = utcnow()
        reward.revocation_reason = reason
        log_audit_event(
            self.db,
            merchant_id=self.merchant_id,
            action=AuditAction.REWARD_REVOKED,
            offer_id=reward.offer_id,
            reward_id=reward.reward_id,
            square_customer_id=reward.square_customer_id,
            old_state=RewardStatus.EARNED.value,
            new_state=RewardStatus.REVOKED.value,
            triggered_by=triggered_by,
            user_id=user_id,
            trace_id=trace_id,
            details={"reason": reason, **(details or {})},
        )
        self._span("REWARD_REVOKED", reward_id=str(reward.reward_id), reason=reason)

    async def revoke_reward(self, reward_id: uuid.UUID, reason: str, user_id: str | None = None) -> dict[str, Any]:
        """Administrative reversal of an earned, unredeemed reward."""
        try:
            reward = await self._lock_reward(reward_id)
            if reward is None:
                await self.db.commit()
                return {"success": False, "reason": "reward_not_found"}
            if reward.status != RewardStatus.EARNED.value:
                status = reward.status
                await self.db.commit()
                return {"success": False, "reason": "invalid_status", "status": status}

            self.mark_revoked(reward, reason, user_id=user_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.error("loyalty.reward.revoke_failed", merchant_id=str(self.merchant_id), reward_id=str(reward_id), exc_info=True)
            raise

        logger.info("loyalty.reward.revoked", merchant_id=str(self.merchant_id), reward_id=str(reward_id), reason=reason)
        return {"success": True, "reward_id": reward.reward_id, "revoked_at": reward.revoked_at}

    async def expire_rewards(self) -> dict[str, Any]:
        """Mark earned rewards past expires_at as expired. One span per batch."""
        now = utcnow()
        try:
            result = await self.db.execute(
                select(Reward)
                .where(
                    Reward.merchant_id == self.merchant_id,
                    Reward.status == RewardStatus.EARNED.value,
                    Reward.expires_at.is_not(None),
                    Reward.expires_at < now,
                )
                .with_for_update()
            )
            expired = list(result.scalars().all())
            for reward in expired:
                reward.status = RewardStatus.EXPIRED.value
                log_audit_event(
                    self.db,
                    merchant_id=self.merchant_id,
                    action=AuditAction.REWARD_EXPIRED,
                    offer_id=reward.offer_id,
                    reward_id=reward.reward_id,
                    square_customer_id=reward.square_customer_id,
                    old_state=RewardStatus.EARNED.value,
                    new_state=RewardStatus.EXPIRED.value,
                    details={"expires_at": reward.expires_at.isoformat()},
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.error("loyalty.reward.expire_failed", merchant_id=str(self.merchant_id), exc_info=True)
            raise

        expired_rewards = [
            {
                "reward_id": reward.reward_id,
                "offer_id": reward.offer_id,
                "square_customer_id": reward.square_customer_id,
                "expires_at": reward.expires_at,
            }
            for reward in expired
        ]
        if expired_rewards:
            logger.info("loyalty.reward.expired", merchant_id=str(self.merchant_id), count=len(expired_rewards))
            self._span(
                "REWARDS_EXPIRED",
                count=len(expired_rewards),
                reward_ids=[str(r["reward_id"]) for r in expired_rewards],
            )
        return {"expired_count": len(expired_rewards), "expired_rewards": expired_rewards}
