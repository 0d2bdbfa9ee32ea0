"""
Purchase Recorder — idempotent purchase ledger and reward accrual.

For each qualifying line item the recorder:
  1. short-circuits when every matching offer already has an event for
     this (order, variation), and otherwise relies on the unique
     idempotency key so concurrent deliveries collapse to one row
  2. fans out to every active offer the variation qualifies for, each in
     its own transaction
  3. recomputes rolling-window progress from unlocked, in-window events
  4. at threshold, promotes or mints one earned reward and locks exactly
     required_quantity units to it, oldest first, splitting the event
     that crosses the threshold so the surplus carries forward

Refunds append negative-quantity rows against the original purchase; an
earned reward left short of its threshold is revoked and its units released.

The window is anchored at "now" on every evaluation:
[now - window_months, now].
"""

import uuid
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import LoyaltyOffer, PurchaseEvent, Reward, utcnow
from loyalty.audit import log_audit_event
from loyalty.constants import AuditAction, RewardStatus
from loyalty.offers import OfferCatalog
from loyalty.rewards import RewardManager
from loyalty.tracer import LoyaltyTracer
from loyalty.windows import as_naive_utc, reward_expiry, window_start

logger = structlog.get_logger()

DEFAULT_HISTORY_LIMIT = 50
REFUND_REVOCATION_REASON = "Refund reduced qualifying quantity below threshold"


def idempotency_key(square_order_id: str, variation_id: str, offer_id: uuid.UUID) -> str:
    return f"{square_order_id}:{variation_id}:{offer_id}"


def purchase_to_dict(event: PurchaseEvent) -> dict[str, Any]:
    return {
        "purchase_event_id": event.purchase_event_id,
        "offer_id": event.offer_id,
        "square_order_id": event.square_order_id,
        "variation_id": event.variation_id,
        "quantity": event.quantity,
        "unit_price_cents": event.unit_price_cents,
        "total_price_cents": event.total_price_cents,
        "purchased_at": event.purchased_at,
        "locked_to_reward_id": event.locked_to_reward_id,
        "split_from_event_id": event.split_from_event_id,
        "trace_id": event.trace_id,
    }


class PurchaseRecorder:
    """Records qualifying purchases and advances reward progress."""

    def __init__(
        self,
        db: AsyncSession,
        merchant_id: uuid.UUID,
        *,
        tracer: LoyaltyTracer | None = None,
        catalog: OfferCatalog | None = None,
    ):
        if not merchant_id:
            raise ValueError("merchant_id is required for PurchaseRecorder")
        self.db = db
        self.merchant_id = merchant_id
        self.tracer = tracer
        self.catalog = catalog or OfferCatalog(db, merchant_id)

    def _span(self, name: str, **data: Any) -> None:
        if self.tracer:
            self.tracer.span(name, **data)

    async def record_purchase(
        self,
        *,
        square_order_id: str,
        square_customer_id: str,
        variation_id: str,
        quantity: int,
        unit_price_cents: int,
        purchased_at: datetime,
        trace_id: str | None = None,
        total_price_cents: int | None = None,
        square_location_id: str | None = None,
        customer_source: str | None = None,
    ) -> dict[str, Any]:
        log = logger.bind(
            merchant_id=str(self.merchant_id),
            order_id=square_order_id,
            customer_id=square_customer_id,
            variation_id=variation_id,
            trace_id=trace_id,
        )
        if quantity <= 0:
            log.info("loyalty.purchase.skipped", reason="zero_quantity", quantity=quantity)
            return {"recorded": False, "reason": "zero_quantity"}

        if total_price_cents is None:
            total_price_cents = unit_price_cents * quantity
        purchased_at = as_naive_utc(purchased_at)

        offers = await self.catalog.get_offers_for_variation(variation_id)
        existing = await self._existing_event_ids(square_order_id, variation_id)

        if existing and all(offer.offer_id in existing for offer in offers):
            log.info("loyalty.purchase.duplicate", existing_count=len(existing))
            self._span("PURCHASE_DUPLICATE", order_id=square_order_id, variation_id=variation_id)
            return {
                "recorded": False,
                "reason": "duplicate",
                "existing_ids": [str(event_id) for event_id in existing.values()],
            }

        if not offers:
            log.info("loyalty.purchase.skipped", reason="no_qualifying_offer")
            return {"recorded": False, "reason": "no_qualifying_offer"}

        results = []
        for offer in offers:
            if offer.offer_id in existing:
                results.append({"offer_id": offer.offer_id, "offer_name": offer.offer_name, "duplicate": True})
                continue
            results.append(
                await self._record_for_offer(
                    offer,
                    square_order_id=square_order_id,
                    square_customer_id=square_customer_id,
                    variation_id=variation_id,
                    quantity=quantity,
                    unit_price_cents=unit_price_cents,
                    total_price_cents=total_price_cents,
                    purchased_at=purchased_at,
                    trace_id=trace_id,
                    square_location_id=square_location_id,
                    customer_source=customer_source,
                )
            )

        if all(result.get("duplicate") for result in results):
            return {"recorded": False, "reason": "duplicate", "results": results}
        return {"recorded": True, "results": results}

    async def _existing_event_ids(self, square_order_id: str, variation_id: str) -> dict[uuid.UUID, uuid.UUID]:
        result = await self.db.execute(
            select(PurchaseEvent.offer_id, PurchaseEvent.purchase_event_id).where(
                PurchaseEvent.merchant_id == self.merchant_id,
                PurchaseEvent.square_order_id == square_order_id,
                PurchaseEvent.variation_id == variation_id,
                PurchaseEvent.split_from_event_id.is_(None),
                PurchaseEvent.square_refund_id.is_(None),
            )
        )
        return {row.offer_id: row.purchase_event_id for row in result.all()}

    async def _record_for_offer(
        self,
        offer: LoyaltyOffer,
        *,
        square_order_id: str,
        square_customer_id: str,
        variation_id: str,
        quantity: int,
        unit_price_cents: int,
        total_price_cents: int,
        purchased_at: datetime,
        trace_id: str | None,
        square_location_id: str | None,
        customer_source: str | None,
    ) -> dict[str, Any]:
        log = logger.bind(
            merchant_id=str(self.merchant_id),
            order_id=square_order_id,
            customer_id=square_customer_id,
            variation_id=variation_id,
            offer_id=str(offer.offer_id),
            trace_id=trace_id,
        )

        event = PurchaseEvent(
            merchant_id=self.merchant_id,
            offer_id=offer.offer_id,
            square_customer_id=square_customer_id,
            square_order_id=square_order_id,
            square_location_id=square_location_id,
            variation_id=variation_id,
            quantity=quantity,
            unit_price_cents=unit_price_cents,
            total_price_cents=total_price_cents,
            purchased_at=purchased_at,
            trace_id=trace_id,
            idempotency_key=idempotency_key(square_order_id, variation_id, offer.offer_id),
            customer_source=customer_source,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(event)
                await self.db.flush()
        except IntegrityError:
            # Concurrent delivery of the same order won the insert;
            # the savepoint is already rolled back, nothing else is pending.
            await self.db.commit()
            log.info("loyalty.purchase.duplicate", race=True)
            self._span("PURCHASE_DUPLICATE", offer_id=str(offer.offer_id), race=True)
            return {"offer_id": offer.offer_id, "offer_name": offer.offer_name, "duplicate": True}

        try:
            log_audit_event(
                self.db,
                merchant_id=self.merchant_id,
                action=AuditAction.PURCHASE_RECORDED,
                offer_id=offer.offer_id,
                purchase_event_id=event.purchase_event_id,
                square_customer_id=square_customer_id,
                square_order_id=square_order_id,
                new_quantity=quantity,
                trace_id=trace_id,
                details={"variation_id": variation_id, "total_price_cents": total_price_cents},
            )
            progress = await self._update_reward_progress(offer, square_customer_id, trace_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            log.error("loyalty.purchase.failed", exc_info=True)
            raise

        log.info(
            "loyalty.purchase.recorded",
            purchase_event_id=str(event.purchase_event_id),
            quantity=quantity,
            current_progress=progress["current_progress"],
            reward_earned=progress["reward_earned"],
        )
        self._span(
            "PURCHASE_RECORDED",
            offer_id=str(offer.offer_id),
            variation_id=variation_id,
            quantity=quantity,
            current_progress=progress["current_progress"],
        )
        return {
            "purchase_event_id": event.purchase_event_id,
            "offer_id": offer.offer_id,
            "offer_name": offer.offer_name,
            "progress": progress,
        }

    # ── Refunds ────────────────────────────────────────────────────────

    async def process_refund(
        self,
        *,
        square_refund_id: str,
        square_order_id: str,
        variation_id: str,
        quantity: int,
        unit_price_cents: int | None = None,
        refunded_at: datetime | None = None,
        trace_id: str | None = None,
        square_location_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Reverse refunded units of a recorded purchase.

        Refunded units come out of the order's unlocked units first, then out
        of units locked to a reward. An earned reward left with fewer locked
        units than the offer requires is revoked and its units return to
        progress. Units locked to a redeemed, expired or revoked reward stay
        attached to it.
        """
        log = logger.bind(
            merchant_id=str(self.merchant_id),
            order_id=square_order_id,
            refund_id=square_refund_id,
            variation_id=variation_id,
            trace_id=trace_id,
        )
        if quantity <= 0:
            log.info("loyalty.refund.skipped", reason="zero_quantity", quantity=quantity)
            return {"processed": False, "reason": "zero_quantity"}

        offers = await self.catalog.get_offers_for_variation(variation_id)
        if not offers:
            log.info("loyalty.refund.skipped", reason="variation_not_qualifying")
            return {"processed": False, "reason": "variation_not_qualifying"}

        results = []
        for offer in offers:
            results.append(
                await self._refund_for_offer(
                    offer,
                    square_refund_id=square_refund_id,
                    square_order_id=square_order_id,
                    variation_id=variation_id,
                    quantity=quantity,
                    unit_price_cents=unit_price_cents,
                    refunded_at=as_naive_utc(refunded_at) if refunded_at else utcnow(),
                    trace_id=trace_id,
                    square_location_id=square_location_id,
                )
            )

        summary: dict[str, Any] = {"processed": any(r["processed"] for r in results), "results": results}
        if not summary["processed"]:
            summary["reason"] = results[0]["reason"]
        return summary

    async def _refund_for_offer(
        self,
        offer: LoyaltyOffer,
        *,
        square_refund_id: str,
        square_order_id: str,
        variation_id: str,
        quantity: int,
        unit_price_cents: int | None,
        refunded_at: datetime,
        trace_id: str | None,
        square_location_id: str | None,
    ) -> dict[str, Any]:
        log = logger.bind(
            merchant_id=str(self.merchant_id),
            order_id=square_order_id,
            refund_id=square_refund_id,
            variation_id=variation_id,
            offer_id=str(offer.offer_id),
            trace_id=trace_id,
        )
        outcome: dict[str, Any] = {"offer_id": offer.offer_id, "offer_name": offer.offer_name, "processed": False}

        result = await self.db.execute(
            select(PurchaseEvent)
            .where(
                PurchaseEvent.merchant_id == self.merchant_id,
                PurchaseEvent.offer_id == offer.offer_id,
                PurchaseEvent.square_order_id == square_order_id,
                PurchaseEvent.variation_id == variation_id,
            )
            .order_by(PurchaseEvent.purchased_at, PurchaseEvent.created_at)
        )
        events = list(result.scalars().all())
        if any(event.square_refund_id == square_refund_id for event in events):
            await self.db.commit()
            log.info("loyalty.refund.duplicate")
            return {**outcome, "reason": "duplicate"}

        purchases = [event for event in events if event.quantity > 0]
        if not purchases:
            await self.db.commit()
            log.info("loyalty.refund.skipped", reason="no_original_purchase")
            return {**outcome, "reason": "no_original_purchase"}

        # Net units still held per lock target; None is the unlocked pool
        held: dict[uuid.UUID | None, int] = {None: 0}
        for event in events:
            held[event.locked_to_reward_id] = held.get(event.locked_to_reward_id, 0) + event.quantity

        original = purchases[0]
        price = unit_price_cents if unit_price_cents is not None else original.unit_price_cents
        base_key = f"refund:{square_refund_id}:{variation_id}:{offer.offer_id}"
        remaining = quantity
        refund_events = []
        for reward_id, units in held.items():
            take = min(max(units, 0), remaining)
            if take <= 0:
                continue
            refund_events.append(
                PurchaseEvent(
                    merchant_id=self.merchant_id,
                    offer_id=offer.offer_id,
                    square_customer_id=original.square_customer_id,
                    square_order_id=square_order_id,
                    square_location_id=square_location_id or original.square_location_id,
                    variation_id=variation_id,
                    quantity=-take,
                    unit_price_cents=price,
                    total_price_cents=-price * take,
                    # Dated with the purchase so both leave the window together
                    purchased_at=original.purchased_at,
                    trace_id=trace_id,
                    idempotency_key=base_key if reward_id is None else f"{base_key}:{reward_id}",
                    locked_to_reward_id=reward_id,
                    customer_source=original.customer_source,
                    square_refund_id=square_refund_id,
                )
            )
            remaining -= take
            if remaining == 0:
                break

        if not refund_events:
            await self.db.commit()
            log.info("loyalty.refund.skipped", reason="nothing_to_refund")
            return {**outcome, "reason": "nothing_to_refund"}

        try:
            async with self.db.begin_nested():
                self.db.add_all(refund_events)
                await self.db.flush()
        except IntegrityError:
            await self.db.commit()
            log.info("loyalty.refund.duplicate", race=True)
            return {**outcome, "reason": "duplicate"}

        refunded = sum(-event.quantity for event in refund_events)
        try:
            for event in refund_events:
                log_audit_event(
                    self.db,
                    merchant_id=self.merchant_id,
                    action=AuditAction.REFUND_PROCESSED,
                    offer_id=offer.offer_id,
                    reward_id=event.locked_to_reward_id,
                    purchase_event_id=event.purchase_event_id,
                    square_customer_id=original.square_customer_id,
                    square_order_id=square_order_id,
                    new_quantity=event.quantity,
                    trace_id=trace_id,
                    details={
                        "variation_id": variation_id,
                        "square_refund_id": square_refund_id,
                        "refunded_at": refunded_at.isoformat(),
                    },
                )
            revoked = await self._revoke_short_rewards(
                offer,
                [event.locked_to_reward_id for event in refund_events if event.locked_to_reward_id is not None],
                square_refund_id=square_refund_id,
                trace_id=trace_id,
            )
            progress = await self._update_reward_progress(offer, original.square_customer_id, trace_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            log.error("loyalty.refund.failed", exc_info=True)
            raise

        log.info(
            "loyalty.refund.processed",
            refunded_quantity=refunded,
            requested_quantity=quantity,
            revoked_rewards=len(revoked),
            current_progress=progress["current_progress"],
        )
        self._span(
            "REFUND_PROCESSED",
            offer_id=str(offer.offer_id),
            variation_id=variation_id,
            quantity=-refunded,
            revoked_reward_ids=[str(reward_id) for reward_id in revoked],
        )
        return {
            **outcome,
            "processed": True,
            "refunded_quantity": refunded,
            "refund_event_ids": [event.purchase_event_id for event in refund_events],
            "revoked_reward_ids": revoked,
            "progress": progress,
        }

    async def _revoke_short_rewards(
        self,
        offer: LoyaltyOffer,
        reward_ids: list[uuid.UUID],
        *,
        square_refund_id: str,
        trace_id: str | None,
    ) -> list[uuid.UUID]:
        """Revoke earned rewards whose locked units fell below the threshold and release those units."""
        rewards = RewardManager(self.db, self.merchant_id, tracer=self.tracer)
        revoked = []
        for reward_id in reward_ids:
            result = await self.db.execute(
                select(Reward)
                .where(Reward.merchant_id == self.merchant_id, Reward.reward_id == reward_id)
                .with_for_update()
            )
            reward = result.scalar_one_or_none()
            if reward is None or reward.status != RewardStatus.EARNED.value:
                continue

            locked = await self.db.execute(
                select(func.coalesce(func.sum(PurchaseEvent.quantity), 0)).where(
                    PurchaseEvent.merchant_id == self.merchant_id,
                    PurchaseEvent.locked_to_reward_id == reward_id,
                )
            )
            locked_units = int(locked.scalar_one())
            if locked_units >= offer.required_quantity:
                continue

            rewards.mark_revoked(
                reward,
                REFUND_REVOCATION_REASON,
                triggered_by="SYSTEM",
                trace_id=trace_id,
                details={
                    "square_refund_id": square_refund_id,
                    "locked_units": locked_units,
                    "required_quantity": offer.required_quantity,
                },
            )
            await self.db.execute(
                update(PurchaseEvent)
                .where(PurchaseEvent.merchant_id == self.merchant_id, PurchaseEvent.locked_to_reward_id == reward_id)
                .values(locked_to_reward_id=None)
            )
            logger.warning(
                "loyalty.reward.revoked_by_refund",
                merchant_id=str(self.merchant_id),
                reward_id=str(reward_id),
                locked_units=locked_units,
                required_quantity=offer.required_quantity,
                trace_id=trace_id,
            )
            revoked.append(reward_id)
        return revoked

    # ── Progress accounting ────────────────────────────────────────────

    def _unlocked_in_window(self, offer_id: uuid.UUID, square_customer_id: str, since: datetime, until: datetime):
        return (
            PurchaseEvent.merchant_id == self.merchant_id,
            PurchaseEvent.offer_id == offer_id,
            PurchaseEvent.square_customer_id == square_customer_id,
            PurchaseEvent.locked_to_reward_id.is_(None),
            PurchaseEvent.purchased_at >= since,
            PurchaseEvent.purchased_at <= until,
        )

    async def _window_progress(
        self, offer_id: uuid.UUID, square_customer_id: str, since: datetime, until: datetime
    ) -> int:
        """Net unlocked units in [since, until]; refund rows subtract."""
        result = await self.db.execute(
            select(func.coalesce(func.sum(PurchaseEvent.quantity), 0)).where(
                *self._unlocked_in_window(offer_id, square_customer_id, since, until)
            )
        )
        return max(0, int(result.scalar_one()))

    async def _open_rewards(self, offer_id: uuid.UUID, square_customer_id: str) -> dict[str, Reward]:
        """Row-lock the customer's in-progress and earned rewards for this offer."""
        result = await self.db.execute(
            select(Reward)
            .where(
                Reward.merchant_id == self.merchant_id,
                Reward.offer_id == offer_id,
                Reward.square_customer_id == square_customer_id,
                Reward.status.in_([RewardStatus.IN_PROGRESS.value, RewardStatus.EARNED.value]),
            )
            .with_for_update()
        )
        return {reward.status: reward for reward in result.scalars().all()}

    async def _update_reward_progress(self, offer: LoyaltyOffer, square_customer_id: str, trace_id: str | None) -> dict[str, Any]:
        now = utcnow()
        since = window_start(now, offer.window_months)
        current = await self._window_progress(offer.offer_id, square_customer_id, since, now)
        required = offer.required_quantity
        rewards = await self._open_rewards(offer.offer_id, square_customer_id)
        in_progress = rewards.get(RewardStatus.IN_PROGRESS.value)
        earned = rewards.get(RewardStatus.EARNED.value)

        progress = {
            "current_progress": current,
            "required_quantity": required,
            "reward_earned": False,
            "reward_id": None,
            "carried_forward": 0,
            "window_start": since,
        }

        if current < required or earned is not None:
            # Below threshold, or a reward is already waiting to be redeemed;
            # surplus units stay unlocked for the next cycle.
            reward = await self._track_progress(offer, square_customer_id, in_progress, current, since, trace_id)
            progress["reward_id"] = reward.reward_id
            if earned is not None:
                progress["pending_reward_id"] = earned.reward_id
            return progress

        reward = await self._earn_reward(offer, square_customer_id, in_progress, current, now, since, trace_id)
        await self._lock_units(offer.offer_id, square_customer_id, since, now, reward.reward_id, required)

        carried = current - required
        if carried > 0:
            await self._track_progress(offer, square_customer_id, None, carried, since, trace_id)

        progress.update(reward_earned=True, reward_id=reward.reward_id, carried_forward=carried)
        return progress

    async def _track_progress(
        self,
        offer: LoyaltyOffer,
        square_customer_id: str,
        reward: Reward | None,
        quantity: int,
        since: datetime,
        trace_id: str | None,
    ) -> Reward:
        old_quantity = reward.progress_quantity if reward is not None else 0
        if reward is None:
            reward = Reward(
                merchant_id=self.merchant_id,
                offer_id=offer.offer_id,
                square_customer_id=square_customer_id,
                status=RewardStatus.IN_PROGRESS.value,
                required_quantity=offer.required_quantity,
                progress_quantity=quantity,
                window_start=since,
                trace_id=trace_id,
            )
            self.db.add(reward)
            await self.db.flush()
        else:
            reward.progress_quantity = quantity
            reward.window_start = since

        log_audit_event(
            self.db,
            merchant_id=self.merchant_id,
            action=AuditAction.REWARD_PROGRESS_UPDATED,
            offer_id=offer.offer_id,
            reward_id=reward.reward_id,
            square_customer_id=square_customer_id,
            old_quantity=old_quantity,
            new_quantity=quantity,
            trace_id=trace_id,
        )
        return reward

    async def _earn_reward(
        self,
        offer: LoyaltyOffer,
        square_customer_id: str,
        in_progress: Reward | None,
        current: int,
        now: datetime,
        since: datetime,
        trace_id: str | None,
    ) -> Reward:
        old_state = None
        if in_progress is not None:
            old_state = in_progress.status
            reward = in_progress
        else:
            reward = Reward(
                merchant_id=self.merchant_id,
                offer_id=offer.offer_id,
                square_customer_id=square_customer_id,
                required_quantity=offer.required_quantity,
            )
            self.db.add(reward)

        reward.status = RewardStatus.EARNED.value
        reward.progress_quantity = current
        reward.window_start = since
        reward.earned_at = now
        reward.expires_at = reward_expiry(now, offer.window_months)
        reward.trace_id = trace_id
        await self.db.flush()

        log_audit_event(
            self.db,
            merchant_id=self.merchant_id,
            action=AuditAction.REWARD_EARNED,
            offer_id=offer.offer_id,
            reward_id=reward.reward_id,
            square_customer_id=square_customer_id,
            old_state=old_state,
            new_state=reward.status,
            new_quantity=current,
            trace_id=trace_id,
        )
        logger.info(
            "loyalty.reward.earned",
            merchant_id=str(self.merchant_id),
            offer_id=str(offer.offer_id),
            customer_id=square_customer_id,
            reward_id=str(reward.reward_id),
            promoted=in_progress is not None,
            trace_id=trace_id,
        )
        self._span("REWARD_EARNED", reward_id=str(reward.reward_id), offer_id=str(offer.offer_id))
        return reward

    async def _lock_units(
        self,
        offer_id: uuid.UUID,
        square_customer_id: str,
        since: datetime,
        until: datetime,
        reward_id: uuid.UUID,
        required: int,
    ) -> int:
        """Lock exactly `required` purchased units FIFO, splitting the crossing event."""
        result = await self.db.execute(
            select(PurchaseEvent)
            .where(
                *self._unlocked_in_window(offer_id, square_customer_id, since, until),
                PurchaseEvent.quantity > 0,
            )
            .order_by(PurchaseEvent.purchased_at, PurchaseEvent.created_at, PurchaseEvent.purchase_event_id)
            .with_for_update()
        )
        remaining = required
        for event in result.scalars().all():
            if remaining <= 0:
                break
            if event.quantity <= remaining:
                event.locked_to_reward_id = reward_id
                remaining -= event.quantity
                continue

            excess = event.quantity - remaining
            locked_total = event.total_price_cents * remaining // event.quantity
            remainder = PurchaseEvent(
                merchant_id=event.merchant_id,
                offer_id=event.offer_id,
                square_customer_id=event.square_customer_id,
                square_order_id=event.square_order_id,
                square_location_id=event.square_location_id,
                variation_id=event.variation_id,
                quantity=excess,
                unit_price_cents=event.unit_price_cents,
                total_price_cents=event.total_price_cents - locked_total,
                purchased_at=event.purchased_at,
                trace_id=event.trace_id,
                idempotency_key=f"{event.idempotency_key}:split:{reward_id}",
                split_from_event_id=event.purchase_event_id,
                customer_source=event.customer_source,
            )
            event.quantity = remaining
            event.total_price_cents = locked_total
            event.locked_to_reward_id = reward_id
            self.db.add(remainder)
            logger.info(
                "loyalty.purchase.split",
                merchant_id=str(self.merchant_id),
                purchase_event_id=str(event.purchase_event_id),
                locked_quantity=remaining,
                carried_quantity=excess,
                reward_id=str(reward_id),
            )
            remaining = 0

        await self.db.flush()
        if remaining > 0:
            raise RuntimeError(f"Could not lock {required} units for reward {reward_id}; {remaining} short")
        return required

    # ── Read side ──────────────────────────────────────────────────────

    async def get_current_progress(self, square_customer_id: str, offer_id: uuid.UUID) -> dict[str, Any] | None:
        offer = await self.catalog.get_offer_by_id(offer_id)
        if offer is None:
            return None
        now = utcnow()
        since = window_start(now, offer.window_months)
        current = await self._window_progress(offer.offer_id, square_customer_id, since, now)
        required = offer.required_quantity
        return {
            "offer_id": offer.offer_id,
            "current_progress": current,
            "required_quantity": required,
            "remaining": max(0, required - current),
            "percent_complete": min(100, round(current * 100 / required)),
            "window_start": since,
            "window_months": offer.window_months,
        }

    async def get_purchase_history(
        self,
        square_customer_id: str,
        offer_id: uuid.UUID | None = None,
        limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> list[dict[str, Any]]:
        query = select(PurchaseEvent).where(
            PurchaseEvent.merchant_id == self.merchant_id,
            PurchaseEvent.square_customer_id == square_customer_id,
        )
        if offer_id is not None:
            query = query.where(PurchaseEvent.offer_id == offer_id)
        query = query.order_by(PurchaseEvent.purchased_at.desc(), PurchaseEvent.created_at.desc()).limit(limit)
        result = await self.db.execute(query)
        return [purchase_to_dict(event) for event in result.scalars().all()]

    async def get_customer_offer_progress(self, square_customer_id: str) -> list[dict[str, Any]]:
        """Per active offer: windowed progress plus reward counts for the customer profile."""
        offers = await self.catalog.get_active_offers()
        reward_counts = await self.db.execute(
            select(Reward.offer_id, Reward.status, func.count(Reward.reward_id))
            .where(
                Reward.merchant_id == self.merchant_id,
                Reward.square_customer_id == square_customer_id,
            )
            .group_by(Reward.offer_id, Reward.status)
        )
        counts: dict[uuid.UUID, dict[str, int]] = {}
        for offer_id, status, count in reward_counts.all():
            counts.setdefault(offer_id, {})[status] = count

        now = utcnow()
        profile = []
        for offer in offers:
            since = window_start(now, offer.window_months)
            current = await self._window_progress(offer.offer_id, square_customer_id, since, now)
            by_status = counts.get(offer.offer_id, {})
            available = by_status.get(RewardStatus.EARNED.value, 0)
            redeemed = by_status.get(RewardStatus.REDEEMED.value, 0)
            profile.append(
                {
                    "offer_id": offer.offer_id,
                    "offer_name": offer.offer_name,
                    "brand_name": offer.brand_name,
                    "size_group": offer.size_group,
                    "current_progress": current,
                    "required_quantity": offer.required_quantity,
                    "rewards_earned": available + redeemed,
                    "rewards_redeemed": redeemed,
                    "has_available_reward": available > 0,
                }
            )
        return profile
