"""
Order Processing Orchestrator.

Coordinates customer identification, offer lookup, line-item eligibility
and purchase recording for one Square order. Every call runs under its own
LoyaltyTracer and returns the finished trace with the outcome, so "what
happened to this order?" can be answered from the result alone.

Guards, in order (each returns early with a distinct reason):
    already_processed → not_completed → no line items (one re-fetch) →
    customer_not_identified → no_active_offers

Line items are processed sequentially; each recorded purchase commits on
its own, so a failure on one item never undoes or blocks its siblings.
After the line items, a reward spent on the order is detected and redeemed,
then any completed refunds on the order are reversed.
"""

import uuid
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ProcessedOrder, PurchaseEvent, utcnow
from integrations.base import CustomerDirectory, LoyaltyAccountBridge, OrderSource
from integrations.square import parse_square_timestamp
from loyalty.constants import (
    COMPLETED_ORDER_STATE,
    COMPLETED_REFUND_STATUS,
    REDEMPTION_DISCOUNT_KEYWORDS,
    OrderSource as OrderOrigin,
    ProcessedResult,
)
from loyalty.customers import CustomerResolver
from loyalty.offers import OfferCatalog
from loyalty.purchases import PurchaseRecorder, purchase_to_dict
from loyalty.rewards import RewardManager
from loyalty.tracer import LoyaltyTracer

logger = structlog.get_logger()


def parse_quantity(raw: Any) -> int:
    """Square sends quantities as decimal strings; fractional units truncate."""
    try:
        return int(Decimal(str(raw)))
    except (InvalidOperation, ValueError, TypeError, OverflowError):
        return 0


def unit_price_cents(total_cents: int, quantity: int) -> int:
    """total / quantity rounded half-up, in integer arithmetic."""
    if total_cents < 0:
        return -unit_price_cents(-total_cents, quantity)
    return (2 * total_cents + quantity) // (2 * quantity)


def is_redemption_discount(line_item: dict[str, Any], discount_names: dict[str, str]) -> bool:
    """True when an applied discount's name marks a loyalty reward being spent."""
    for applied in line_item.get("applied_discounts") or []:
        name = applied.get("name") or discount_names.get(applied.get("discount_uid"), "")
        lowered = name.lower()
        if any(keyword in lowered for keyword in REDEMPTION_DISCOUNT_KEYWORDS):
            return True
    return False


class OrderProcessor:
    """Runs one Square order through the loyalty pipeline."""

    def __init__(
        self,
        db: AsyncSession,
        merchant_id: uuid.UUID,
        *,
        order_source: OrderSource | None = None,
        directory: CustomerDirectory | None = None,
        loyalty_bridge: LoyaltyAccountBridge | None = None,
        cache_customer_details: bool = True,
    ):
        if not merchant_id:
            raise ValueError("merchant_id is required for OrderProcessor")
        self.db = db
        self.merchant_id = merchant_id
        self.order_source = order_source
        self.directory = directory
        self.loyalty_bridge = loyalty_bridge
        self.cache_customer_details = cache_customer_details

    async def process_order(self, order: dict[str, Any], source: OrderOrigin | str = OrderOrigin.WEBHOOK) -> dict[str, Any]:
        source = OrderOrigin(source).value
        order_id = order.get("id")
        tracer = LoyaltyTracer()
        trace_id = tracer.start_trace(
            {"merchant_id": str(self.merchant_id), "order_id": order_id, "source": source}
        )
        log = logger.bind(merchant_id=str(self.merchant_id), order_id=order_id, source=source, trace_id=trace_id)
        tracer.span(
            "ORDER_RECEIVED",
            state=order.get("state"),
            line_item_count=len(order.get("line_items") or []),
        )

        def skipped(reason: str, **extra: Any) -> dict[str, Any]:
            log.info("loyalty.order.skipped", reason=reason, **extra)
            tracer.span("ORDER_SKIPPED", reason=reason, **extra)
            return {
                "processed": False,
                "reason": reason,
                "order_id": order_id,
                **extra,
                "trace": tracer.end_trace(),
            }

        if not order_id:
            return skipped("missing_order_id")

        if await self.is_order_processed(order_id):
            return skipped("already_processed")

        if order.get("state") != COMPLETED_ORDER_STATE:
            return skipped("not_completed", state=order.get("state"))

        if not order.get("line_items"):
            if self.order_source is None:
                return skipped("no_line_items")
            try:
                refetched = await self.order_source.get_order(order_id)
            except Exception as exc:  # noqa: BLE001
                log.warning("loyalty.order.refetch_error", error=str(exc))
                refetched = None
            if refetched is None:
                return skipped("refetch_failed")
            tracer.span("ORDER_REFETCHED", line_item_count=len(refetched.get("line_items") or []))
            if not refetched.get("line_items"):
                return skipped("no_line_items_after_refetch")
            order = refetched

        resolver = CustomerResolver(
            self.db,
            self.merchant_id,
            directory=self.directory,
            loyalty_bridge=self.loyalty_bridge,
            cache_customer_details=self.cache_customer_details,
            tracer=tracer,
        )
        identification = await resolver.identify_customer_from_order(order)
        if not identification.success:
            return skipped("customer_not_identified", attempted_methods=identification.attempted_methods)
        customer_id = identification.customer_id

        catalog = OfferCatalog(self.db, self.merchant_id)
        offers = await catalog.get_active_offers()
        if not offers:
            return skipped("no_active_offers", customer_id=customer_id)
        qualifying_ids = await catalog.get_all_qualifying_variation_ids()

        recorder = PurchaseRecorder(self.db, self.merchant_id, tracer=tracer, catalog=catalog)
        discount_names = {d.get("uid"): d.get("name") or "" for d in order.get("discounts") or []}
        purchased_at = parse_square_timestamp(order.get("created_at")) or utcnow()

        line_items = order["line_items"]
        line_item_results = []
        free_items = []
        for line_item in line_items:
            item_result = await self._process_line_item(
                line_item,
                order=order,
                customer_id=customer_id,
                customer_source=identification.method,
                qualifying_ids=qualifying_ids,
                discount_names=discount_names,
                purchased_at=purchased_at,
                recorder=recorder,
                trace_id=trace_id,
            )
            line_item_results.append(item_result)
            if item_result.get("reason") == "loyalty_redemption":
                free_items.append(line_item)

        qualifying_items = sum(1 for r in line_item_results if r["qualifying"])
        summary = {
            "total_line_items": len(line_items),
            "qualifying_items": qualifying_items,
            "purchases_recorded": sum(1 for r in line_item_results if r.get("recorded")),
            "rewards_earned": sum(
                1
                for r in line_item_results
                for offer_result in (r.get("results") or [])
                if (offer_result.get("progress") or {}).get("reward_earned")
            ),
        }

        result: dict[str, Any] = {
            "processed": True,
            "order_id": order_id,
            "customer_id": customer_id,
            "customer_source": identification.method,
            "line_item_results": line_item_results,
            "summary": summary,
        }
        if qualifying_items == 0:
            result["reason"] = "no_qualifying_items"
            await self._mark_processed(
                order_id,
                customer_id=customer_id,
                result_type=ProcessedResult.NON_QUALIFYING,
                qualifying_items=0,
                total_line_items=len(line_items),
                trace_id=trace_id,
                source=source,
            )

        rewards = RewardManager(self.db, self.merchant_id, tracer=tracer)
        try:
            result["redemption"] = await rewards.detect_redemption_from_order(
                order, customer_id, free_items=free_items, trace_id=trace_id
            )
        except Exception as exc:  # noqa: BLE001
            await self.db.rollback()
            log.error("loyalty.order.redemption_detection_failed", error=str(exc))
            result["redemption"] = {"detected": False, "error": str(exc)}
        summary["rewards_redeemed"] = 1 if result["redemption"].get("detected") else 0

        if order.get("refunds"):
            result["refunds"] = await self.process_order_refunds(order, recorder=recorder, trace_id=trace_id)
            summary["refunds_processed"] = len(result["refunds"]["refunds_processed"])

        log.info("loyalty.order.processed", customer_id=customer_id, **summary)
        tracer.span("ORDER_COMPLETED", **summary)
        result["trace"] = tracer.end_trace()
        return result

    async def _process_line_item(
        self,
        line_item: dict[str, Any],
        *,
        order: dict[str, Any],
        customer_id: str,
        customer_source: str,
        qualifying_ids: set[str],
        discount_names: dict[str, str],
        purchased_at,
        recorder: PurchaseRecorder,
        trace_id: str,
    ) -> dict[str, Any]:
        variation_id = line_item.get("catalog_object_id") or line_item.get("variation_id")
        quantity = parse_quantity(line_item.get("quantity"))
        total_cents = int((line_item.get("total_money") or {}).get("amount") or 0)
        item_result: dict[str, Any] = {
            "line_item_uid": line_item.get("uid"),
            "variation_id": variation_id,
            "name": line_item.get("name"),
            "quantity": quantity,
            "qualifying": False,
        }

        if not variation_id:
            item_result["reason"] = "no_variation_id"
        elif quantity <= 0:
            item_result["reason"] = "zero_quantity"
        elif total_cents <= 0 and is_redemption_discount(line_item, discount_names):
            item_result["reason"] = "loyalty_redemption"
        elif variation_id not in qualifying_ids:
            item_result["reason"] = "not_qualifying_variation"

        if "reason" in item_result:
            return item_result

        item_result["qualifying"] = True
        try:
            recorded = await recorder.record_purchase(
                square_order_id=order["id"],
                square_customer_id=customer_id,
                variation_id=variation_id,
                quantity=quantity,
                unit_price_cents=unit_price_cents(total_cents, quantity),
                total_price_cents=total_cents,
                purchased_at=purchased_at,
                trace_id=trace_id,
                square_location_id=order.get("location_id"),
                customer_source=customer_source,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "loyalty.order.line_item_failed",
                merchant_id=str(self.merchant_id),
                order_id=order["id"],
                customer_id=customer_id,
                variation_id=variation_id,
                error=str(exc),
                trace_id=trace_id,
            )
            item_result.update(recorded=False, error=str(exc))
            return item_result

        item_result.update(recorded=recorded["recorded"], results=recorded.get("results", []))
        if recorded.get("reason"):
            item_result["record_reason"] = recorded["reason"]
        return item_result

    async def process_order_refunds(
        self,
        order: dict[str, Any],
        *,
        recorder: PurchaseRecorder | None = None,
        trace_id: str | None = None,
    ) -> dict[str, Any]:
        """Reverse loyalty credit for the returned lines of every completed refund on the order."""
        order_id = order.get("id")
        recorder = recorder or PurchaseRecorder(self.db, self.merchant_id)
        outcome: dict[str, Any] = {"order_id": order_id, "refunds_processed": [], "skipped": [], "errors": []}

        for refund in order.get("refunds") or []:
            refund_id = refund.get("id")
            if not refund_id or refund.get("status") != COMPLETED_REFUND_STATUS:
                continue
            refunded_at = parse_square_timestamp(refund.get("created_at"))
            for item in refund.get("return_line_items") or []:
                variation_id = item.get("catalog_object_id") or item.get("variation_id")
                quantity = parse_quantity(item.get("quantity"))
                if not variation_id or quantity <= 0:
                    continue

                base_price = int((item.get("base_price_money") or {}).get("amount") or 0)
                raw_total = (item.get("total_money") or {}).get("amount")
                total_cents = int(raw_total) if raw_total is not None else base_price * quantity
                if base_price > 0 and total_cents == 0:
                    # Free reward units never counted toward progress
                    outcome["skipped"].append({"refund_id": refund_id, "variation_id": variation_id, "reason": "free_item"})
                    continue

                try:
                    refunded = await recorder.process_refund(
                        square_refund_id=refund_id,
                        square_order_id=order_id,
                        variation_id=variation_id,
                        quantity=quantity,
                        unit_price_cents=base_price or None,
                        refunded_at=refunded_at,
                        trace_id=trace_id,
                        square_location_id=order.get("location_id"),
                    )
                except Exception as exc:  # noqa: BLE001
                    logger.error(
                        "loyalty.order.refund_failed",
                        merchant_id=str(self.merchant_id),
                        order_id=order_id,
                        refund_id=refund_id,
                        variation_id=variation_id,
                        error=str(exc),
                        trace_id=trace_id,
                    )
                    outcome["errors"].append({"refund_id": refund_id, "variation_id": variation_id, "error": str(exc)})
                    continue

                entry = {"refund_id": refund_id, "variation_id": variation_id, "quantity": quantity}
                if refunded["processed"]:
                    outcome["refunds_processed"].append({**entry, "results": refunded["results"]})
                else:
                    outcome["skipped"].append({**entry, "reason": refunded["reason"]})

        logger.info(
            "loyalty.order.refunds_processed",
            merchant_id=str(self.merchant_id),
            order_id=order_id,
            processed=len(outcome["refunds_processed"]),
            skipped=len(outcome["skipped"]),
            errors=len(outcome["errors"]),
            trace_id=trace_id,
        )
        return outcome

    async def is_order_processed(self, order_id: str) -> bool:
        result = await self.db.execute(
            select(ProcessedOrder.processed_order_id).where(
                ProcessedOrder.merchant_id == self.merchant_id,
                ProcessedOrder.square_order_id == order_id,
            )
        )
        return result.first() is not None

    async def _mark_processed(
        self,
        order_id: str,
        *,
        customer_id: str | None,
        result_type: ProcessedResult,
        qualifying_items: int,
        total_line_items: int,
        trace_id: str,
        source: str,
    ) -> None:
        try:
            async with self.db.begin_nested():
                self.db.add(
                    ProcessedOrder(
                        merchant_id=self.merchant_id,
                        square_order_id=order_id,
                        square_customer_id=customer_id,
                        result_type=result_type.value,
                        qualifying_items=qualifying_items,
                        total_line_items=total_line_items,
                        trace_id=trace_id,
                        source=source,
                    )
                )
                await self.db.flush()
        except IntegrityError:
            logger.info("loyalty.order.already_marked", merchant_id=str(self.merchant_id), order_id=order_id)
        await self.db.commit()

    async def get_order_trace(self, order_id: str) -> dict[str, Any]:
        """Persisted footprint of an order: suppression row and purchase events."""
        processed = (
            await self.db.execute(
                select(ProcessedOrder).where(
                    ProcessedOrder.merchant_id == self.merchant_id,
                    ProcessedOrder.square_order_id == order_id,
                )
            )
        ).scalar_one_or_none()
        events = (
            await self.db.execute(
                select(PurchaseEvent)
                .where(PurchaseEvent.merchant_id == self.merchant_id, PurchaseEvent.square_order_id == order_id)
                .order_by(PurchaseEvent.created_at)
            )
        ).scalars().all()

        trace_ids = {e.trace_id for e in events if e.trace_id}
        if processed is not None and processed.trace_id:
            trace_ids.add(processed.trace_id)
        return {
            "order_id": order_id,
            "processed_order": None
            if processed is None
            else {
                "result_type": processed.result_type,
                "square_customer_id": processed.square_customer_id,
                "qualifying_items": processed.qualifying_items,
                "total_line_items": processed.total_line_items,
                "source": processed.source,
                "trace_id": processed.trace_id,
                "processed_at": processed.processed_at,
            },
            "purchase_events": [purchase_to_dict(e) for e in events],
            "trace_ids": sorted(trace_ids),
        }
