from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import CUSTOMER, line_item, make_order
from db.models import ProcessedOrder, PurchaseEvent, Redemption, Reward, utcnow
from integrations.square import format_square_timestamp
from loyalty.orders import OrderProcessor, is_redemption_discount, parse_quantity, unit_price_cents


@pytest.fixture
def processor(test_db, merchant_id, fake_square, seeded_db):
    return OrderProcessor(
        test_db,
        merchant_id,
        order_source=fake_square,
        directory=fake_square,
        loyalty_bridge=fake_square,
        cache_customer_details=False,
    )


async def _event_count(db, order_id=None):
    query = select(PurchaseEvent)
    if order_id:
        query = query.where(PurchaseEvent.square_order_id == order_id)
    return len((await db.execute(query)).scalars().all())


def test_parse_quantity_truncates_decimal_strings():
    assert parse_quantity("3") == 3
    assert parse_quantity("2.75") == 2
    assert parse_quantity("abc") == 0
    assert parse_quantity(None) == 0


def test_unit_price_rounds_half_up():
    assert unit_price_cents(1000, 3) == 333
    assert unit_price_cents(1001, 2) == 501
    assert unit_price_cents(999, 2) == 500


def test_redemption_discount_matches_by_name_or_uid():
    names = {"d1": "Frequent Buyer Reward"}
    assert is_redemption_discount({"applied_discounts": [{"discount_uid": "d1"}]}, names)
    assert is_redemption_discount({"applied_discounts": [{"name": "Loyalty freebie"}]}, {})
    assert not is_redemption_discount({"applied_discounts": [{"name": "Staff 10%"}]}, {})


async def test_three_orders_earn_one_reward(processor, test_db, seeded_db):
    results = []
    for i, days_ago in enumerate([20, 10, 1]):
        created_at = format_square_timestamp(utcnow() - timedelta(days=days_ago))
        order = make_order(f"ORD-{i}", [line_item("VAR_SMALL", 1, 1999)], created_at=created_at)
        results.append(await processor.process_order(order))

    assert [r["summary"]["rewards_earned"] for r in results] == [0, 0, 1]
    assert all(r["processed"] for r in results)
    assert results[0]["customer_source"] == "ORDER_CUSTOMER_ID"

    rewards = (
        await test_db.execute(select(Reward).where(Reward.offer_id == seeded_db["small"].offer_id))
    ).scalars().all()
    assert [r.status for r in rewards] == ["earned"]
    assert rewards[0].progress_quantity >= 3

    event = (await test_db.execute(select(PurchaseEvent).where(PurchaseEvent.square_order_id == "ORD-0"))).scalar_one()
    assert event.unit_price_cents == 1999
    assert event.customer_source == "ORDER_CUSTOMER_ID"
    assert event.square_location_id == "LOC_1"


async def test_result_carries_finished_trace(processor):
    result = await processor.process_order(make_order("ORD-1", [line_item("VAR_SMALL", 1, 1999)]))

    trace = result["trace"]
    names = [s["name"] for s in trace["spans"]]
    assert names[0] == "ORDER_RECEIVED"
    assert "CUSTOMER_IDENTIFIED" in names
    assert "PURCHASE_RECORDED" in names
    assert names[-1] == "ORDER_COMPLETED"
    assert trace["context"]["order_id"] == "ORD-1"


async def test_incomplete_order_is_skipped(processor, test_db):
    result = await processor.process_order(make_order("ORD-1", [line_item("VAR_SMALL", 1, 1999)], state="OPEN"))

    assert result["processed"] is False
    assert result["reason"] == "not_completed"
    assert await _event_count(test_db) == 0


async def test_missing_line_items_are_refetched(processor, fake_square, test_db):
    fake_square.orders["ORD-1"] = make_order("ORD-1", [line_item("VAR_SMALL", 2, 3998)])

    result = await processor.process_order(make_order("ORD-1"))

    assert result["processed"] is True
    assert ("get_order", "ORD-1") in fake_square.calls
    assert "ORDER_REFETCHED" in [s["name"] for s in result["trace"]["spans"]]
    assert await _event_count(test_db, "ORD-1") == 1


async def test_refetch_failures(processor, fake_square):
    missing = await processor.process_order(make_order("ORD-1"))
    assert missing["reason"] == "refetch_failed"

    fake_square.orders["ORD-2"] = make_order("ORD-2")
    empty = await processor.process_order(make_order("ORD-2"))
    assert empty["reason"] == "no_line_items_after_refetch"

    fake_square.fail_on.add("get_order")
    errored = await processor.process_order(make_order("ORD-3"))
    assert errored["reason"] == "refetch_failed"


async def test_unidentified_customer_records_nothing(processor, test_db):
    result = await processor.process_order(make_order("ORD-1", [line_item("VAR_SMALL", 1, 1999)], customer_id=None))

    assert result["processed"] is False
    assert result["reason"] == "customer_not_identified"
    assert result["attempted_methods"] == [
        "ORDER_CUSTOMER_ID",
        "TENDER_CUSTOMER_ID",
        "LOYALTY_API",
        "FULFILLMENT_RECIPIENT",
    ]
    assert await _event_count(test_db) == 0


async def test_no_active_offers(test_db, merchant_id, fake_square, seeded_db):
    for offer in (seeded_db["small"], seeded_db["large"]):
        offer.is_active = False
    await test_db.commit()
    processor = OrderProcessor(test_db, merchant_id, order_source=fake_square, cache_customer_details=False)

    result = await processor.process_order(make_order("ORD-1", [line_item("VAR_SMALL", 1, 1999)]))

    assert result["reason"] == "no_active_offers"
    assert result["customer_id"] == CUSTOMER


async def test_free_reward_line_is_not_counted(processor, test_db):
    order = make_order(
        "ORD-1",
        [line_item("VAR_SMALL", 1, 0, applied_discounts=[{"uid": "ad1", "discount_uid": "d1"}])],
        discounts=[{"uid": "d1", "name": "Frequent Buyer Reward", "scope": "LINE_ITEM"}],
    )

    result = await processor.process_order(order)

    assert result["line_item_results"][0]["reason"] == "loyalty_redemption"
    assert result["summary"]["qualifying_items"] == 0
    assert await _event_count(test_db) == 0


async def test_non_qualifying_order_is_marked_and_not_reprocessed(processor, test_db):
    order = make_order("ORD-1", [line_item("VAR_TREATS", 4, 1200)])

    first = await processor.process_order(order)
    assert first["processed"] is True
    assert first["reason"] == "no_qualifying_items"
    assert first["line_item_results"][0]["reason"] == "not_qualifying_variation"
    marker = (await test_db.execute(select(ProcessedOrder))).scalar_one()
    assert marker.result_type == "non_qualifying"
    assert marker.total_line_items == 1
    assert marker.source == "WEBHOOK"

    second = await processor.process_order(order)
    assert second["processed"] is False
    assert second["reason"] == "already_processed"


async def test_qualifying_replay_does_not_double_count(processor, test_db):
    order = make_order("ORD-1", [line_item("VAR_SMALL", 2, 3998)])

    await processor.process_order(order)
    replay = await processor.process_order(order, source="CATCHUP")

    assert replay["processed"] is True
    assert replay["line_item_results"][0]["record_reason"] == "duplicate"
    assert replay["summary"]["purchases_recorded"] == 0
    assert await _event_count(test_db, "ORD-1") == 1


async def test_line_item_failure_is_isolated(processor, test_db, monkeypatch):
    from loyalty.purchases import PurchaseRecorder

    original = PurchaseRecorder.record_purchase

    async def _flaky(self, **kwargs):
        if kwargs["variation_id"] == "VAR_LARGE":
            raise RuntimeError("database hiccup")
        return await original(self, **kwargs)

    monkeypatch.setattr(PurchaseRecorder, "record_purchase", _flaky)
    order = make_order(
        "ORD-1",
        [line_item("VAR_LARGE", 1, 4999), line_item("VAR_SMALL", 1, 1999), line_item("VAR_TREATS", 1, 500)],
    )

    result = await processor.process_order(order)

    by_variation = {r["variation_id"]: r for r in result["line_item_results"]}
    assert by_variation["VAR_LARGE"]["recorded"] is False
    assert by_variation["VAR_LARGE"]["error"] == "database hiccup"
    assert by_variation["VAR_SMALL"]["recorded"] is True
    assert by_variation["VAR_TREATS"]["reason"] == "not_qualifying_variation"
    assert result["summary"] == {
        "total_line_items": 3,
        "qualifying_items": 2,
        "purchases_recorded": 1,
        "rewards_earned": 0,
        "rewards_redeemed": 0,
    }


async def test_order_trace_lookup(processor):
    result = await processor.process_order(make_order("ORD-1", [line_item("VAR_SMALL", 1, 1999)]))

    trace = await processor.get_order_trace("ORD-1")

    assert trace["processed_order"] is None
    assert len(trace["purchase_events"]) == 1
    assert trace["trace_ids"] == [result["trace"]["id"]]


def test_parse_quantity_rejects_non_finite_values():
    assert parse_quantity("Infinity") == 0
    assert parse_quantity("-Infinity") == 0
    assert parse_quantity("NaN") == 0


async def test_non_finite_quantity_line_does_not_block_siblings(processor, test_db):
    order = make_order("ORD-1", [line_item("VAR_SMALL", "Infinity", 1999), line_item("VAR_LARGE", 1, 4999)])

    result = await processor.process_order(order)

    by_variation = {r["variation_id"]: r for r in result["line_item_results"]}
    assert by_variation["VAR_SMALL"]["reason"] == "zero_quantity"
    assert by_variation["VAR_LARGE"]["recorded"] is True
    assert await _event_count(test_db, "ORD-1") == 1


async def test_reward_spent_on_order_is_redeemed(processor, test_db):
    for i in range(3):
        await processor.process_order(make_order(f"ORD-{i}", [line_item("VAR_SMALL", 1, 1999)]))
    earned = (await test_db.execute(select(Reward).where(Reward.status == "earned"))).scalar_one()

    free_line = line_item(
        "VAR_SMALL",
        1,
        0,
        base_price_money={"amount": 1999, "currency": "USD"},
        applied_discounts=[{"uid": "ad1", "discount_uid": "d1"}],
    )
    order = make_order(
        "ORD-FREE",
        [free_line],
        discounts=[{"uid": "d1", "name": "Frequent Buyer Reward", "scope": "LINE_ITEM"}],
    )
    result = await processor.process_order(order)

    assert result["redemption"]["detected"] is True
    assert result["redemption"]["reward_id"] == earned.reward_id
    assert result["summary"]["rewards_redeemed"] == 1
    redemption = (await test_db.execute(select(Redemption))).scalar_one()
    assert redemption.redemption_type == "auto_detected"
    assert redemption.square_order_id == "ORD-FREE"
    assert earned.status == "redeemed"
    assert await _event_count(test_db, "ORD-FREE") == 0

    replay = await processor.process_order(order)
    assert replay["processed"] is False
    assert (await test_db.execute(select(Redemption))).scalars().all() == [redemption]


async def test_completed_refunds_on_order_are_reversed(processor, test_db, seeded_db):
    order = make_order("ORD-1", [line_item("VAR_SMALL", 2, 3998)])
    await processor.process_order(order)

    order["refunds"] = [
        {
            "id": "RF-1",
            "status": "COMPLETED",
            "created_at": "2026-01-05T12:00:00Z",
            "return_line_items": [
                {
                    "catalog_object_id": "VAR_SMALL",
                    "quantity": "1",
                    "base_price_money": {"amount": 1999},
                    "total_money": {"amount": 1999},
                },
                {
                    "catalog_object_id": "VAR_SMALL",
                    "quantity": "1",
                    "base_price_money": {"amount": 1999},
                    "total_money": {"amount": 0},
                },
            ],
        },
        {
            "id": "RF-2",
            "status": "PENDING",
            "return_line_items": [{"catalog_object_id": "VAR_SMALL", "quantity": "1"}],
        },
    ]
    result = await processor.process_order(order)

    refunds = result["refunds"]
    assert [r["refund_id"] for r in refunds["refunds_processed"]] == ["RF-1"]
    assert refunds["skipped"] == [{"refund_id": "RF-1", "variation_id": "VAR_SMALL", "reason": "free_item"}]
    assert refunds["errors"] == []
    assert result["summary"]["refunds_processed"] == 1
    refund_rows = (
        await test_db.execute(select(PurchaseEvent).where(PurchaseEvent.square_refund_id.is_not(None)))
    ).scalars().all()
    assert [(e.square_refund_id, e.quantity) for e in refund_rows] == [("RF-1", -1)]

    from loyalty.purchases import PurchaseRecorder

    progress = await PurchaseRecorder(test_db, seeded_db["merchant_id"]).get_current_progress(
        CUSTOMER, seeded_db["small"].offer_id
    )
    assert progress["current_progress"] == 1

    replay = await processor.process_order(order)
    assert replay["refunds"]["refunds_processed"] == []
    assert {s["reason"] for s in replay["refunds"]["skipped"]} == {"duplicate", "free_item"}


async def test_refund_failure_is_isolated(processor, test_db, monkeypatch):
    from loyalty.purchases import PurchaseRecorder

    async def _broken(self, **kwargs):
        raise RuntimeError("ledger unavailable")

    order = make_order("ORD-1", [line_item("VAR_SMALL", 1, 1999)])
    await processor.process_order(order)
    monkeypatch.setattr(PurchaseRecorder, "process_refund", _broken)
    order["refunds"] = [
        {
            "id": "RF-1",
            "status": "COMPLETED",
            "return_line_items": [{"catalog_object_id": "VAR_SMALL", "quantity": "1", "total_money": {"amount": 1999}}],
        }
    ]

    result = await processor.process_order(order)

    assert result["processed"] is True
    assert result["refunds"]["errors"] == [{"refund_id": "RF-1", "variation_id": "VAR_SMALL", "error": "ledger unavailable"}]
