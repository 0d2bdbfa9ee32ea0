from datetime import datetime, timedelta

from sqlalchemy import select

from conftest import line_item, make_order
from db.models import PurchaseEvent, Reward, utcnow
from workers.loyalty import run_catchup_pipeline, run_reward_expiration


async def test_catchup_processes_only_unseen_orders(test_db, merchant_id, fake_square, seeded_db):
    fake_square.completed_orders = [
        make_order("ORD-SEEN", [line_item("VAR_SMALL", 1, 1999)]),
        make_order("ORD-NEW-1", [line_item("VAR_SMALL", 2, 3998)]),
        make_order("ORD-NEW-2", [line_item("VAR_SMALL", 1, 1999)]),
        make_order("ORD-TREATS", [line_item("VAR_TREATS", 1, 500)]),
    ]
    test_db.add(
        PurchaseEvent(
            merchant_id=merchant_id,
            offer_id=seeded_db["small"].offer_id,
            square_customer_id="SQ_CUST_1",
            square_order_id="ORD-SEEN",
            variation_id="VAR_SMALL",
            quantity=1,
            purchased_at=utcnow(),
            idempotency_key=f"ORD-SEEN:VAR_SMALL:{seeded_db['small'].offer_id}",
        )
    )
    await test_db.commit()
    now = datetime(2026, 10, 18, 12, 0, 0)

    result = await run_catchup_pipeline(
        test_db,
        merchant_id=merchant_id,
        client=fake_square,
        hours_back=6,
        cache_customer_details=False,
        now=now,
    )

    assert result["status"] == "success"
    assert result["orders_found"] == 4
    assert result["orders_skipped"] == 1
    assert result["orders_processed"] == 3
    assert result["purchases_recorded"] == 2
    assert result["window_start"] == (now - timedelta(hours=6)).isoformat()

    search_calls = [arg for name, arg in fake_square.calls if name == "search_completed_orders"]
    assert search_calls == [(now - timedelta(hours=6), now)]

    second = await run_catchup_pipeline(test_db, merchant_id=merchant_id, client=fake_square, cache_customer_details=False)
    assert second["orders_skipped"] == 4
    assert second["orders_processed"] == 0


async def test_catchup_reports_partial_failure(test_db, merchant_id, fake_square, seeded_db, monkeypatch):
    from loyalty.orders import OrderProcessor

    original = OrderProcessor.process_order

    async def _fail_one(self, order, source="WEBHOOK"):
        if order["id"] == "ORD-BAD":
            raise RuntimeError("boom")
        return await original(self, order, source=source)

    monkeypatch.setattr(OrderProcessor, "process_order", _fail_one)
    fake_square.completed_orders = [
        make_order("ORD-BAD", [line_item("VAR_SMALL", 1, 1999)]),
        make_order("ORD-GOOD", [line_item("VAR_SMALL", 1, 1999)]),
    ]

    result = await run_catchup_pipeline(test_db, merchant_id=merchant_id, client=fake_square, cache_customer_details=False)

    assert result["status"] == "partial"
    assert result["orders_failed"] == 1
    assert result["orders_processed"] == 1


async def test_catchup_respects_max_orders(test_db, merchant_id, fake_square, seeded_db):
    fake_square.completed_orders = [make_order(f"ORD-{i}", [line_item("VAR_SMALL", 1, 1999)]) for i in range(5)]

    result = await run_catchup_pipeline(
        test_db,
        merchant_id=merchant_id,
        client=fake_square,
        max_orders=2,
        cache_customer_details=False,
    )

    assert result["orders_found"] == 2
    assert result["orders_processed"] == 2


async def test_reward_expiration_pipeline(test_db, merchant_id, seeded_db):
    reward = Reward(
        merchant_id=merchant_id,
        offer_id=seeded_db["small"].offer_id,
        square_customer_id="SQ_CUST_1",
        status="earned",
        progress_quantity=3,
        required_quantity=3,
        earned_at=utcnow() - timedelta(days=400),
        expires_at=utcnow() - timedelta(days=35),
    )
    test_db.add(reward)
    await test_db.commit()

    result = await run_reward_expiration(test_db, merchant_id=merchant_id)

    assert result["status"] == "success"
    assert result["expired_reward_ids"] == [str(reward.reward_id)]
    refreshed = (await test_db.execute(select(Reward.status).where(Reward.reward_id == reward.reward_id))).scalar_one()
    assert refreshed == "expired"
