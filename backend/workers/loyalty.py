"""
Loyalty Workers — scheduled sweeps that keep the loyalty ledger complete.

Workers:
  1. run_loyalty_catchup: Re-scan recent COMPLETED Square orders that never
     reached us via webhook → run them through the order processor
  2. expire_loyalty_rewards: Mark earned rewards past their expiry as expired

The async pipelines below hold the logic and take an open session, so they
can be exercised directly without a broker.
"""

import uuid
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select, union
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ProcessedOrder, PurchaseEvent, utcnow
from loyalty.constants import OrderSource
from loyalty.orders import OrderProcessor
from loyalty.rewards import RewardManager
from workers.celery_app import celery_app

logger = structlog.get_logger()


async def _known_order_ids(db: AsyncSession, merchant_id: uuid.UUID, order_ids: list[str]) -> set[str]:
    """Orders that already have purchase events or a suppression row."""
    if not order_ids:
        return set()
    query = union(
        select(PurchaseEvent.square_order_id).where(
            PurchaseEvent.merchant_id == merchant_id,
            PurchaseEvent.square_order_id.in_(order_ids),
        ),
        select(ProcessedOrder.square_order_id).where(
            ProcessedOrder.merchant_id == merchant_id,
            ProcessedOrder.square_order_id.in_(order_ids),
        ),
    )
    result = await db.execute(query)
    return {row[0] for row in result.all()}


async def run_catchup_pipeline(
    db: AsyncSession,
    *,
    merchant_id: uuid.UUID,
    client,
    hours_back: int = 6,
    max_orders: int | None = None,
    cache_customer_details: bool = True,
    now: datetime | None = None,
) -> dict:
    """
    Worker-path catchup:
      search recent completed orders -> skip known orders -> process the rest.

    `client` must implement OrderSource, CustomerDirectory and LoyaltyAccountBridge.
    """
    end_at = now or utcnow()
    start_at = end_at - timedelta(hours=hours_back)

    orders = await client.search_completed_orders(start_at, end_at)
    if max_orders is not None:
        orders = orders[:max_orders]
    order_ids = [o["id"] for o in orders if o.get("id")]
    known = await _known_order_ids(db, merchant_id, order_ids)

    processor = OrderProcessor(
        db,
        merchant_id,
        order_source=client,
        directory=client,
        loyalty_bridge=client,
        cache_customer_details=cache_customer_details,
    )

    summary = {
        "orders_found": len(orders),
        "orders_skipped": 0,
        "orders_processed": 0,
        "orders_failed": 0,
        "purchases_recorded": 0,
        "rewards_earned": 0,
    }
    for order in orders:
        order_id = order.get("id")
        if not order_id or order_id in known:
            summary["orders_skipped"] += 1
            continue
        try:
            result = await processor.process_order(order, source=OrderSource.CATCHUP)
        except Exception as exc:  # noqa: BLE001
            await db.rollback()
            summary["orders_failed"] += 1
            logger.error(
                "loyalty.catchup.order_failed",
                merchant_id=str(merchant_id),
                order_id=order_id,
                error=str(exc),
                exc_info=True,
            )
            continue

        if result["processed"]:
            summary["orders_processed"] += 1
            summary["purchases_recorded"] += result["summary"]["purchases_recorded"]
            summary["rewards_earned"] += result["summary"]["rewards_earned"]

    status = "success"
    if summary["orders_failed"] and summary["orders_failed"] == len(orders) - summary["orders_skipped"]:
        status = "failed"
    elif summary["orders_failed"]:
        status = "partial"

    logger.info("loyalty.catchup.completed", merchant_id=str(merchant_id), status=status, **summary)
    return {
        "status": status,
        "merchant_id": str(merchant_id),
        "window_start": start_at.isoformat(),
        "window_end": end_at.isoformat(),
        **summary,
    }


async def run_reward_expiration(db: AsyncSession, *, merchant_id: uuid.UUID) -> dict:
    result = await RewardManager(db, merchant_id).expire_rewards()
    return {
        "status": "success",
        "merchant_id": str(merchant_id),
        "expired_count": result["expired_count"],
        "expired_reward_ids": [str(r["reward_id"]) for r in result["expired_rewards"]],
    }


@celery_app.task(
    name="workers.loyalty.run_loyalty_catchup",
    bind=True,
    max_retries=3,
    default_retry_delay=120,
    acks_late=True,
)
def run_loyalty_catchup(self, merchant_id: str, hours_back: int | None = None):
    """
    Hourly catchup for orders whose webhooks were missed or failed.
    Scheduled via Celery Beat, fanned out per merchant.
    """
    import asyncio

    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    run_id = self.request.id or "manual"
    logger.info("loyalty.catchup.started", merchant_id=merchant_id, run_id=run_id)

    async def _run():
        from core.config import get_settings
        from db.models import Integration
        from integrations.square import SquareClient
        from db.session import set_tenant_context

        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                await set_tenant_context(db, merchant_id)
                result = await db.execute(
                    select(Integration).where(
                        Integration.merchant_id == merchant_id,
                        Integration.provider == "square",
                        Integration.status == "connected",
                    )
                )
                integration = result.scalar_one_or_none()
                if not integration:
                    logger.warning("loyalty.catchup.no_integration", merchant_id=merchant_id)
                    return {"status": "skipped", "reason": "no_square_integration"}

                client = SquareClient(integration.access_token_encrypted)
                return await run_catchup_pipeline(
                    db,
                    merchant_id=uuid.UUID(merchant_id),
                    client=client,
                    hours_back=hours_back or settings.loyalty_catchup_hours_back,
                    max_orders=settings.loyalty_catchup_max_orders,
                    cache_customer_details=settings.loyalty_cache_customer_details,
                )
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_run())
    except Exception as exc:  # noqa: BLE001
        logger.error("loyalty.catchup.failed", merchant_id=merchant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.loyalty.expire_loyalty_rewards",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def expire_loyalty_rewards(self, merchant_id: str):
    """Daily sweep of earned rewards past expires_at."""
    import asyncio

    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    async def _run():
        from core.config import get_settings
        from db.session import set_tenant_context

        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                await set_tenant_context(db, merchant_id)
                return await run_reward_expiration(db, merchant_id=uuid.UUID(merchant_id))
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_run())
    except Exception as exc:  # noqa: BLE001
        logger.error("loyalty.expiration.failed", merchant_id=merchant_id, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
