"""
Customer identification for loyalty orders.

Square orders frequently reach us without a customer attached at checkout,
so identification walks an ordered chain of strategies, from the direct
order reference to increasingly indirect signals, and stops at the first
one that yields a customer id. The chain order is fixed, so the same order
always resolves through the same method.

  1. ORDER_CUSTOMER_ID      — order.customer_id
  2. TENDER_CUSTOMER_ID     — first tender carrying a customer_id
  3. LOYALTY_API            — Square loyalty event for the order → account → customer
  4. FULFILLMENT_RECIPIENT  — recipient phone (exact), then email (fuzzy) search
"""

import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import LoyaltyCustomer, utcnow
from integrations.base import CustomerDirectory, LoyaltyAccountBridge
from integrations.square import map_square_customer
from loyalty.constants import CustomerSource
from loyalty.tracer import LoyaltyTracer

logger = structlog.get_logger()


@dataclass
class CustomerIdentification:
    customer_id: str | None
    method: str
    success: bool
    attempted_methods: list[str] = field(default_factory=list)


class ResolverStrategy(ABC):
    """One step of the identification chain."""

    method: CustomerSource

    @abstractmethod
    async def try_resolve(self, order: dict[str, Any]) -> str | None:
        ...


class OrderCustomerStrategy(ResolverStrategy):
    method = CustomerSource.ORDER_CUSTOMER_ID

    async def try_resolve(self, order):
        return order.get("customer_id") or None


class TenderCustomerStrategy(ResolverStrategy):
    method = CustomerSource.TENDER_CUSTOMER_ID

    async def try_resolve(self, order):
        for tender in order.get("tenders") or []:
            if tender.get("customer_id"):
                return tender["customer_id"]
        return None


class LoyaltyAccountStrategy(ResolverStrategy):
    method = CustomerSource.LOYALTY_API

    def __init__(self, bridge: LoyaltyAccountBridge):
        self.bridge = bridge

    async def try_resolve(self, order):
        order_id = order.get("id")
        if not order_id:
            return None
        events = await self.bridge.search_loyalty_events(order_id)
        for loyalty_event in events:
            account_id = loyalty_event.get("loyalty_account_id")
            if not account_id:
                continue
            account = await self.bridge.get_loyalty_account(account_id)
            if account and account.get("customer_id"):
                return account["customer_id"]
        return None


class FulfillmentRecipientStrategy(ResolverStrategy):
    method = CustomerSource.FULFILLMENT_RECIPIENT

    def __init__(self, directory: CustomerDirectory):
        self.directory = directory

    async def try_resolve(self, order):
        recipient = fulfillment_recipient(order)
        if not recipient:
            return None

        phone = normalize_phone(recipient.get("phone_number"))
        if phone:
            customers = await self.directory.search_customers({"phone_number": {"exact": phone}})
            if customers:
                return customers[0].get("id")

        email = (recipient.get("email_address") or "").strip()
        if email:
            customers = await self.directory.search_customers({"email_address": {"fuzzy": email}})
            if customers:
                return customers[0].get("id")
        return None


def normalize_phone(phone: str | None) -> str | None:
    if not phone:
        return None
    cleaned = re.sub(r"[^\d+]", "", phone)
    return cleaned or None


def fulfillment_recipient(order: dict[str, Any]) -> dict[str, Any] | None:
    """First recipient found on a pickup, shipment or delivery fulfillment."""
    for fulfillment in order.get("fulfillments") or []:
        for details_key in ("pickup_details", "shipment_details", "delivery_details"):
            recipient = (fulfillment.get(details_key) or {}).get("recipient")
            if recipient:
                return recipient
    return None


class CustomerResolver:
    """Iterates resolver strategies in order until one yields a customer id."""

    def __init__(
        self,
        db: AsyncSession,
        merchant_id: uuid.UUID,
        *,
        directory: CustomerDirectory | None = None,
        loyalty_bridge: LoyaltyAccountBridge | None = None,
        strategies: list[ResolverStrategy] | None = None,
        cache_customer_details: bool = True,
        tracer: LoyaltyTracer | None = None,
    ):
        if not merchant_id:
            raise ValueError("merchant_id is required for CustomerResolver")
        self.db = db
        self.merchant_id = merchant_id
        self.directory = directory
        self.cache_customer_details = cache_customer_details
        self.tracer = tracer
        if strategies is None:
            strategies = [OrderCustomerStrategy(), TenderCustomerStrategy()]
            if loyalty_bridge is not None:
                strategies.append(LoyaltyAccountStrategy(loyalty_bridge))
            if directory is not None:
                strategies.append(FulfillmentRecipientStrategy(directory))
        self.strategies = strategies

    async def identify_customer_from_order(self, order: dict[str, Any]) -> CustomerIdentification:
        order_id = order.get("id")
        attempted: list[str] = []

        for strategy in self.strategies:
            method = strategy.method.value
            attempted.append(method)
            try:
                customer_id = await strategy.try_resolve(order)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "loyalty.customer.strategy_failed",
                    merchant_id=str(self.merchant_id),
                    order_id=order_id,
                    method=method,
                    error=str(exc),
                )
                customer_id = None

            if customer_id:
                logger.info(
                    "loyalty.customer.identified",
                    merchant_id=str(self.merchant_id),
                    order_id=order_id,
                    customer_id=customer_id,
                    method=method,
                )
                if self.tracer:
                    self.tracer.span("CUSTOMER_IDENTIFIED", customer_id=customer_id, method=method)
                if self.cache_customer_details:
                    await self.cache_customer(customer_id)
                return CustomerIdentification(customer_id, method, True, attempted)

        logger.info(
            "loyalty.customer.not_identified",
            merchant_id=str(self.merchant_id),
            order_id=order_id,
            attempted_methods=attempted,
        )
        if self.tracer:
            self.tracer.span("CUSTOMER_NOT_IDENTIFIED", attempted_methods=attempted)
        return CustomerIdentification(None, CustomerSource.NONE.value, False, attempted)

    async def cache_customer(self, customer_id: str) -> bool:
        """Upsert display info for reporting. Failures are logged, never raised."""
        if self.directory is None:
            return False
        try:
            customer = await self.directory.get_customer(customer_id)
            if not customer:
                return False
            values = map_square_customer(customer, self.merchant_id)
            async with self.db.begin_nested():
                existing = (
                    await self.db.execute(
                        select(LoyaltyCustomer).where(
                            LoyaltyCustomer.merchant_id == self.merchant_id,
                            LoyaltyCustomer.square_customer_id == customer_id,
                        )
                    )
                ).scalar_one_or_none()
                if existing is None:
                    self.db.add(LoyaltyCustomer(**values))
                else:
                    # Keep previously cached fields when Square omits them
                    for key, value in values.items():
                        if value is not None:
                            setattr(existing, key, value)
                    existing.last_updated_at = utcnow()
            await self.db.commit()
            return True
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "loyalty.customer.cache_failed",
                merchant_id=str(self.merchant_id),
                customer_id=customer_id,
                error=str(exc),
            )
            return False
