"""
POS Collaborator Interfaces — Abstract Base Classes

The loyalty engine never talks to Square directly. It depends on these
three narrow interfaces so the order pipeline can be driven by the live
Square client, a replayed export, or an in-memory fake in tests.

    OrderSource           — fetch a single order, search completed orders
    CustomerDirectory     — search and fetch customer profiles
    LoyaltyAccountBridge  — the platform's own loyalty program, used only
                            to map an order back to a customer
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any


class OrderSource(ABC):
    """Source of POS orders."""

    @abstractmethod
    async def get_order(self, order_id: str) -> dict[str, Any] | None:
        """Return the full order payload, or None when it does not exist."""
        ...

    @abstractmethod
    async def search_completed_orders(self, start_at: datetime, end_at: datetime) -> list[dict[str, Any]]:
        """Return COMPLETED orders closed within [start_at, end_at]."""
        ...


class CustomerDirectory(ABC):
    """Customer lookups on the POS platform."""

    @abstractmethod
    async def search_customers(self, query_filter: dict[str, Any]) -> list[dict[str, Any]]:
        """Search customers with a platform filter, e.g. {"phone_number": {"exact": "+1555..."}}."""
        ...

    @abstractmethod
    async def get_customer(self, customer_id: str) -> dict[str, Any] | None:
        ...


class LoyaltyAccountBridge(ABC):
    """The POS platform's native loyalty program."""

    @abstractmethod
    async def search_loyalty_events(self, order_id: str) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def get_loyalty_account(self, account_id: str) -> dict[str, Any] | None:
        ...
