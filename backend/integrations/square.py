"""
Square POS Integration Client

Handles the Square v2 API calls the loyalty engine depends on: orders,
customers and the Square loyalty program bridge.
Uses OAuth tokens stored (encrypted) in the integrations table.
"""

from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from core.config import get_settings
from core.security import decrypt
from integrations.base import CustomerDirectory, LoyaltyAccountBridge, OrderSource

settings = get_settings()
logger = structlog.get_logger()

SQUARE_BASE_URL = (
    "https://connect.squareupsandbox.com/v2"
    if settings.square_environment == "sandbox"
    else "https://connect.squareup.com/v2"
)

SEARCH_PAGE_LIMIT = 100


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return False


square_retry = retry(
    retry=retry_if_exception(_is_retryable),
    stop=stop_after_attempt(3),
    wait=wait_exponential(min=1, max=10),
    reraise=True,
)


class SquareClient(OrderSource, CustomerDirectory, LoyaltyAccountBridge):
    """Client for Square API interactions."""

    def __init__(
        self,
        access_token_encrypted: str,
        *,
        base_url: str = SQUARE_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = decrypt(access_token_encrypted)
        self.base_url = base_url
        self._transport = transport
        self.headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Square-Version": settings.square_api_version,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=settings.square_timeout_seconds,
            transport=self._transport,
        )

    async def _get_optional(self, path: str, key: str) -> dict | None:
        async with self._client() as client:
            response = await client.get(path)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json().get(key)

    # ── Orders ─────────────────────────────────────────────────────────

    @square_retry
    async def get_order(self, order_id: str) -> dict | None:
        """Fetch one order by id."""
        return await self._get_optional(f"/orders/{order_id}", "order")

    @square_retry
    async def get_location_ids(self) -> list[str]:
        """Fetch all active location ids; order search requires them."""
        async with self._client() as client:
            response = await client.get("/locations")
            response.raise_for_status()
            locations = response.json().get("locations", [])
        return [loc["id"] for loc in locations if loc.get("status", "ACTIVE") == "ACTIVE"]

    @square_retry
    async def _search_orders_page(self, body: dict) -> dict:
        async with self._client() as client:
            response = await client.post("/orders/search", json=body)
            response.raise_for_status()
            return response.json()

    async def search_completed_orders(self, start_at: datetime, end_at: datetime) -> list[dict]:
        """Search COMPLETED orders closed in the window, following cursors."""
        location_ids = await self.get_location_ids()
        if not location_ids:
            return []

        body: dict[str, Any] = {
            "location_ids": location_ids,
            "limit": SEARCH_PAGE_LIMIT,
            "query": {
                "filter": {
                    "state_filter": {"states": ["COMPLETED"]},
                    "date_time_filter": {
                        "closed_at": {
                            "start_at": format_square_timestamp(start_at),
                            "end_at": format_square_timestamp(end_at),
                        }
                    },
                },
                "sort": {"sort_field": "CLOSED_AT", "sort_order": "ASC"},
            },
        }

        orders: list[dict] = []
        while True:
            page = await self._search_orders_page(body)
            orders.extend(page.get("orders", []))
            cursor = page.get("cursor")
            if not cursor:
                break
            body["cursor"] = cursor
        return orders

    # ── Customers ──────────────────────────────────────────────────────

    @square_retry
    async def search_customers(self, query_filter: dict) -> list[dict]:
        async with self._client() as client:
            response = await client.post(
                "/customers/search",
                json={"query": {"filter": query_filter}, "limit": 10},
            )
            response.raise_for_status()
            return response.json().get("customers", [])

    @square_retry
    async def get_customer(self, customer_id: str) -> dict | None:
        return await self._get_optional(f"/customers/{customer_id}", "customer")

    # ── Square loyalty program bridge ──────────────────────────────────

    @square_retry
    async def search_loyalty_events(self, order_id: str) -> list[dict]:
        async with self._client() as client:
            response = await client.post(
                "/loyalty/events/search",
                json={"query": {"filter": {"order_filter": {"order_id": order_id}}}, "limit": 30},
            )
            response.raise_for_status()
            return response.json().get("events", [])

    @square_retry
    async def get_loyalty_account(self, account_id: str) -> dict | None:
        return await self._get_optional(f"/loyalty/accounts/{account_id}", "loyalty_account")


def parse_square_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC 3339 Square timestamp into naive UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_square_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def map_square_customer(customer: dict, merchant_id) -> dict:
    """Map a Square Customer to a loyalty_customers cache row."""
    given = customer.get("given_name")
    family = customer.get("family_name")
    display = " ".join(part for part in (given, family) if part) or customer.get("company_name")
    return {
        "merchant_id": merchant_id,
        "square_customer_id": customer.get("id"),
        "given_name": given,
        "family_name": family,
        "display_name": display,
        "phone_number": customer.get("phone_number"),
        "email_address": customer.get("email_address"),
        "company_name": customer.get("company_name"),
    }
