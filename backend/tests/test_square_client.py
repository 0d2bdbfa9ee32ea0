import json
from datetime import datetime

import httpx
import pytest

from core.security import encrypt
from integrations.square import (
    SquareClient,
    format_square_timestamp,
    map_square_customer,
    parse_square_timestamp,
)

BASE_URL = "https://square.test/v2"


def _client(handler) -> SquareClient:
    return SquareClient(encrypt("sq-access-token"), base_url=BASE_URL, transport=httpx.MockTransport(handler))


async def test_get_order_sends_auth_and_version_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["version"] = request.headers["Square-Version"]
        return httpx.Response(200, json={"order": {"id": "ORD-1", "state": "COMPLETED"}})

    order = await _client(handler).get_order("ORD-1")

    assert order == {"id": "ORD-1", "state": "COMPLETED"}
    assert seen["path"] == "/v2/orders/ORD-1"
    assert seen["auth"] == "Bearer sq-access-token"
    assert seen["version"]


async def test_missing_resources_return_none():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND"}]})

    client = _client(handler)
    assert await client.get_order("ORD-404") is None
    assert await client.get_customer("CUST-404") is None
    assert await client.get_loyalty_account("ACCT-404") is None


async def test_client_errors_are_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(401, json={"errors": [{"code": "UNAUTHORIZED"}]})

    with pytest.raises(httpx.HTTPStatusError):
        await _client(handler).get_order("ORD-1")
    assert len(calls) == 1


async def test_server_errors_are_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"customer": {"id": "CUST-1"}})

    customer = await _client(handler).get_customer("CUST-1")

    assert customer == {"id": "CUST-1"}
    assert len(calls) == 2


async def test_search_completed_orders_follows_cursor():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v2/locations":
            return httpx.Response(
                200,
                json={"locations": [{"id": "LOC_1", "status": "ACTIVE"}, {"id": "LOC_2", "status": "INACTIVE"}]},
            )
        body = json.loads(request.content)
        bodies.append(body)
        if "cursor" not in body:
            return httpx.Response(200, json={"orders": [{"id": "ORD-1"}], "cursor": "page-2"})
        return httpx.Response(200, json={"orders": [{"id": "ORD-2"}]})

    orders = await _client(handler).search_completed_orders(datetime(2026, 10, 18, 6), datetime(2026, 10, 18, 12))

    assert [o["id"] for o in orders] == ["ORD-1", "ORD-2"]
    assert bodies[0]["location_ids"] == ["LOC_1"]
    filters = bodies[0]["query"]["filter"]
    assert filters["state_filter"] == {"states": ["COMPLETED"]}
    assert filters["date_time_filter"]["closed_at"] == {
        "start_at": "2026-10-18T06:00:00Z",
        "end_at": "2026-10-18T12:00:00Z",
    }
    assert bodies[1]["cursor"] == "page-2"


async def test_loyalty_event_search_filters_by_order():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"events": [{"id": "ev1", "loyalty_account_id": "ACCT_1"}]})

    events = await _client(handler).search_loyalty_events("ORD-1")

    assert events[0]["loyalty_account_id"] == "ACCT_1"
    assert captured["path"] == "/v2/loyalty/events/search"
    assert captured["body"]["query"]["filter"]["order_filter"] == {"order_id": "ORD-1"}


def test_timestamp_helpers_normalize_to_naive_utc():
    assert parse_square_timestamp("2026-10-18T14:30:00Z") == datetime(2026, 10, 18, 14, 30)
    assert parse_square_timestamp("2026-10-18T09:30:00-05:00") == datetime(2026, 10, 18, 14, 30)
    assert parse_square_timestamp(None) is None
    assert format_square_timestamp(datetime(2026, 10, 18, 14, 30)) == "2026-10-18T14:30:00Z"


def test_map_square_customer_builds_display_name():
    row = map_square_customer({"id": "CUST-1", "given_name": "Pat", "family_name": "Lee"}, "m-1")
    assert row["display_name"] == "Pat Lee"
    assert row["square_customer_id"] == "CUST-1"

    company = map_square_customer({"id": "CUST-2", "company_name": "Kennel Co"}, "m-1")
    assert company["display_name"] == "Kennel Co"
