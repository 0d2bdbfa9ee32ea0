"""
Test Configuration — Fixtures for async DB, test client, fake Square and seed data.

Each test gets a fresh in-memory SQLite database. The session joins an
outer transaction in SAVEPOINT mode, so commits inside app code release
savepoints and everything is rolled back after the test.
"""

import uuid
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from api.deps import get_current_user, get_db, get_square_client, get_tenant_db
from api.main import app
from db.session import Base
from integrations.base import CustomerDirectory, LoyaltyAccountBridge, OrderSource

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

MERCHANT_ID = "00000000-0000-0000-0000-000000000001"
CUSTOMER = "SQ_CUST_1"


@pytest.fixture
async def test_engine():
    """Create a test database engine and build all tables."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    """Session wrapped in a transaction that rolls back after each test."""
    async with test_engine.connect() as conn:
        trans = await conn.begin()
        session = AsyncSession(
            bind=conn,
            expire_on_commit=False,
            join_transaction_mode="create_savepoint",
        )

        yield session

        await session.close()
        await trans.rollback()


@pytest.fixture
def merchant_id() -> uuid.UUID:
    return uuid.UUID(MERCHANT_ID)


class FakeSquare(OrderSource, CustomerDirectory, LoyaltyAccountBridge):
    """In-memory stand-in for the Square client."""

    def __init__(self):
        self.orders: dict[str, dict] = {}
        self.completed_orders: list[dict] = []
        self.customers: dict[str, dict] = {}
        self.customer_searches: dict[str, list[dict]] = {}
        self.loyalty_events: dict[str, list[dict]] = {}
        self.loyalty_accounts: dict[str, dict] = {}
        self.calls: list[tuple[str, Any]] = []
        self.fail_on: set[str] = set()

    def _record(self, name: str, arg: Any) -> None:
        self.calls.append((name, arg))
        if name in self.fail_on:
            raise RuntimeError(f"square {name} unavailable")

    async def get_order(self, order_id):
        self._record("get_order", order_id)
        return self.orders.get(order_id)

    async def search_completed_orders(self, start_at, end_at):
        self._record("search_completed_orders", (start_at, end_at))
        return list(self.completed_orders)

    async def search_customers(self, query_filter):
        self._record("search_customers", query_filter)
        field_name, match = next(iter(query_filter.items()))
        value = next(iter(match.values()))
        return self.customer_searches.get(f"{field_name}:{value}", [])

    async def get_customer(self, customer_id):
        self._record("get_customer", customer_id)
        return self.customers.get(customer_id)

    async def search_loyalty_events(self, order_id):
        self._record("search_loyalty_events", order_id)
        return self.loyalty_events.get(order_id, [])

    async def get_loyalty_account(self, account_id):
        self._record("get_loyalty_account", account_id)
        return self.loyalty_accounts.get(account_id)


@pytest.fixture
def fake_square() -> FakeSquare:
    return FakeSquare()


@pytest.fixture
def mock_user():
    """Mock authenticated back-office user."""
    return {
        "sub": "staff-user-1",
        "email": "staff@loyaltyops.test",
        "merchant_id": MERCHANT_ID,
    }


@pytest.fixture
async def client(test_db, mock_user, fake_square):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    async def override_get_tenant_db():
        """Skip set_config (SQLite doesn't support it), return session directly."""
        return test_db

    def override_get_square_client():
        return fake_square

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_tenant_db] = override_get_tenant_db
    app.dependency_overrides[get_square_client] = override_get_square_client

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def seeded_db(test_db, merchant_id):
    """Merchant with two offers: a 3-unit offer and a 5-unit offer sharing one variation."""
    from db.models import LoyaltyOffer, Merchant, QualifyingVariation

    test_db.add(Merchant(merchant_id=merchant_id, name="Corner Pet Supply", square_merchant_id="SQ_MERCHANT_1"))
    await test_db.flush()

    small_bag = LoyaltyOffer(
        merchant_id=merchant_id,
        offer_name="Acana Small Bag",
        brand_name="Acana",
        size_group="small",
        required_quantity=3,
        window_months=12,
        reward_value=1999,
    )
    large_bag = LoyaltyOffer(
        merchant_id=merchant_id,
        offer_name="Acana Large Bag",
        brand_name="Acana",
        size_group="large",
        required_quantity=5,
        window_months=12,
    )
    test_db.add_all([small_bag, large_bag])
    await test_db.flush()

    test_db.add_all(
        [
            QualifyingVariation(
                merchant_id=merchant_id,
                offer_id=small_bag.offer_id,
                variation_id="VAR_SMALL",
                item_name="Acana Puppy",
                variation_name="2kg",
            ),
            QualifyingVariation(
                merchant_id=merchant_id,
                offer_id=large_bag.offer_id,
                variation_id="VAR_LARGE",
                item_name="Acana Puppy",
                variation_name="11kg",
            ),
            QualifyingVariation(
                merchant_id=merchant_id,
                offer_id=small_bag.offer_id,
                variation_id="VAR_SHARED",
                item_name="Acana Sampler",
            ),
            QualifyingVariation(
                merchant_id=merchant_id,
                offer_id=large_bag.offer_id,
                variation_id="VAR_SHARED",
                item_name="Acana Sampler",
            ),
        ]
    )
    await test_db.commit()

    return {"merchant_id": merchant_id, "small": small_bag, "large": large_bag}


def make_order(
    order_id: str,
    line_items: list[dict] | None = None,
    *,
    customer_id: str | None = CUSTOMER,
    state: str = "COMPLETED",
    created_at: str | None = None,
    **extra,
) -> dict:
    order = {
        "id": order_id,
        "location_id": "LOC_1",
        "state": state,
        "line_items": line_items if line_items is not None else [],
        **extra,
    }
    if customer_id:
        order["customer_id"] = customer_id
    if created_at:
        order["created_at"] = created_at
    return order


def line_item(variation_id: str, quantity: int | str, total_cents: int, **extra) -> dict:
    return {
        "uid": f"li-{variation_id}-{quantity}",
        "catalog_object_id": variation_id,
        "name": variation_id,
        "quantity": str(quantity),
        "total_money": {"amount": total_cents, "currency": "USD"},
        **extra,
    }
