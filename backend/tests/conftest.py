"""
Test Configuration — Fixtures for async DB, merchants and a fake Square client.

Each test gets a fresh in-memory SQLite database (StaticPool keeps the one
connection alive across sessions), so code under test can commit freely and
several sessions from the same factory see the same data.
"""

import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAGE_DELAY_SECONDS", "0")

import uuid
from collections import defaultdict

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from db.session import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

MERCHANT_ID = "00000000-0000-0000-0000-000000000001"
SQUARE_MERCHANT_ID = "SQ_MERCHANT_1"
LOCATION_ID = "LOC_MAIN"


@pytest.fixture
async def test_engine():
    """Create a fresh database and build all tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def merchant_id(test_db):
    """An active merchant with an encrypted Square token and one active location."""
    from core.security import encrypt
    from db.models import Location, Merchant

    merchant_uuid = uuid.UUID(MERCHANT_ID)
    test_db.add(
        Merchant(
            merchant_id=merchant_uuid,
            name="Test Pet Supply",
            square_merchant_id=SQUARE_MERCHANT_ID,
            access_token_encrypted=encrypt("sq-test-token"),
            status="active",
        )
    )
    test_db.add(Location(merchant_id=merchant_uuid, square_id=LOCATION_ID, name="Main Street", status="ACTIVE", active=True))
    await test_db.commit()
    return merchant_uuid


# ── Fake Square client ───────────────────────────────────────────────────


def catalog_item(item_id: str, name: str | None = None, variations=(), category_id: str | None = None) -> dict:
    """A Square ITEM with nested variations, shaped like the Catalog API returns it."""
    item_data = {
        "name": name or f"Item {item_id}",
        "variations": [
            {
                "type": "ITEM_VARIATION",
                "id": variation_id,
                "item_variation_data": {"item_id": item_id, "name": "Regular", "price_money": {"amount": 1299, "currency": "CAD"}},
            }
            for variation_id in variations
        ],
    }
    if category_id:
        item_data["categories"] = [{"id": category_id}]
    return {"type": "ITEM", "id": item_id, "item_data": item_data}


def _paged(pages: list[dict], cursor: str | None) -> dict:
    index = int(cursor or 0)
    page = dict(pages[index]) if pages else {}
    if index + 1 < len(pages):
        page["cursor"] = str(index + 1)
    return page


class FakeSquareClient:
    """In-memory stand-in for SquareClient. Pages are lists of response bodies."""

    def __init__(self):
        self.catalog_pages: list[dict] = [{"objects": []}]
        self.delta_pages: list[dict] = [{"objects": []}]
        self.vendors: dict[str, dict] = {}
        self.vendor_pages: list[dict] = [{"vendors": []}]
        self.locations: list[dict] = []
        self.inventory_counts: list[dict] = []
        self.invoice_pages: list[dict] = [{"invoices": []}]
        self.invoices: dict[str, dict] = {}
        self.orders: dict[str, dict] = {}
        self.order_pages: list[dict] = [{"orders": []}]
        self.errors: dict[str, Exception] = {}
        self.calls: dict[str, int] = defaultdict(int)
        self.delta_begin_times: list[str] = []

    def _call(self, name: str) -> None:
        self.calls[name] += 1
        if name in self.errors:
            raise self.errors[name]

    async def list_catalog(self, types, cursor=None):
        self._call("list_catalog")
        return _paged(self.catalog_pages, cursor)

    async def search_catalog(self, object_types, begin_time=None, cursor=None, limit=1000):
        self._call("search_catalog")
        self.delta_begin_times.append(begin_time)
        return _paged(self.delta_pages, cursor)

    async def retrieve_vendor(self, vendor_id):
        self._call("retrieve_vendor")
        return self.vendors.get(vendor_id)

    async def search_vendors(self, cursor=None):
        self._call("search_vendors")
        return _paged(self.vendor_pages, cursor)

    async def list_locations(self):
        self._call("list_locations")
        return self.locations

    async def batch_retrieve_inventory_counts(self, catalog_object_ids, location_ids, states=None, cursor=None):
        self._call("batch_retrieve_inventory_counts")
        wanted = set(catalog_object_ids)
        return {"counts": [c for c in self.inventory_counts if c["catalog_object_id"] in wanted]}

    async def search_invoices(self, location_ids, cursor=None, limit=200):
        self._call("search_invoices")
        return _paged(self.invoice_pages, cursor)

    async def get_invoice(self, invoice_id):
        self._call("get_invoice")
        return self.invoices.get(invoice_id)

    async def get_order(self, order_id):
        self._call("get_order")
        return self.orders.get(order_id)

    async def search_orders(self, location_ids, closed_at_start=None, closed_at_end=None, cursor=None, limit=200):
        self._call("search_orders")
        return _paged(self.order_pages, cursor)


@pytest.fixture
def square():
    return FakeSquareClient()
