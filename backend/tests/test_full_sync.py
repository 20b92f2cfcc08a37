"""
Tests for the supporting syncs (locations, vendors, on-hand inventory) and
the full sync orchestrator.
"""

from datetime import datetime, timedelta

import pytest
from conftest import catalog_item
from sqlalchemy import select

from catalog.sync import sync_catalog
from catalog.vendors import ensure_vendors_exist, sync_vendors
from db.models import STATE_IN_STOCK, InventoryCount, Location, SalesVelocity, Vendor
from integrations.base import RemoteAPIError
from integrations.square import to_square_timestamp
from inventory.counts import sync_inventory
from inventory.locations import sync_locations
from sync.orchestrator import FULL_SYNC_STEPS, run_full_sync


@pytest.mark.asyncio
async def test_sync_locations_tracks_active_flag(test_db, merchant_id, square):
    square.locations = [{"id": "LOC_MAIN", "name": "Main Street", "status": "INACTIVE", "timezone": "America/Toronto"}]

    result = await sync_locations(test_db, merchant_id, square)

    assert result == {"count": 1, "active": 0}
    location = (await test_db.execute(select(Location).where(Location.square_id == "LOC_MAIN"))).scalar_one()
    await test_db.refresh(location)
    assert location.active is False
    assert location.timezone == "America/Toronto"


@pytest.mark.asyncio
async def test_sync_vendors_pages_through_search(test_db, merchant_id, square):
    square.vendor_pages = [
        {"vendors": [{"id": "V1", "name": "Acme", "contacts": [{"name": "Ana", "email_address": "ana@acme.test"}]}]},
        {"vendors": [{"id": "V2", "name": "Birch Supply"}]},
    ]

    assert await sync_vendors(test_db, merchant_id, square) == {"vendors": 2}
    vendors = {v.square_id: v for v in (await test_db.execute(select(Vendor))).scalars()}
    assert vendors["V1"].contact_email == "ana@acme.test"
    assert vendors["V2"].name == "Birch Supply"


@pytest.mark.asyncio
async def test_ensure_vendors_exist_fetches_only_missing(test_db, merchant_id, square):
    square.vendor_pages = [{"vendors": [{"id": "V1", "name": "Acme"}]}]
    await sync_vendors(test_db, merchant_id, square)
    square.vendors = {"V2": {"id": "V2", "name": "Birch Supply"}}

    created = await ensure_vendors_exist(test_db, merchant_id, ["V1", "V2", "V2", None, "V_MISSING"], square)

    assert created == 1
    assert square.calls["retrieve_vendor"] == 2


@pytest.mark.asyncio
async def test_ensure_vendors_exist_survives_fetch_errors(test_db, merchant_id, square):
    square.errors["retrieve_vendor"] = RemoteAPIError("Square API error 500", status_code=500)

    assert await ensure_vendors_exist(test_db, merchant_id, ["V9"], square) == 0


@pytest.mark.asyncio
async def test_sync_inventory_upserts_in_stock_counts(test_db, merchant_id, square):
    square.catalog_pages = [{"objects": [catalog_item("ITEM_1", variations=["VAR_1", "VAR_2"])]}]
    await sync_catalog(test_db, merchant_id, square)
    square.inventory_counts = [
        {"catalog_object_id": "VAR_1", "location_id": "LOC_MAIN", "state": "IN_STOCK", "quantity": "14"},
        {"catalog_object_id": "VAR_2", "location_id": "LOC_MAIN", "state": "IN_STOCK", "quantity": "3.5"},
        {"catalog_object_id": "VAR_2", "location_id": "LOC_MAIN", "state": "WASTE", "quantity": "1"},
    ]

    assert await sync_inventory(test_db, merchant_id, square) == {"count": 2}

    square.inventory_counts[0]["quantity"] = "9"
    await sync_inventory(test_db, merchant_id, square)

    rows = await test_db.execute(
        select(InventoryCount.catalog_object_id, InventoryCount.quantity).where(InventoryCount.state == STATE_IN_STOCK)
    )
    assert dict(rows.all()) == {"VAR_1": 9.0, "VAR_2": 3.5}


@pytest.mark.asyncio
async def test_run_full_sync_runs_every_step_in_order(test_db, merchant_id, square):
    square.locations = [{"id": "LOC_MAIN", "name": "Main Street", "status": "ACTIVE"}]
    square.catalog_pages = [{"objects": [catalog_item("ITEM_1", variations=["VAR_1"])]}]
    square.inventory_counts = [
        {"catalog_object_id": "VAR_1", "location_id": "LOC_MAIN", "state": "IN_STOCK", "quantity": "5"}
    ]
    square.order_pages = [
        {
            "orders": [
                {
                    "id": "ORD_1",
                    "state": "COMPLETED",
                    "location_id": "LOC_MAIN",
                    "closed_at": to_square_timestamp(datetime.utcnow() - timedelta(days=3)),
                    "line_items": [{"catalog_object_id": "VAR_1", "quantity": "1", "total_money": {"amount": 500}}],
                }
            ]
        }
    ]

    result = await run_full_sync(test_db, merchant_id, square)

    assert list(result["steps"]) == [name for name, _ in FULL_SYNC_STEPS]
    assert result["errors"] == []
    assert result["steps"]["catalog"]["items"] == 1
    assert result["steps"]["inventory"] == {"count": 1}
    assert result["steps"]["committed_inventory"]["open_invoices"] == 0
    assert (await test_db.execute(select(SalesVelocity))).scalars().all()


@pytest.mark.asyncio
async def test_run_full_sync_continues_after_failed_step(test_db, merchant_id, square):
    square.errors["search_vendors"] = RemoteAPIError("Square API error 500", status_code=500)
    square.catalog_pages = [{"objects": [catalog_item("ITEM_1")]}]

    result = await run_full_sync(test_db, merchant_id, square)

    assert result["errors"] == [{"step": "vendors", "error": "Square API error 500"}]
    assert "vendors" not in result["steps"]
    assert result["steps"]["catalog"]["items"] == 1
