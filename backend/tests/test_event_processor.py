"""
Tests for webhook event recording, routing and retry processing.
"""

from datetime import datetime, timedelta

import pytest
from conftest import SQUARE_MERCHANT_ID, catalog_item
from sqlalchemy import select

from core.ttl_cache import TTLCache
from db.models import (
    EVENT_COMPLETED,
    EVENT_FAILED,
    EVENT_PENDING_RETRY,
    EVENT_SKIPPED,
    SYNC_RUNNING,
    CatalogItem,
    CatalogVariation,
    Location,
    SalesVelocity,
    SyncHistory,
    WebhookEvent,
)
from integrations.base import RemoteAPIError
from sync.coordinator import SyncCoordinator
from sync.events import MERCHANT_MISSING, SYNC_DEFERRED, EventProcessor


@pytest.fixture
def processor(session_factory, square):
    async def client_factory(db, merchant_id):
        return square

    return EventProcessor(
        SyncCoordinator(session_factory),
        session_factory,
        client_factory=client_factory,
        velocity_dedup_cache=TTLCache(),
    )


def _payload(event_id, event_type, data=None, merchant=SQUARE_MERCHANT_ID):
    return {"event_id": event_id, "type": event_type, "merchant_id": merchant, "data": data or {}}


async def _reload(session_factory, event_id) -> WebhookEvent:
    async with session_factory() as db:
        return (await db.execute(select(WebhookEvent).where(WebhookEvent.id == event_id))).scalar_one()


@pytest.mark.asyncio
async def test_record_event_ignores_redelivery(processor, merchant_id):
    first = await processor.record_event(_payload("evt-1", "catalog.version.updated"))
    again = await processor.record_event(_payload("evt-1", "catalog.version.updated"))

    assert first.square_event_id == "evt-1"
    assert first.square_merchant_id == SQUARE_MERCHANT_ID
    assert again is None


@pytest.mark.asyncio
async def test_record_event_requires_event_id(processor):
    with pytest.raises(ValueError):
        await processor.record_event({"type": "catalog.version.updated"})


@pytest.mark.asyncio
async def test_catalog_event_runs_catalog_sync(processor, session_factory, merchant_id, square):
    square.catalog_pages = [{"objects": [catalog_item("ITEM_1", variations=["VAR_1"])]}]
    event = await processor.record_event(_payload("evt-cat", "catalog.version.updated"))

    result = await processor.process_event(event.id)

    assert result["result"]["items"] == 1
    stored = await _reload(session_factory, event.id)
    assert stored.status == EVENT_COMPLETED
    assert stored.processing_time_ms is not None
    async with session_factory() as db:
        assert (await db.execute(select(CatalogItem.square_id))).scalars().all() == ["ITEM_1"]


@pytest.mark.asyncio
async def test_location_event_runs_location_sync(processor, session_factory, merchant_id, square):
    square.locations = [
        {"id": "LOC_MAIN", "name": "Main Street", "status": "ACTIVE"},
        {"id": "LOC_POPUP", "name": "Pop-up", "status": "INACTIVE"},
    ]
    event = await processor.record_event(_payload("evt-loc", "location.updated"))

    result = await processor.process_event(event.id)

    assert result == {"result": {"count": 2, "active": 1}}
    async with session_factory() as db:
        popup = (await db.execute(select(Location).where(Location.square_id == "LOC_POPUP"))).scalar_one()
    assert popup.active is False


@pytest.mark.asyncio
async def test_unhandled_event_type_is_skipped(processor, session_factory, merchant_id):
    event = await processor.record_event(_payload("evt-x", "customer.created"))

    result = await processor.process_event(event.id)

    assert result == {"skipped": True, "reason": "Unhandled event type"}
    assert (await _reload(session_factory, event.id)).status == EVENT_SKIPPED


@pytest.mark.asyncio
async def test_unknown_merchant_is_scheduled_for_retry(processor, session_factory, merchant_id):
    event = await processor.record_event(_payload("evt-m", "catalog.version.updated", merchant="SQ_UNKNOWN"))

    result = await processor.process_event(event.id)

    assert result == {"error": MERCHANT_MISSING}
    stored = await _reload(session_factory, event.id)
    assert stored.status == EVENT_FAILED
    assert stored.error_message == MERCHANT_MISSING
    assert stored.next_retry_at is not None


@pytest.mark.asyncio
async def test_failed_sync_is_scheduled_for_retry(processor, session_factory, merchant_id, square):
    square.errors["list_locations"] = RemoteAPIError("Square API error 503", status_code=503)
    event = await processor.record_event(_payload("evt-fail", "location.created"))

    result = await processor.process_event(event.id)

    assert result == {"error": "Square API error 503"}
    stored = await _reload(session_factory, event.id)
    assert stored.status == EVENT_FAILED
    assert stored.next_retry_at > datetime.utcnow()


@pytest.mark.asyncio
async def test_order_event_fetches_order_and_updates_velocity(processor, session_factory, merchant_id, square):
    async with session_factory() as db:
        db.add(CatalogVariation(merchant_id=merchant_id, square_id="VAR_1", item_id="ITEM_1"))
        await db.commit()
    square.orders["ORD_1"] = {
        "id": "ORD_1",
        "state": "COMPLETED",
        "location_id": "LOC_MAIN",
        "closed_at": datetime.utcnow().replace(microsecond=0).isoformat() + "Z",
        "line_items": [{"catalog_object_id": "VAR_1", "quantity": "2", "total_money": {"amount": 2400}}],
    }
    data = {"type": "order_updated", "id": "ORD_1", "object": {"order_updated": {"order_id": "ORD_1", "state": "COMPLETED"}}}

    first = await processor.dispatch("order.updated", merchant_id, data)
    second = await processor.dispatch("order.fulfillment.updated", merchant_id, data)

    assert first["velocity"]["updated"] == 3
    assert second["velocity"]["reason"] == "Already processed (dedup)"
    assert square.calls["get_order"] == 2
    async with session_factory() as db:
        totals = (
            await db.execute(select(SalesVelocity.total_quantity_sold).where(SalesVelocity.period_days == 91))
        ).scalar_one()
    assert totals == 2


@pytest.mark.asyncio
async def test_process_retries_completes_or_reschedules(processor, session_factory, merchant_id):
    due = datetime.utcnow() - timedelta(minutes=1)
    async with session_factory() as db:
        ok = WebhookEvent(
            square_event_id="evt-retry-ok",
            event_type="inventory.count.updated",
            square_merchant_id=SQUARE_MERCHANT_ID,
            status=EVENT_FAILED,
            next_retry_at=due,
        )
        orphan = WebhookEvent(
            square_event_id="evt-retry-orphan",
            event_type="inventory.count.updated",
            square_merchant_id="SQ_GONE",
            status=EVENT_FAILED,
            next_retry_at=due,
        )
        db.add_all([ok, orphan])
        await db.commit()

    summary = await processor.process_retries(limit=10)

    assert summary == {"processed": 2, "succeeded": 1, "failed": 1}
    assert (await _reload(session_factory, ok.id)).status == EVENT_COMPLETED
    rescheduled = await _reload(session_factory, orphan.id)
    assert rescheduled.status == EVENT_PENDING_RETRY
    assert rescheduled.retry_count == 1
    assert rescheduled.error_message == MERCHANT_MISSING


@pytest.mark.asyncio
async def test_sync_running_in_another_worker_defers_event(processor, session_factory, merchant_id, square):
    async with session_factory() as db:
        db.add(
            SyncHistory(
                sync_type="catalog",
                merchant_id=merchant_id,
                status=SYNC_RUNNING,
                started_at=datetime.utcnow() - timedelta(minutes=2),
            )
        )
        await db.commit()
    event = await processor.record_event(_payload("evt-busy", "catalog.version.updated"))

    result = await processor.process_event(event.id)

    assert result == {"queued": True, "deferred": True}
    assert square.calls["search_catalog"] == 0
    stored = await _reload(session_factory, event.id)
    assert stored.status == EVENT_FAILED
    assert stored.error_message == SYNC_DEFERRED
    assert stored.next_retry_at is not None
