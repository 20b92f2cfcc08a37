"""
Tests for the Celery sync workers, run in-process against a file database.
"""

import asyncio
import uuid
from datetime import datetime, timedelta

import pytest
from conftest import FakeSquareClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from core.config import get_settings
from core.security import encrypt
from db.models import EVENT_COMPLETED, SYNC_RUNNING, SYNC_SUCCESS, Location, Merchant, SyncHistory, WebhookEvent
from db.session import Base
from integrations.base import RemoteAPIError
from workers.sync import SyncTaskError, reconcile_committed_inventory, sync_sales_velocity
from workers.webhook_retry import cleanup_webhook_events

CONNECTED = "00000000-0000-0000-0000-000000000201"
DISCONNECTED = "00000000-0000-0000-0000-000000000202"


@pytest.fixture
def worker_db(tmp_path, monkeypatch):
    """A seeded file database wired into get_settings() for the workers."""
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'workers.db'}"
    engine = create_async_engine(db_url, echo=False, poolclass=NullPool)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _seed() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with session_factory() as db:
            db.add_all(
                [
                    Merchant(
                        merchant_id=uuid.UUID(CONNECTED),
                        name="Connected Merchant",
                        square_merchant_id="SQ_CONNECTED",
                        access_token_encrypted=encrypt("token"),
                        status="active",
                    ),
                    Merchant(
                        merchant_id=uuid.UUID(DISCONNECTED),
                        name="Disconnected Merchant",
                        square_merchant_id="SQ_DISCONNECTED",
                        status="active",
                    ),
                    Location(
                        merchant_id=uuid.UUID(CONNECTED),
                        square_id="LOC_MAIN",
                        name="Main Street",
                        status="ACTIVE",
                        active=True,
                    ),
                ]
            )
            await db.commit()

    asyncio.run(_seed())

    settings = get_settings().model_copy(update={"database_url": db_url})
    monkeypatch.setattr("core.config.get_settings", lambda: settings)

    yield session_factory

    asyncio.run(engine.dispose())


@pytest.fixture
def square(monkeypatch):
    client = FakeSquareClient()

    async def _client_for_merchant(db, merchant_id):
        return client

    monkeypatch.setattr("integrations.square.get_client_for_merchant", _client_for_merchant)
    return client


def _query(session_factory, stmt):
    async def _run():
        async with session_factory() as db:
            return (await db.execute(stmt)).scalars().all()

    return asyncio.run(_run())


def test_reconcile_committed_inventory_records_history(worker_db, square):
    result = reconcile_committed_inventory.run(merchant_id=CONNECTED)

    assert result["result"]["open_invoices"] == 0
    history = _query(worker_db, select(SyncHistory).where(SyncHistory.sync_type == "committed_inventory"))
    assert [row.status for row in history] == [SYNC_SUCCESS]


def test_failed_sync_raises_for_task_retry(worker_db, square):
    square.errors["search_orders"] = RemoteAPIError("Square API error 500", status_code=500)

    with pytest.raises(SyncTaskError):
        sync_sales_velocity.run(merchant_id=CONNECTED)


def test_merchant_without_token_is_skipped(worker_db):
    result = reconcile_committed_inventory.run(merchant_id=DISCONNECTED)

    assert result["status"] == "skipped"
    assert "no Square access token" in result["reason"]
    assert _query(worker_db, select(SyncHistory)) == []


def test_cleanup_webhook_events_uses_retention_windows(worker_db):
    async def _seed():
        async with worker_db() as db:
            db.add_all(
                [
                    WebhookEvent(
                        square_event_id="evt-old",
                        event_type="catalog.version.updated",
                        status=EVENT_COMPLETED,
                        received_at=datetime.utcnow() - timedelta(days=20),
                    ),
                    WebhookEvent(
                        square_event_id="evt-new",
                        event_type="catalog.version.updated",
                        status=EVENT_COMPLETED,
                        received_at=datetime.utcnow() - timedelta(days=2),
                    ),
                ]
            )
            await db.commit()

    asyncio.run(_seed())

    cleanup_webhook_events.run()

    remaining = _query(worker_db, select(WebhookEvent.square_event_id))
    assert remaining == ["evt-new"]


def test_sync_running_in_another_worker_is_retried_later(worker_db, square):
    async def _seed():
        async with worker_db() as db:
            db.add(
                SyncHistory(
                    sync_type="committed_inventory",
                    merchant_id=uuid.UUID(CONNECTED),
                    status=SYNC_RUNNING,
                    started_at=datetime.utcnow() - timedelta(minutes=1),
                )
            )
            await db.commit()

    asyncio.run(_seed())

    with pytest.raises(SyncTaskError, match="already running"):
        reconcile_committed_inventory.run(merchant_id=CONNECTED)
    assert square.calls["search_invoices"] == 0
