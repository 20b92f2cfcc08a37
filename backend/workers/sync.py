"""
Data Sync Workers — scheduled Square synchronization per merchant.

Workers:
  1. reconcile_committed_inventory: Open invoices → committed_inventory + RESERVED_FOR_SALE
  2. sync_sales_velocity: Orders (365 days) → sales_velocity for every period
  3. run_full_sync: locations → vendors → catalog → inventory → committed → velocity

Each run goes through a SyncCoordinator, so its start and outcome land in
sync_history like webhook-triggered syncs do.
"""

import asyncio
import uuid

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from integrations.base import MerchantNotConfiguredError, SyncKind
from workers.celery_app import celery_app

logger = structlog.get_logger()


class SyncTaskError(Exception):
    """A coordinated sync finished with an error; Celery retries the task."""


def _run_coordinated(kind: SyncKind, merchant_id: str, sync_fn) -> dict:
    """Run ``sync_fn(db, merchant_id, client)`` for one merchant in a fresh event loop."""
    from core.config import get_settings
    from integrations.square import get_client_for_merchant
    from sync.coordinator import SyncCoordinator

    async def _sync():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            merchant_uuid = uuid.UUID(str(merchant_id))

            async with session_factory() as db:
                try:
                    client = await get_client_for_merchant(db, merchant_uuid)
                except MerchantNotConfiguredError as exc:
                    logger.warning("sync.merchant_not_configured", merchant_id=merchant_id, sync_type=kind.value)
                    return {"status": "skipped", "reason": str(exc)}

            async def run():
                async with session_factory() as db:
                    return await sync_fn(db, merchant_uuid, client)

            coordinator = SyncCoordinator(session_factory)
            await coordinator.initialize()
            outcome = await coordinator.execute_with_queue(kind, merchant_uuid, run)
            await coordinator.drain()
            return outcome
        finally:
            await engine.dispose()

    return asyncio.run(_sync())


def _finish(task, name: str, merchant_id: str, outcome: dict) -> dict:
    if outcome.get("deferred"):
        logger.info(f"sync.{name}.deferred", merchant_id=merchant_id)
        raise task.retry(exc=SyncTaskError(f"{name} sync already running for merchant {merchant_id}"), countdown=60)
    if outcome.get("error"):
        logger.error(f"sync.{name}.failed", merchant_id=merchant_id, error=outcome["error"])
        raise task.retry(exc=SyncTaskError(outcome["error"]))
    logger.info(f"sync.{name}.completed", merchant_id=merchant_id, run_id=task.request.id or "manual")
    return outcome


@celery_app.task(
    name="workers.sync.reconcile_committed_inventory",
    bind=True,
    max_retries=3,
    default_retry_delay=300,
    acks_late=True,
)
def reconcile_committed_inventory(self, merchant_id: str):
    """
    Rebuild committed inventory from Square's open invoices.
    Scheduled via Celery Beat (daily at 04:00 UTC).
    """
    from inventory.committed import sync_committed_inventory

    logger.info("sync.committed_inventory.started", merchant_id=merchant_id)
    outcome = _run_coordinated(SyncKind.COMMITTED_INVENTORY, merchant_id, sync_committed_inventory)
    return _finish(self, "committed_inventory", merchant_id, outcome)


@celery_app.task(
    name="workers.sync.sync_sales_velocity",
    bind=True,
    max_retries=3,
    default_retry_delay=300,
    acks_late=True,
)
def sync_sales_velocity(self, merchant_id: str):
    """
    Recompute 91/182/365-day sales velocity from one order fetch.
    Scheduled via Celery Beat (daily).
    """
    from sales.velocity import sync_sales_velocity_all_periods

    logger.info("sync.sales_velocity.started", merchant_id=merchant_id)
    outcome = _run_coordinated(SyncKind.SALES_VELOCITY, merchant_id, sync_sales_velocity_all_periods)
    return _finish(self, "sales_velocity", merchant_id, outcome)


@celery_app.task(
    name="workers.sync.run_full_sync",
    bind=True,
    max_retries=2,
    default_retry_delay=600,
    acks_late=True,
)
def run_full_sync(self, merchant_id: str):
    """
    Every sync step for one merchant. Scheduled via Celery Beat (every 6 hours).
    Step failures are reported in the result, not retried.
    """
    from sync.orchestrator import run_full_sync as _run_full_sync

    logger.info("sync.full.started", merchant_id=merchant_id)
    # Coordinated under the catalog kind: a full sync and a webhook catalog sync never overlap.
    outcome = _run_coordinated(SyncKind.CATALOG, merchant_id, _run_full_sync)
    return _finish(self, "full", merchant_id, outcome)
