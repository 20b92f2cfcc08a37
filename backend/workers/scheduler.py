"""
Merchant fan-out for Celery beat.

Beat fires one dispatch per schedule entry; the dispatch sends the target
task once per connected merchant (active or trial, with a stored Square
token). Merchants that never finished OAuth are counted and logged so a
missing token shows up in the beat logs rather than as a failing sync.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()

DEFAULT_ACTIVE_STATUSES = ("active", "trial")


async def connected_merchants(db: AsyncSession, statuses: tuple[str, ...]) -> tuple[list[str], list[str]]:
    """Split merchants in ``statuses`` into (connected, disconnected) id lists."""
    from db.models import Merchant

    result = await db.execute(
        select(Merchant.merchant_id, Merchant.access_token_encrypted)
        .where(Merchant.status.in_(statuses))
        .order_by(Merchant.created_at)
    )
    connected: list[str] = []
    disconnected: list[str] = []
    for row in result.all():
        (connected if row.access_token_encrypted else disconnected).append(str(row.merchant_id))
    return connected, disconnected


@celery_app.task(
    name="workers.scheduler.dispatch_active_tenants",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def dispatch_active_tenants(
    self,
    task_name: str,
    task_kwargs: dict | None = None,
    statuses: list[str] | None = None,
):
    """Send ``task_name`` once per connected merchant, with ``merchant_id`` in its kwargs."""
    from core.config import get_settings

    if not task_name.startswith("workers."):
        return {"status": "failed", "reason": "invalid_task_name", "task_name": task_name}

    selected_statuses = tuple(statuses or DEFAULT_ACTIVE_STATUSES)

    async def _load():
        engine = create_async_engine(get_settings().database_url)
        try:
            async with async_sessionmaker(engine, class_=AsyncSession)() as db:
                return await connected_merchants(db, selected_statuses)
        finally:
            await engine.dispose()

    try:
        connected, disconnected = asyncio.run(_load())
    except Exception as exc:  # noqa: BLE001
        logger.error("scheduler.dispatch_failed", task_name=task_name, error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    if disconnected:
        logger.warning("scheduler.merchants_without_token", task_name=task_name, merchant_ids=disconnected)

    for merchant_id in connected:
        celery_app.send_task(task_name, kwargs={**(task_kwargs or {}), "merchant_id": merchant_id})

    summary = {
        "status": "success",
        "task_name": task_name,
        "merchant_count": len(connected),
        "dispatched_count": len(connected),
        "disconnected_count": len(disconnected),
        "statuses": list(selected_statuses),
        "triggered_at": datetime.now(timezone.utc).isoformat(),
        "run_id": self.request.id or "manual",
    }
    logger.info("scheduler.dispatch_complete", **summary)
    return summary
