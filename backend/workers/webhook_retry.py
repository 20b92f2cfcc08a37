"""
Webhook Retry Workers

  1. process_webhook_retries: Every minute, retry due failed events (batch of 10)
  2. cleanup_webhook_events: Daily, delete processed events past retention
"""

import asyncio

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.webhook_retry.process_webhook_retries",
    bind=True,
    max_retries=0,
    acks_late=True,
)
def process_webhook_retries(self, limit: int | None = None):
    """Retry webhook events whose backoff has elapsed."""
    from core.config import get_settings
    from sync.coordinator import SyncCoordinator
    from sync.events import EventProcessor

    async def _process():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            coordinator = SyncCoordinator(session_factory)
            await coordinator.initialize()
            processor = EventProcessor(coordinator, session_factory)
            summary = await processor.process_retries(limit=limit or settings.retry_batch_size)
            await coordinator.drain()
            return summary
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_process())
    except Exception as exc:  # noqa: BLE001
        # No task retry: the next beat tick picks the batch up again.
        logger.error("webhook_retry.batch_failed", error=str(exc), exc_info=True)
        raise


@celery_app.task(
    name="workers.webhook_retry.cleanup_webhook_events",
    bind=True,
    max_retries=2,
    default_retry_delay=600,
    acks_late=True,
)
def cleanup_webhook_events(self, retention_days: int | None = None, failed_retention_days: int | None = None):
    """Delete completed/skipped events after 14 days and failed ones after 30."""
    from core.config import get_settings
    from sync.retry import cleanup_old_events

    async def _cleanup():
        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession)
            async with async_session() as db:
                return await cleanup_old_events(
                    db,
                    retention_days or settings.event_retention_days,
                    failed_retention_days or settings.failed_event_retention_days,
                )
        finally:
            await engine.dispose()

    try:
        deleted = asyncio.run(_cleanup())
    except Exception as exc:  # noqa: BLE001
        logger.error("webhook_retry.cleanup_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    logger.info("webhook_retry.cleanup_complete", **deleted)
    return deleted
