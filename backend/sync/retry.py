"""
Webhook Retry Processor — exponential backoff for failed event processing.

Lifecycle of a webhook_events row:
  pending → (failure) → failed, next_retry_at set
          → (due, retried, failed again) → pending_retry, next_retry_at pushed out
          → (success) → completed
  Once retry_count reaches max_retries the row is "exhausted":
  status failed with next_retry_at NULL, kept until failed retention expires.

Backoff:
  delay(n) = min(base * 2^n, cap)     base=60s, cap=30min
  → 1m, 2m, 4m, 8m, 16m, 30m, 30m, ...
"""

import uuid
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import and_, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import (
    EVENT_COMPLETED,
    EVENT_FAILED,
    EVENT_PENDING_RETRY,
    EVENT_SKIPPED,
    WebhookEvent,
)

logger = structlog.get_logger()

DEFAULT_BASE_SECONDS = 60
DEFAULT_CAP_SECONDS = 1800
DEFAULT_MAX_RETRIES = 5


def backoff_delay(
    retry_count: int,
    base_seconds: int = DEFAULT_BASE_SECONDS,
    cap_seconds: int = DEFAULT_CAP_SECONDS,
) -> timedelta:
    """Delay before the next attempt after ``retry_count`` previous attempts."""
    if retry_count < 0:
        raise ValueError("retry_count must be >= 0")
    # Exponent grows unbounded with retry_count; clamp before computing.
    exponent = min(retry_count, 32)
    return timedelta(seconds=min(base_seconds * (2**exponent), cap_seconds))


def _delay(retry_count: int) -> timedelta:
    settings = get_settings()
    return backoff_delay(retry_count, settings.retry_base_seconds, settings.retry_cap_seconds)


async def _get_event(db: AsyncSession, event_id: uuid.UUID, for_update: bool = False) -> WebhookEvent | None:
    stmt = select(WebhookEvent).where(WebhookEvent.id == event_id)
    if for_update:
        stmt = stmt.with_for_update()
    return (await db.execute(stmt)).scalar_one_or_none()


async def mark_for_retry(
    db: AsyncSession,
    event_id: uuid.UUID,
    error: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> WebhookEvent | None:
    """Record a first-time processing failure and schedule the retry.

    The delay uses the retry count *before* this failure. Returns None when
    the event does not exist.
    """
    event = await _get_event(db, event_id, for_update=True)
    if event is None:
        logger.warning("webhook_retry.event_not_found", event_id=str(event_id))
        return None

    now = datetime.utcnow()
    event.status = EVENT_FAILED
    event.error_message = error
    event.max_retries = max_retries
    event.next_retry_at = now + _delay(event.retry_count) if event.retry_count < max_retries else None
    await db.commit()

    logger.info(
        "webhook_retry.scheduled",
        event_id=str(event_id),
        event_type=event.event_type,
        retry_count=event.retry_count,
        next_retry_at=event.next_retry_at.isoformat() if event.next_retry_at else None,
    )
    return event


async def increment_retry(db: AsyncSession, event_id: uuid.UUID, error: str) -> WebhookEvent | None:
    """Count a failed retry attempt and reschedule (or exhaust) the event."""
    event = await _get_event(db, event_id, for_update=True)
    if event is None:
        logger.warning("webhook_retry.event_not_found", event_id=str(event_id))
        return None

    now = datetime.utcnow()
    event.retry_count += 1
    event.last_retry_at = now
    event.error_message = error
    if event.retry_count >= event.max_retries:
        event.status = EVENT_FAILED
        event.next_retry_at = None
    else:
        event.status = EVENT_PENDING_RETRY
        event.next_retry_at = now + _delay(event.retry_count)
    await db.commit()

    if event.next_retry_at is None:
        logger.warning(
            "webhook_retry.exhausted",
            event_id=str(event_id),
            event_type=event.event_type,
            retry_count=event.retry_count,
            error=error,
        )
    else:
        logger.info(
            "webhook_retry.rescheduled",
            event_id=str(event_id),
            retry_count=event.retry_count,
            next_retry_at=event.next_retry_at.isoformat(),
        )
    return event


async def mark_success(
    db: AsyncSession,
    event_id: uuid.UUID,
    sync_results: dict[str, Any] | None = None,
    processing_time_ms: int | None = None,
) -> WebhookEvent | None:
    event = await _get_event(db, event_id)
    if event is None:
        return None

    event.status = EVENT_COMPLETED
    event.processed_at = datetime.utcnow()
    event.sync_results = sync_results
    event.processing_time_ms = processing_time_ms
    event.next_retry_at = None
    event.error_message = None
    await db.commit()

    if event.retry_count > 0:
        logger.info("webhook_retry.succeeded", event_id=str(event_id), retry_count=event.retry_count)
    return event


async def get_events_for_retry(db: AsyncSession, limit: int = 50) -> list[WebhookEvent]:
    """Events whose retry is due, oldest-due first.

    Both failed (first failure) and pending_retry (failed retries) rows are
    eligible; exhausted rows never are because their next_retry_at is NULL.
    """
    now = datetime.utcnow()
    result = await db.execute(
        select(WebhookEvent)
        .where(
            WebhookEvent.status.in_((EVENT_FAILED, EVENT_PENDING_RETRY)),
            WebhookEvent.next_retry_at.is_not(None),
            WebhookEvent.next_retry_at <= now,
            WebhookEvent.retry_count < WebhookEvent.max_retries,
        )
        .order_by(WebhookEvent.next_retry_at.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_retry_stats(db: AsyncSession) -> dict[str, Any]:
    since = datetime.utcnow() - timedelta(hours=24)
    row = (
        await db.execute(
            select(
                func.count().filter(WebhookEvent.next_retry_at.is_not(None)).label("pending_retry"),
                func.count()
                .filter(WebhookEvent.status == EVENT_FAILED, WebhookEvent.next_retry_at.is_(None))
                .label("exhausted"),
                func.count()
                .filter(WebhookEvent.status == EVENT_COMPLETED, WebhookEvent.retry_count > 0)
                .label("succeeded_after_retry"),
                func.avg(WebhookEvent.retry_count).filter(WebhookEvent.retry_count > 0).label("avg_retries"),
            ).where(WebhookEvent.received_at > since)
        )
    ).one()
    return {
        "pending_retry": row.pending_retry or 0,
        "exhausted": row.exhausted or 0,
        "succeeded_after_retry": row.succeeded_after_retry or 0,
        "avg_retries": round(float(row.avg_retries), 2) if row.avg_retries is not None else 0.0,
    }


async def cleanup_old_events(
    db: AsyncSession,
    retention_days: int = 14,
    failed_retention_days: int = 30,
) -> dict[str, int]:
    """Delete processed events past retention. Returns deleted counts by status."""
    now = datetime.utcnow()
    retention_cutoff = now - timedelta(days=retention_days)
    failed_cutoff = now - timedelta(days=failed_retention_days)

    completed = await db.execute(
        delete(WebhookEvent).where(
            WebhookEvent.status == EVENT_COMPLETED,
            WebhookEvent.received_at < retention_cutoff,
        )
    )
    skipped = await db.execute(
        delete(WebhookEvent).where(
            WebhookEvent.status == EVENT_SKIPPED,
            WebhookEvent.received_at < retention_cutoff,
        )
    )
    failed = await db.execute(
        delete(WebhookEvent).where(
            and_(
                WebhookEvent.status == EVENT_FAILED,
                WebhookEvent.next_retry_at.is_(None),
                WebhookEvent.received_at < failed_cutoff,
            )
        )
    )
    await db.commit()

    summary = {
        "completed": completed.rowcount or 0,
        "skipped": skipped.rowcount or 0,
        "failed": failed.rowcount or 0,
    }
    if any(summary.values()):
        logger.info(
            "webhook_retry.cleanup",
            retention_days=retention_days,
            failed_retention_days=failed_retention_days,
            **summary,
        )
    return summary


async def reset_for_retry(db: AsyncSession, event_id: uuid.UUID) -> WebhookEvent | None:
    """Operator override: schedule an (exhausted) event for immediate retry."""
    event = await _get_event(db, event_id, for_update=True)
    if event is None:
        return None

    event.retry_count = 0
    event.next_retry_at = datetime.utcnow()
    event.status = EVENT_FAILED
    event.error_message = "Manually reset for retry"
    await db.commit()

    logger.info("webhook_retry.manual_reset", event_id=str(event_id), event_type=event.event_type)
    return event
