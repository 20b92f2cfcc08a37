"""
Webhook Event Processor — records Square webhook events and routes them to syncs.

Every event is stored in webhook_events before anything else happens, so a
crash or a failed sync leaves a row the retry job can pick up. Catalog,
inventory, invoice, vendor and location events go through the
SyncCoordinator (bursts collapse into one follow-up run). Order events
apply an incremental sales-velocity update directly.
"""

import time
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from catalog.sync import delta_sync_catalog
from catalog.vendors import sync_vendors
from core.config import get_settings
from core.ttl_cache import TTLCache
from db.models import EVENT_COMPLETED, EVENT_RUNNING, EVENT_SKIPPED, Merchant, WebhookEvent
from integrations.base import SyncKind
from integrations.square import get_client_for_merchant
from inventory.committed import sync_committed_inventory
from inventory.counts import sync_inventory
from inventory.locations import sync_locations
from sales.velocity import update_sales_velocity_from_order
from sync.coordinator import SyncCoordinator
from sync.retry import get_events_for_retry, increment_retry, mark_for_retry, mark_success

logger = structlog.get_logger()

MERCHANT_MISSING = "Merchant not found or inactive"
SYNC_DEFERRED = "Sync already running in another process"
ACTIVE_MERCHANT_STATUSES = ("active", "trial")
ORDER_EVENTS = ("order.created", "order.updated", "order.fulfillment.updated")

ClientFactory = Callable[[AsyncSession, uuid.UUID], Awaitable[Any]]
SyncFunction = Callable[[AsyncSession, uuid.UUID, Any], Awaitable[dict]]


def _order_from_payload(data: dict) -> tuple[str | None, dict | None]:
    """Pull (order_id, embedded order) out of an order.* webhook's data block."""
    obj = (data or {}).get("object") or {}
    for key in ("order", "order_created", "order_updated", "order_fulfillment_updated"):
        if key in obj and isinstance(obj[key], dict):
            embedded = obj[key]
            return embedded.get("order_id") or embedded.get("id") or data.get("id"), embedded
    return (data or {}).get("id"), None


def _failed(result: Any) -> str | None:
    if not isinstance(result, dict):
        return None
    if result.get("error"):
        return str(result["error"])
    if result.get("deferred"):
        return SYNC_DEFERRED
    return None


class EventProcessor:
    def __init__(
        self,
        coordinator: SyncCoordinator,
        session_factory: async_sessionmaker[AsyncSession],
        client_factory: ClientFactory = get_client_for_merchant,
        velocity_dedup_cache: TTLCache | None = None,
    ):
        self._coordinator = coordinator
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._velocity_dedup_cache = velocity_dedup_cache

    # ── Recording ──────────────────────────────────────────────────────

    async def record_event(self, payload: dict) -> WebhookEvent | None:
        """Store an incoming webhook. Returns None when Square redelivered a known event."""
        square_event_id = payload.get("event_id")
        if not square_event_id:
            raise ValueError("webhook payload has no event_id")

        async with self._session_factory() as db:
            existing = (
                await db.execute(select(WebhookEvent.id).where(WebhookEvent.square_event_id == square_event_id))
            ).scalar_one_or_none()
            if existing is not None:
                logger.info("webhook.duplicate", square_event_id=square_event_id)
                return None

            event = WebhookEvent(
                square_event_id=square_event_id,
                event_type=payload.get("type") or "unknown",
                square_merchant_id=payload.get("merchant_id"),
                event_data=payload.get("data") or {},
            )
            db.add(event)
            try:
                await db.commit()
            except IntegrityError:
                # Lost a race with a concurrent delivery of the same event.
                await db.rollback()
                logger.info("webhook.duplicate", square_event_id=square_event_id)
                return None
            await db.refresh(event)

        logger.info("webhook.recorded", event_id=str(event.id), event_type=event.event_type)
        return event

    async def resolve_merchant(self, square_merchant_id: str | None) -> uuid.UUID | None:
        if not square_merchant_id:
            return None
        async with self._session_factory() as db:
            return (
                await db.execute(
                    select(Merchant.merchant_id).where(
                        Merchant.square_merchant_id == square_merchant_id,
                        Merchant.status.in_(ACTIVE_MERCHANT_STATUSES),
                    )
                )
            ).scalar_one_or_none()

    # ── Processing ─────────────────────────────────────────────────────

    async def process_event(self, event_id: uuid.UUID) -> dict | None:
        """First attempt at a recorded event. Failures are scheduled for retry."""
        async with self._session_factory() as db:
            event = (await db.execute(select(WebhookEvent).where(WebhookEvent.id == event_id))).scalar_one_or_none()
            if event is None:
                logger.warning("webhook.event_not_found", event_id=str(event_id))
                return None
            if event.status == EVENT_COMPLETED:
                return {"skipped": True, "reason": "Already completed"}
            event.status = EVENT_RUNNING
            await db.commit()
            event_type = event.event_type
            square_merchant_id = event.square_merchant_id
            event_data = event.event_data or {}

        log = logger.bind(event_id=str(event_id), event_type=event_type)
        merchant_id = await self.resolve_merchant(square_merchant_id)
        if merchant_id is None:
            log.warning("webhook.merchant_missing", square_merchant_id=square_merchant_id)
            async with self._session_factory() as db:
                await mark_for_retry(db, event_id, MERCHANT_MISSING, max_retries=get_settings().retry_max_attempts)
            return {"error": MERCHANT_MISSING}

        started = time.monotonic()
        try:
            result = await self.dispatch(event_type, merchant_id, event_data)
        except Exception as exc:  # noqa: BLE001
            log.error("webhook.processing_failed", error=str(exc), exc_info=True)
            async with self._session_factory() as db:
                await mark_for_retry(db, event_id, str(exc), max_retries=get_settings().retry_max_attempts)
            return {"error": str(exc)}

        error = _failed(result)
        if error:
            async with self._session_factory() as db:
                await mark_for_retry(db, event_id, error, max_retries=get_settings().retry_max_attempts)
            return result

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if result.get("skipped") and result.get("reason") == "Unhandled event type":
            await self._mark_skipped(event_id)
        else:
            async with self._session_factory() as db:
                await mark_success(db, event_id, sync_results=result, processing_time_ms=elapsed_ms)
        log.info("webhook.processed", processing_time_ms=elapsed_ms)
        return result

    async def retry_event(self, event: WebhookEvent) -> dict:
        """One retry attempt for an event picked by get_events_for_retry."""
        log = logger.bind(event_id=str(event.id), event_type=event.event_type, retry_count=event.retry_count)
        merchant_id = await self.resolve_merchant(event.square_merchant_id)
        if merchant_id is None:
            async with self._session_factory() as db:
                await increment_retry(db, event.id, MERCHANT_MISSING)
            return {"error": MERCHANT_MISSING}

        started = time.monotonic()
        try:
            result = await self.dispatch(event.event_type, merchant_id, event.event_data or {})
            error = _failed(result)
        except Exception as exc:  # noqa: BLE001
            result, error = {"error": str(exc)}, str(exc)

        async with self._session_factory() as db:
            if error:
                log.warning("webhook.retry_failed", error=error)
                await increment_retry(db, event.id, error)
            else:
                await mark_success(
                    db, event.id, sync_results=result, processing_time_ms=int((time.monotonic() - started) * 1000)
                )
        return result

    async def process_retries(self, limit: int | None = None) -> dict[str, int]:
        """Retry every due event in one batch."""
        limit = limit or get_settings().retry_batch_size
        async with self._session_factory() as db:
            events = await get_events_for_retry(db, limit=limit)

        summary = {"processed": 0, "succeeded": 0, "failed": 0}
        for event in events:
            result = await self.retry_event(event)
            summary["processed"] += 1
            if _failed(result):
                summary["failed"] += 1
            else:
                summary["succeeded"] += 1
        if summary["processed"]:
            logger.info("webhook_retry.batch_complete", **summary)
        return summary

    async def _mark_skipped(self, event_id: uuid.UUID) -> None:
        async with self._session_factory() as db:
            event = (await db.execute(select(WebhookEvent).where(WebhookEvent.id == event_id))).scalar_one_or_none()
            if event is not None:
                event.status = EVENT_SKIPPED
                event.processed_at = datetime.utcnow()
                await db.commit()

    # ── Routing ────────────────────────────────────────────────────────

    async def dispatch(self, event_type: str, merchant_id: uuid.UUID, data: dict) -> dict:
        if event_type == "catalog.version.updated":
            return await self._queued(SyncKind.CATALOG, merchant_id, delta_sync_catalog)
        if event_type == "inventory.count.updated":
            return await self._queued(SyncKind.INVENTORY, merchant_id, sync_inventory)
        if event_type.startswith("invoice."):
            return await self._queued(SyncKind.COMMITTED_INVENTORY, merchant_id, sync_committed_inventory)
        if event_type in ORDER_EVENTS:
            return await self._apply_order(merchant_id, data)
        if event_type.startswith("vendor."):
            return await self._queued(SyncKind.VENDORS, merchant_id, sync_vendors)
        if event_type.startswith("location."):
            return await self._queued(SyncKind.LOCATIONS, merchant_id, sync_locations)

        logger.debug("webhook.unhandled", event_type=event_type)
        return {"skipped": True, "reason": "Unhandled event type"}

    async def _queued(self, kind: SyncKind, merchant_id: uuid.UUID, sync_fn: SyncFunction) -> dict:
        async def run():
            async with self._session_factory() as db:
                client = await self._client_factory(db, merchant_id)
                return await sync_fn(db, merchant_id, client)

        return await self._coordinator.execute_with_queue(kind, merchant_id, run)

    async def _apply_order(self, merchant_id: uuid.UUID, data: dict) -> dict:
        order_id, order = _order_from_payload(data)
        async with self._session_factory() as db:
            if not order or not order.get("line_items"):
                if not order_id:
                    return {"skipped": True, "reason": "No order id in payload"}
                client = await self._client_factory(db, merchant_id)
                order = await client.get_order(order_id)
            result = await update_sales_velocity_from_order(
                db, order, merchant_id, dedup_cache=self._velocity_dedup_cache
            )
        return {"velocity": result}
