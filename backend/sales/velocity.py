"""
Sales Velocity — multi-period sales aggregates per (variation, location).

Two write paths share the sales_velocity table:

  Bulk (sync_sales_velocity_all_periods):
    One paginated SearchOrders pass over the longest period. Each line item
    is bucketed into every period (91/182/365 days) whose window contains
    the order's closed_at, so three periods cost one fetch instead of three.
    Rows are replaced wholesale; this is the authoritative recompute.

  Incremental (update_sales_velocity_from_order):
    Applies one completed order without any API call. Each (line item,
    period) is a single INSERT ... ON CONFLICT DO UPDATE that adds to the
    totals and recomputes the averages in the same statement, so concurrent
    orders never lose updates. A short-lived dedup cache keyed by
    (order_id, merchant_id) stops two webhooks for the same order
    (order.updated + order.fulfillment.updated) from counting it twice.

Averages: daily = total / days, weekly = total / (days / 7),
monthly = total / (days / 30), daily revenue = revenue / days.

Known gap: an incremental update landing between a bulk run's fetch and its
write is overwritten by the bulk totals. The next bulk run corrects it.
"""

import asyncio
import math
import uuid
from collections import defaultdict
from datetime import datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.ttl_cache import TTLCache
from db.models import CatalogVariation, SalesVelocity
from db.session import upsert
from integrations.square import parse_square_timestamp, to_square_timestamp
from inventory.committed import get_active_location_ids

logger = structlog.get_logger()

STANDARD_PERIODS = (91, 182, 365)
ORDER_PAGE_LIMIT = 200

# Process-local: a second worker process may apply the same order once more.
velocity_dedup_cache = TTLCache(ttl_seconds=get_settings().dedup_ttl_seconds)


def _averages(total_quantity: float, total_revenue: int, period_days: int) -> dict[str, float]:
    return {
        "daily_avg_quantity": total_quantity / period_days,
        "weekly_avg_quantity": total_quantity / (period_days / 7),
        "monthly_avg_quantity": total_quantity / (period_days / 30),
        "daily_avg_revenue_cents": total_revenue / period_days,
    }


def _line_item_amounts(line_item: dict) -> tuple[float, int]:
    try:
        quantity = float(line_item.get("quantity") or 0)
    except (TypeError, ValueError):
        quantity = 0.0
    try:
        revenue = int((line_item.get("total_money") or {}).get("amount") or 0)
    except (TypeError, ValueError):
        revenue = 0
    return quantity, revenue


async def _existing_variation_ids(db: AsyncSession, merchant_id: uuid.UUID, variation_ids) -> set[str]:
    wanted = list({vid for vid in variation_ids if vid})
    if not wanted:
        return set()
    found: set[str] = set()
    for start in range(0, len(wanted), 500):
        result = await db.execute(
            select(CatalogVariation.square_id).where(
                CatalogVariation.merchant_id == merchant_id,
                CatalogVariation.square_id.in_(wanted[start : start + 500]),
            )
        )
        found.update(result.scalars())
    return found


# ── Bulk multi-period sync ────────────────────────────────────────────────


async def sync_sales_velocity_all_periods(
    db: AsyncSession,
    merchant_id: uuid.UUID,
    client,
    max_period_days: int = 365,
) -> dict:
    """Recompute every standard period up to ``max_period_days`` from one order fetch."""
    if not merchant_id:
        raise ValueError("merchant_id is required for sync_sales_velocity_all_periods")

    settings = get_settings()
    log = logger.bind(merchant_id=str(merchant_id))
    periods = [days for days in settings.velocity_periods if days <= max_period_days]
    summary: dict = {"orders_processed": 0, "api_calls_saved": 0}
    for days in periods:
        summary[f"{days}d"] = 0
    if not periods:
        log.warning("velocity.no_periods", max_period_days=max_period_days)
        return summary

    location_ids = await get_active_location_ids(db, merchant_id)
    if not location_ids:
        log.warning("velocity.no_active_locations")
        return summary

    now = datetime.utcnow()
    boundaries = {days: now - timedelta(days=days) for days in periods}
    longest = max(periods)

    # period -> (variation, location) -> [quantity, revenue]
    buckets: dict[int, dict[tuple[str, str], list]] = {days: defaultdict(lambda: [0.0, 0]) for days in periods}
    orders_processed = 0
    api_calls = 0
    cursor = None
    while True:
        page = await client.search_orders(
            location_ids,
            closed_at_start=to_square_timestamp(boundaries[longest]),
            closed_at_end=to_square_timestamp(now),
            cursor=cursor,
            limit=ORDER_PAGE_LIMIT,
        )
        api_calls += 1
        orders = page.get("orders") or []
        for order in orders:
            closed_at = parse_square_timestamp(order.get("closed_at"))
            location_id = order.get("location_id")
            if closed_at is None or not location_id:
                continue
            in_periods = [days for days in periods if closed_at >= boundaries[days]]
            for line_item in order.get("line_items") or []:
                variation_id = line_item.get("catalog_object_id")
                if not variation_id:
                    continue
                quantity, revenue = _line_item_amounts(line_item)
                for days in in_periods:
                    bucket = buckets[days][(variation_id, location_id)]
                    bucket[0] += quantity
                    bucket[1] += revenue
        orders_processed += len(orders)
        cursor = page.get("cursor")
        if not cursor:
            break
        await asyncio.sleep(settings.page_delay_seconds)

    summary["orders_processed"] = orders_processed
    summary["api_calls_saved"] = api_calls * (len(periods) - 1)

    all_variation_ids = {variation_id for days in periods for variation_id, _ in buckets[days]}
    if not all_variation_ids:
        log.info("velocity.no_sales", orders_processed=orders_processed)
        return summary

    existing = await _existing_variation_ids(db, merchant_id, all_variation_ids)
    missing = len(all_variation_ids) - len(existing)
    if missing:
        log.info("velocity.unknown_variations_skipped", total=len(all_variation_ids), missing=missing)

    for days in periods:
        saved = 0
        for (variation_id, location_id), (quantity, revenue) in buckets[days].items():
            if variation_id not in existing:
                continue
            values = {
                "total_quantity_sold": quantity,
                "total_revenue_cents": revenue,
                "period_start_date": boundaries[days],
                "period_end_date": now,
                **_averages(quantity, revenue, days),
            }
            stmt = upsert(db, SalesVelocity).values(
                id=uuid.uuid4(),
                merchant_id=merchant_id,
                variation_id=variation_id,
                location_id=location_id,
                period_days=days,
                **values,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["merchant_id", "variation_id", "location_id", "period_days"],
                set_={**values, "updated_at": now},
            )
            await db.execute(stmt)
            saved += 1
        summary[f"{days}d"] = saved

    await db.commit()
    log.info("velocity.bulk_sync_completed", **summary)
    return summary


# ── Incremental update from one order ─────────────────────────────────────


def _skip(reason: str) -> dict:
    return {"updated": 0, "skipped": 0, "reason": reason}


async def update_sales_velocity_from_order(
    db: AsyncSession,
    order: dict | None,
    merchant_id: uuid.UUID | None,
    dedup_cache: TTLCache | None = None,
    periods=STANDARD_PERIODS,
) -> dict:
    """Add one completed order to the velocity totals of every period it falls within."""
    if not order:
        return _skip("No order provided")
    if order.get("state") != "COMPLETED":
        return _skip("Order not completed")
    if not order.get("line_items"):
        return _skip("No line items")
    if not merchant_id:
        return _skip("No merchant_id")

    cache = dedup_cache if dedup_cache is not None else velocity_dedup_cache
    dedup_key = f"{order.get('id')}:{merchant_id}"
    if cache.has(dedup_key):
        logger.debug(
            "velocity.already_applied",
            order_id=order.get("id"),
            merchant_id=str(merchant_id),
            reason="velocity_dedup_guard",
        )
        return _skip("Already processed (dedup)")
    cache.set(dedup_key, True)

    location_id = order.get("location_id")
    if not location_id:
        return _skip("No location_id")

    now = datetime.utcnow()
    closed_at = parse_square_timestamp(order.get("closed_at")) or now
    age_days = math.floor((now - closed_at).total_seconds() / 86400)
    applicable = [days for days in periods if age_days <= days]
    if not applicable:
        logger.debug("velocity.order_too_old", order_id=order.get("id"), age_days=age_days)
        return _skip("Order too old for all periods")

    variation_ids = {li.get("catalog_object_id") for li in order["line_items"] if li.get("catalog_object_id")}
    if not variation_ids:
        return _skip("No catalog variations in order")
    existing = await _existing_variation_ids(db, merchant_id, variation_ids)

    table = SalesVelocity.__table__
    updated = 0
    skipped = 0
    for line_item in order["line_items"]:
        variation_id = line_item.get("catalog_object_id")
        if not variation_id or variation_id not in existing:
            skipped += 1
            continue
        quantity, revenue = _line_item_amounts(line_item)
        if quantity <= 0:
            skipped += 1
            continue

        for days in applicable:
            period = float(days)
            new_quantity = table.c.total_quantity_sold + quantity
            new_revenue = table.c.total_revenue_cents + revenue
            stmt = upsert(db, SalesVelocity).values(
                id=uuid.uuid4(),
                merchant_id=merchant_id,
                variation_id=variation_id,
                location_id=location_id,
                period_days=days,
                total_quantity_sold=quantity,
                total_revenue_cents=revenue,
                period_start_date=now - timedelta(days=days),
                period_end_date=now,
                **_averages(quantity, revenue, days),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["merchant_id", "variation_id", "location_id", "period_days"],
                set_={
                    "total_quantity_sold": new_quantity,
                    "total_revenue_cents": new_revenue,
                    "daily_avg_quantity": new_quantity / period,
                    "weekly_avg_quantity": new_quantity / (period / 7),
                    "monthly_avg_quantity": new_quantity / (period / 30),
                    "daily_avg_revenue_cents": new_revenue / period,
                    "period_end_date": now,
                    "updated_at": now,
                },
            )
            try:
                async with db.begin_nested():
                    await db.execute(stmt)
                updated += 1
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "velocity.incremental_update_failed",
                    order_id=order.get("id"),
                    variation_id=variation_id,
                    period_days=days,
                    error=str(exc),
                )
                skipped += 1

    await db.commit()
    logger.info(
        "velocity.incremental_update",
        order_id=order.get("id"),
        merchant_id=str(merchant_id),
        updated=updated,
        skipped=skipped,
        periods=applicable,
    )
    return {"updated": updated, "skipped": skipped, "periods": applicable}
