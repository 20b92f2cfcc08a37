"""
Committed Inventory Reconciler — invoice-driven RESERVED_FOR_SALE counts.

Square reserves stock against open invoices but does not expose a
"committed" count, so we derive one:

  1. Fetch every invoice for the merchant's active locations and collect
     the open ones (DRAFT, UNPAID, SCHEDULED, PARTIALLY_PAID).
  2. Delete committed_inventory rows for invoices that are no longer open
     (paid, cancelled, voided, deleted since the last run).
  3. Per open invoice, in its own transaction: delete its rows, then insert
     one row per (variation, location) from the invoice's order. Line items
     for variations we do not know are skipped, never stored as orphans.
  4. Rebuild inventory_counts RESERVED_FOR_SALE as SUM(quantity) grouped by
     (variation, location), delete-then-insert in one transaction.

Square stays the sole source of truth for "open": every run re-reads all
invoices instead of trusting previously stored statuses. After a run,
SUM(committed_inventory.quantity) per (variation, location) equals the
RESERVED_FOR_SALE count for that pair.
"""

import time
import uuid
from collections import defaultdict
from datetime import datetime

import structlog
from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from core.ttl_cache import TTLCache
from db.models import (
    STATE_RESERVED_FOR_SALE,
    CatalogVariation,
    CommittedInventory,
    InventoryCount,
    Location,
)
from integrations.base import InsufficientScopesError

logger = structlog.get_logger()

OPEN_INVOICE_STATUSES = ("DRAFT", "UNPAID", "SCHEDULED", "PARTIALLY_PAID")
INVOICE_PAGE_LIMIT = 200
SCOPE_SKIP_REASON = "INVOICES_READ scope not authorized (cached)"

# Merchants that did not grant INVOICES_READ. Checked before any API call.
_invoices_scope_cache = TTLCache(ttl_seconds=get_settings().invoices_scope_cache_seconds)


async def get_active_location_ids(db: AsyncSession, merchant_id: uuid.UUID) -> list[str]:
    result = await db.execute(
        select(Location.square_id).where(Location.merchant_id == merchant_id, Location.active.is_(True))
    )
    return list(result.scalars())


async def _known_variation_ids(db: AsyncSession, merchant_id: uuid.UUID, variation_ids) -> set[str]:
    wanted = {vid for vid in variation_ids if vid}
    if not wanted:
        return set()
    result = await db.execute(
        select(CatalogVariation.square_id).where(
            CatalogVariation.merchant_id == merchant_id, CatalogVariation.square_id.in_(wanted)
        )
    )
    return set(result.scalars())


async def _count_rows(db: AsyncSession, merchant_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count()).select_from(CommittedInventory).where(CommittedInventory.merchant_id == merchant_id)
    )
    return result.scalar_one()


async def _fetch_open_invoices(client, location_ids: list[str]) -> tuple[int, dict[str, int], dict[str, dict]]:
    """Page through every invoice. Returns (fetched, status_counts, open invoices by id)."""
    fetched = 0
    status_counts: dict[str, int] = defaultdict(int)
    open_invoices: dict[str, dict] = {}
    cursor = None
    while True:
        page = await client.search_invoices(location_ids, cursor=cursor, limit=INVOICE_PAGE_LIMIT)
        for invoice in page.get("invoices") or []:
            fetched += 1
            status = invoice.get("status") or "UNKNOWN"
            status_counts[status] += 1
            if status in OPEN_INVOICE_STATUSES and invoice.get("location_id"):
                open_invoices[invoice["id"]] = invoice
        cursor = page.get("cursor")
        if not cursor:
            break
    return fetched, dict(status_counts), open_invoices


def _aggregate_line_items(order: dict, fallback_location_id: str | None) -> dict[tuple[str, str], float]:
    """Sum line item quantities per (variation, location)."""
    location_id = order.get("location_id") or fallback_location_id
    totals: dict[tuple[str, str], float] = defaultdict(float)
    for line_item in order.get("line_items") or []:
        variation_id = line_item.get("catalog_object_id")
        if not variation_id or not location_id:
            continue
        try:
            quantity = float(line_item.get("quantity") or 0)
        except (TypeError, ValueError):
            continue
        if quantity > 0:
            totals[(variation_id, location_id)] += quantity
    return dict(totals)


async def _process_invoice(
    db: AsyncSession,
    merchant_id: uuid.UUID,
    invoice_id: str,
    summary_invoice: dict,
    client,
    match_counts: dict[str, int],
) -> None:
    invoice = await client.get_invoice(invoice_id) or summary_invoice
    order_id = invoice.get("order_id")
    order = await client.get_order(order_id) if order_id else None

    totals = _aggregate_line_items(order or {}, invoice.get("location_id"))
    known = await _known_variation_ids(db, merchant_id, {variation_id for variation_id, _ in totals})

    unknown = {variation_id for variation_id, _ in totals} - known
    for variation_id in sorted(unknown):
        logger.warning(
            "committed_inventory.unknown_variation",
            merchant_id=str(merchant_id),
            invoice_id=invoice_id,
            order_id=order_id,
            variation_id=variation_id,
            action_required="Run catalog sync",
        )

    rows = [
        {
            "id": uuid.uuid4(),
            "merchant_id": merchant_id,
            "square_invoice_id": invoice_id,
            "square_order_id": order_id,
            "catalog_object_id": variation_id,
            "location_id": location_id,
            "quantity": quantity,
            "invoice_status": invoice.get("status") or summary_invoice.get("status"),
        }
        for (variation_id, location_id), quantity in totals.items()
        if variation_id in known
    ]

    await db.execute(
        delete(CommittedInventory).where(
            CommittedInventory.merchant_id == merchant_id,
            CommittedInventory.square_invoice_id == invoice_id,
        )
    )
    if rows:
        await db.execute(insert(CommittedInventory), rows)
    await db.commit()

    if totals:
        if not unknown:
            match_counts["fully_matched"] += 1
        elif not known:
            match_counts["fully_unmatched"] += 1
        else:
            match_counts["partially_matched"] += 1


async def rebuild_reserved_for_sale(db: AsyncSession, merchant_id: uuid.UUID) -> int:
    """Replace the merchant's RESERVED_FOR_SALE counts with sums of committed_inventory."""
    sums = (
        await db.execute(
            select(
                CommittedInventory.catalog_object_id,
                CommittedInventory.location_id,
                func.sum(CommittedInventory.quantity).label("quantity"),
            )
            .where(
                CommittedInventory.merchant_id == merchant_id,
                CommittedInventory.catalog_object_id.in_(
                    select(CatalogVariation.square_id).where(CatalogVariation.merchant_id == merchant_id)
                ),
            )
            .group_by(CommittedInventory.catalog_object_id, CommittedInventory.location_id)
        )
    ).all()

    await db.execute(
        delete(InventoryCount).where(
            InventoryCount.merchant_id == merchant_id,
            InventoryCount.state == STATE_RESERVED_FOR_SALE,
        )
    )
    now = datetime.utcnow()
    rows = [
        {
            "id": uuid.uuid4(),
            "merchant_id": merchant_id,
            "catalog_object_id": row.catalog_object_id,
            "location_id": row.location_id,
            "state": STATE_RESERVED_FOR_SALE,
            "quantity": float(row.quantity),
            "updated_at": now,
        }
        for row in sums
    ]
    if rows:
        await db.execute(insert(InventoryCount), rows)
    await db.commit()
    return len(rows)


async def sync_committed_inventory(
    db: AsyncSession,
    merchant_id: uuid.UUID,
    client,
    scope_cache: TTLCache | None = None,
) -> dict:
    """Reconcile committed inventory for one merchant against Square's open invoices."""
    if not merchant_id:
        raise ValueError("merchant_id is required for sync_committed_inventory")

    scope_cache = scope_cache if scope_cache is not None else _invoices_scope_cache
    log = logger.bind(merchant_id=str(merchant_id))

    if scope_cache.has(str(merchant_id)):
        return {"skipped": True, "reason": SCOPE_SKIP_REASON, "count": 0}

    location_ids = await get_active_location_ids(db, merchant_id)
    if not location_ids:
        log.warning("committed_inventory.no_active_locations")
        return {"skipped": True, "reason": "No active locations", "count": 0}

    started = time.monotonic()
    rows_before = await _count_rows(db, merchant_id)

    try:
        invoices_fetched, status_counts, open_invoices = await _fetch_open_invoices(client, location_ids)
    except InsufficientScopesError:
        scope_cache.set(str(merchant_id), time.time())
        log.warning("committed_inventory.invoices_scope_missing")
        return {"skipped": True, "reason": "INVOICES_READ scope not authorized", "count": 0}

    # Drop rows for invoices that are no longer open (or all rows if none are).
    stale_filter = [CommittedInventory.merchant_id == merchant_id]
    if open_invoices:
        stale_filter.append(CommittedInventory.square_invoice_id.not_in(list(open_invoices)))
    deleted_invoice_ids = sorted(
        set(
            (
                await db.execute(select(CommittedInventory.square_invoice_id).where(*stale_filter).distinct())
            ).scalars()
        )
    )
    result = await db.execute(delete(CommittedInventory).where(*stale_filter))
    rows_deleted = result.rowcount or 0
    await db.commit()

    invoices_processed = 0
    invoice_errors = 0
    match_counts = {"fully_matched": 0, "partially_matched": 0, "fully_unmatched": 0}
    for invoice_id, summary_invoice in open_invoices.items():
        try:
            await _process_invoice(db, merchant_id, invoice_id, summary_invoice, client, match_counts)
            invoices_processed += 1
        except Exception as exc:  # noqa: BLE001
            await db.rollback()
            invoice_errors += 1
            log.warning("committed_inventory.invoice_failed", invoice_id=invoice_id, error=str(exc))

    aggregate_rows = await rebuild_reserved_for_sale(db, merchant_id)
    rows_remaining = await _count_rows(db, merchant_id)

    orphan_ids = (
        await db.execute(
            select(CommittedInventory.catalog_object_id)
            .where(
                CommittedInventory.merchant_id == merchant_id,
                CommittedInventory.catalog_object_id.not_in(
                    select(CatalogVariation.square_id).where(CatalogVariation.merchant_id == merchant_id)
                ),
            )
            .distinct()
        )
    ).scalars().all()
    if orphan_ids:
        log.warning(
            "committed_inventory.orphan_variations",
            variation_ids=sorted(orphan_ids),
            action_required="Run catalog sync",
        )

    summary = {
        "invoices_fetched": invoices_fetched,
        "status_counts": status_counts,
        "open_invoices": len(open_invoices),
        "invoices_processed": invoices_processed,
        "invoice_errors": invoice_errors,
        "rows_before": rows_before,
        "rows_deleted": rows_deleted,
        "rows_remaining": rows_remaining,
        "deleted_invoice_ids": deleted_invoice_ids,
        "reserved_for_sale_rows": aggregate_rows,
        "duration_seconds": round(time.monotonic() - started, 3),
    }
    log.info(
        "committed_inventory.reconciled",
        **{k: v for k, v in summary.items() if k != "deleted_invoice_ids"},
        **match_counts,
    )
    return summary
