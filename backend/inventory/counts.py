"""
On-hand inventory sync — IN_STOCK counts from Square.

RESERVED_FOR_SALE rows in the same table belong to inventory.committed and
are never touched here.
"""

import asyncio
import uuid
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import STATE_IN_STOCK, CatalogVariation, InventoryCount
from db.session import upsert
from inventory.committed import get_active_location_ids

logger = structlog.get_logger()

BATCH_SIZE = 100


async def sync_inventory(db: AsyncSession, merchant_id: uuid.UUID, client) -> dict:
    """Upsert IN_STOCK counts for every live variation at every active location."""
    if not merchant_id:
        raise ValueError("merchant_id is required for sync_inventory")

    settings = get_settings()
    location_ids = await get_active_location_ids(db, merchant_id)
    if not location_ids:
        logger.warning("inventory.no_active_locations", merchant_id=str(merchant_id))
        return {"skipped": True, "reason": "No active locations", "count": 0}

    variation_ids = list(
        (
            await db.execute(
                select(CatalogVariation.square_id).where(
                    CatalogVariation.merchant_id == merchant_id,
                    CatalogVariation.is_deleted.is_(False),
                )
            )
        ).scalars()
    )

    count = 0
    for start in range(0, len(variation_ids), BATCH_SIZE):
        batch = variation_ids[start : start + BATCH_SIZE]
        cursor = None
        while True:
            page = await client.batch_retrieve_inventory_counts(
                batch, location_ids, states=[STATE_IN_STOCK], cursor=cursor
            )
            for entry in page.get("counts") or []:
                if entry.get("state") != STATE_IN_STOCK:
                    continue
                await _upsert_count(db, merchant_id, entry)
                count += 1
            cursor = page.get("cursor")
            if not cursor:
                break
        if start + BATCH_SIZE < len(variation_ids):
            await asyncio.sleep(settings.page_delay_seconds)

    await db.commit()
    logger.info("inventory.synced", merchant_id=str(merchant_id), count=count, variations=len(variation_ids))
    return {"count": count}


async def _upsert_count(db: AsyncSession, merchant_id: uuid.UUID, entry: dict) -> None:
    stmt = upsert(db, InventoryCount).values(
        id=uuid.uuid4(),
        merchant_id=merchant_id,
        catalog_object_id=entry["catalog_object_id"],
        location_id=entry["location_id"],
        state=STATE_IN_STOCK,
        quantity=float(entry.get("quantity") or 0),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["merchant_id", "catalog_object_id", "location_id", "state"],
        set_={"quantity": stmt.excluded.quantity, "updated_at": datetime.utcnow()},
    )
    await db.execute(stmt)
