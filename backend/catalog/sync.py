"""
Catalog Synchronizer — full snapshot sync and incremental delta sync.

Full sync (sync_catalog):
  1. Page ListCatalog (ITEM, IMAGE, CATEGORY) into in-memory maps.
     Nothing is written until the snapshot is complete, because item rows
     need category names and variation rows need their parent item.
  2. Write categories → images → items → variations, one SAVEPOINT per
     object so a bad object is logged and skipped instead of failing the run.
  3. Deletion detection: live local items/variations missing from the
     snapshot are soft-deleted and their inventory counts zeroed, unless
     the safety valve trips (empty snapshot against a non-empty store, or
     more than half the catalog would disappear).
  4. Seed the delta cursor.

Delta sync (delta_sync_catalog):
  SearchCatalogObjects since the stored cursor, deletion markers included.
  No cursor, too many changes or any unexpected error → full sync.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.objects import (
    category_name,
    resolve_category_id,
    upsert_category,
    upsert_image,
    upsert_item,
    upsert_variation,
)
from core.config import get_settings
from db.models import (
    SYNC_SUCCESS,
    Category,
    CatalogItem,
    CatalogVariation,
    InventoryCount,
    SyncHistory,
)
from db.session import upsert
from integrations.base import SyncKind
from integrations.square import to_square_timestamp

logger = structlog.get_logger()

FULL_SYNC_TYPES = ["ITEM", "IMAGE", "CATEGORY"]
DELTA_SYNC_TYPES = ["ITEM", "ITEM_VARIATION", "IMAGE", "CATEGORY"]
DELTA_PAGE_LIMIT = 1000
_IN_CHUNK = 500


@dataclass
class CatalogBatch:
    """Objects from one sync, keyed by Square id."""

    categories: dict[str, str] = field(default_factory=dict)
    images: dict[str, dict] = field(default_factory=dict)
    items: dict[str, dict] = field(default_factory=dict)
    variations: dict[str, dict] = field(default_factory=dict)
    deleted_items: set[str] = field(default_factory=set)
    deleted_variations: set[str] = field(default_factory=set)
    deleted_categories: set[str] = field(default_factory=set)
    # Names of related (unchanged) categories, for item lookups only.
    category_lookup: dict[str, str] = field(default_factory=dict)
    complete: bool = True

    def add(self, obj: dict) -> None:
        obj_type = obj.get("type")
        obj_id = obj.get("id")
        if not obj_id:
            return
        if obj.get("is_deleted"):
            if obj_type == "ITEM":
                self.deleted_items.add(obj_id)
            elif obj_type == "ITEM_VARIATION":
                self.deleted_variations.add(obj_id)
            elif obj_type == "CATEGORY":
                self.deleted_categories.add(obj_id)
            return

        if obj_type == "CATEGORY":
            self.categories[obj_id] = category_name(obj)
        elif obj_type == "IMAGE":
            self.images[obj_id] = obj
        elif obj_type == "ITEM":
            self.items[obj_id] = obj
            for variation in (obj.get("item_data") or {}).get("variations") or []:
                variation.setdefault("item_variation_data", {}).setdefault("item_id", obj_id)
                self.add({**variation, "type": "ITEM_VARIATION"})
        elif obj_type == "ITEM_VARIATION":
            self.variations[obj_id] = obj

    def add_related(self, obj: dict) -> None:
        # Related objects only contribute lookups (category names), never writes.
        if obj.get("type") == "CATEGORY" and obj.get("id") and not obj.get("is_deleted"):
            self.category_lookup.setdefault(obj["id"], category_name(obj))

    @property
    def total(self) -> int:
        return (
            len(self.categories)
            + len(self.images)
            + len(self.items)
            + len(self.variations)
            + len(self.deleted_items)
            + len(self.deleted_variations)
            + len(self.deleted_categories)
        )


def _empty_stats() -> dict:
    return {
        "categories": 0,
        "images": 0,
        "items": 0,
        "variations": 0,
        "variation_vendors": 0,
        "items_deleted": 0,
        "variations_deleted": 0,
        "inventory_zeroed": 0,
        "errors": [],
    }


def _chunks(values, size: int = _IN_CHUNK):
    values = list(values)
    for start in range(0, len(values), size):
        yield values[start : start + size]


# ── Delta cursor ──────────────────────────────────────────────────────────


async def get_delta_cursor(db: AsyncSession, merchant_id: uuid.UUID) -> str | None:
    result = await db.execute(
        select(SyncHistory.last_delta_timestamp).where(
            SyncHistory.sync_type == SyncKind.CATALOG.value,
            SyncHistory.merchant_id == merchant_id,
        )
    )
    return result.scalar_one_or_none()


async def set_delta_cursor(db: AsyncSession, merchant_id: uuid.UUID, timestamp: str) -> None:
    now = datetime.utcnow()
    stmt = upsert(db, SyncHistory).values(
        id=uuid.uuid4(),
        sync_type=SyncKind.CATALOG.value,
        merchant_id=merchant_id,
        status=SYNC_SUCCESS,
        started_at=now,
        completed_at=now,
        last_delta_timestamp=timestamp,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["sync_type", "merchant_id"],
        set_={"last_delta_timestamp": timestamp},
    )
    await db.execute(stmt)


# ── Writing ───────────────────────────────────────────────────────────────


async def _write_batch(
    db: AsyncSession,
    merchant_id: uuid.UUID,
    batch: CatalogBatch,
    client,
    stats: dict,
    known_parent_ids: set[str] | None = None,
) -> None:
    """Write categories → images → items → variations.

    ``known_parent_ids`` are live local items outside this batch (delta sync)
    that variations may still attach to.
    """
    log = logger.bind(merchant_id=str(merchant_id))
    names = {**batch.category_lookup, **batch.categories}

    async def _guarded(kind: str, obj_id: str, write) -> tuple[bool, object]:
        try:
            async with db.begin_nested():
                return True, await write()
        except Exception as exc:  # noqa: BLE001
            log.error("catalog.object_write_failed", object_type=kind, object_id=obj_id, error=str(exc))
            stats["errors"].append({"type": kind, "id": obj_id, "error": str(exc)})
            return False, None

    for cat_id, name in batch.categories.items():
        ok, _ = await _guarded("CATEGORY", cat_id, lambda: upsert_category(db, merchant_id, cat_id, name))
        stats["categories"] += ok

    for image_id, obj in batch.images.items():
        ok, _ = await _guarded("IMAGE", image_id, lambda: upsert_image(db, merchant_id, obj))
        stats["images"] += ok

    for item_id, obj in batch.items.items():
        cat_id = resolve_category_id(obj.get("item_data") or {})
        cat_name = names.get(cat_id) if cat_id else None
        ok, _ = await _guarded("ITEM", item_id, lambda: upsert_item(db, merchant_id, obj, cat_name))
        stats["items"] += ok

    parents = set(batch.items) | (known_parent_ids or set())
    for variation_id, obj in batch.variations.items():
        parent_id = (obj.get("item_variation_data") or {}).get("item_id")
        if parent_id not in parents:
            log.warning("catalog.variation_orphaned", variation_id=variation_id, item_id=parent_id)
            continue
        ok, links = await _guarded(
            "ITEM_VARIATION", variation_id, lambda: upsert_variation(db, merchant_id, obj, client)
        )
        if ok:
            stats["variations"] += 1
            stats["variation_vendors"] += links


async def soft_delete(
    db: AsyncSession,
    merchant_id: uuid.UUID,
    item_ids,
    variation_ids,
) -> dict[str, int]:
    """Soft-delete items (with their variations) and variations; zero their inventory."""
    now = datetime.utcnow()
    item_ids = set(item_ids)
    variation_ids = set(variation_ids)
    items_deleted = 0
    variations_deleted = 0
    inventory_zeroed = 0

    for chunk in _chunks(item_ids):
        result = await db.execute(
            update(CatalogItem)
            .where(
                CatalogItem.merchant_id == merchant_id,
                CatalogItem.square_id.in_(chunk),
                CatalogItem.is_deleted.is_(False),
            )
            .values(is_deleted=True, deleted_at=now)
        )
        items_deleted += result.rowcount or 0
        children = await db.execute(
            select(CatalogVariation.square_id).where(
                CatalogVariation.merchant_id == merchant_id,
                CatalogVariation.item_id.in_(chunk),
            )
        )
        variation_ids.update(children.scalars())

    for chunk in _chunks(variation_ids):
        result = await db.execute(
            update(CatalogVariation)
            .where(
                CatalogVariation.merchant_id == merchant_id,
                CatalogVariation.square_id.in_(chunk),
                CatalogVariation.is_deleted.is_(False),
            )
            .values(is_deleted=True, deleted_at=now)
        )
        variations_deleted += result.rowcount or 0
        zeroed = await db.execute(
            update(InventoryCount)
            .where(
                InventoryCount.merchant_id == merchant_id,
                InventoryCount.catalog_object_id.in_(chunk),
                InventoryCount.quantity != 0,
            )
            .values(quantity=0, updated_at=now)
        )
        inventory_zeroed += zeroed.rowcount or 0

    return {
        "items_deleted": items_deleted,
        "variations_deleted": variations_deleted,
        "inventory_zeroed": inventory_zeroed,
    }


async def _detect_deletions(db: AsyncSession, merchant_id: uuid.UUID, batch: CatalogBatch) -> dict | None:
    """Soft-delete everything missing from a complete snapshot. None when the safety valve trips."""
    settings = get_settings()
    log = logger.bind(merchant_id=str(merchant_id))

    active_items = set(
        (
            await db.execute(
                select(CatalogItem.square_id).where(
                    CatalogItem.merchant_id == merchant_id, CatalogItem.is_deleted.is_(False)
                )
            )
        ).scalars()
    )
    synced = len(batch.items)
    active = len(active_items)

    if synced == 0 and active > 0:
        log.warning("catalog.deletion_skipped_empty_sync", db_items=active)
        return None

    missing_items = active_items - set(batch.items)
    if active > settings.deletion_min_items and len(missing_items) > active * settings.deletion_max_fraction:
        log.warning(
            "catalog.deletion_skipped_threshold",
            db_items=active,
            synced_items=synced,
            would_delete=len(missing_items),
            max_fraction=settings.deletion_max_fraction,
        )
        return None

    active_variations = set(
        (
            await db.execute(
                select(CatalogVariation.square_id).where(
                    CatalogVariation.merchant_id == merchant_id, CatalogVariation.is_deleted.is_(False)
                )
            )
        ).scalars()
    )
    missing_variations = active_variations - set(batch.variations)

    result = await soft_delete(db, merchant_id, missing_items, missing_variations)
    if any(result.values()):
        log.info("catalog.deletions_detected", **result)
    return result


# ── Full sync ─────────────────────────────────────────────────────────────


async def _fetch_full_snapshot(client, merchant_id: uuid.UUID) -> CatalogBatch:
    settings = get_settings()
    batch = CatalogBatch()
    cursor = None
    pages = 0
    while True:
        pages += 1
        if pages > settings.max_pagination_iterations:
            logger.error(
                "catalog.pagination_limit",
                merchant_id=str(merchant_id),
                max_pages=settings.max_pagination_iterations,
            )
            batch.complete = False
            break
        page = await client.list_catalog(FULL_SYNC_TYPES, cursor=cursor)
        for obj in page.get("objects") or []:
            batch.add(obj)
        for obj in page.get("related_objects") or []:
            batch.add_related(obj)
        cursor = page.get("cursor")
        if not cursor:
            break
        await asyncio.sleep(settings.page_delay_seconds)
    return batch


async def sync_catalog(db: AsyncSession, merchant_id: uuid.UUID, client) -> dict:
    """Full catalog sync. Returns per-type counts plus deletion stats."""
    if not merchant_id:
        raise ValueError("merchant_id is required for sync_catalog")

    log = logger.bind(merchant_id=str(merchant_id))
    stats = _empty_stats()
    log.info("catalog.full_sync_started")

    batch = await _fetch_full_snapshot(client, merchant_id)
    log.info(
        "catalog.snapshot_fetched",
        categories=len(batch.categories),
        images=len(batch.images),
        items=len(batch.items),
        variations=len(batch.variations),
    )

    await _write_batch(db, merchant_id, batch, client, stats)
    await db.commit()

    if not batch.complete:
        stats["deletion_skipped"] = "incomplete_snapshot"
        log.warning("catalog.deletion_skipped_incomplete")
        return stats

    deletions = await _detect_deletions(db, merchant_id, batch)
    if deletions is None:
        stats["deletion_skipped"] = "safety_threshold"
        return stats
    stats.update(deletions)

    await set_delta_cursor(db, merchant_id, to_square_timestamp(datetime.utcnow()))
    await db.commit()

    log.info("catalog.full_sync_completed", **{k: v for k, v in stats.items() if k != "errors"}, error_count=len(stats["errors"]))
    return stats


# ── Delta sync ────────────────────────────────────────────────────────────


async def _run_delta(db: AsyncSession, merchant_id: uuid.UUID, client, begin_time: str) -> dict | None:
    """Apply changes since ``begin_time``. None means the caller should run a full sync."""
    settings = get_settings()
    log = logger.bind(merchant_id=str(merchant_id))

    batch = CatalogBatch()
    # Objects Square returned; nested variations are not counted separately.
    changed = 0
    latest_time = None
    cursor = None
    pages = 0
    while True:
        pages += 1
        if pages > settings.max_pagination_iterations:
            log.warning("catalog.delta_pagination_limit")
            return None
        page = await client.search_catalog(DELTA_SYNC_TYPES, begin_time=begin_time, cursor=cursor, limit=DELTA_PAGE_LIMIT)
        objects = page.get("objects") or []
        changed += len(objects)
        for obj in objects:
            batch.add(obj)
        for obj in page.get("related_objects") or []:
            batch.add_related(obj)
        latest_time = page.get("latest_time") or latest_time
        cursor = page.get("cursor")
        if not cursor:
            break
        if changed > settings.delta_fallback_threshold:
            break

    if changed > settings.delta_fallback_threshold:
        log.info(
            "catalog.delta_fallback_threshold",
            changed=changed,
            threshold=settings.delta_fallback_threshold,
        )
        return None

    stats = _empty_stats()
    stats["delta_sync"] = True
    new_cursor = latest_time or to_square_timestamp(datetime.utcnow())

    if batch.total == 0:
        await set_delta_cursor(db, merchant_id, new_cursor)
        await db.commit()
        log.info("catalog.delta_no_changes")
        return stats

    # Items in this batch may use categories that did not change.
    missing_categories = {
        cat_id
        for obj in batch.items.values()
        if (cat_id := resolve_category_id(obj.get("item_data") or {}))
        and cat_id not in batch.categories
        and cat_id not in batch.category_lookup
    }
    if missing_categories:
        rows = await db.execute(
            select(Category.square_id, Category.name).where(
                Category.merchant_id == merchant_id, Category.square_id.in_(missing_categories)
            )
        )
        batch.category_lookup.update({row.square_id: row.name for row in rows})

    # Variations whose parent did not change must attach to a live local item.
    outside_parents = {
        (obj.get("item_variation_data") or {}).get("item_id")
        for obj in batch.variations.values()
    } - set(batch.items) - {None}
    known_parents: set[str] = set()
    if outside_parents:
        known_parents = set(
            (
                await db.execute(
                    select(CatalogItem.square_id).where(
                        CatalogItem.merchant_id == merchant_id,
                        CatalogItem.square_id.in_(outside_parents),
                        CatalogItem.is_deleted.is_(False),
                    )
                )
            ).scalars()
        )

    await _write_batch(db, merchant_id, batch, client, stats, known_parent_ids=known_parents)

    if batch.deleted_categories:
        await db.execute(
            update(Category)
            .where(Category.merchant_id == merchant_id, Category.square_id.in_(batch.deleted_categories))
            .values(is_deleted=True)
        )
    if batch.deleted_items or batch.deleted_variations:
        stats.update(await soft_delete(db, merchant_id, batch.deleted_items, batch.deleted_variations))

    await set_delta_cursor(db, merchant_id, new_cursor)
    await db.commit()

    log.info(
        "catalog.delta_sync_completed",
        items=stats["items"],
        variations=stats["variations"],
        items_deleted=stats["items_deleted"],
        variations_deleted=stats["variations_deleted"],
        error_count=len(stats["errors"]),
    )
    return stats


async def delta_sync_catalog(db: AsyncSession, merchant_id: uuid.UUID, client) -> dict:
    """Incremental catalog sync with automatic fallback to sync_catalog."""
    if not merchant_id:
        raise ValueError("merchant_id is required for delta_sync_catalog")

    log = logger.bind(merchant_id=str(merchant_id))
    begin_time = await get_delta_cursor(db, merchant_id)
    if not begin_time:
        log.info("catalog.delta_no_cursor")
        return await sync_catalog(db, merchant_id, client)

    try:
        stats = await _run_delta(db, merchant_id, client, begin_time)
    except Exception as exc:  # noqa: BLE001
        log.error("catalog.delta_failed", error=str(exc), exc_info=True)
        await db.rollback()
        stats = None

    if stats is None:
        return await sync_catalog(db, merchant_id, client)
    return stats
