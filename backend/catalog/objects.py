"""
Catalog object writers — map Square CatalogObjects onto mirror rows.

Each writer is an idempotent upsert keyed by (merchant_id, square_id) and is
shared by the full and delta catalog syncs. Seeing an object in a sync also
revives it if it had been soft-deleted.
"""

import uuid
from datetime import datetime

import structlog
from sqlalchemy import and_, case, delete, func, null, or_
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.vendors import ensure_vendors_exist, known_vendor_ids
from db.models import Category, CatalogImage, CatalogItem, CatalogVariation, VariationVendor
from db.session import upsert
from integrations.square import parse_square_timestamp

logger = structlog.get_logger()

DEFAULT_CATEGORY_NAME = "Uncategorized"
DEFAULT_CURRENCY = "CAD"

_VISIBILITY = {"VISIBLE": "PUBLIC", "HIDDEN": "HIDDEN"}


def category_name(obj: dict) -> str:
    name = ((obj.get("category_data") or {}).get("name") or "").strip()
    return name or DEFAULT_CATEGORY_NAME


def resolve_category_id(item_data: dict) -> str | None:
    """Category for an item: categories list, then legacy category_id, then reporting category."""
    categories = item_data.get("categories") or []
    if categories and categories[0].get("id"):
        return categories[0]["id"]
    if item_data.get("category_id"):
        return item_data["category_id"]
    reporting = item_data.get("reporting_category") or {}
    return reporting.get("id")


def map_visibility(ecom_visibility: str | None) -> str:
    if not ecom_visibility:
        return "PRIVATE"
    return _VISIBILITY.get(ecom_visibility, ecom_visibility)


def resolve_inventory_alert(data: dict) -> tuple[str | None, int | None]:
    """Alert type/threshold, preferring any location override with LOW_QUANTITY."""
    alert_type = data.get("inventory_alert_type")
    threshold = data.get("inventory_alert_threshold")
    overrides = data.get("location_overrides") or []
    if not overrides:
        return alert_type, threshold

    if not alert_type:
        for override in overrides:
            if override.get("inventory_alert_type") == "LOW_QUANTITY":
                alert_type = "LOW_QUANTITY"
                if threshold is None:
                    threshold = override.get("inventory_alert_threshold")
                break
    first = overrides[0]
    if not alert_type:
        alert_type = first.get("inventory_alert_type")
    if threshold is None:
        threshold = first.get("inventory_alert_threshold")
    return alert_type, threshold


def _custom_value(attrs: dict, key: str, field: str):
    return (attrs.get(key) or {}).get(field)


def _parse_expiration(attrs: dict) -> dict:
    """Expiration metadata from custom attributes. None means "not set in Square"."""
    expiration_date = _custom_value(attrs, "expiration_date", "string_value")
    does_not_expire = _custom_value(attrs, "does_not_expire", "boolean_value")
    reviewed_at = _custom_value(attrs, "expiry_reviewed_at", "string_value")
    return {
        "expiration_date": datetime.strptime(expiration_date[:10], "%Y-%m-%d") if expiration_date else None,
        "does_not_expire": bool(does_not_expire) if does_not_expire is not None else None,
        "expiry_reviewed_at": parse_square_timestamp(reviewed_at),
        "expiry_reviewed_by": _custom_value(attrs, "expiry_reviewed_by", "string_value"),
    }


def _parse_case_pack(attrs: dict) -> int | None:
    raw = _custom_value(attrs, "case_pack_quantity", "number_value")
    if raw is None:
        return None
    try:
        value = int(float(raw))
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


# ── Writers ───────────────────────────────────────────────────────────────


async def upsert_category(db: AsyncSession, merchant_id: uuid.UUID, square_id: str, name: str) -> None:
    stmt = upsert(db, Category).values(
        id=uuid.uuid4(), merchant_id=merchant_id, square_id=square_id, name=name, is_deleted=False
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["merchant_id", "square_id"],
        set_={"name": stmt.excluded.name, "is_deleted": False, "updated_at": datetime.utcnow()},
    )
    await db.execute(stmt)


async def upsert_image(db: AsyncSession, merchant_id: uuid.UUID, obj: dict) -> None:
    image_data = obj.get("image_data") or {}
    values = {
        "name": image_data.get("name"),
        "url": image_data.get("url"),
        "caption": image_data.get("caption"),
    }
    stmt = upsert(db, CatalogImage).values(id=uuid.uuid4(), merchant_id=merchant_id, square_id=obj["id"], **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["merchant_id", "square_id"],
        set_={**values, "updated_at": datetime.utcnow()},
    )
    await db.execute(stmt)


async def upsert_item(db: AsyncSession, merchant_id: uuid.UUID, obj: dict, category_name: str | None) -> None:
    data = obj.get("item_data") or {}
    seo = data.get("ecom_seo_data") or {}
    is_archived = data.get("is_archived") is True
    now = datetime.utcnow()

    values = {
        "name": data.get("name") or "",
        "description": data.get("description"),
        "category_id": resolve_category_id(data),
        "category_name": category_name,
        "product_type": data.get("product_type"),
        "taxable": bool(data.get("is_taxable")),
        "visibility": map_visibility(data.get("ecom_visibility")),
        "available_online": data.get("ecom_visibility") == "VISIBLE",
        "seo_title": seo.get("page_title"),
        "seo_description": seo.get("page_description"),
        "is_archived": is_archived,
        "present_at_all_locations": obj.get("present_at_all_locations") is not False,
        "present_at_location_ids": obj.get("present_at_location_ids") or [],
        "absent_at_location_ids": obj.get("absent_at_location_ids") or [],
        "tax_ids": data.get("tax_ids") or [],
        "modifier_list_info": data.get("modifier_list_info"),
        "item_options": data.get("item_options"),
        "images": data.get("image_ids") or [],
        "is_deleted": False,
        "deleted_at": None,
    }
    stmt = upsert(db, CatalogItem).values(
        id=uuid.uuid4(),
        merchant_id=merchant_id,
        square_id=obj["id"],
        archived_at=now if is_archived else None,
        **values,
    )
    table = CatalogItem.__table__
    # archived_at records when the item was first seen archived, not every sync.
    archived_at = case(
        (
            and_(
                stmt.excluded.is_archived.is_(True),
                or_(table.c.is_archived.is_(False), table.c.is_archived.is_(None)),
            ),
            now,
        ),
        (stmt.excluded.is_archived.is_(False), null()),
        else_=table.c.archived_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["merchant_id", "square_id"],
        set_={**values, "archived_at": archived_at, "updated_at": now},
    )
    await db.execute(stmt)


async def upsert_variation(db: AsyncSession, merchant_id: uuid.UUID, obj: dict, client) -> int:
    """Upsert a variation and replace its vendor links. Returns the number of links written."""
    data = obj.get("item_variation_data") or {}
    attrs = obj.get("custom_attribute_values") or {}
    price = data.get("price_money") or {}
    alert_type, alert_threshold = resolve_inventory_alert(data)
    now = datetime.utcnow()

    values = {
        "item_id": data.get("item_id"),
        "name": data.get("name"),
        "sku": data.get("sku"),
        "upc": data.get("upc"),
        "price_money": price.get("amount"),
        "currency": price.get("currency") or DEFAULT_CURRENCY,
        "pricing_type": data.get("pricing_type") or "FIXED_PRICING",
        "track_inventory": data.get("track_inventory") is True,
        "inventory_alert_type": alert_type,
        "inventory_alert_threshold": alert_threshold,
        "present_at_all_locations": obj.get("present_at_all_locations") is not False,
        "present_at_location_ids": obj.get("present_at_location_ids") or [],
        "absent_at_location_ids": obj.get("absent_at_location_ids") or [],
        "custom_attributes": attrs or None,
        "is_deleted": False,
        "deleted_at": None,
    }
    # Locally edited values survive a sync where Square has nothing set.
    preserved = {"case_pack_quantity": _parse_case_pack(attrs), **_parse_expiration(attrs)}

    stmt = upsert(db, CatalogVariation).values(
        id=uuid.uuid4(), merchant_id=merchant_id, square_id=obj["id"], **values, **preserved
    )
    table = CatalogVariation.__table__
    stmt = stmt.on_conflict_do_update(
        index_elements=["merchant_id", "square_id"],
        set_={
            **values,
            **{key: func.coalesce(stmt.excluded[key], table.c[key]) for key in preserved},
            "updated_at": now,
        },
    )
    await db.execute(stmt)

    return await _replace_vendor_links(db, merchant_id, obj["id"], data.get("vendor_information") or [], client)


async def _replace_vendor_links(
    db: AsyncSession, merchant_id: uuid.UUID, variation_id: str, vendor_infos: list[dict], client
) -> int:
    await db.execute(
        delete(VariationVendor).where(
            VariationVendor.merchant_id == merchant_id, VariationVendor.variation_id == variation_id
        )
    )
    if not vendor_infos:
        return 0

    vendor_ids = [info.get("vendor_id") for info in vendor_infos]
    await ensure_vendors_exist(db, merchant_id, vendor_ids, client)
    available = await known_vendor_ids(db, merchant_id, vendor_ids)

    written = 0
    for info in vendor_infos:
        vendor_id = info.get("vendor_id")
        if not vendor_id:
            # Cost-only entry without a linked vendor.
            continue
        if vendor_id not in available:
            logger.warning(
                "catalog.vendor_link_skipped",
                merchant_id=str(merchant_id),
                variation_id=variation_id,
                vendor_id=vendor_id,
            )
            continue
        cost = info.get("unit_cost_money") or {}
        stmt = upsert(db, VariationVendor).values(
            id=uuid.uuid4(),
            merchant_id=merchant_id,
            variation_id=variation_id,
            vendor_id=vendor_id,
            vendor_code=info.get("vendor_code"),
            unit_cost_money=cost.get("amount"),
            currency=cost.get("currency") or DEFAULT_CURRENCY,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["merchant_id", "variation_id", "vendor_id"],
            set_={
                "vendor_code": stmt.excluded.vendor_code,
                "unit_cost_money": stmt.excluded.unit_cost_money,
                "currency": stmt.excluded.currency,
                "updated_at": datetime.utcnow(),
            },
        )
        await db.execute(stmt)
        written += 1
    return written
