"""
Vendor sync + on-demand vendor resolution.

Variations carry vendor cost links (item_variation_vendor_infos) that can
reference vendors created in Square after our last vendor sync. Before any
link is written, ensure_vendors_exist() fetches the unknown vendors one by
one so the link never points at a vendor we have not stored.
"""

import uuid

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Vendor
from db.session import upsert
from integrations.base import RemoteAPIError

logger = structlog.get_logger()


def map_vendor(vendor: dict, merchant_id: uuid.UUID) -> dict:
    """Map a Square Vendor to a vendors row."""
    contacts = vendor.get("contacts") or []
    contact = contacts[0] if contacts else {}
    return {
        "merchant_id": merchant_id,
        "square_id": vendor["id"],
        "name": vendor.get("name"),
        "status": vendor.get("status"),
        "contact_name": contact.get("name"),
        "contact_email": contact.get("email_address"),
        "contact_phone": contact.get("phone_number"),
    }


async def upsert_vendor(db: AsyncSession, vendor: dict, merchant_id: uuid.UUID) -> None:
    values = map_vendor(vendor, merchant_id)
    stmt = upsert(db, Vendor).values(id=uuid.uuid4(), **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["merchant_id", "square_id"],
        set_={k: v for k, v in values.items() if k not in ("merchant_id", "square_id")},
    )
    await db.execute(stmt)


async def ensure_vendors_exist(db: AsyncSession, merchant_id: uuid.UUID, vendor_ids, client) -> int:
    """Fetch and store any vendor id not yet known locally. Returns how many were created.

    A vendor that cannot be fetched is logged and skipped; the caller decides
    whether to drop the link that referenced it.
    """
    wanted = {vid for vid in (vendor_ids or []) if vid}
    if not wanted:
        return 0

    existing = set(
        (
            await db.execute(
                select(Vendor.square_id).where(Vendor.merchant_id == merchant_id, Vendor.square_id.in_(wanted))
            )
        ).scalars()
    )
    missing = sorted(wanted - existing)
    created = 0
    for vendor_id in missing:
        try:
            vendor = await client.retrieve_vendor(vendor_id)
        except RemoteAPIError as exc:
            logger.warning(
                "vendors.fetch_failed",
                merchant_id=str(merchant_id),
                vendor_id=vendor_id,
                error=str(exc),
            )
            continue
        if not vendor:
            logger.warning("vendors.not_found", merchant_id=str(merchant_id), vendor_id=vendor_id)
            continue
        await upsert_vendor(db, vendor, merchant_id)
        created += 1

    if created:
        logger.info("vendors.created_on_demand", merchant_id=str(merchant_id), count=created)
    return created


async def known_vendor_ids(db: AsyncSession, merchant_id: uuid.UUID, vendor_ids) -> set[str]:
    wanted = {vid for vid in vendor_ids if vid}
    if not wanted:
        return set()
    result = await db.execute(
        select(Vendor.square_id).where(Vendor.merchant_id == merchant_id, Vendor.square_id.in_(wanted))
    )
    return set(result.scalars())


async def sync_vendors(db: AsyncSession, merchant_id: uuid.UUID, client) -> dict:
    """Full vendor sync via SearchVendors."""
    if not merchant_id:
        raise ValueError("merchant_id is required for sync_vendors")

    count = 0
    cursor = None
    while True:
        page = await client.search_vendors(cursor=cursor)
        for vendor in page.get("vendors", []):
            await upsert_vendor(db, vendor, merchant_id)
            count += 1
        cursor = page.get("cursor")
        if not cursor:
            break

    await db.commit()
    logger.info("vendors.synced", merchant_id=str(merchant_id), count=count)
    return {"vendors": count}
